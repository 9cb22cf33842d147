import logging

from ticketledger.core import logging as service_logging
from ticketledger.core.config import Settings


def test_configure_logging_names_logger_from_settings():
    settings = Settings(logger_name="ticketledger.jobs", log_level="DEBUG")

    logger = service_logging.configure_logging(settings)

    assert logger.name == "ticketledger.jobs"
    assert logger.level == logging.DEBUG


def test_rpc_loggers_stay_quieter_than_service():
    config = service_logging.build_logging_config(Settings(log_level="DEBUG", rpc_log_level="WARNING"))

    assert config["root"]["level"] == logging.DEBUG
    assert config["loggers"]["web3"]["level"] == logging.WARNING

    config = service_logging.build_logging_config(Settings(log_level="ERROR", rpc_log_level="INFO"))

    assert config["loggers"]["web3"]["level"] == logging.ERROR


def test_otlp_headers_skip_malformed_pairs():
    headers = service_logging._otlp_headers("api-key=abc, team = ledger ,broken,=x")

    assert headers == {"api-key": "abc", "team": "ledger"}
    assert service_logging._otlp_headers(None) == {}


def test_tracer_disabled_returns_none():
    assert service_logging.init_tracer(Settings(otel_enabled=False)) is None
    service_logging.shutdown_tracer(None)
