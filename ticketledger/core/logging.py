"""Logging and tracing setup shared by the API process and the CLI jobs."""

from __future__ import annotations

import logging
from logging.config import dictConfig
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from ticketledger import __version__
from ticketledger.core.config import Settings

_TRACER_INITIALISED = False

_RPC_LOGGERS = ("web3", "urllib3", "aiohttp.client")


def _level(name: str, default: int = logging.INFO) -> int:
    return getattr(logging, name.upper(), default)


def _otlp_headers(raw: str | None) -> dict[str, str]:
    """Parse ``key=value,key2=value2`` as used by OTEL_EXPORTER_OTLP_HEADERS."""

    pairs = (item.partition("=") for item in (raw or "").split(","))
    return {key.strip(): value.strip() for key, sep, value in pairs if sep and key.strip()}


def build_logging_config(settings: Settings) -> dict[str, Any]:
    level = _level(settings.log_level)
    # RPC chatter never goes below the service level
    rpc_level = max(level, _level(settings.rpc_log_level, logging.WARNING))
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {"service": {"format": settings.log_format}},
        "handlers": {
            "console": {"class": "logging.StreamHandler", "formatter": "service", "level": level},
        },
        "root": {"handlers": ["console"], "level": level},
        "loggers": {name: {"level": rpc_level} for name in _RPC_LOGGERS},
    }


def configure_logging(settings: Settings) -> logging.Logger:
    """Apply the process logging config and return the service logger."""

    dictConfig(build_logging_config(settings))
    logger = logging.getLogger(settings.logger_name)
    logger.setLevel(_level(settings.log_level))
    return logger


def init_tracer(settings: Settings) -> TracerProvider | None:
    """Install an OTLP/HTTP tracer provider when tracing is enabled."""

    global _TRACER_INITIALISED

    if _TRACER_INITIALISED or not settings.otel_enabled:
        return None

    provider = TracerProvider(
        resource=Resource.create(
            {
                "service.name": settings.otel_service_name,
                "service.version": __version__,
                "deployment.environment": settings.environment,
                "ledger.network": settings.ethereum_network,
            }
        )
    )
    exporter = OTLPSpanExporter(
        endpoint=settings.otel_exporter_otlp_endpoint or None,
        headers=_otlp_headers(settings.otel_exporter_otlp_headers) or None,
    )
    provider.add_span_processor(BatchSpanProcessor(exporter))

    trace.set_tracer_provider(provider)
    _TRACER_INITIALISED = True
    return provider


def shutdown_tracer(provider: TracerProvider | None) -> None:
    """Flush pending spans and release the provider."""

    global _TRACER_INITIALISED

    if provider is None:
        return
    provider.shutdown()
    _TRACER_INITIALISED = False
