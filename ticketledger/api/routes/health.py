import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import PlainTextResponse

from ticketledger.api.responses import Envelope
from ticketledger.dependencies.services import get_pool_manager
from ticketledger.metrics import PrometheusExporter, metrics_registry
from ticketledger.services.postgres import PostgresPoolManager

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health", response_model=Envelope, summary="Public health check")
async def health(
    request: Request,
    response: Response,
    pool_manager: Annotated[PostgresPoolManager | None, Depends(get_pool_manager)],
) -> Envelope:
    database = "not_configured"
    if pool_manager is not None:
        try:
            await pool_manager.ping()
            database = "ok"
        except Exception:
            logger.warning("Database health check failed", exc_info=True)
            database = "error"

    data = {
        "database": database,
        "ledger_configured": getattr(request.app.state, "ledger_client", None) is not None,
    }
    if database != "ok":
        response.status_code = 503
        return Envelope(status="error", message="Database unavailable", data=data)
    return Envelope(message="Service healthy", data=data)


@router.get("/metrics", response_class=PlainTextResponse, summary="Prometheus metrics")
async def metrics(request: Request) -> PlainTextResponse:
    registry = getattr(request.app.state, "metrics_registry", None) or metrics_registry
    payload = PrometheusExporter(registry).build_payload()
    return PlainTextResponse(payload, media_type="text/plain; version=0.0.4")
