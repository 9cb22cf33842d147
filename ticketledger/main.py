from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from ticketledger.api.responses import register_exception_handlers
from ticketledger.api.routes import admin, health, tickets
from ticketledger.core.config import get_settings
from ticketledger.core.logging import configure_logging, init_tracer, shutdown_tracer
from ticketledger.metrics import metrics_registry
from ticketledger.runtime import Runtime, build_runtime


def _publish(app: FastAPI, runtime: Runtime | None) -> None:
    app.state.runtime = runtime
    app.state.pool_manager = None if runtime is None else runtime.pool_manager
    app.state.revocation_service = None if runtime is None else runtime.revocation_service
    app.state.ticket_repository = None if runtime is None else runtime.tickets
    app.state.bot_scanner = None if runtime is None else runtime.bot_scanner
    app.state.queue_repository = None if runtime is None else runtime.queue
    app.state.statistics_service = None if runtime is None else runtime.statistics
    app.state.ledger_client = None if runtime is None else runtime.ledger
    app.state.reconciler = None if runtime is None else runtime.reconciler
    app.state.verifier = None if runtime is None else runtime.verifier


@asynccontextmanager
async def lifespan(app: FastAPI):  # pragma: no cover - executed by framework
    settings = get_settings()
    logger = configure_logging(settings)
    tracer_provider = init_tracer(settings)

    app.state.logger = logger
    app.state.tracer_provider = tracer_provider
    app.state.metrics_registry = metrics_registry
    runtime = None
    try:
        runtime = await build_runtime(settings)
    except Exception:  # pragma: no cover - service initialisation best effort
        logger.exception("Service initialisation failed; dependent endpoints will return 503")
        runtime = None
    _publish(app, runtime)
    try:
        yield
    finally:
        if runtime is not None:
            await runtime.close()
        shutdown_tracer(tracer_provider)


async def answer_options(request: Request, call_next) -> Response:
    """Answer every OPTIONS request with an empty 200, keeping the CORS headers."""

    response = await call_next(request)
    if request.method != "OPTIONS":
        return response
    headers = {
        key: value
        for key, value in response.headers.items()
        if key.lower() not in ("content-length", "content-type")
    }
    return Response(status_code=200, headers=headers)


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )
    # Added after CORS so it wraps both preflight and plain OPTIONS responses
    app.middleware("http")(answer_options)
    register_exception_handlers(app)
    app.include_router(health.router)
    app.include_router(tickets.router)
    app.include_router(admin.router)
    return app


app = create_app()
