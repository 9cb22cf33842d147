"""Response envelope shared by every endpoint."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException

logger = logging.getLogger(__name__)


class Envelope(BaseModel):
    status: str = "success"
    message: str
    data: Any = None
    warnings: list[str] | None = None


def success(message: str, data: Any = None, *, warnings: list[str] | None = None) -> Envelope:
    if warnings:
        return Envelope(status="partial_success", message=message, data=data, warnings=list(warnings))
    return Envelope(status="success", message=message, data=data)


class ErrorEnvelope(BaseModel):
    status: str = "error"
    message: str
    errors: list[dict[str, Any]] | None = Field(default=None)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    body = ErrorEnvelope(message=str(exc.detail))
    return JSONResponse(
        status_code=exc.status_code,
        content=body.model_dump(exclude_none=True),
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {"field": ".".join(str(part) for part in error.get("loc", ()) if part != "body"), "message": error.get("msg")}
        for error in exc.errors()
    ]
    body = ErrorEnvelope(message="Invalid request", errors=errors)
    return JSONResponse(status_code=400, content=jsonable_encoder(body.model_dump(exclude_none=True)))


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    body = ErrorEnvelope(message="Internal server error")
    return JSONResponse(status_code=500, content=body.model_dump(exclude_none=True))


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
