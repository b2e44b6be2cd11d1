"""Global error handlers ensuring request_id is included in JSON responses."""

from __future__ import annotations

import asyncpg
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from freeshare.api.request_id import get_request_id
from freeshare.moderation.domain.exceptions import InternalError, ModerationError, ValidationError
from freeshare.obs import logging as obs_logging

_log = obs_logging.get_logger("freeshare.api.errors")


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(StarletteHTTPException)
    async def http_exc_handler(request: Request, exc: StarletteHTTPException):  # type: ignore[override]
        rid = get_request_id(request)
        payload = {"detail": exc.detail, "request_id": rid}
        return JSONResponse(status_code=exc.status_code, content=payload, headers=getattr(exc, "headers", None))

    @app.exception_handler(RequestValidationError)
    async def validation_exc_handler(request: Request, exc: RequestValidationError):  # type: ignore[override]
        rid = get_request_id(request)
        payload = {
            "detail": ValidationError().as_payload(),
            "errors": jsonable_errors(exc),
            "request_id": rid,
        }
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=payload)

    @app.exception_handler(ModerationError)
    async def moderation_exc_handler(request: Request, exc: ModerationError):  # type: ignore[override]
        rid = get_request_id(request)
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.as_payload(), "request_id": rid})

    @app.exception_handler(asyncpg.PostgresError)
    async def storage_exc_handler(request: Request, exc: asyncpg.PostgresError):  # type: ignore[override]
        rid = get_request_id(request)
        _log.error("storage_error", extra={"error": type(exc).__name__})
        error = InternalError()
        return JSONResponse(status_code=error.status_code, content={"detail": error.as_payload(), "request_id": rid})


def jsonable_errors(exc: RequestValidationError) -> list[dict]:
    errors = []
    for error in exc.errors():
        errors.append({"loc": list(error.get("loc", ())), "msg": str(error.get("msg", "")), "type": error.get("type")})
    return errors
