"""Global error handlers: every failure leaves as the same JSON envelope.

``{"success": false, "error": {"code": ..., "message": ...}}``
"""

from http import HTTPStatus

import structlog
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from citadel.config import Settings
from citadel.errors import AppError

logger = structlog.get_logger()


def _envelope(code: str, message: str, details: object | None = None) -> dict[str, object]:
    error: dict[str, object] = {"code": code, "message": message}
    if details is not None:
        error["details"] = details
    return {"success": False, "error": error}


def _status_code_name(status_code: int) -> str:
    try:
        return HTTPStatus(status_code).name
    except ValueError:
        return "HTTP_ERROR"


def setup_error_handlers(app: FastAPI, settings: Settings) -> None:
    """Register global exception handlers."""

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
        """Typed service errors."""
        if exc.status_code >= 500:
            logger.error("app_error", path=request.url.path, code=exc.code, error=exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(_request: Request, exc: StarletteHTTPException) -> JSONResponse:
        """Framework-raised HTTP errors (404 route, 405 method, ...)."""
        return JSONResponse(
            status_code=exc.status_code,
            content=_envelope(_status_code_name(exc.status_code), str(exc.detail)),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(_request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=422,
            content=_envelope("VALIDATION_ERROR", "Validation failed", jsonable_encoder(exc.errors())),
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Catch-all: generic message in production, the exception text elsewhere."""
        logger.error(
            "unhandled_exception",
            path=request.url.path,
            method=request.method,
            error=str(exc),
            exc_info=exc,
        )
        message = "Internal server error" if settings.is_production else f"{type(exc).__name__}: {exc}"
        return JSONResponse(status_code=500, content=_envelope("INTERNAL_ERROR", message))
