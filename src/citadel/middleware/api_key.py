"""Platform API key gate.

Every request outside the whitelist must carry a valid ``X-API-Key``. The
whitelist is matched on the path only: exact entries, or ``prefix*`` entries
that match the prefix and everything below it.
"""

from collections.abc import Iterable
from typing import Any

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from citadel.errors import ApiKeyInvalidError, ApiKeyMissingError, AppError

logger = structlog.get_logger()


def is_whitelisted(path: str, patterns: Iterable[str]) -> bool:
    path = path.split("?", 1)[0]
    for pattern in patterns:
        if pattern.endswith("*"):
            prefix = pattern[:-1]
            if path.startswith(prefix) or path == prefix.rstrip("/"):
                return True
        elif path == pattern or path == f"{pattern}/":
            return True
    return False


def _error(exc: AppError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


class ApiKeyMiddleware(BaseHTTPMiddleware):
    """Reject requests without a valid platform API key."""

    def __init__(self, app: Any, whitelist: Iterable[str], header_name: str = "X-API-Key") -> None:  # noqa: ANN401
        super().__init__(app)
        self.whitelist = tuple(whitelist)
        self.header_name = header_name

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        """401 on a missing or invalid key, 500 if the key store cannot be reached."""
        if request.method == "OPTIONS" or is_whitelisted(request.url.path, self.whitelist):
            return await call_next(request)

        presented = request.headers.get(self.header_name)
        if not presented:
            return _error(ApiKeyMissingError())

        try:
            valid = await request.app.state.api_key_cache.validate(presented)
        except Exception as exc:
            logger.error("api_key_validation_failed", path=request.url.path, error=str(exc), exc_info=exc)
            return _error(AppError())

        if not valid:
            logger.warning("api_key_rejected", path=request.url.path)
            return _error(ApiKeyInvalidError())
        return await call_next(request)
