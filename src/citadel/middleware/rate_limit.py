"""Redis-backed fixed window rate limiting.

Callers whose bearer token claims an admin role are exempt. The claim is read
without signature verification: a forged token only skips the limiter and is
still rejected by the authoritative check on the route.
"""

import time
from typing import Any

import structlog
from redis.exceptions import RedisError
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from citadel.auth.jwt import decode_unverified
from citadel.auth.roles import Role, has_role
from citadel.redis_client import get_redis, redis_available

logger = structlog.get_logger()

_EXEMPT_PATHS = frozenset({"/health", "/ready"})

RATE_LIMIT_HEADERS = ("X-RateLimit-Remaining", "X-RateLimit-Limit", "Retry-After")


def _claims_admin(request: Request) -> bool:
    auth = request.headers.get("Authorization", "")
    if not auth.lower().startswith("bearer "):
        return False
    claims = decode_unverified(auth[7:].strip())
    return bool(claims) and has_role(str(claims.get("role", "")), Role.ADMIN)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Limit requests per client IP per window."""

    def __init__(self, app: Any, requests_per_window: int = 100, window_seconds: int = 60) -> None:  # noqa: ANN401
        super().__init__(app)
        self.requests_per_window = requests_per_window
        self.window_seconds = window_seconds

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        """Count the request, answer 429 once the window is exhausted."""
        if not redis_available() or request.url.path in _EXEMPT_PATHS or _claims_admin(request):
            return await call_next(request)

        client_ip = request.client.host if request.client else "unknown"
        window = int(time.time()) // self.window_seconds
        rate_key = f"ratelimit:{client_ip}:{window}"

        pipe = get_redis().pipeline()
        pipe.incr(rate_key)
        pipe.expire(rate_key, self.window_seconds + 1)
        try:
            results: list[Any] = await pipe.execute()
        except RedisError as exc:
            # Unlimited rather than unavailable while Redis is down.
            logger.warning("rate_limit_unavailable", path=request.url.path, error=str(exc))
            return await call_next(request)

        current_count: int = results[0]
        if current_count > self.requests_per_window:
            return JSONResponse(
                status_code=429,
                content={
                    "success": False,
                    "error": {"code": "RATE_LIMITED", "message": "Rate limit exceeded. Try again later."},
                },
                headers={
                    "Retry-After": str(self.window_seconds),
                    "X-RateLimit-Remaining": "0",
                    "X-RateLimit-Limit": str(self.requests_per_window),
                },
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.requests_per_window - current_count))
        response.headers["X-RateLimit-Limit"] = str(self.requests_per_window)
        return response
