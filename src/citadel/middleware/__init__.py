"""Middleware registration."""

from fastapi import FastAPI

from citadel.config import Settings
from citadel.middleware.api_key import ApiKeyMiddleware
from citadel.middleware.cors import setup_cors
from citadel.middleware.error_handler import setup_error_handlers
from citadel.middleware.logging import setup_logging
from citadel.middleware.rate_limit import RateLimitMiddleware
from citadel.middleware.request_id import RequestIdMiddleware


def setup_middleware(app: FastAPI, settings: Settings) -> None:
    """Register all middleware in the correct order.

    Starlette runs middleware in reverse-add order (last added = outermost):
    CORS -> request id -> rate limit -> API key gate -> routes.
    """
    setup_logging(settings)
    setup_error_handlers(app, settings)
    app.add_middleware(
        ApiKeyMiddleware,
        whitelist=settings.api_key_whitelist,
        header_name=settings.api_key_header,
    )
    app.add_middleware(
        RateLimitMiddleware,
        requests_per_window=settings.rate_limit_requests,
        window_seconds=settings.rate_limit_window_seconds,
    )
    app.add_middleware(RequestIdMiddleware)
    setup_cors(app, settings)
