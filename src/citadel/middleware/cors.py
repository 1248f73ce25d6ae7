"""CORS for the admin panel.

The panel sends a bearer token and the platform key on every call, so both
headers must survive preflight, and the headers our middleware sets on
responses must be readable by the browser.
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from citadel.config import Settings
from citadel.middleware.rate_limit import RATE_LIMIT_HEADERS
from citadel.middleware.request_id import REQUEST_ID_HEADER


def cors_headers(settings: Settings) -> tuple[list[str], list[str]]:
    """Return ``(allowed request headers, exposed response headers)``."""
    allowed = ["Authorization", "Content-Type", settings.api_key_header, REQUEST_ID_HEADER]
    exposed = [REQUEST_ID_HEADER, *RATE_LIMIT_HEADERS]
    return allowed, exposed


def setup_cors(app: FastAPI, settings: Settings) -> None:
    allowed, exposed = cors_headers(settings)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=allowed,
        expose_headers=exposed,
    )
