"""Structured logging configuration with structlog."""

import logging
from typing import Any

import structlog

from citadel.config import Settings

# Event keys whose values are credentials. Bound by mistake, they still never reach the log.
SECRET_KEYS = frozenset(
    {
        "access_token",
        "refresh_token",
        "linking_token",
        "id_token",
        "api_key",
        "plain_key",
        "key_hash",
        "client_secret",
        "authorization",
    }
)

REDACTED = "[redacted]"


def redact_secrets(_logger: Any, _method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:  # noqa: ANN401
    for key in SECRET_KEYS.intersection(event_dict):
        event_dict[key] = REDACTED
    return event_dict


def setup_logging(settings: Settings) -> None:
    """Configure structlog for JSON output in deployments, console output locally."""
    renderer: structlog.types.Processor = (
        structlog.processors.JSONRenderer() if settings.log_format == "json" else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            redact_secrets,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
    # SQL echo stays off even at DEBUG; secrets appear in bound parameters.
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
