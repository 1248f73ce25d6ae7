"""Typed application errors.

Services raise these; ``citadel.middleware.error_handler`` is the single place
that turns them into HTTP responses. Nothing below the routers builds status
codes by hand.
"""

from __future__ import annotations

from typing import Any


class AppError(Exception):
    """Base class for errors that map to a client-facing response."""

    status_code: int = 500
    code: str = "INTERNAL_ERROR"
    message: str = "Internal server error"

    def __init__(
        self,
        message: str | None = None,
        *,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.message = message or self.message
        self.code = code or self.code
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        error: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            error["details"] = self.details
        return {"success": False, "error": error}


class UnauthorizedError(AppError):
    status_code = 401
    code = "UNAUTHORIZED"
    message = "Authentication required"


class InvalidTokenError(UnauthorizedError):
    code = "INVALID_TOKEN"
    message = "Invalid or expired token"


class TokenReuseError(InvalidTokenError):
    """A consumed or revoked refresh token was presented again.

    The family has already been revoked by the time this is raised. The
    response body is identical to ``InvalidTokenError``.
    """


class TokenExpiredError(InvalidTokenError):
    code = "TOKEN_EXPIRED"
    message = "Token has expired"


class ForbiddenError(AppError):
    status_code = 403
    code = "FORBIDDEN"
    message = "Insufficient permissions"


class NotFoundError(AppError):
    status_code = 404
    code = "NOT_FOUND"
    message = "Resource not found"


class ConflictError(AppError):
    status_code = 409
    code = "CONFLICT"
    message = "Resource already exists"


class SetupAlreadyCompleteError(ConflictError):
    status_code = 400
    code = "SETUP_ALREADY_COMPLETE"
    message = "Setup has already been completed"


class ValidationError(AppError):
    status_code = 422
    code = "VALIDATION_ERROR"
    message = "Validation failed"


class ApiKeyMissingError(UnauthorizedError):
    code = "API_KEY_MISSING"
    message = "API key is required. Include X-API-Key header in your request."


class ApiKeyInvalidError(UnauthorizedError):
    code = "API_KEY_INVALID"
    message = "Invalid or revoked API key."
