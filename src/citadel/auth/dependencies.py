"""FastAPI authentication dependencies."""

from __future__ import annotations

from collections.abc import Awaitable, Callable

from fastapi import Depends, Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from citadel.auth.api_key_cache import ApiKeyCache
from citadel.auth.jwt import AccessClaims, verify_access_token
from citadel.auth.roles import Role
from citadel.auth.service import get_user_by_id
from citadel.database import get_session
from citadel.db.models import User
from citadel.errors import ForbiddenError, UnauthorizedError

_bearer = HTTPBearer(auto_error=False)


async def get_current_principal(
    credentials: HTTPAuthorizationCredentials | None = Security(_bearer),
) -> AccessClaims:
    """
    Verify the bearer access token and return its claims.

    Stateless: the database is not consulted.
    """
    if credentials is None or not credentials.credentials:
        raise UnauthorizedError
    return verify_access_token(credentials.credentials)


async def get_current_user(
    principal: AccessClaims = Depends(get_current_principal),
    db: AsyncSession = Depends(get_session),
) -> User:
    """Load the user behind the access token. 401 if it no longer exists."""
    user = await get_user_by_id(db, principal.id)
    if user is None:
        msg = "User not found"
        raise UnauthorizedError(msg)
    return user


def require_role(required: Role) -> Callable[..., Awaitable[AccessClaims]]:
    """Dependency factory: the caller's role must be at least ``required``."""

    async def _check(principal: AccessClaims = Depends(get_current_principal)) -> AccessClaims:
        if not principal.role.at_least(required):
            raise ForbiddenError(details={"required": required.value, "current": principal.role.value})
        return principal

    return _check


require_admin = require_role(Role.ADMIN)
require_superadmin = require_role(Role.SUPERADMIN)


def get_api_key_cache(request: Request) -> ApiKeyCache:
    """The per-app cache built at startup."""
    return request.app.state.api_key_cache


def client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


def client_user_agent(request: Request) -> str | None:
    return request.headers.get("user-agent")
