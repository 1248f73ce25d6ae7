"""Setup router: /api/setup/* endpoints.

These routes are exempt from the API key gate: platform keys do not exist
until ``initialize`` has run.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from citadel.auth.api_key_cache import ApiKeyCache
from citadel.auth.dependencies import get_api_key_cache, get_current_principal, require_superadmin
from citadel.auth.jwt import AccessClaims
from citadel.config import get_settings
from citadel.database import get_session
from citadel.errors import ForbiddenError
from citadel.responses import ok
from citadel.setup.service import get_setup_status, initialize_setup, reset_setup

router = APIRouter(prefix="/api/setup", tags=["Setup"])


async def block_in_production() -> None:
    """Runs before authentication so production always answers 403."""
    if get_settings().is_production:
        msg = "Setup reset is disabled in production"
        raise ForbiddenError(msg)


@router.get("/status")
async def status(db: AsyncSession = Depends(get_session)) -> dict[str, Any]:
    """Unauthenticated. Production only reveals whether setup is complete."""
    return ok(await get_setup_status(db, detailed=not get_settings().is_production))


@router.post("/initialize")
async def initialize(
    principal: AccessClaims = Depends(get_current_principal),
    db: AsyncSession = Depends(get_session),
    cache: ApiKeyCache = Depends(get_api_key_cache),
) -> dict[str, Any]:
    """Mint the platform keys and close setup. Keys are shown once."""
    keys = await initialize_setup(db, principal.id)
    await db.commit()
    await cache.refresh_or_invalidate()
    return ok({"apiKeys": keys}, message="Setup completed successfully")


@router.post("/reset", dependencies=[Depends(block_in_production)])
async def reset(
    _superadmin: AccessClaims = Depends(require_superadmin),
    db: AsyncSession = Depends(get_session),
    cache: ApiKeyCache = Depends(get_api_key_cache),
) -> dict[str, Any]:
    """Development only: wipe core tables and reopen setup."""
    deleted = await reset_setup(db)
    await db.commit()
    await cache.refresh()
    return ok({"deleted": deleted}, message="Setup has been reset")
