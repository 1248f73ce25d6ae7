"""Profile router: /api/profile/* endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends
from pydantic import Field
from sqlalchemy.ext.asyncio import AsyncSession

from citadel.auth.api_key_cache import ApiKeyCache
from citadel.auth.dependencies import get_api_key_cache, get_current_user
from citadel.auth.roles import Provider
from citadel.auth.schemas import CamelModel, UserResponse
from citadel.database import get_session
from citadel.db.models import User
from citadel.responses import ok
from citadel.users.service import (
    delete_account,
    get_preferences,
    list_providers,
    set_primary_provider,
    unlink_provider,
    update_profile,
)

router = APIRouter(prefix="/api/profile", tags=["Profile"])


class ProfileUpdateRequest(CamelModel):
    """Partial profile update; omitted fields are left alone."""

    name: str | None = Field(None, max_length=255)
    avatar: str | None = Field(None, max_length=2048)
    language: str | None = Field(None, min_length=2, max_length=16)
    settings: dict[str, Any] | None = None


async def _profile(db: AsyncSession, user: User) -> dict[str, Any]:
    prefs = await get_preferences(db, user.id)
    return {
        "user": UserResponse.model_validate(user),
        "preferences": {
            "language": prefs.language if prefs else None,
            "settings": prefs.settings if prefs else {},
        },
        "providers": await list_providers(db, user),
    }


@router.get("")
async def get_profile(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    """Own profile, preferences and linked providers."""
    return ok(await _profile(db, user))


@router.patch("")
async def patch_profile(
    body: ProfileUpdateRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    await update_profile(db, user, body.model_dump(exclude_unset=True))
    await db.commit()
    return ok(await _profile(db, user), message="Profile updated")


@router.delete("")
async def delete_profile(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
    cache: ApiKeyCache = Depends(get_api_key_cache),
) -> dict[str, Any]:
    """Delete own account with everything it owns."""
    await delete_account(db, user)
    await db.commit()
    await cache.refresh()
    return ok(message="Account deleted")


@router.get("/providers")
async def get_providers(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    return ok(await list_providers(db, user))


@router.delete("/providers/{provider}")
async def delete_provider(
    provider: Provider,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    """Unlink a provider. The last remaining provider cannot be unlinked."""
    await unlink_provider(db, user, provider)
    await db.commit()
    return ok(await list_providers(db, user), message=f"{provider.value} unlinked")


@router.put("/providers/{provider}/primary")
async def put_primary_provider(
    provider: Provider,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    await set_primary_provider(db, user, provider)
    await db.commit()
    return ok(await list_providers(db, user), message="Primary provider updated")
