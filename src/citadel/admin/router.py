"""Admin router: /api/admin/* endpoints."""

from __future__ import annotations

import math
import uuid
from typing import Any, Literal

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from citadel.admin.schemas import (
    ApiKeyCreatedResponse,
    ApiKeyResponse,
    ApiKeyStats,
    AuthorizedAdminCreate,
    AuthorizedAdminResponse,
    GenerateApiKeyRequest,
    Pagination,
    RoleUpdateRequest,
)
from citadel.admin.service import (
    add_authorized_admin,
    api_key_stats,
    delete_user,
    generate_platform_key,
    get_user,
    list_api_keys,
    list_authorized_admins,
    list_users,
    regenerate_api_key,
    remove_authorized_admin,
    revoke_api_key,
    update_user_role,
    user_stats,
)
from citadel.auth.api_key_cache import ApiKeyCache
from citadel.auth.dependencies import get_api_key_cache, require_admin, require_superadmin
from citadel.auth.jwt import AccessClaims
from citadel.auth.schemas import UserResponse
from citadel.database import get_session
from citadel.responses import ok

router = APIRouter(prefix="/api/admin", tags=["Admin"])


# ---------------------------------------------------------------------------
# API keys
# ---------------------------------------------------------------------------


@router.get("/api-keys")
async def get_api_keys(
    _admin: AccessClaims = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    """List all platform keys with their status."""
    return ok([ApiKeyResponse.model_validate(key) for key in await list_api_keys(db)])


@router.get("/api-keys/stats")
async def get_api_key_stats(
    _admin: AccessClaims = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    return ok(ApiKeyStats(**await api_key_stats(db)))


@router.post("/api-keys/generate", status_code=201)
async def generate_key(
    body: GenerateApiKeyRequest,
    admin: AccessClaims = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
    cache: ApiKeyCache = Depends(get_api_key_cache),
) -> dict[str, Any]:
    """Mint a platform key. The plaintext is shown once."""
    key, plaintext = await generate_platform_key(db, body.platform, admin.id)
    await db.commit()
    await cache.refresh_or_invalidate()
    return ok(
        ApiKeyCreatedResponse(key=ApiKeyResponse.model_validate(key), plain_key=plaintext),
        message="API key generated. Store it now; it will not be shown again.",
    )


@router.post("/api-keys/{key_id}/regenerate")
async def regenerate_key(
    key_id: uuid.UUID,
    admin: AccessClaims = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
    cache: ApiKeyCache = Depends(get_api_key_cache),
) -> dict[str, Any]:
    """Replace a key's secret. The old value stops validating before this returns."""
    key, plaintext = await regenerate_api_key(db, str(key_id), admin.id)
    await db.commit()
    await cache.refresh_or_invalidate()
    return ok(
        ApiKeyCreatedResponse(key=ApiKeyResponse.model_validate(key), plain_key=plaintext),
        message="API key regenerated. Store it now; it will not be shown again.",
    )


@router.post("/api-keys/{key_id}/revoke")
async def revoke_key(
    key_id: uuid.UUID,
    _admin: AccessClaims = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
    cache: ApiKeyCache = Depends(get_api_key_cache),
) -> dict[str, Any]:
    """Revoke a key. The key stops validating before this returns."""
    key = await revoke_api_key(db, str(key_id))
    await db.commit()
    await cache.refresh()
    return ok(ApiKeyResponse.model_validate(key), message="API key revoked")


# ---------------------------------------------------------------------------
# Authorized admins
# ---------------------------------------------------------------------------


@router.get("/authorized-admins")
async def get_authorized_admins(
    _superadmin: AccessClaims = Depends(require_superadmin),
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    return ok([AuthorizedAdminResponse.model_validate(entry) for entry in await list_authorized_admins(db)])


@router.post("/authorized-admins", status_code=201)
async def create_authorized_admin(
    body: AuthorizedAdminCreate,
    superadmin: AccessClaims = Depends(require_superadmin),
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    """Allowlist an email for ``admin`` at sign-up."""
    entry = await add_authorized_admin(db, body.email, superadmin.id)
    await db.commit()
    return ok(AuthorizedAdminResponse.model_validate(entry), message="Email authorized")


@router.delete("/authorized-admins/{entry_id}")
async def delete_authorized_admin(
    entry_id: int,
    _superadmin: AccessClaims = Depends(require_superadmin),
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    await remove_authorized_admin(db, entry_id)
    await db.commit()
    return ok(message="Authorization removed")


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


@router.get("/users")
async def get_users(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    search: str | None = Query(None, max_length=255),
    sort_by: Literal["createdAt", "lastLoginAt", "email", "name", "role"] = Query("createdAt", alias="sortBy"),
    sort_order: Literal["asc", "desc"] = Query("desc", alias="sortOrder"),
    _admin: AccessClaims = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    """Paginated, searchable user list."""
    users, total = await list_users(db, page=page, limit=limit, search=search, sort_by=sort_by, sort_order=sort_order)
    return ok(
        {
            "users": [UserResponse.model_validate(user) for user in users],
            "pagination": Pagination(page=page, limit=limit, total=total, total_pages=math.ceil(total / limit)),
        }
    )


@router.get("/users/stats")
async def get_user_stats(
    _admin: AccessClaims = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    return ok(await user_stats(db))


@router.get("/users/{user_id}")
async def get_user_detail(
    user_id: int,
    _admin: AccessClaims = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    return ok(UserResponse.model_validate(await get_user(db, user_id)))


@router.patch("/users/{user_id}/role")
async def patch_user_role(
    user_id: int,
    body: RoleUpdateRequest,
    admin: AccessClaims = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    """Change another user's role. Takes effect on their next token refresh."""
    user = await update_user_role(db, admin, user_id, body.role)
    await db.commit()
    return ok(UserResponse.model_validate(user), message="Role updated")


@router.delete("/users/{user_id}")
async def remove_user(
    user_id: int,
    admin: AccessClaims = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
    cache: ApiKeyCache = Depends(get_api_key_cache),
) -> dict[str, Any]:
    """Delete another user. Keys the user created go with it."""
    await delete_user(db, admin, user_id)
    await db.commit()
    await cache.refresh()
    return ok(message="User deleted")
