"""
Admin business logic: platform API keys, the admin allowlist and user roles.

Services flush; routers commit and, for key changes, refresh the API key
cache before answering.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any

import structlog
from sqlalchemy import delete, func, or_, select

from citadel.auth.api_keys import generate_api_key, key_name
from citadel.auth.roles import Role
from citadel.db.models import ApiKey, AuthorizedAdmin, User
from citadel.errors import ConflictError, ForbiddenError, NotFoundError

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from citadel.auth.jwt import AccessClaims

logger = structlog.get_logger()


# ---------------------------------------------------------------------------
# API keys
# ---------------------------------------------------------------------------


async def list_api_keys(db: AsyncSession) -> list[ApiKey]:
    result = await db.execute(select(ApiKey).order_by(ApiKey.created_at.desc()))
    return list(result.scalars().all())


async def api_key_stats(db: AsyncSession) -> dict[str, int]:
    total = (await db.execute(select(func.count(ApiKey.id)))).scalar_one()
    active = (await db.execute(select(func.count(ApiKey.id)).where(ApiKey.revoked_at.is_(None)))).scalar_one()
    return {"total": total, "active": active, "revoked": total - active}


async def get_api_key(db: AsyncSession, key_id: str) -> ApiKey:
    key = (await db.execute(select(ApiKey).where(ApiKey.id == key_id))).scalar_one_or_none()
    if key is None:
        msg = "API key not found"
        raise NotFoundError(msg)
    return key


async def generate_platform_key(db: AsyncSession, platform: str, created_by: int) -> tuple[ApiKey, str]:
    """
    Create the key for ``platform``. A revoked key of the same platform is replaced.

    Returns:
        (row, plaintext). The plaintext is not stored anywhere.

    Raises:
        ConflictError: The platform already has an active key.
    """
    name = key_name(platform)
    existing = (await db.execute(select(ApiKey).where(ApiKey.name == name))).scalar_one_or_none()
    if existing is not None:
        if existing.is_active:
            msg = f"An active API key already exists for {platform}. Regenerate or revoke it first."
            raise ConflictError(msg, code="API_KEY_EXISTS")
        await db.delete(existing)
        await db.flush()

    plaintext, key_hash = await asyncio.to_thread(generate_api_key)
    key = ApiKey(name=name, key_hash=key_hash, created_by=created_by)
    db.add(key)
    await db.flush()
    logger.info("api_key_generated", key_id=key.id, name=name, created_by=created_by)
    return key, plaintext


async def regenerate_api_key(db: AsyncSession, key_id: str, regenerated_by: int) -> tuple[ApiKey, str]:
    """
    Replace the secret of an active key; the old value stops working.

    Raises:
        NotFoundError: Unknown key.
        ConflictError: The key is revoked.
    """
    key = await get_api_key(db, key_id)
    if not key.is_active:
        msg = "Cannot regenerate a revoked API key"
        raise ConflictError(msg, code="API_KEY_REVOKED")
    plaintext, key.key_hash = await asyncio.to_thread(generate_api_key)
    key.created_by = regenerated_by
    key.updated_at = datetime.now(timezone.utc)
    await db.flush()
    logger.info("api_key_regenerated", key_id=key.id, name=key.name, regenerated_by=regenerated_by)
    return key, plaintext


async def revoke_api_key(db: AsyncSession, key_id: str) -> ApiKey:
    """
    Revoke a key. Terminal.

    Raises:
        NotFoundError: Unknown key.
        ConflictError: Already revoked.
    """
    key = await get_api_key(db, key_id)
    if not key.is_active:
        msg = "API key is already revoked"
        raise ConflictError(msg, code="API_KEY_ALREADY_REVOKED")
    key.revoked_at = datetime.now(timezone.utc)
    await db.flush()
    logger.info("api_key_revoked", key_id=key.id, name=key.name)
    return key


# ---------------------------------------------------------------------------
# Authorized admins
# ---------------------------------------------------------------------------


async def list_authorized_admins(db: AsyncSession) -> list[AuthorizedAdmin]:
    result = await db.execute(select(AuthorizedAdmin).order_by(AuthorizedAdmin.created_at.desc()))
    return list(result.scalars().all())


async def add_authorized_admin(db: AsyncSession, email: str, created_by: int) -> AuthorizedAdmin:
    """Allowlist an email. Applies to accounts created afterwards."""
    email = email.strip().lower()
    existing = (await db.execute(select(AuthorizedAdmin.id).where(AuthorizedAdmin.email == email))).first()
    if existing is not None:
        msg = "Email is already authorized"
        raise ConflictError(msg, code="EMAIL_ALREADY_AUTHORIZED")
    entry = AuthorizedAdmin(email=email, created_by=created_by)
    db.add(entry)
    await db.flush()
    logger.info("authorized_admin_added", email=email, created_by=created_by)
    return entry


async def remove_authorized_admin(db: AsyncSession, entry_id: int) -> None:
    entry = (await db.execute(select(AuthorizedAdmin).where(AuthorizedAdmin.id == entry_id))).scalar_one_or_none()
    if entry is None:
        msg = "Authorized admin not found"
        raise NotFoundError(msg)
    await db.delete(entry)
    await db.flush()
    logger.info("authorized_admin_removed", email=entry.email)


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------

_USER_SORT_COLUMNS = {
    "createdAt": User.created_at,
    "lastLoginAt": User.last_login_at,
    "email": User.email,
    "name": User.name,
    "role": User.role,
}


async def list_users(
    db: AsyncSession,
    *,
    page: int = 1,
    limit: int = 20,
    search: str | None = None,
    sort_by: str = "createdAt",
    sort_order: str = "desc",
) -> tuple[list[User], int]:
    """Paginated user listing. Returns (users, total)."""
    stmt = select(User)
    count_stmt = select(func.count(User.id))
    if search:
        pattern = f"%{search.strip().lower()}%"
        condition = or_(func.lower(User.email).like(pattern), func.lower(User.name).like(pattern))
        stmt = stmt.where(condition)
        count_stmt = count_stmt.where(condition)

    column = _USER_SORT_COLUMNS.get(sort_by, User.created_at)
    stmt = stmt.order_by(column.asc() if sort_order == "asc" else column.desc(), User.id)
    stmt = stmt.offset((page - 1) * limit).limit(limit)

    users = list((await db.execute(stmt)).scalars().all())
    total = (await db.execute(count_stmt)).scalar_one()
    return users, total


async def user_stats(db: AsyncSession) -> dict[str, Any]:
    rows = (await db.execute(select(User.role, func.count(User.id)).group_by(User.role))).all()
    by_role = {role.value: 0 for role in Role}
    for role, count in rows:
        by_role[Role(role).value] = count
    week_ago = datetime.now(timezone.utc) - timedelta(days=7)
    recent = (await db.execute(select(func.count(User.id)).where(User.created_at >= week_ago))).scalar_one()
    return {"total": sum(by_role.values()), "byRole": by_role, "newLast7Days": recent}


async def get_user(db: AsyncSession, user_id: int) -> User:
    user = (await db.execute(select(User).where(User.id == user_id))).scalar_one_or_none()
    if user is None:
        msg = "User not found"
        raise NotFoundError(msg)
    return user


async def update_user_role(db: AsyncSession, actor: AccessClaims, user_id: int, role: Role) -> User:
    """
    Change a user's role.

    Raises:
        ForbiddenError: Changing one's own role, or touching superadmin
            without being superadmin.
        NotFoundError: Unknown user.
    """
    if actor.id == user_id:
        msg = "You cannot change your own role"
        raise ForbiddenError(msg)
    user = await get_user(db, user_id)
    if Role.SUPERADMIN in (role, user.role) and actor.role is not Role.SUPERADMIN:
        msg = "Only a superadmin can grant or revoke the superadmin role"
        raise ForbiddenError(msg)
    previous = user.role
    user.role = role
    await db.flush()
    logger.info("user_role_changed", user_id=user.id, previous=previous.value, role=role.value, actor_id=actor.id)
    return user


async def delete_user(db: AsyncSession, actor: AccessClaims, user_id: int) -> None:
    """
    Delete a user and, through FK cascades, everything it owns.

    Raises:
        ForbiddenError: Deleting oneself, or deleting a superadmin without
            being one.
        NotFoundError: Unknown user.
    """
    if actor.id == user_id:
        msg = "You cannot delete your own account from the admin panel"
        raise ForbiddenError(msg)
    user = await get_user(db, user_id)
    if user.role is Role.SUPERADMIN and actor.role is not Role.SUPERADMIN:
        msg = "Only a superadmin can delete a superadmin"
        raise ForbiddenError(msg)
    await db.execute(delete(User).where(User.id == user_id))
    await db.flush()
    logger.info("user_deleted", user_id=user_id, actor_id=actor.id)
