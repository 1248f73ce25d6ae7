"""Profile and linked-provider management for the signed-in user."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog
from sqlalchemy import delete, func, select

from citadel.auth.identity import clean_avatar_url, get_user_provider_accounts
from citadel.auth.roles import Provider, Role
from citadel.db.models import ProviderAccount, User, UserPreferences
from citadel.errors import ConflictError, NotFoundError

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = structlog.get_logger()


# ---------------------------------------------------------------------------
# Profile
# ---------------------------------------------------------------------------


async def get_preferences(db: AsyncSession, user_id: int) -> UserPreferences | None:
    return await db.get(UserPreferences, user_id)


async def update_profile(db: AsyncSession, user: User, updates: dict[str, Any]) -> User:
    """
    Apply a partial profile update. Only ``name``, ``avatar``, ``language``
    and ``settings`` are honoured.
    """
    if "name" in updates:
        user.name = updates["name"]
    if "avatar" in updates:
        user.avatar = clean_avatar_url(updates["avatar"])

    if "language" in updates or "settings" in updates:
        prefs = await get_preferences(db, user.id)
        if prefs is None:
            prefs = UserPreferences(user_id=user.id, settings={})
            db.add(prefs)
        if updates.get("language"):
            prefs.language = updates["language"]
        if updates.get("settings") is not None:
            prefs.settings = {**(prefs.settings or {}), **updates["settings"]}

    await db.flush()
    logger.info("profile_updated", user_id=user.id, fields=sorted(updates))
    return user


async def delete_account(db: AsyncSession, user: User) -> None:
    """
    Delete the caller's own account.

    Raises:
        ConflictError: The caller is the last superadmin.
    """
    if user.role is Role.SUPERADMIN:
        superadmins = (
            await db.execute(select(func.count(User.id)).where(User.role == Role.SUPERADMIN))
        ).scalar_one()
        if superadmins <= 1:
            msg = "The last superadmin cannot delete their account"
            raise ConflictError(msg, code="LAST_SUPERADMIN")
    await db.execute(delete(User).where(User.id == user.id))
    await db.flush()
    logger.info("account_deleted", user_id=user.id)


# ---------------------------------------------------------------------------
# Linked providers
# ---------------------------------------------------------------------------


async def list_providers(db: AsyncSession, user: User) -> list[dict[str, Any]]:
    accounts = await get_user_provider_accounts(db, user.id)
    return [
        {
            "provider": account.provider.value,
            "email": account.email,
            "name": account.name,
            "avatar": account.avatar,
            "linkedAt": account.linked_at,
            "isPrimary": account.id == user.primary_provider_account_id,
        }
        for account in accounts
    ]


async def unlink_provider(db: AsyncSession, user: User, provider: Provider) -> None:
    """
    Detach one provider. If it was primary, the oldest remaining account
    becomes primary.

    Raises:
        NotFoundError: The provider is not linked.
        ConflictError: It is the only linked provider.
    """
    accounts = await get_user_provider_accounts(db, user.id)
    target = next((account for account in accounts if account.provider == provider), None)
    if target is None:
        msg = f"{provider.value} is not linked to this account"
        raise NotFoundError(msg)
    remaining = [account for account in accounts if account.id != target.id]
    if not remaining:
        msg = "Cannot unlink the only sign-in provider on this account"
        raise ConflictError(msg, code="LAST_PROVIDER")

    if user.primary_provider_account_id == target.id:
        user.primary_provider_account_id = remaining[0].id
    await db.flush()
    await db.execute(delete(ProviderAccount).where(ProviderAccount.id == target.id))
    await db.flush()
    logger.info("provider_unlinked", user_id=user.id, provider=provider.value)


async def set_primary_provider(db: AsyncSession, user: User, provider: Provider) -> None:
    """
    Raises:
        NotFoundError: The provider is not linked.
    """
    accounts = await get_user_provider_accounts(db, user.id)
    target = next((account for account in accounts if account.provider == provider), None)
    if target is None:
        msg = f"{provider.value} is not linked to this account"
        raise NotFoundError(msg)
    user.primary_provider_account_id = target.id
    await db.flush()
