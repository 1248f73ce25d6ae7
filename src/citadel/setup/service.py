"""
First-run setup.

``not_started`` -> ``initializing`` -> ``complete``. ``initializing`` only exists
inside the transaction of ``initialize_setup``: the singleton row is locked,
flipped with a conditional UPDATE, and the allowlist entry and platform keys
are written before the caller commits. A second initializer blocks on the row
and then matches zero rows.
"""

from __future__ import annotations

import asyncio
import enum
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

import structlog
from sqlalchemy import delete, func, select, update

from citadel.auth.api_keys import SETUP_PLATFORMS, generate_api_key, key_name
from citadel.auth.identity import is_authorized_admin
from citadel.auth.roles import Role
from citadel.auth.service import get_user_by_id
from citadel.config import get_settings
from citadel.db.models import (
    SETUP_STATUS_ID,
    ApiKey,
    AuthorizedAdmin,
    ProviderAccount,
    RefreshToken,
    SetupStatus,
    User,
    UserPreferences,
)
from citadel.errors import ForbiddenError, SetupAlreadyCompleteError, UnauthorizedError

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = structlog.get_logger()


class SetupState(str, enum.Enum):
    NOT_STARTED = "not_started"
    INITIALIZING = "initializing"
    COMPLETE = "complete"


async def ensure_setup_row(db: AsyncSession) -> SetupStatus:
    """Create the singleton row if it is missing."""
    status = await db.get(SetupStatus, SETUP_STATUS_ID, populate_existing=True)
    if status is None:
        status = SetupStatus(id=SETUP_STATUS_ID, is_setup_complete=False)
        db.add(status)
        await db.flush()
    return status


async def get_setup_status(db: AsyncSession, *, detailed: bool = True) -> dict[str, Any]:
    """
    Setup progress for unauthenticated callers.

    With ``detailed=False`` (production) only the completion flag is returned.
    """
    status = await db.get(SetupStatus, SETUP_STATUS_ID, populate_existing=True)
    complete = bool(status and status.is_setup_complete)
    if not detailed:
        return {"setupComplete": complete}
    has_users = (await db.execute(select(func.count(User.id)))).scalar_one() > 0
    has_api_keys = (
        await db.execute(select(func.count(ApiKey.id)).where(ApiKey.revoked_at.is_(None)))
    ).scalar_one() > 0
    return {
        "setupComplete": complete,
        "state": (SetupState.COMPLETE if complete else SetupState.NOT_STARTED).value,
        "hasUsers": has_users,
        "hasApiKeys": has_api_keys,
    }


async def initialize_setup(db: AsyncSession, user_id: int) -> dict[str, str]:
    """
    Complete setup on behalf of ``user_id``. The caller commits.

    The caller becomes superadmin if nobody is one yet; otherwise the caller
    must already be superadmin.

    Returns:
        Mapping of platform -> plaintext key, shown once.

    Raises:
        SetupAlreadyCompleteError: Setup already ran (or a concurrent run won).
        ForbiddenError: Another superadmin exists and the caller is not one.
        UnauthorizedError: The caller no longer exists.
    """
    user = await get_user_by_id(db, user_id)
    if user is None:
        msg = "User not found"
        raise UnauthorizedError(msg)

    await ensure_setup_row(db)
    await db.execute(select(SetupStatus.id).where(SetupStatus.id == SETUP_STATUS_ID).with_for_update())
    claimed = await db.execute(
        update(SetupStatus)
        .where(SetupStatus.id == SETUP_STATUS_ID)
        .where(SetupStatus.is_setup_complete == False)  # noqa: E712
        .values(is_setup_complete=True, completed_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    if claimed.rowcount != 1:
        raise SetupAlreadyCompleteError

    if user.role is not Role.SUPERADMIN:
        superadmins = (
            await db.execute(select(func.count(User.id)).where(User.role == Role.SUPERADMIN))
        ).scalar_one()
        if superadmins:
            msg = "Only a superadmin can complete setup"
            raise ForbiddenError(msg)
        user.role = Role.SUPERADMIN
        logger.info("setup_superadmin_promoted", user_id=user.id)

    if not await is_authorized_admin(db, user.email):
        db.add(AuthorizedAdmin(email=user.email.lower(), created_by=user.id))

    names = [key_name(platform) for platform in SETUP_PLATFORMS]
    await db.execute(delete(ApiKey).where(ApiKey.name.in_(names)))

    plaintexts: dict[str, str] = {}
    for platform in SETUP_PLATFORMS:
        plaintext, key_hash = await asyncio.to_thread(generate_api_key)
        db.add(ApiKey(name=key_name(platform), key_hash=key_hash, created_by=user.id))
        plaintexts[platform] = plaintext
    await db.flush()

    logger.info("setup_completed", user_id=user.id, platforms=list(SETUP_PLATFORMS))
    return plaintexts


async def reset_setup(db: AsyncSession) -> dict[str, int]:
    """
    Wipe users, provider accounts, keys and the allowlist, and reopen setup.
    The caller commits.

    Raises:
        ForbiddenError: Always, in production.
    """
    if get_settings().is_production:
        msg = "Setup reset is disabled in production"
        raise ForbiddenError(msg)

    deleted: dict[str, int] = {}
    for model in (RefreshToken, UserPreferences, ApiKey, AuthorizedAdmin, ProviderAccount, User):
        result = await db.execute(delete(model).execution_options(synchronize_session=False))
        deleted[model.__tablename__] = result.rowcount or 0

    status = await ensure_setup_row(db)
    status.is_setup_complete = False
    status.completed_at = None
    await db.flush()
    logger.warning("setup_reset", **deleted)
    return deleted
