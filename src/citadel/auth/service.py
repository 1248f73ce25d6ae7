"""
Token service: issue, rotate and revoke refresh-token sessions.

Refresh tokens are stored as SHA-256 hashes. Each login starts a new family;
rotation consumes the presented token and issues its successor in the same
family. Presenting a consumed or revoked token revokes the whole family.
"""

from __future__ import annotations

import hashlib
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import structlog
from sqlalchemy import delete, func, or_, select, update

from citadel.auth.jwt import create_access_token, create_refresh_token, verify_token
from citadel.config import get_settings
from citadel.db.models import RefreshToken, User
from citadel.errors import InvalidTokenError, NotFoundError, TokenExpiredError, TokenReuseError

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = structlog.get_logger()


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    token_id: str
    family_id: str


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


# ---------------------------------------------------------------------------
# User queries
# ---------------------------------------------------------------------------


async def get_user_by_id(db: AsyncSession, user_id: int) -> User | None:
    """Fetch a user by ID."""
    result = await db.execute(select(User).where(User.id == user_id))
    return result.scalar_one_or_none()


async def get_user_by_email(db: AsyncSession, email: str) -> User | None:
    """Fetch a user by email (case-insensitive)."""
    result = await db.execute(select(User).where(func.lower(User.email) == email.strip().lower()))
    return result.scalar_one_or_none()


# ---------------------------------------------------------------------------
# Issue
# ---------------------------------------------------------------------------


async def issue_tokens(
    db: AsyncSession,
    user: User,
    *,
    family_id: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> TokenPair:
    """
    Mint an access/refresh pair and store the refresh token hash.

    A new family is started unless ``family_id`` is given (rotation). The
    caller owns the transaction and must commit.
    """
    settings = get_settings()
    token_id = str(uuid.uuid4())
    family_id = family_id or str(uuid.uuid4())

    access_token = create_access_token(user.id, user.email, user.role)
    refresh_token = create_refresh_token(user.id, token_id=token_id, family_id=family_id)

    db.add(
        RefreshToken(
            id=token_id,
            user_id=user.id,
            token_hash=hash_token(refresh_token),
            family_id=family_id,
            expires_at=datetime.now(timezone.utc) + timedelta(days=settings.jwt_refresh_token_expire_days),
            ip_address=ip_address,
            user_agent=user_agent[:512] if user_agent else None,
        )
    )
    await db.flush()

    return TokenPair(
        access_token=access_token,
        refresh_token=refresh_token,
        expires_in=settings.jwt_access_token_expire_minutes * 60,
        token_id=token_id,
        family_id=family_id,
    )


# ---------------------------------------------------------------------------
# Rotate
# ---------------------------------------------------------------------------


async def _reject_reuse(db: AsyncSession, token: RefreshToken) -> TokenReuseError:
    """Revoke the family of a replayed token and commit before the caller raises."""
    family_id, user_id, token_id = token.family_id, token.user_id, token.id
    await db.rollback()
    revoked = await revoke_family(db, family_id)
    await db.commit()
    logger.warning(
        "refresh_token_reuse_detected",
        user_id=user_id,
        token_id=token_id,
        family_id=family_id,
        revoked=revoked,
    )
    return TokenReuseError()


async def rotate_refresh_token(
    db: AsyncSession,
    presented: str,
    *,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> TokenPair:
    """
    Consume a refresh token and issue its successor in the same family.

    The consume step is a conditional UPDATE on ``is_used``/``is_revoked``, so of
    two concurrent rotations of one token exactly one sees a matched row.
    Commits on success and on reuse.

    Raises:
        InvalidTokenError: Unknown or malformed token.
        TokenReuseError: Token was already used or revoked; its family is now revoked.
        TokenExpiredError: Token is past its expiry.
    """
    payload = verify_token(presented, expected_type="refresh", verify_exp=False)

    result = await db.execute(
        select(RefreshToken)
        .where(RefreshToken.token_hash == hash_token(presented))
        .execution_options(populate_existing=True)
    )
    token = result.scalar_one_or_none()
    if token is None or token.id != payload.get("jti"):
        raise InvalidTokenError

    if token.is_used or token.is_revoked:
        raise await _reject_reuse(db, token)

    now = datetime.now(timezone.utc)
    if token.expires_at <= now:
        raise TokenExpiredError

    consumed = await db.execute(
        update(RefreshToken)
        .where(RefreshToken.id == token.id)
        .where(RefreshToken.is_used == False)  # noqa: E712
        .where(RefreshToken.is_revoked == False)  # noqa: E712
        .values(is_used=True, used_at=now)
        .execution_options(synchronize_session=False)
    )
    if consumed.rowcount != 1:
        raise await _reject_reuse(db, token)

    user = await get_user_by_id(db, token.user_id)
    if user is None:
        await db.rollback()
        raise InvalidTokenError

    pair = await issue_tokens(
        db,
        user,
        family_id=token.family_id,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    await db.execute(
        update(RefreshToken)
        .where(RefreshToken.id == token.id)
        .values(replaced_by=pair.token_id)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    logger.info("refresh_token_rotated", user_id=user.id, old_token_id=token.id, new_token_id=pair.token_id)
    return pair


# ---------------------------------------------------------------------------
# Revoke
# ---------------------------------------------------------------------------


async def revoke_family(db: AsyncSession, family_id: str) -> int:
    """Revoke every live token in a family. Returns count revoked."""
    result = await db.execute(
        update(RefreshToken)
        .where(RefreshToken.family_id == family_id)
        .where(RefreshToken.is_revoked == False)  # noqa: E712
        .values(is_revoked=True, revoked_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    await db.flush()
    return result.rowcount  # type: ignore[return-value]


async def revoke_session(db: AsyncSession, token_id: str, user_id: int | None = None) -> None:
    """
    Revoke one session by refresh token id. Revoking twice is a no-op.

    Raises:
        NotFoundError: No such token (or it belongs to another user).
    """
    stmt = select(RefreshToken).where(RefreshToken.id == token_id)
    if user_id is not None:
        stmt = stmt.where(RefreshToken.user_id == user_id)
    token = (await db.execute(stmt)).scalar_one_or_none()
    if token is None:
        msg = "Session not found"
        raise NotFoundError(msg)
    if not token.is_revoked:
        token.is_revoked = True
        token.revoked_at = datetime.now(timezone.utc)
        await db.flush()


async def revoke_refresh_token(db: AsyncSession, presented: str, user_id: int | None = None) -> bool:
    """Revoke the session a presented refresh token belongs to. Returns True if found."""
    stmt = select(RefreshToken).where(RefreshToken.token_hash == hash_token(presented))
    if user_id is not None:
        stmt = stmt.where(RefreshToken.user_id == user_id)
    token = (await db.execute(stmt)).scalar_one_or_none()
    if token is None:
        return False
    if not token.is_revoked:
        token.is_revoked = True
        token.revoked_at = datetime.now(timezone.utc)
        await db.flush()
    return True


async def revoke_all_sessions(db: AsyncSession, user_id: int) -> int:
    """Revoke all refresh tokens for a user. Returns count revoked."""
    result = await db.execute(
        update(RefreshToken)
        .where(RefreshToken.user_id == user_id)
        .where(RefreshToken.is_revoked == False)  # noqa: E712
        .values(is_revoked=True, revoked_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    await db.flush()
    return result.rowcount  # type: ignore[return-value]


# ---------------------------------------------------------------------------
# Sessions & retention
# ---------------------------------------------------------------------------


async def list_sessions(db: AsyncSession, user_id: int) -> list[RefreshToken]:
    """Live sessions: the unused, unrevoked, unexpired head of each family."""
    result = await db.execute(
        select(RefreshToken)
        .where(RefreshToken.user_id == user_id)
        .where(RefreshToken.is_revoked == False)  # noqa: E712
        .where(RefreshToken.is_used == False)  # noqa: E712
        .where(RefreshToken.expires_at > datetime.now(timezone.utc))
        .order_by(RefreshToken.created_at.desc())
    )
    return list(result.scalars().all())


async def cleanup_expired_tokens(db: AsyncSession) -> int:
    """Delete expired refresh tokens that were used or revoked. Returns count deleted."""
    result = await db.execute(
        delete(RefreshToken)
        .where(RefreshToken.expires_at < datetime.now(timezone.utc))
        .where(or_(RefreshToken.is_used, RefreshToken.is_revoked))
        .execution_options(synchronize_session=False)
    )
    await db.flush()
    logger.info("expired_refresh_tokens_deleted", count=result.rowcount)
    return result.rowcount  # type: ignore[return-value]
