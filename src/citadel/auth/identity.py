"""
OAuth identity resolution.

Maps a normalized provider profile onto a user:

1. Known ``(provider, provider_id)``: returning user, only ``last_login_at`` moves.
2. Unknown email: new user, provider account, preferences and primary
   provider pointer are written in the caller's transaction. The first user
   ever becomes ``superadmin``; emails on the AuthorizedAdmin allowlist become
   ``admin``; everyone else is ``user``.
3. Known email, no account for this provider: a linking challenge is returned
   instead of a session. ``confirm_linking`` attaches the provider once the
   user explicitly agrees.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any
from urllib.parse import urlsplit

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from citadel.auth.jwt import create_linking_token, verify_token
from citadel.auth.roles import Provider, Role
from citadel.auth.service import get_user_by_email, get_user_by_id
from citadel.config import get_settings
from citadel.db.models import (
    SETUP_STATUS_ID,
    AuthorizedAdmin,
    ProviderAccount,
    SetupStatus,
    User,
    UserPreferences,
)
from citadel.errors import ConflictError, InvalidTokenError, NotFoundError, ValidationError

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = structlog.get_logger()


@dataclass(frozen=True)
class OAuthProfile:
    """What every provider adapter hands to the resolver."""

    email: str
    provider: Provider
    provider_id: str
    name: str | None = None
    avatar: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "email", self.email.strip().lower())
        object.__setattr__(self, "provider", Provider(self.provider))

    def to_claims(self) -> dict[str, Any]:
        claims = asdict(self)
        claims["provider"] = self.provider.value
        return claims

    @classmethod
    def from_claims(cls, claims: dict[str, Any]) -> OAuthProfile:
        try:
            return cls(
                email=claims["email"],
                provider=Provider(claims["provider"]),
                provider_id=str(claims["provider_id"]),
                name=claims.get("name"),
                avatar=claims.get("avatar"),
            )
        except (KeyError, TypeError, ValueError):
            raise InvalidTokenError from None


@dataclass
class ResolvedIdentity:
    user: User
    created: bool = False


@dataclass
class LinkingChallenge:
    """Returned instead of a session when a new provider reports a known email."""

    linking_token: str
    user_id: int
    email: str
    name: str | None
    new_provider: Provider
    existing_providers: list[str] = field(default_factory=list)


def clean_avatar_url(url: str | None) -> str | None:
    """Keep scheme, host and path of an avatar URL; drop query and fragment."""
    if not url:
        return None
    try:
        parts = urlsplit(url.strip())
    except ValueError:
        return None
    if parts.scheme not in ("http", "https") or not parts.netloc:
        return None
    return f"{parts.scheme}://{parts.netloc}{parts.path}"


# ---------------------------------------------------------------------------
# Provider account queries
# ---------------------------------------------------------------------------


async def get_provider_account(db: AsyncSession, provider: Provider, provider_id: str) -> ProviderAccount | None:
    result = await db.execute(
        select(ProviderAccount)
        .where(ProviderAccount.provider == provider)
        .where(ProviderAccount.provider_id == provider_id)
    )
    return result.scalar_one_or_none()


async def get_user_provider_accounts(db: AsyncSession, user_id: int) -> list[ProviderAccount]:
    result = await db.execute(
        select(ProviderAccount).where(ProviderAccount.user_id == user_id).order_by(ProviderAccount.linked_at)
    )
    return list(result.scalars().all())


async def create_provider_account(db: AsyncSession, user: User, profile: OAuthProfile) -> ProviderAccount:
    """
    Attach a provider identity to ``user``.

    Raises:
        ConflictError: The identity belongs to another user, or the user
            already has an account with this provider.
    """
    existing = await get_provider_account(db, profile.provider, profile.provider_id)
    if existing is not None:
        if existing.user_id != user.id:
            msg = f"This {profile.provider.value} account is already linked to another user"
            raise ConflictError(msg, code="PROVIDER_ALREADY_LINKED")
        msg = f"{profile.provider.value} is already linked to this account"
        raise ConflictError(msg, code="PROVIDER_ALREADY_LINKED")

    accounts = await get_user_provider_accounts(db, user.id)
    if any(account.provider == profile.provider for account in accounts):
        msg = f"A different {profile.provider.value} account is already linked to this user"
        raise ConflictError(msg, code="PROVIDER_ALREADY_LINKED")

    account = ProviderAccount(
        user_id=user.id,
        provider=profile.provider,
        provider_id=profile.provider_id,
        email=profile.email,
        name=profile.name,
        avatar=clean_avatar_url(profile.avatar),
    )
    db.add(account)
    await db.flush()
    if user.primary_provider_account_id is None:
        user.primary_provider_account_id = account.id
        await db.flush()
    logger.info("provider_account_linked", user_id=user.id, provider=profile.provider.value)
    return account


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------


async def is_authorized_admin(db: AsyncSession, email: str) -> bool:
    result = await db.execute(select(AuthorizedAdmin.id).where(AuthorizedAdmin.email == email.strip().lower()))
    return result.first() is not None


async def _initial_role(db: AsyncSession, email: str) -> Role:
    # Serializes concurrent first sign-ups on PostgreSQL; no-op on SQLite.
    await db.execute(select(SetupStatus.id).where(SetupStatus.id == SETUP_STATUS_ID).with_for_update())
    user_count = (await db.execute(select(func.count(User.id)))).scalar_one()
    if user_count == 0:
        return Role.SUPERADMIN
    if await is_authorized_admin(db, email):
        return Role.ADMIN
    return Role.USER


async def _create_user(db: AsyncSession, profile: OAuthProfile) -> User:
    settings = get_settings()
    role = await _initial_role(db, profile.email)
    now = datetime.now(timezone.utc)
    user = User(
        email=profile.email,
        name=profile.name,
        avatar=clean_avatar_url(profile.avatar),
        role=role,
        last_login_at=now,
    )
    try:
        db.add(user)
        await db.flush()
        await create_provider_account(db, user, profile)
        db.add(UserPreferences(user_id=user.id, language=settings.default_language, settings={}))
        await db.flush()
    except IntegrityError:
        await db.rollback()
        msg = "An account with this email was created concurrently. Please sign in again."
        raise ConflictError(msg, code="EMAIL_ALREADY_EXISTS") from None

    logger.info("user_created", user_id=user.id, role=role.value, provider=profile.provider.value)
    return user


async def resolve_identity(db: AsyncSession, profile: OAuthProfile) -> ResolvedIdentity | LinkingChallenge:
    """
    Resolve an OAuth profile. The caller commits and issues tokens for a
    ``ResolvedIdentity``; a ``LinkingChallenge`` must not produce a session.

    Raises:
        ConflictError: The email's user already has a different identity
            for this provider.
    """
    account = await get_provider_account(db, profile.provider, profile.provider_id)
    if account is not None:
        user = await get_user_by_id(db, account.user_id)
        if user is None:
            msg = "User not found"
            raise NotFoundError(msg)
        user.last_login_at = datetime.now(timezone.utc)
        if not user.name and profile.name:
            user.name = profile.name
        if not user.avatar and profile.avatar:
            user.avatar = clean_avatar_url(profile.avatar)
        await db.flush()
        return ResolvedIdentity(user=user)

    user = await get_user_by_email(db, profile.email)
    if user is None:
        return ResolvedIdentity(user=await _create_user(db, profile), created=True)

    accounts = await get_user_provider_accounts(db, user.id)
    if any(existing.provider == profile.provider for existing in accounts):
        msg = f"A different {profile.provider.value} account is already linked to this email"
        raise ConflictError(msg, code="PROVIDER_ALREADY_LINKED")

    logger.info("linking_required", user_id=user.id, provider=profile.provider.value)
    return LinkingChallenge(
        linking_token=create_linking_token(user.id, profile.to_claims()),
        user_id=user.id,
        email=user.email,
        name=user.name,
        new_provider=profile.provider,
        existing_providers=[existing.provider.value for existing in accounts],
    )


async def confirm_linking(db: AsyncSession, linking_token: str, *, confirm: bool) -> ResolvedIdentity | None:
    """
    Complete a linking challenge. Returns None when the user declined.

    Raises:
        InvalidTokenError / TokenExpiredError: Bad or stale linking token.
        NotFoundError: The user was deleted in the meantime.
        ValidationError: The profile email no longer matches the user.
        ConflictError: The provider was linked in the meantime.
    """
    if not confirm:
        return None

    payload = verify_token(linking_token, expected_type="linking")
    profile = OAuthProfile.from_claims(payload.get("profile") or {})

    user = await get_user_by_id(db, int(payload["sub"]))
    if user is None:
        msg = "User not found"
        raise NotFoundError(msg)
    if user.email.lower() != profile.email:
        msg = "Email mismatch between linking request and account"
        raise ValidationError(msg)

    await create_provider_account(db, user, profile)
    user.last_login_at = datetime.now(timezone.utc)
    await db.flush()
    return ResolvedIdentity(user=user)
