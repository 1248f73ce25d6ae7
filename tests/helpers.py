"""Builders shared by the test modules."""

from __future__ import annotations

from typing import Any, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession

from citadel.admin.service import generate_platform_key
from citadel.auth.identity import OAuthProfile
from citadel.auth.jwt import create_access_token
from citadel.auth.providers import OAuthExchanger, OAuthExchangeError
from citadel.auth.roles import Provider, Role
from citadel.db.models import ProviderAccount, User, UserPreferences

T = TypeVar("T")


async def create_user(
    db: AsyncSession,
    *,
    email: str,
    role: Role = Role.USER,
    name: str | None = None,
    provider: Provider = Provider.GOOGLE,
    provider_id: str | None = None,
) -> User:
    """Insert a user with one linked provider account and committed preferences."""
    user = User(email=email.lower(), name=name, role=role)
    db.add(user)
    await db.flush()
    account = ProviderAccount(
        user_id=user.id,
        provider=provider,
        provider_id=provider_id or f"{provider.value}-{email}",
        email=email.lower(),
        name=name,
    )
    db.add(account)
    await db.flush()
    user.primary_provider_account_id = account.id
    db.add(UserPreferences(user_id=user.id, language="pt-BR", settings={}))
    await db.commit()
    return user


async def seed_api_key(db: AsyncSession, platform: str, created_by: int) -> str:
    """Create an active platform key and return its plaintext."""
    _, plaintext = await generate_platform_key(db, platform, created_by)
    await db.commit()
    return plaintext


async def reload(db: AsyncSession, model: type[T], pk: Any) -> T | None:  # noqa: ANN401
    """Read a row as currently committed, bypassing the identity map."""
    return await db.get(model, pk, populate_existing=True)


def bearer(user: User) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user.id, user.email, user.role)}"}


def admin_headers(user: User, api_key: str) -> dict[str, str]:
    """Bearer token plus the platform key the admin panel sends."""
    return {**bearer(user), "X-API-Key": api_key}


def google_profile(email: str, sub: str = "g-1", name: str | None = "Google User") -> OAuthProfile:
    return OAuthProfile(email=email, provider=Provider.GOOGLE, provider_id=sub, name=name)


def apple_profile(email: str, sub: str = "a-1", name: str | None = None) -> OAuthProfile:
    return OAuthProfile(email=email, provider=Provider.APPLE, provider_id=sub, name=name)


class FakeExchanger(OAuthExchanger):
    """Resolves codes and ID tokens from a dict instead of calling providers."""

    def __init__(self, *args: Any, **kwargs: Any) -> None:  # noqa: ANN401
        super().__init__(*args, **kwargs)
        self.profiles: dict[str, OAuthProfile] = {}

    def _lookup(self, token: str, provider: Provider) -> OAuthProfile:
        profile = self.profiles.get(token)
        if profile is None or profile.provider is not provider:
            raise OAuthExchangeError
        return profile

    async def google_profile_from_code(self, code: str) -> OAuthProfile:
        return self._lookup(code, Provider.GOOGLE)

    async def google_profile_from_id_token(self, id_token: str) -> OAuthProfile:
        return self._lookup(id_token, Provider.GOOGLE)

    async def apple_profile_from_code(self, code: str, user_payload: str | None = None) -> OAuthProfile:
        return self._lookup(code, Provider.APPLE)

    async def apple_profile_from_id_token(self, id_token: str, name: str | None = None) -> OAuthProfile:
        return self._lookup(id_token, Provider.APPLE)
