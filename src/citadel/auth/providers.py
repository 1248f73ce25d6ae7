"""
Google and Apple sign-in adapters.

Each adapter turns provider output (an authorization code or an ID token) into
an ``OAuthProfile``. Nothing here touches the database; routers receive an
``OAuthExchanger`` through ``get_oauth_exchanger`` so tests can swap in a fake.
"""

from __future__ import annotations

import asyncio
import json
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from functools import lru_cache
from pathlib import Path
from typing import Any
from urllib.parse import urlencode

import httpx
import jwt
import structlog
from jwt import PyJWKClient

from citadel.auth.identity import OAuthProfile
from citadel.auth.roles import Provider
from citadel.config import Settings, get_settings
from citadel.errors import UnauthorizedError

logger = structlog.get_logger()

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"  # noqa: S105
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v3/userinfo"
GOOGLE_JWKS_URL = "https://www.googleapis.com/oauth2/v3/certs"
GOOGLE_ISSUERS = ("https://accounts.google.com", "accounts.google.com")

APPLE_AUTH_URL = "https://appleid.apple.com/auth/authorize"
APPLE_TOKEN_URL = "https://appleid.apple.com/auth/token"  # noqa: S105
APPLE_JWKS_URL = "https://appleid.apple.com/auth/keys"
APPLE_ISSUER = "https://appleid.apple.com"


class OAuthExchangeError(UnauthorizedError):
    code = "OAUTH_FAILED"
    message = "Authentication with the identity provider failed"


@lru_cache(maxsize=4)
def _jwk_client(jwks_url: str) -> PyJWKClient:
    return PyJWKClient(jwks_url)


async def _decode_id_token(
    id_token: str,
    *,
    jwks_url: str,
    audience: str,
    issuer: str | tuple[str, ...],
) -> dict[str, Any]:
    """Verify a provider ID token against the provider's published keys."""
    try:
        signing_key = await asyncio.to_thread(_jwk_client(jwks_url).get_signing_key_from_jwt, id_token)
        claims: dict[str, Any] = jwt.decode(
            id_token,
            signing_key.key,
            algorithms=["RS256"],
            audience=audience,
            issuer=issuer if isinstance(issuer, str) else list(issuer),
        )
    except jwt.PyJWTError as exc:
        logger.warning("id_token_rejected", jwks_url=jwks_url, error=str(exc))
        raise OAuthExchangeError from None
    return claims


class OAuthExchanger:
    """Talks to Google and Apple on behalf of the auth routes."""

    def __init__(self, settings: Settings, http: httpx.AsyncClient | None = None) -> None:
        self.settings = settings
        self._http = http

    @asynccontextmanager
    async def _client(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._http is not None:
            yield self._http
            return
        async with httpx.AsyncClient(timeout=self.settings.oauth_http_timeout_seconds) as client:
            yield client

    async def _post_form(self, url: str, data: dict[str, str]) -> dict[str, Any]:
        try:
            async with self._client() as client:
                response = await client.post(url, data=data)
        except httpx.HTTPError as exc:
            logger.warning("oauth_token_exchange_failed", url=url, error=str(exc))
            raise OAuthExchangeError from None
        if response.status_code != 200:
            logger.warning("oauth_token_exchange_failed", url=url, status=response.status_code)
            raise OAuthExchangeError
        return response.json()

    # -----------------------------------------------------------------------
    # Authorization URLs
    # -----------------------------------------------------------------------

    def authorization_url(self, provider: Provider, state: str) -> str:
        if provider is Provider.GOOGLE:
            params = {
                "client_id": self.settings.google_client_id,
                "redirect_uri": self.settings.google_redirect_uri,
                "response_type": "code",
                "scope": "openid email profile",
                "access_type": "online",
                "prompt": "select_account",
                "state": state,
            }
            return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"
        if provider is Provider.APPLE:
            params = {
                "client_id": self.settings.apple_client_id,
                "redirect_uri": self.settings.apple_redirect_uri,
                "response_type": "code",
                "response_mode": "form_post",
                "scope": "name email",
                "state": state,
            }
            return f"{APPLE_AUTH_URL}?{urlencode(params)}"
        msg = f"Unsupported provider: {provider.value}"
        raise OAuthExchangeError(msg)

    # -----------------------------------------------------------------------
    # Google
    # -----------------------------------------------------------------------

    async def google_profile_from_code(self, code: str) -> OAuthProfile:
        tokens = await self._post_form(
            GOOGLE_TOKEN_URL,
            {
                "code": code,
                "client_id": self.settings.google_client_id,
                "client_secret": self.settings.google_client_secret,
                "redirect_uri": self.settings.google_redirect_uri,
                "grant_type": "authorization_code",
            },
        )
        try:
            async with self._client() as client:
                response = await client.get(
                    GOOGLE_USERINFO_URL, headers={"Authorization": f"Bearer {tokens['access_token']}"}
                )
        except (httpx.HTTPError, KeyError) as exc:
            logger.warning("google_userinfo_failed", error=str(exc))
            raise OAuthExchangeError from None
        if response.status_code != 200:
            raise OAuthExchangeError
        return self._google_profile(response.json())

    async def google_profile_from_id_token(self, id_token: str) -> OAuthProfile:
        claims = await _decode_id_token(
            id_token,
            jwks_url=GOOGLE_JWKS_URL,
            audience=self.settings.google_client_id,
            issuer=GOOGLE_ISSUERS,
        )
        return self._google_profile(claims)

    @staticmethod
    def _google_profile(info: dict[str, Any]) -> OAuthProfile:
        if not info.get("email") or not info.get("sub"):
            raise OAuthExchangeError
        if info.get("email_verified") in (False, "false"):
            msg = "Google account email is not verified"
            raise OAuthExchangeError(msg)
        return OAuthProfile(
            email=info["email"],
            provider=Provider.GOOGLE,
            provider_id=str(info["sub"]),
            name=info.get("name"),
            avatar=info.get("picture"),
        )

    # -----------------------------------------------------------------------
    # Apple
    # -----------------------------------------------------------------------

    def _apple_client_secret(self) -> str:
        """Apple wants a short-lived ES256 JWT as the client secret."""
        now = int(time.time())
        private_key = Path(self.settings.apple_private_key_path).read_text()
        return jwt.encode(
            {
                "iss": self.settings.apple_team_id,
                "iat": now,
                "exp": now + 300,
                "aud": APPLE_ISSUER,
                "sub": self.settings.apple_client_id,
            },
            private_key,
            algorithm="ES256",
            headers={"kid": self.settings.apple_key_id},
        )

    async def apple_profile_from_code(self, code: str, user_payload: str | None = None) -> OAuthProfile:
        tokens = await self._post_form(
            APPLE_TOKEN_URL,
            {
                "code": code,
                "client_id": self.settings.apple_client_id,
                "client_secret": self._apple_client_secret(),
                "redirect_uri": self.settings.apple_redirect_uri,
                "grant_type": "authorization_code",
            },
        )
        if "id_token" not in tokens:
            raise OAuthExchangeError
        return await self.apple_profile_from_id_token(tokens["id_token"], name=_apple_name(user_payload))

    async def apple_profile_from_id_token(self, id_token: str, name: str | None = None) -> OAuthProfile:
        claims = await _decode_id_token(
            id_token,
            jwks_url=APPLE_JWKS_URL,
            audience=self.settings.apple_client_id,
            issuer=APPLE_ISSUER,
        )
        if not claims.get("email") or not claims.get("sub"):
            raise OAuthExchangeError
        return OAuthProfile(email=claims["email"], provider=Provider.APPLE, provider_id=str(claims["sub"]), name=name)


def _apple_name(user_payload: str | None) -> str | None:
    """Apple posts the user's name only on first consent, as a JSON form field."""
    if not user_payload:
        return None
    try:
        name = json.loads(user_payload).get("name") or {}
    except (ValueError, AttributeError):
        return None
    full = " ".join(part for part in (name.get("firstName"), name.get("lastName")) if part)
    return full or None


def get_oauth_exchanger() -> OAuthExchanger:
    """FastAPI dependency."""
    return OAuthExchanger(get_settings())
