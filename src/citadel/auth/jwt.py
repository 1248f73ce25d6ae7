"""
JWT signing and verification.

Three token types share one signing key and are told apart by the ``type``
claim: short-lived ``access`` tokens, long-lived ``refresh`` tokens (whose
``jti`` is the stored RefreshToken id) and ``linking`` tokens that carry a
pending OAuth identity between the callback and the confirm step.

HMAC algorithms sign with ``jwt_secret``; RSA/EC algorithms read a PEM key
pair from disk.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import jwt

from citadel.auth.roles import Role
from citadel.config import get_settings
from citadel.errors import InvalidTokenError, TokenExpiredError

_private_key: str | None = None
_public_key: str | None = None


@dataclass(frozen=True)
class AccessClaims:
    """Identity recovered from a verified access token."""

    id: int
    email: str
    role: Role


def _load_keys() -> tuple[str, str]:
    """Return (signing key, verification key) for the configured algorithm."""
    global _private_key, _public_key  # noqa: PLW0603
    settings = get_settings()
    if settings.jwt_algorithm.upper().startswith("HS"):
        return settings.jwt_secret, settings.jwt_secret
    if _private_key is None or _public_key is None:
        _private_key = Path(settings.jwt_private_key_path).read_text()
        _public_key = Path(settings.jwt_public_key_path).read_text()
    return _private_key, _public_key


def reset_keys() -> None:
    """Drop cached PEM keys (after settings change)."""
    global _private_key, _public_key  # noqa: PLW0603
    _private_key = None
    _public_key = None


def _encode(payload: dict[str, Any], lifetime: timedelta) -> str:
    signing_key, _ = _load_keys()
    settings = get_settings()
    now = datetime.now(timezone.utc)
    claims = {**payload, "iat": now, "exp": now + lifetime, "iss": settings.jwt_issuer}
    return jwt.encode(claims, signing_key, algorithm=settings.jwt_algorithm)


def create_access_token(user_id: int, email: str, role: Role | str) -> str:
    """
    Create a short-lived access token.

    Args:
        user_id: The user's database ID.
        email: The user's email at issue time.
        role: The user's role at issue time.

    Returns:
        Encoded JWT string.
    """
    settings = get_settings()
    return _encode(
        {
            "sub": str(user_id),
            "id": user_id,
            "email": email,
            "role": Role(role).value,
            "type": "access",
        },
        timedelta(minutes=settings.jwt_access_token_expire_minutes),
    )


def create_refresh_token(user_id: int, *, token_id: str, family_id: str) -> str:
    """
    Create a long-lived refresh token.

    Args:
        user_id: The user's database ID.
        token_id: Stored RefreshToken id, used as the JTI.
        family_id: Rotation family the token belongs to.

    Returns:
        Encoded JWT string.
    """
    settings = get_settings()
    return _encode(
        {"sub": str(user_id), "jti": token_id, "fam": family_id, "type": "refresh"},
        timedelta(days=settings.jwt_refresh_token_expire_days),
    )


def create_linking_token(user_id: int, profile: dict[str, Any]) -> str:
    """Sign a pending provider link for ``user_id``."""
    settings = get_settings()
    return _encode(
        {"sub": str(user_id), "profile": profile, "type": "linking"},
        timedelta(minutes=settings.linking_token_expire_minutes),
    )


def create_state_token(provider: str) -> str:
    """Signed OAuth ``state`` value, checked again on the callback."""
    settings = get_settings()
    return _encode(
        {"sub": provider, "type": "oauth_state"},
        timedelta(minutes=settings.linking_token_expire_minutes),
    )


def verify_token(token: str, expected_type: str = "access", *, verify_exp: bool = True) -> dict[str, Any]:
    """
    Verify and decode a JWT token.

    Args:
        token: The encoded JWT string.
        expected_type: Expected ``type`` claim.
        verify_exp: Set False to accept expired tokens (signature is still checked).

    Returns:
        Decoded payload dictionary.

    Raises:
        TokenExpiredError: If the token has expired.
        InvalidTokenError: If the token is malformed, badly signed, or of the wrong type.
    """
    _, verification_key = _load_keys()
    settings = get_settings()
    try:
        payload: dict[str, Any] = jwt.decode(
            token,
            verification_key,
            algorithms=[settings.jwt_algorithm],
            issuer=settings.jwt_issuer,
            options={"verify_exp": verify_exp, "require": ["exp", "iat", "sub"]},
        )
    except jwt.ExpiredSignatureError:
        raise TokenExpiredError from None
    except jwt.InvalidTokenError:
        raise InvalidTokenError from None

    if payload.get("type") != expected_type:
        msg = f"Expected token type '{expected_type}'"
        raise InvalidTokenError(msg)

    return payload


def verify_access_token(token: str) -> AccessClaims:
    """Stateless check of an access token. Never touches the database."""
    payload = verify_token(token, expected_type="access")
    try:
        return AccessClaims(id=int(payload["sub"]), email=payload["email"], role=Role(payload["role"]))
    except (KeyError, ValueError):
        raise InvalidTokenError from None


def decode_unverified(token: str) -> dict[str, Any] | None:
    """Read claims without checking the signature.

    Only for non-authoritative decisions such as rate-limit exemptions.
    """
    try:
        return jwt.decode(token, options={"verify_signature": False})
    except jwt.InvalidTokenError:
        return None
