"""Platform API key generation and verification using argon2id."""

from __future__ import annotations

import hashlib
import hmac
import secrets

import argon2

KEY_PREFIX = "ak_"
PLATFORMS = ("ios", "android", "web", "admin_panel")
SETUP_PLATFORMS = ("ios", "android", "web")

_hasher = argon2.PasswordHasher(
    time_cost=2,
    memory_cost=65536,
    parallelism=1,
    hash_len=32,
    salt_len=16,
    type=argon2.Type.ID,
)


def key_name(platform: str) -> str:
    """Stored name of a platform key, e.g. ``ios_api_key``."""
    return f"{platform}_api_key"


def generate_api_key() -> tuple[str, str]:
    """
    Generate a new platform key.

    Returns:
        (plaintext_key, argon2_hash). The plaintext is returned to the caller
        once and never stored.
    """
    plaintext = f"{KEY_PREFIX}{secrets.token_hex(32)}"
    return plaintext, _hasher.hash(plaintext)


def verify_api_key(presented: str, stored_hash: str) -> bool:
    """Verify a presented key against its stored argon2 hash."""
    try:
        return _hasher.verify(stored_hash, presented)
    except argon2.exceptions.VerifyMismatchError:
        return False
    except argon2.exceptions.InvalidHashError:
        return False


def fingerprint(presented: str, secret: str) -> str:
    """Keyed digest used as the verdict-cache key so plaintext is never cached."""
    return hmac.new(secret.encode(), presented.encode(), hashlib.sha256).hexdigest()
