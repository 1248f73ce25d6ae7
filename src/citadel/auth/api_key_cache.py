"""
Read-through cache of active platform API keys.

The credential store is authoritative; this is a derived view that writers
invalidate explicitly (``ApiKeyCache.refresh``) whenever a key is created,
regenerated, or revoked. Two kinds of entries live under one prefix:

- ``<prefix>:records``: the active key records (id, name, argon2 hash).
- ``<prefix>:verdict:<fingerprint>``: id and hash of the key a presented value
  matched, keyed by an HMAC of the presented value. A verdict only counts while
  an active record still carries that id and that hash, so a verdict written
  by a check that raced a regenerate never vouches for the replaced value.

Backends are swappable: ``MemoryCacheBackend`` is per process,
``RedisCacheBackend`` is shared across instances.
"""

from __future__ import annotations

import asyncio
import json
import time
from typing import TYPE_CHECKING, Any, Protocol

import structlog
from sqlalchemy import select

from citadel.auth.api_keys import fingerprint, verify_api_key
from citadel.db.models import ApiKey

if TYPE_CHECKING:
    from redis.asyncio import Redis
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from citadel.config import Settings

logger = structlog.get_logger()


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------


class CacheBackend(Protocol):
    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def invalidate(self, prefix: str) -> None: ...


class MemoryCacheBackend:
    """Dict-backed cache with per-entry expiry."""

    def __init__(self) -> None:
        self._entries: dict[str, tuple[str, float]] = {}

    async def get(self, key: str) -> str | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= time.monotonic():
            self._entries.pop(key, None)
            return None
        return value

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self._entries[key] = (value, time.monotonic() + ttl_seconds)

    async def invalidate(self, prefix: str) -> None:
        for key in [k for k in self._entries if k.startswith(prefix)]:
            del self._entries[key]


class RedisCacheBackend:
    """Redis-backed cache shared by every API instance."""

    def __init__(self, redis: Redis) -> None:
        self._redis = redis

    async def get(self, key: str) -> str | None:
        value = await self._redis.get(key)
        return value if value is None else str(value)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self._redis.set(key, value, ex=ttl_seconds)

    async def invalidate(self, prefix: str) -> None:
        keys = [key async for key in self._redis.scan_iter(match=f"{prefix}*")]
        if keys:
            await self._redis.delete(*keys)


# ---------------------------------------------------------------------------
# Validator
# ---------------------------------------------------------------------------


class ApiKeyCache:
    """Validates presented API keys against the active key set."""

    def __init__(
        self,
        backend: CacheBackend,
        session_factory: async_sessionmaker[AsyncSession] | None,
        *,
        ttl_seconds: int = 3600,
        query_timeout_seconds: float = 5.0,
        fingerprint_secret: str,
        prefix: str = "api_keys",
    ) -> None:
        self.backend = backend
        self.session_factory = session_factory
        self.ttl_seconds = ttl_seconds
        self.query_timeout_seconds = query_timeout_seconds
        self._secret = fingerprint_secret
        self._prefix = prefix

    @property
    def _records_key(self) -> str:
        return f"{self._prefix}:records"

    def _verdict_key(self, presented: str) -> str:
        return f"{self._prefix}:verdict:{fingerprint(presented, self._secret)}"

    async def _load_active(self) -> list[dict[str, Any]]:
        if self.session_factory is None:
            msg = "API key cache has no session factory"
            raise RuntimeError(msg)
        async with self.session_factory() as db:
            result = await db.execute(
                select(ApiKey.id, ApiKey.name, ApiKey.key_hash).where(ApiKey.revoked_at.is_(None))
            )
            return [{"id": row.id, "name": row.name, "key_hash": row.key_hash} for row in result]

    async def refresh(self) -> int:
        """Reload active keys from the store and drop every cached verdict.

        Raises:
            TimeoutError: If the store does not answer within the query timeout.
        """
        records = await asyncio.wait_for(self._load_active(), timeout=self.query_timeout_seconds)
        await self.backend.invalidate(self._prefix)
        await self.backend.set(self._records_key, json.dumps(records), self.ttl_seconds)
        logger.info("api_key_cache_refreshed", active_keys=len(records))
        return len(records)

    async def invalidate(self) -> None:
        await self.backend.invalidate(self._prefix)

    async def refresh_or_invalidate(self) -> bool:
        """Refresh after a committed write whose plaintext must still reach the caller.

        A failed refresh drops the cached view instead, so the next check reloads
        from the store. Failures are logged, not raised.
        """
        try:
            await self.refresh()
        except Exception as exc:
            logger.error("api_key_cache_refresh_failed", error=str(exc), exc_info=exc)
        else:
            return True
        try:
            await self.invalidate()
        except Exception as exc:
            logger.error("api_key_cache_invalidate_failed", error=str(exc), exc_info=exc)
        return False

    async def _active_records(self) -> list[dict[str, Any]]:
        cached = await self.backend.get(self._records_key)
        if cached is None:
            await self.refresh()
            cached = await self.backend.get(self._records_key)
        return json.loads(cached) if cached else []

    async def validate(self, presented: str | None) -> bool:
        """True if ``presented`` matches an active (non-revoked) key."""
        if not presented:
            return False

        records = await self._active_records()
        active = {record["id"]: record["key_hash"] for record in records}
        verdict_key = self._verdict_key(presented)

        cached = await self.backend.get(verdict_key)
        if cached is not None:
            verdict = json.loads(cached)
            if active.get(verdict["id"]) == verdict["key_hash"]:
                return True

        for record in records:
            if await asyncio.to_thread(verify_api_key, presented, record["key_hash"]):
                verdict = {"id": record["id"], "key_hash": record["key_hash"]}
                await self.backend.set(verdict_key, json.dumps(verdict), self.ttl_seconds)
                return True
        return False


def build_api_key_cache(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession] | None,
    redis: Redis | None = None,
) -> ApiKeyCache:
    """Pick the backend named by ``api_key_cache_backend``."""
    backend: CacheBackend
    if settings.api_key_cache_backend == "redis":
        if redis is None:
            msg = "Redis cache backend selected but no Redis client was provided"
            raise RuntimeError(msg)
        backend = RedisCacheBackend(redis)
    else:
        backend = MemoryCacheBackend()
    return ApiKeyCache(
        backend,
        session_factory,
        ttl_seconds=settings.api_key_cache_ttl_seconds,
        query_timeout_seconds=settings.store_query_timeout_seconds,
        fingerprint_secret=settings.jwt_secret,
        prefix=settings.api_key_cache_prefix,
    )
