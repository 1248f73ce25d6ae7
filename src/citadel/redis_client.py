"""Shared Redis client for the API-key cache and rate limiter."""

from __future__ import annotations

import redis.asyncio as redis

_client: redis.Redis | None = None


async def init_redis(url: str) -> redis.Redis:
    """Create the shared client. Connections are opened lazily on first command."""
    global _client  # noqa: PLW0603
    _client = redis.from_url(  # type: ignore[no-untyped-call]
        url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=50,
    )
    return _client


async def close_redis() -> None:
    global _client  # noqa: PLW0603
    if _client is not None:
        await _client.aclose()
        _client = None


def redis_available() -> bool:
    """True once init_redis() has run (the rate limiter is skipped otherwise)."""
    return _client is not None


def get_redis() -> redis.Redis:
    """Get the shared client."""
    if _client is None:
        msg = "Redis not initialized. Call init_redis() first."
        raise RuntimeError(msg)
    return _client
