"""Shared Redis client (ARQ queue, sweep lock)."""

from __future__ import annotations

import redis.asyncio as redis
from redis.asyncio.lock import Lock

from app.core.config import get_settings

settings = get_settings()

_client: redis.Redis | None = None


async def get_redis() -> redis.Redis:
    global _client
    if _client is None:
        _client = redis.from_url(settings.redis_url, decode_responses=True)
    return _client


async def close_redis() -> None:
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None


def named_lock(conn: redis.Redis, name: str, ttl_seconds: int) -> Lock:
    """A redis-py lock under ``lock:<name>`` that expires after ``ttl_seconds``.

    Release is an atomic compare-and-delete, so an expired holder cannot drop
    a lock that another worker has since taken.
    """
    return conn.lock(f"lock:{name}", timeout=ttl_seconds)
