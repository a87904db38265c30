"""Redis store for caching and distributed locks.

Handles:
- Caching with TTL policies
- Distributed locks (one latest-view rebuild at a time across instances)

TTL policies:
- Provider catalog search results: 6 hours
- Latest-view refresh lock: 5 minutes

Redis is optional: every helper raises RuntimeError when it was never
initialized, and callers treat that as "no cache / local lock only".
"""

import json
import logging
from typing import Any

import redis.asyncio as redis

from market_data.settings import get_settings

# TTL constants (in seconds)
TTL_CATALOG_SEARCH = 21600  # 6 hours
TTL_LATEST_REFRESH_LOCK = 300  # 5 minutes

# Key prefixes
PREFIX_CATALOG_SEARCH = "catalog:"
PREFIX_LOCK = "lock:"

# Redis client (initialized on startup)
_redis: redis.Redis | None = None
logger = logging.getLogger("uvicorn.error")


async def init_redis() -> None:
    """Initialize Redis connection."""
    global _redis
    settings = get_settings()
    _redis = redis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
        socket_connect_timeout=5,
        socket_timeout=5,
    )
    await _redis.ping()
    logger.info("Redis connected")


async def close_redis() -> None:
    """Close Redis connection."""
    global _redis
    if _redis:
        await _redis.aclose()
        _redis = None


def _get_redis() -> redis.Redis:
    """Get Redis client instance."""
    if _redis is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis


# ============================================================
# Generic cache operations
# ============================================================


async def cache_get(key: str) -> str | None:
    """Get value from cache.

    Args:
        key: Cache key.

    Returns:
        Cached value or None if not found.
    """
    return await _get_redis().get(key)


async def cache_set(key: str, value: str, ttl: int) -> None:
    """Set value in cache with TTL.

    Args:
        key: Cache key.
        value: Value to cache.
        ttl: Time-to-live in seconds.
    """
    await _get_redis().setex(key, ttl, value)


async def cache_delete(key: str) -> None:
    await _get_redis().delete(key)


async def cache_get_json(key: str) -> Any | None:
    """Get JSON value from cache."""
    value = await cache_get(key)
    if value:
        return json.loads(value)
    return None


async def cache_set_json(key: str, value: Any, ttl: int) -> None:
    """Set JSON value in cache."""
    await cache_set(key, json.dumps(value), ttl)


# ============================================================
# Provider catalog search cache
# ============================================================


def _catalog_key(provider: str, query: str) -> str:
    return f"{PREFIX_CATALOG_SEARCH}{provider}:{query.strip().lower()}"


async def get_catalog_search_cache(provider: str, query: str) -> list[dict[str, Any]] | None:
    """Get cached catalog search results for a provider query."""
    cached = await cache_get_json(_catalog_key(provider, query))
    if isinstance(cached, list):
        return cached
    return None


async def set_catalog_search_cache(provider: str, query: str, results: list[dict[str, Any]]) -> None:
    """Cache catalog search results (TTL 6 hours)."""
    await cache_set_json(_catalog_key(provider, query), results, TTL_CATALOG_SEARCH)


# ============================================================
# Distributed locks
# ============================================================


async def acquire_lock(key: str, ttl: int = TTL_LATEST_REFRESH_LOCK) -> bool:
    """Acquire a distributed lock.

    Args:
        key: Lock key.
        ttl: Lock timeout in seconds.

    Returns:
        True if lock acquired, False if already locked.
    """
    lock_key = f"{PREFIX_LOCK}{key}"
    # SET NX (only if not exists) with TTL
    result = await _get_redis().set(lock_key, "1", nx=True, ex=ttl)
    return result is not None


async def release_lock(key: str) -> None:
    await cache_delete(f"{PREFIX_LOCK}{key}")
