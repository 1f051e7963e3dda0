"""Cache service implementation.

This module provides the abstract cache port used by the engine and two
implementations: Redis for deployments and an in-memory LRU for local runs
and tests.

Contract:
- ``get`` returns ``None`` for absent or expired keys; absence is not an error.
- Backend failures raise ``CacheError``. Callers treat them as a miss and
  never fail a search because of them.
"""

import json
import logging
from abc import ABC, abstractmethod
from typing import Any

import redis.asyncio as redis
from redis.exceptions import RedisError

from poi_engine.errors import CacheError
from poi_engine.utils.cache import LRUCache

logger = logging.getLogger(__name__)


class CacheService(ABC):
    """Abstract base class for cache services.

    Defines the interface for caching operations including get, set,
    delete and pattern invalidation.
    """

    @abstractmethod
    async def get(self, key: str) -> Any | None:
        """Retrieve cached value by key.

        Args:
            key: The cache key to look up.

        Returns:
            The cached value if found, None otherwise.
        """

    @abstractmethod
    async def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        """Store value in cache with optional TTL.

        Args:
            key: The cache key to store under.
            value: The value to cache (must be JSON serializable).
            ttl_seconds: Time-to-live in seconds. Backend default if None.
        """

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete a specific key from the cache.

        Returns:
            True if the key was deleted, False if it didn't exist.
        """

    @abstractmethod
    async def exists(self, key: str) -> bool:
        """Check if a key exists in the cache."""

    @abstractmethod
    async def invalidate(self, pattern: str) -> int:
        """Invalidate cache entries matching a glob pattern (e.g. ``tile:*``).

        Returns:
            Number of keys invalidated.
        """

    async def close(self) -> None:
        """Release backend resources."""


class RedisCacheService(CacheService):
    """Redis-based implementation of the cache service.

    Uses Redis for storing cached values with support for TTL,
    pattern-based invalidation, and JSON serialization.

    Attributes:
        _client: The Redis async client instance.
        _default_ttl: Default TTL in seconds for cached values.
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        default_ttl: int = 3600,
    ) -> None:
        self._redis_url = redis_url
        self._default_ttl = default_ttl
        self._client: redis.Redis | None = None

    async def connect(self) -> None:
        """Establish connection to Redis."""
        if self._client is None:
            self._client = redis.from_url(
                self._redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=1.0,
                socket_timeout=1.5,
            )

    async def close(self) -> None:
        """Close the Redis connection."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _ensure_connected(self) -> redis.Redis:
        if self._client is None:
            await self.connect()
        return self._client  # type: ignore

    async def get(self, key: str) -> Any | None:
        client = await self._ensure_connected()
        try:
            value = await client.get(key)
        except RedisError as e:
            raise CacheError(f"Redis GET {key} failed: {e}") from e
        if value is None:
            return None
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            # Return raw value if not JSON
            return value

    async def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        client = await self._ensure_connected()
        ttl = ttl_seconds if ttl_seconds is not None else self._default_ttl

        if isinstance(value, str):
            serialized = value
        else:
            serialized = json.dumps(value)

        try:
            await client.set(key, serialized, ex=max(1, int(ttl)))
        except RedisError as e:
            raise CacheError(f"Redis SET {key} failed: {e}") from e

    async def delete(self, key: str) -> bool:
        client = await self._ensure_connected()
        try:
            result = await client.delete(key)
        except RedisError as e:
            raise CacheError(f"Redis DEL {key} failed: {e}") from e
        return result > 0

    async def exists(self, key: str) -> bool:
        client = await self._ensure_connected()
        try:
            return bool(await client.exists(key))
        except RedisError as e:
            raise CacheError(f"Redis EXISTS {key} failed: {e}") from e

    async def invalidate(self, pattern: str) -> int:
        """Invalidate cache entries matching pattern.

        Uses Redis SCAN to find matching keys and deletes them.
        This is more efficient than KEYS for large datasets.
        """
        client = await self._ensure_connected()
        deleted_count = 0

        cursor = 0
        try:
            while True:
                cursor, keys = await client.scan(cursor=cursor, match=pattern, count=100)
                if keys:
                    deleted_count += await client.delete(*keys)
                if cursor == 0:
                    break
        except RedisError as e:
            raise CacheError(f"Redis invalidate {pattern} failed: {e}") from e

        logger.info(f"[CACHE] Invalidated {deleted_count} keys matching {pattern}")
        return deleted_count

    @property
    def default_ttl(self) -> int:
        """Get the default TTL in seconds."""
        return self._default_ttl


class InMemoryCacheService(CacheService):
    """Process-local cache backed by a TTL-aware LRU.

    Values are round-tripped through JSON so callers see the same shapes
    they would get from Redis.
    """

    def __init__(self, max_size: int = 10000, default_ttl: int = 3600) -> None:
        self._store = LRUCache(max_size=max_size, ttl_seconds=default_ttl)

    async def get(self, key: str) -> Any | None:
        raw = self._store.get(key)
        if raw is None:
            return None
        return json.loads(raw)

    async def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        self._store.set(key, json.dumps(value), ttl_seconds)

    async def delete(self, key: str) -> bool:
        return self._store.delete(key)

    async def exists(self, key: str) -> bool:
        return self._store.get(key) is not None

    async def invalidate(self, pattern: str) -> int:
        deleted = self._store.delete_matching(pattern)
        logger.info(f"[CACHE] Invalidated {deleted} keys matching {pattern}")
        return deleted
