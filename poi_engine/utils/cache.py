"""In-memory LRU cache with per-entry TTL expiration.

Process-level store used when Redis is not configured (local development,
tests). Values are kept as-is; callers store JSON-compatible data.
"""

import fnmatch
import time
from collections import OrderedDict
from typing import Any, Callable


class LRUCache:
    """TTL-aware LRU cache."""

    def __init__(
        self,
        max_size: int = 10000,
        ttl_seconds: int = 86400,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._cache: OrderedDict[str, tuple[float, Any]] = OrderedDict()
        self._max_size = max_size
        self._ttl = ttl_seconds
        self._clock = clock

    def __len__(self) -> int:
        return len(self._cache)

    def get(self, key: str) -> Any | None:
        if key not in self._cache:
            return None
        expires_at, value = self._cache[key]
        if self._clock() >= expires_at:
            del self._cache[key]
            return None
        self._cache.move_to_end(key)
        return value

    def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        ttl = ttl_seconds if ttl_seconds is not None else self._ttl
        if key in self._cache:
            self._cache.move_to_end(key)
        self._cache[key] = (self._clock() + ttl, value)
        if len(self._cache) > self._max_size:
            self._cache.popitem(last=False)

    def delete(self, key: str) -> bool:
        return self._cache.pop(key, None) is not None

    def delete_matching(self, pattern: str) -> int:
        """Delete keys matching a glob pattern. Returns the number deleted."""
        keys = [k for k in self._cache if fnmatch.fnmatchcase(k, pattern)]
        for key in keys:
            del self._cache[key]
        return len(keys)
