"""Cache service module."""

from .service import CacheService, InMemoryCacheService, RedisCacheService

__all__ = ["CacheService", "InMemoryCacheService", "RedisCacheService"]
