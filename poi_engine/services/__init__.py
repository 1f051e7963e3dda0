"""POI Engine Services.

Service layer components:
- Cache: Redis-based caching with in-memory LRU alternative
- Tiles: per-tile POI storage with importance-based TTLs
- Queue: rate-limited priority queue for upstream work
- Clustering: density-based grouping for wide-area views
- Overpass: OpenStreetMap Overpass API executor and monitor
- Search: strategy selection and result caching
"""

from .cache import CacheService, InMemoryCacheService, RedisCacheService
from .clustering import ClusterEngine
from .overpass import OverpassMonitor, OverpassQueryExecutor
from .queue import QueueTask, RequestQueue, TaskKind, TaskState
from .search import SearchOrchestrator
from .tiles import TileCacheService, TileLookup

__all__ = [
    # Cache
    "CacheService",
    "InMemoryCacheService",
    "RedisCacheService",
    # Tiles
    "TileCacheService",
    "TileLookup",
    # Queue
    "QueueTask",
    "RequestQueue",
    "TaskKind",
    "TaskState",
    # Clustering
    "ClusterEngine",
    # Overpass
    "OverpassMonitor",
    "OverpassQueryExecutor",
    # Search
    "SearchOrchestrator",
]
