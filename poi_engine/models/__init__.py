"""Data models for the POI engine."""

from .core import (
    MAX_ZOOM,
    AppError,
    Bounds,
    ClusterRecord,
    Coordinates,
    ErrorCode,
    HealthStatus,
    POI,
    POISource,
    QueueMetrics,
    QueuePriority,
    SearchMetadata,
    SearchOptions,
    SearchResult,
    ServiceHealth,
    SourceCounts,
    Strategy,
    Tile,
    TileCacheEntry,
    UpstreamMetrics,
)

__all__ = [
    "MAX_ZOOM",
    "AppError",
    "Bounds",
    "ClusterRecord",
    "Coordinates",
    "ErrorCode",
    "HealthStatus",
    "POI",
    "POISource",
    "QueueMetrics",
    "QueuePriority",
    "SearchMetadata",
    "SearchOptions",
    "SearchResult",
    "ServiceHealth",
    "SourceCounts",
    "Strategy",
    "Tile",
    "TileCacheEntry",
    "UpstreamMetrics",
]
