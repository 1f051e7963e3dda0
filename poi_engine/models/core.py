"""Core data models for the POI engine.

This module contains the Pydantic models shared by every layer of the engine:
tiles and their bounds, POIs, tile cache entries, clusters and search results.
Models that are written to the cache round-trip through ``model_dump(mode="json")``
and ``model_validate``.
"""

from datetime import datetime
from enum import Enum, IntEnum
from typing import Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

MAX_ZOOM = 20


class ErrorCode(str, Enum):
    """Error codes returned to API callers."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    UPSTREAM_ERROR = "UPSTREAM_ERROR"
    UPSTREAM_TIMEOUT = "UPSTREAM_TIMEOUT"
    RATE_LIMITED = "RATE_LIMITED"
    CACHE_ERROR = "CACHE_ERROR"
    QUEUE_FULL = "QUEUE_FULL"
    API_ERROR = "API_ERROR"


class AppError(BaseModel):
    """Error payload returned in API responses."""

    code: ErrorCode = Field(..., description="Machine-readable error code")
    message: str = Field(..., description="Technical error message")
    user_message: str = Field(..., description="Message suitable for end users")


class POISource(str, Enum):
    """Where a POI in a result came from."""

    UPSTREAM = "upstream"
    CACHED = "cached"


class Strategy(str, Enum):
    """Retrieval plan chosen for a search."""

    TILES = "tiles"
    CLUSTERS = "clusters"
    HYBRID = "hybrid"
    DIRECT = "direct"


class QueuePriority(IntEnum):
    """Queue priority levels. Lower value is served first."""

    CRITICAL = 0  # a user is waiting
    HIGH = 1  # likely next request
    NORMAL = 2  # regular background update
    LOW = 3  # precomputation

    def downgraded(self) -> "QueuePriority":
        """Return the next level toward LOW (LOW stays LOW)."""
        return QueuePriority(min(self.value + 1, QueuePriority.LOW.value))


class Coordinates(BaseModel):
    """Geographic coordinates with validation."""

    lat: float = Field(..., ge=-90, le=90, description="Latitude in degrees")
    lon: float = Field(..., ge=-180, le=180, description="Longitude in degrees")


class Bounds(BaseModel):
    """Latitude/longitude rectangle."""

    min_lat: float
    max_lat: float
    min_lon: float
    max_lon: float

    @property
    def center(self) -> Coordinates:
        return Coordinates(
            lat=(self.min_lat + self.max_lat) / 2,
            lon=(self.min_lon + self.max_lon) / 2,
        )

    def contains(self, lat: float, lon: float, eps: float = 1e-9) -> bool:
        """Inclusive containment test, tolerant to float rounding at edges."""
        return (
            self.min_lat - eps <= lat <= self.max_lat + eps
            and self.min_lon - eps <= lon <= self.max_lon + eps
        )

    def to_overpass_bbox(self) -> str:
        """Format as an Overpass QL bbox: ``south,west,north,east``."""
        return f"{self.min_lat},{self.min_lon},{self.max_lat},{self.max_lon}"


class Tile(BaseModel):
    """Slippy-map tile grid coordinate.

    Tiles are frozen so they can be used in sets and as dict keys.
    """

    model_config = ConfigDict(frozen=True)

    zoom: int = Field(..., ge=0, le=MAX_ZOOM, description="Zoom level")
    x: int = Field(..., ge=0, description="Tile column")
    y: int = Field(..., ge=0, description="Tile row")

    @model_validator(mode="after")
    def _check_grid(self) -> "Tile":
        n = 2**self.zoom
        if self.x >= n or self.y >= n:
            raise ValueError(f"tile ({self.x}, {self.y}) outside 2^{self.zoom} grid")
        return self

    @property
    def cache_key(self) -> str:
        """Cache key for this tile: ``tile:{zoom}:{x}:{y}``."""
        return f"tile:{self.zoom}:{self.x}:{self.y}"


class POI(BaseModel):
    """Point of Interest.

    The ``id`` is derived from the upstream element type and id
    (``node-123``, ``way-456``) and is unique within any result set.
    """

    id: str = Field(..., min_length=1, description="Stable upstream-derived id")
    name: str = Field(..., description="Display name")
    type: str = Field(..., description="Category derived from OSM tags")
    lat: float = Field(..., ge=-90, le=90)
    lon: float = Field(..., ge=-180, le=180)
    tags: dict[str, str] = Field(default_factory=dict, description="Raw OSM tags")
    source: POISource = Field(default=POISource.UPSTREAM)


class TileCacheEntry(BaseModel):
    """POIs stored for a single tile."""

    tile: Tile
    pois: list[POI] = Field(default_factory=list)
    last_updated: datetime
    poi_count: int = Field(..., ge=0)
    importance: int = Field(..., ge=0, le=10)


class ClusterRecord(BaseModel):
    """Summary of a group of nearby POIs, used for wide-area rendering."""

    id: str
    centroid: Coordinates
    bounds: Bounds
    poi_count: int = Field(..., ge=0)
    representative_pois: list[POI] = Field(default_factory=list, max_length=5)
    type_histogram: dict[str, int] = Field(default_factory=dict)
    importance: int = Field(..., ge=0, le=10)
    radius_meters: float = Field(..., ge=0)
    name: Optional[str] = Field(None, description="Set for catalog-derived clusters")
    virtual: bool = Field(default=False, description="True if not built from live POIs")


class SearchOptions(BaseModel):
    """Caller options for a search."""

    return_clusters: bool = Field(default=False, description="Prefer clusters over raw POIs")
    force_strategy: Optional[Strategy] = Field(None, description="Override strategy selection")
    priority: QueuePriority = Field(default=QueuePriority.NORMAL)
    max_results: int = Field(default=100, ge=1, le=500)


class SourceCounts(BaseModel):
    """How many items of a result came from each source."""

    cached: int = 0
    upstream: int = 0
    tiles: int = 0
    clusters: int = 0


class SearchMetadata(BaseModel):
    tiles_used: int = 0
    tiles_cached: int = 0
    query_count: int = 0


class SearchResult(BaseModel):
    """Result of a search: either POIs or clusters."""

    items: Union[list[POI], list[ClusterRecord]] = Field(default_factory=list)
    item_kind: Literal["pois", "clusters"] = "pois"
    sources: SourceCounts = Field(default_factory=SourceCounts)
    strategy: Strategy
    cache_hit: bool = False
    timestamp: datetime
    execution_ms: float = 0.0
    degraded: bool = Field(default=False, description="True if an upstream call failed")
    metadata: SearchMetadata = Field(default_factory=SearchMetadata)

    @model_validator(mode="before")
    @classmethod
    def _coerce_items(cls, data):
        # Union resolution on an untyped list is ambiguous, so route by item_kind.
        if isinstance(data, dict) and data.get("item_kind") == "clusters":
            data = dict(data)
            data["items"] = [
                item if isinstance(item, ClusterRecord) else ClusterRecord.model_validate(item)
                for item in data.get("items") or []
            ]
        return data


class QueueMetrics(BaseModel):
    """Snapshot of request queue counters."""

    total_tasks: int = 0
    completed_tasks: int = 0
    failed_tasks: int = 0
    abandoned_tasks: int = 0
    dropped_tasks: int = 0
    avg_processing_ms: float = 0.0
    queue_length: int = 0
    queue_length_by_priority: dict[str, int] = Field(default_factory=dict)
    active_tasks: int = 0
    current_delay_s: float = 0.0
    consecutive_failures: int = 0
    processing_rate: float = Field(0.0, description="Completed tasks per minute")

    @property
    def failure_ratio(self) -> float:
        finished = self.completed_tasks + self.failed_tasks
        if finished == 0:
            return 0.0
        return self.failed_tasks / finished


class UpstreamMetrics(BaseModel):
    """Counters for upstream query outcomes."""

    total: int = 0
    success: int = 0
    failed: int = 0
    rate_limited: int = 0
    timeouts: int = 0
    avg_response_ms: float = 0.0
    last_error: Optional[str] = None
    last_error_time: Optional[datetime] = None


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class ServiceHealth(BaseModel):
    """Health snapshot exposed on the admin surface."""

    status: HealthStatus
    queue: QueueMetrics
    upstream: UpstreamMetrics
    servers: dict[str, UpstreamMetrics] = Field(default_factory=dict)
