"""Engine configuration.

Settings are read from environment variables once at startup. ``APP_ENV``
selects a profile:

- ``production``: smallest queue, fewest concurrent upstream queries
- ``development``: larger queue, more concurrency, wider prefetch
- anything else: the defaults below

Explicit variables (``QUEUE_MAX_SIZE`` etc.) win over the profile.
The landmark catalog (tile importance landmarks, virtual cluster hotspots,
popular precompute areas) is data, loaded from ``data/landmarks.json`` or
``POI_LANDMARKS_PATH``.
"""

import json
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

DEFAULT_LANDMARKS_PATH = Path(__file__).parent / "data" / "landmarks.json"

DEFAULT_OVERPASS_SERVERS = (
    "https://overpass-api.de/api/interpreter",
    "https://overpass.kumi.systems/api/interpreter",
    "https://overpass.openstreetmap.ru/api/interpreter",
)


@dataclass(frozen=True)
class QueueSettings:
    max_size: int = 50
    max_concurrent: int = 3
    min_delay_s: float = 2.0
    max_delay_s: float = 30.0
    max_retries: int = 2
    task_timeout_s: float = 20.0


@dataclass(frozen=True)
class TileSettings:
    max_tiles_to_queue: int = 5
    max_tiles_to_fetch_sync: int = 3
    sync_fetch_timeout_s: float = 20.0
    min_cache_ratio_for_update: float = 0.2


@dataclass(frozen=True)
class PrefetchSettings:
    enabled: bool = True
    max_radius_km: float = 2.0


@dataclass(frozen=True)
class MonitoringSettings:
    check_interval_s: float = 30.0
    queue_warning_threshold: int = 50
    queue_emergency_threshold: int = 100
    failure_rate_warning: float = 0.2
    maintenance_interval_s: float = 7 * 24 * 3600
    precompute_delay_s: float = 10.0


@dataclass(frozen=True)
class Settings:
    env: str = "default"
    cache_backend: str = "redis"
    redis_url: str = "redis://localhost:6379"
    overpass_servers: tuple[str, ...] = DEFAULT_OVERPASS_SERVERS
    overpass_timeout_s: float = 15.0
    user_agent: str = "POIEngine/1.0"
    landmarks_path: Path = DEFAULT_LANDMARKS_PATH
    queue: QueueSettings = field(default_factory=QueueSettings)
    tiles: TileSettings = field(default_factory=TileSettings)
    prefetch: PrefetchSettings = field(default_factory=PrefetchSettings)
    monitoring: MonitoringSettings = field(default_factory=MonitoringSettings)

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the process environment."""
        load_dotenv()
        env = os.getenv("APP_ENV", "default").lower()
        base = _profile(env)

        queue = replace(
            base.queue,
            max_size=_env_int("QUEUE_MAX_SIZE", base.queue.max_size),
            max_concurrent=_env_int("QUEUE_MAX_CONCURRENT", base.queue.max_concurrent),
            min_delay_s=_env_float("QUEUE_MIN_DELAY_S", base.queue.min_delay_s),
            max_delay_s=_env_float("QUEUE_MAX_DELAY_S", base.queue.max_delay_s),
            max_retries=_env_int("QUEUE_MAX_RETRIES", base.queue.max_retries),
            task_timeout_s=_env_float("QUEUE_TASK_TIMEOUT_S", base.queue.task_timeout_s),
        )
        prefetch = replace(
            base.prefetch,
            enabled=_env_bool("PREFETCH_ENABLED", base.prefetch.enabled),
            max_radius_km=_env_float("PREFETCH_MAX_RADIUS_KM", base.prefetch.max_radius_km),
        )
        monitoring = replace(
            base.monitoring,
            check_interval_s=_env_float("HEALTH_CHECK_INTERVAL_S", base.monitoring.check_interval_s),
            maintenance_interval_s=_env_float(
                "MAINTENANCE_INTERVAL_S", base.monitoring.maintenance_interval_s
            ),
        )

        servers = os.getenv("OVERPASS_SERVERS")
        return replace(
            base,
            cache_backend=os.getenv("CACHE_BACKEND", base.cache_backend).lower(),
            redis_url=os.getenv("REDIS_URL", base.redis_url),
            overpass_servers=(
                tuple(s.strip() for s in servers.split(",") if s.strip())
                if servers
                else base.overpass_servers
            ),
            overpass_timeout_s=_env_float("OVERPASS_TIMEOUT_S", base.overpass_timeout_s),
            landmarks_path=Path(os.getenv("POI_LANDMARKS_PATH", str(base.landmarks_path))),
            queue=queue,
            prefetch=prefetch,
            monitoring=monitoring,
        )


def _profile(env: str) -> Settings:
    base = Settings(env=env)
    if env == "production":
        return replace(
            base,
            queue=replace(base.queue, max_size=30, max_concurrent=2, min_delay_s=3.0),
        )
    if env == "development":
        return replace(
            base,
            cache_backend="memory",
            queue=replace(base.queue, max_size=100, max_concurrent=5, min_delay_s=1.5),
            prefetch=replace(base.prefetch, max_radius_km=5.0),
        )
    return base


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value not in (None, "") else default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value not in (None, "") else default


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value in (None, ""):
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


# ─── Landmark catalog ───


class Landmark(BaseModel):
    """Known high-value location boosting tile importance."""

    name: str
    lat: float
    lon: float
    importance: int = Field(..., ge=0, le=10)


class Hotspot(BaseModel):
    """Known high-traffic location rendered as a virtual cluster."""

    name: str
    lat: float
    lon: float
    importance: int = Field(..., ge=0, le=10)
    count: int = Field(..., ge=0, description="Estimated POI count")


class PopularArea(BaseModel):
    """Area searched by the precompute job."""

    name: str
    lat: float
    lon: float
    radius_km: float = Field(..., gt=0)


class LandmarkCatalog(BaseModel):
    tourist_areas: list[Landmark] = Field(default_factory=list)
    hotspots: list[Hotspot] = Field(default_factory=list)
    popular_areas: list[PopularArea] = Field(default_factory=list)


def load_landmark_catalog(path: Optional[Path] = None) -> LandmarkCatalog:
    """Load the landmark catalog from JSON."""
    path = Path(path) if path is not None else DEFAULT_LANDMARKS_PATH
    with path.open("r", encoding="utf-8") as f:
        return LandmarkCatalog.model_validate(json.load(f))
