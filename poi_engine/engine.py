"""Engine wiring.

``POIEngine`` owns every stateful component (cache client, request queue,
Overpass executor with its round-robin index and monitor) and the
background loops that drive them. One instance is created per process by the
FastAPI lifespan and stored on ``app.state``.
"""

import asyncio
import logging
from typing import Any, Coroutine, Optional

from poi_engine.config import LandmarkCatalog, Settings, load_landmark_catalog
from poi_engine.services.cache import CacheService, InMemoryCacheService, RedisCacheService
from poi_engine.services.clustering import ClusterEngine
from poi_engine.services.overpass import OverpassQueryExecutor
from poi_engine.services.queue import RequestQueue
from poi_engine.services.search import SearchOrchestrator
from poi_engine.services.tiles import TileCacheService

logger = logging.getLogger(__name__)


def create_cache_service(settings: Settings) -> CacheService:
    """Build the cache backend selected by ``CACHE_BACKEND``."""
    if settings.cache_backend == "memory":
        return InMemoryCacheService()
    if settings.cache_backend == "redis":
        return RedisCacheService(redis_url=settings.redis_url)
    raise ValueError(f"Unknown cache backend: {settings.cache_backend!r}")


class POIEngine:
    """Process-wide POI engine instance."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        cache: Optional[CacheService] = None,
        executor: Optional[OverpassQueryExecutor] = None,
        catalog: Optional[LandmarkCatalog] = None,
    ) -> None:
        self.settings = settings or Settings.from_env()
        self.catalog = catalog or load_landmark_catalog(self.settings.landmarks_path)
        self.cache = cache or create_cache_service(self.settings)
        self.executor = executor or OverpassQueryExecutor(
            servers=self.settings.overpass_servers,
            timeout=self.settings.overpass_timeout_s,
            user_agent=self.settings.user_agent,
        )
        self.queue = RequestQueue(self.settings.queue)
        self.tiles = TileCacheService(self.cache, self.catalog.tourist_areas)
        self.clusters = ClusterEngine(self.catalog.hotspots)
        self.search = SearchOrchestrator(
            cache=self.cache,
            tiles=self.tiles,
            queue=self.queue,
            clusters=self.clusters,
            executor=self.executor,
            popular_areas=self.catalog.popular_areas,
            tile_settings=self.settings.tiles,
            prefetch_settings=self.settings.prefetch,
            monitoring_settings=self.settings.monitoring,
        )
        self._loops: list[asyncio.Task] = []
        self._jobs: set[asyncio.Task] = set()

    async def start(self) -> None:
        """Start the queue and the periodic health and maintenance loops."""
        self.queue.start(self.search.handle_task)
        self._loops = [
            asyncio.create_task(self._health_loop(), name="health-monitor"),
            asyncio.create_task(self._maintenance_loop(), name="maintenance"),
        ]
        logger.info(
            f"[ENGINE] Started ({self.settings.env} profile, cache: {self.settings.cache_backend}, "
            f"{len(self.settings.overpass_servers)} Overpass servers)"
        )

    async def stop(self) -> None:
        tasks = [*self._loops, *self._jobs]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._loops = []
        await self.queue.stop()
        await self.search.shutdown()
        await self.executor.close()
        await self.cache.close()
        logger.info("[ENGINE] Stopped")

    def run_in_background(self, coro: Coroutine[Any, Any, Any], name: str) -> None:
        """Run an admin job without blocking the caller."""
        task = asyncio.create_task(coro, name=name)
        self._jobs.add(task)
        task.add_done_callback(self._job_done)

    def _job_done(self, task: asyncio.Task) -> None:
        self._jobs.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"[ENGINE] {task.get_name()} failed: {type(error).__name__}: {error}")

    async def _health_loop(self) -> None:
        interval = self.settings.monitoring.check_interval_s
        while True:
            await asyncio.sleep(interval)
            self.search.check_health()

    async def _maintenance_loop(self) -> None:
        interval = self.settings.monitoring.maintenance_interval_s
        while True:
            await asyncio.sleep(interval)
            self.search.perform_maintenance()
