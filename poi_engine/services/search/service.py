"""Search orchestrator.

Top-level entry point of the engine. A search goes through:

1. Validation (bad input fails fast with SearchValidationError)
2. Result cache lookup, with a freshness window that depends on the radius
3. Strategy selection (tiles / clusters / hybrid / direct)
4. Strategy execution, using tile cache, request queue, clustering and the
   Overpass executor
5. Result caching (skipped for degraded results)
6. Fire-and-forget background work: adjacent-tile prefetch, backfill signal

A user-facing search never fails because background enrichment or an
upstream query failed; it returns fewer or staler results with
``degraded=True`` instead.
"""

import asyncio
import logging
import math
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Coroutine, Iterable, Optional, Sequence

from poi_engine.config import MonitoringSettings, PopularArea, PrefetchSettings, TileSettings
from poi_engine.errors import CacheError, POIEngineError, SearchValidationError, UpstreamError
from poi_engine.models import (
    POI,
    ClusterRecord,
    HealthStatus,
    POISource,
    QueuePriority,
    SearchMetadata,
    SearchOptions,
    SearchResult,
    ServiceHealth,
    SourceCounts,
    Strategy,
    Tile,
)
from poi_engine.services.cache import CacheService
from poi_engine.services.clustering import ClusterEngine
from poi_engine.services.overpass import OverpassQueryExecutor
from poi_engine.services.queue import QueueTask, RequestQueue, TaskKind
from poi_engine.services.search.ranking import rank
from poi_engine.services.tiles import TileCacheService
from poi_engine.utils.geo import tile_for, tile_size_km, tiles_for_area, zoom_for_radius

logger = logging.getLogger(__name__)

HOUR = timedelta(hours=1)
DAY = timedelta(days=1)

MAX_RADIUS_KM = 500.0
VIRTUAL_ONLY_RADIUS_KM = 100.0
CLUSTER_THRESHOLD = 30
HYBRID_MAX_INNER_KM = 5.0

# Service health thresholds
DEGRADED_QUEUE_LENGTH = 100
UNHEALTHY_QUEUE_LENGTH = 200
DEGRADED_FAILURE_RATIO = 0.2
UNHEALTHY_FAILURE_RATIO = 0.5


def search_cache_key(lat: float, lon: float, radius_km: float, return_clusters: bool) -> str:
    """Result cache key from rounded coordinates, radius and cluster flag."""
    return f"search:{lat:.3f}:{lon:.3f}:{radius_km:.1f}:{str(return_clusters).lower()}"


def freshness_window(radius_km: float) -> timedelta:
    """Maximum age of a cached result; small areas churn faster."""
    if radius_km <= 1:
        return 24 * HOUR
    if radius_km <= 10:
        return 3 * DAY
    if radius_km <= 50:
        return 7 * DAY
    return 30 * DAY


def is_fresh(timestamp: datetime, radius_km: float, now: Optional[datetime] = None) -> bool:
    now = now or datetime.now(timezone.utc)
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return now - timestamp < freshness_window(radius_km)


def select_strategy(radius_km: float, options: SearchOptions) -> Strategy:
    """Pick a retrieval strategy for a radius, honouring an explicit override."""
    if options.force_strategy is not None:
        return options.force_strategy
    if options.return_clusters:
        return Strategy.CLUSTERS if radius_km > 20 else Strategy.TILES
    if radius_km <= 5:
        return Strategy.TILES
    if radius_km <= 20:
        return Strategy.HYBRID
    return Strategy.CLUSTERS


def result_ttl(strategy: Strategy, radius_km: float, result_count: int) -> int:
    """Cache TTL in seconds for a search result."""
    if strategy == Strategy.CLUSTERS:
        ttl = 7 * DAY
    elif strategy == Strategy.TILES:
        ttl = 3 * DAY
    elif radius_km > 50:
        ttl = 7 * DAY
    elif radius_km > 10:
        ttl = 3 * DAY
    elif result_count < 10:
        # Known-sparse areas rarely change
        ttl = 30 * DAY
    else:
        ttl = DAY
    return int(ttl.total_seconds())


def cluster_zoom_for_radius(radius_km: float) -> int:
    return max(10, 18 - math.floor(math.log2(radius_km))) if radius_km >= 1 else 18


class SearchOrchestrator:
    """Coordinates caches, queue, clustering and upstream for searches."""

    def __init__(
        self,
        cache: CacheService,
        tiles: TileCacheService,
        queue: RequestQueue,
        clusters: ClusterEngine,
        executor: OverpassQueryExecutor,
        popular_areas: Iterable[PopularArea] = (),
        tile_settings: TileSettings = TileSettings(),
        prefetch_settings: PrefetchSettings = PrefetchSettings(),
        monitoring_settings: MonitoringSettings = MonitoringSettings(),
    ) -> None:
        self._cache = cache
        self._tiles = tiles
        self._queue = queue
        self._clusters = clusters
        self._executor = executor
        self._popular_areas = list(popular_areas)
        self._tile_settings = tile_settings
        self._prefetch = prefetch_settings
        self._monitoring = monitoring_settings
        self._background: set[asyncio.Task] = set()

    # ─── Search ───

    async def search(
        self,
        lat: float,
        lon: float,
        radius_km: float,
        options: Optional[SearchOptions] = None,
    ) -> SearchResult:
        """Search POIs within ``radius_km`` of (lat, lon)."""
        options = options or SearchOptions()
        started = time.perf_counter()
        self._validate(lat, lon, radius_km)

        key = search_cache_key(lat, lon, radius_km, options.return_clusters)
        cached = await self._read_cached(key, radius_km)
        if cached is not None:
            logger.info(f"[SEARCH] Cache hit for {key}")
            return cached.model_copy(
                update={"cache_hit": True, "execution_ms": _elapsed_ms(started)}
            )

        strategy = select_strategy(radius_km, options)
        logger.info(f"[SEARCH] Using {strategy.value} strategy for {radius_km}km radius search")

        if strategy == Strategy.TILES:
            result = await self._search_tiles(lat, lon, radius_km, options)
        elif strategy == Strategy.CLUSTERS:
            result = await self._search_clusters(lat, lon, radius_km, options)
        elif strategy == Strategy.HYBRID:
            result = await self._search_hybrid(lat, lon, radius_km, options)
        else:
            result = await self._search_direct(lat, lon, radius_km, options)

        result.execution_ms = _elapsed_ms(started)

        if result.degraded:
            logger.warning(f"[SEARCH] Degraded result for {key}, not caching")
        else:
            await self._store(key, result, radius_km)

        self._trigger_background(lat, lon, radius_km, result)

        logger.info(
            f"[SEARCH] {len(result.items)} {result.item_kind} in {result.execution_ms:.0f}ms "
            f"({strategy.value})"
        )
        return result

    @staticmethod
    def _validate(lat: float, lon: float, radius_km: float) -> None:
        for name, value in (("lat", lat), ("lon", lon), ("radius", radius_km)):
            if not isinstance(value, (int, float)) or not math.isfinite(value):
                raise SearchValidationError(f"{name} must be a finite number, got {value!r}")
        if not -90 <= lat <= 90:
            raise SearchValidationError(f"lat must be within [-90, 90], got {lat}")
        if not -180 <= lon <= 180:
            raise SearchValidationError(f"lon must be within [-180, 180], got {lon}")
        if not 0 < radius_km <= MAX_RADIUS_KM:
            raise SearchValidationError(
                f"radius must be within (0, {MAX_RADIUS_KM:g}] km, got {radius_km}"
            )

    async def _read_cached(self, key: str, radius_km: float) -> Optional[SearchResult]:
        try:
            raw = await self._cache.get(key)
        except CacheError as e:
            logger.warning(f"[SEARCH] Result cache read failed: {e}")
            return None
        if not raw:
            return None
        try:
            result = SearchResult.model_validate(raw)
        except ValueError as e:
            logger.warning(f"[SEARCH] Dropping unreadable cached result {key}: {e}")
            return None
        if not is_fresh(result.timestamp, radius_km):
            logger.info(f"[SEARCH] Cached result {key} is stale, recomputing")
            return None
        return result

    async def _store(self, key: str, result: SearchResult, radius_km: float) -> None:
        ttl = result_ttl(result.strategy, radius_km, len(result.items))
        try:
            await self._cache.set(key, result.model_dump(mode="json"), ttl_seconds=ttl)
        except CacheError as e:
            logger.warning(f"[SEARCH] Could not cache result {key}: {e}")

    # ─── Strategies ───

    async def _search_tiles(
        self, lat: float, lon: float, radius_km: float, options: SearchOptions
    ) -> SearchResult:
        zoom = zoom_for_radius(radius_km)
        tiles = tiles_for_area(lat, lon, radius_km, zoom)
        lookup = await self._tiles.pois_from_tiles(tiles)
        logger.info(
            f"[SEARCH] Tile strategy: {len(lookup.cached_tiles)}/{len(tiles)} tiles cached"
        )

        pois = list(lookup.pois)
        degraded = False
        query_count = 0
        missing = lookup.missing_tiles
        if missing:
            if options.priority == QueuePriority.CRITICAL:
                inline = missing[: self._tile_settings.max_tiles_to_fetch_sync]
                fetched, failed = await self._fetch_tiles_inline(inline)
                pois.extend(fetched)
                query_count = len(inline)
                degraded = failed > 0
                self._queue_missing_tiles(
                    missing[len(inline):], QueuePriority.HIGH
                )
            else:
                background = QueuePriority.LOW if options.priority == QueuePriority.LOW else QueuePriority.HIGH
                self._queue_missing_tiles(missing, background)

        return self._poi_result(
            pois,
            Strategy.TILES,
            lat,
            lon,
            radius_km,
            options,
            zoom=zoom,
            metadata=SearchMetadata(
                tiles_used=len(tiles),
                tiles_cached=len(lookup.cached_tiles),
                query_count=query_count,
            ),
            degraded=degraded,
        )

    async def _search_clusters(
        self, lat: float, lon: float, radius_km: float, options: SearchOptions
    ) -> SearchResult:
        if radius_km > VIRTUAL_ONLY_RADIUS_KM:
            virtual = self._clusters.virtual_clusters(lat, lon, radius_km)
            return SearchResult(
                items=virtual,
                item_kind="clusters",
                sources=SourceCounts(clusters=len(virtual)),
                strategy=Strategy.CLUSTERS,
                timestamp=datetime.now(timezone.utc),
            )

        degraded = False
        try:
            pois = await self._executor.fetch_sparse(lat, lon, radius_km)
        except UpstreamError as e:
            logger.warning(f"[SEARCH] Sparse query failed: {e}")
            pois, degraded = [], True

        pois = rank(pois, lat, lon, radius_km)
        clusters = self._clusters.create_clusters(pois, cluster_zoom_for_radius(radius_km))
        return SearchResult(
            items=clusters,
            item_kind="clusters",
            sources=SourceCounts(upstream=len(pois), clusters=len(clusters)),
            strategy=Strategy.CLUSTERS,
            timestamp=datetime.now(timezone.utc),
            degraded=degraded,
            metadata=SearchMetadata(query_count=1),
        )

    async def _search_hybrid(
        self, lat: float, lon: float, radius_km: float, options: SearchOptions
    ) -> SearchResult:
        inner_km = min(radius_km * 0.5, HYBRID_MAX_INNER_KM)
        inner = await self._search_tiles(
            lat, lon, inner_km, options.model_copy(update={"return_clusters": False})
        )

        degraded = inner.degraded
        try:
            outer = await self._executor.fetch_sparse(lat, lon, radius_km, exclude_radius_km=inner_km)
        except UpstreamError as e:
            logger.warning(f"[SEARCH] Outer sparse query failed: {e}")
            outer, degraded = [], True

        return self._poi_result(
            [*inner.items, *outer],
            Strategy.HYBRID,
            lat,
            lon,
            radius_km,
            options,
            zoom=zoom_for_radius(radius_km),
            metadata=inner.metadata.model_copy(
                update={"query_count": inner.metadata.query_count + 1}
            ),
            degraded=degraded,
        )

    async def _search_direct(
        self, lat: float, lon: float, radius_km: float, options: SearchOptions
    ) -> SearchResult:
        degraded = False
        try:
            pois = await self._executor.fetch_direct(lat, lon, radius_km)
        except UpstreamError as e:
            logger.warning(f"[SEARCH] Direct query failed: {e}")
            pois, degraded = [], True

        return self._poi_result(
            pois,
            Strategy.DIRECT,
            lat,
            lon,
            radius_km,
            options,
            zoom=zoom_for_radius(radius_km),
            metadata=SearchMetadata(query_count=1),
            degraded=degraded,
        )

    def _poi_result(
        self,
        pois: Sequence[POI],
        strategy: Strategy,
        lat: float,
        lon: float,
        radius_km: float,
        options: SearchOptions,
        zoom: int,
        metadata: SearchMetadata,
        degraded: bool = False,
    ) -> SearchResult:
        """Rank POIs and build a result, clustering large requested sets."""
        ranked = rank(pois, lat, lon, radius_km)
        cached = sum(1 for poi in ranked if poi.source == POISource.CACHED)
        sources = SourceCounts(
            cached=cached,
            upstream=len(ranked) - cached,
            tiles=metadata.tiles_used,
        )

        if options.return_clusters and len(ranked) > CLUSTER_THRESHOLD:
            clusters = self._clusters.create_clusters(ranked, zoom)
            sources.clusters = len(clusters)
            return SearchResult(
                items=clusters,
                item_kind="clusters",
                sources=sources,
                strategy=strategy,
                timestamp=datetime.now(timezone.utc),
                degraded=degraded,
                metadata=metadata,
            )

        return SearchResult(
            items=ranked[: options.max_results],
            item_kind="pois",
            sources=sources,
            strategy=strategy,
            timestamp=datetime.now(timezone.utc),
            degraded=degraded,
            metadata=metadata,
        )

    async def _fetch_tiles_inline(self, tiles: Sequence[Tile]) -> tuple[list[POI], int]:
        """Fetch tiles for a waiting user, bounded by the sync timeout.

        Fetches still running at the deadline are not cancelled; they finish
        in the background and populate the tile cache. Returns the fetched
        POIs and the number of tiles that failed or timed out.
        """
        if not tiles:
            return [], 0
        tasks = [self._spawn(self._fetch_and_cache_tile(tile)) for tile in tiles]
        done, pending = await asyncio.wait(tasks, timeout=self._tile_settings.sync_fetch_timeout_s)

        pois: list[POI] = []
        failed = len(pending)
        for task in done:
            if task.cancelled() or task.exception() is not None:
                failed += 1
                continue
            pois.extend(task.result())

        if failed:
            logger.warning(f"[SEARCH] {failed}/{len(tiles)} critical tiles not fetched in time")
        return pois, failed

    async def _fetch_and_cache_tile(self, tile: Tile) -> list[POI]:
        pois = await self._executor.fetch_tile(tile)
        await self._tiles.cache_tile(tile, pois)
        return pois

    def _queue_missing_tiles(self, tiles: Sequence[Tile], priority: QueuePriority) -> int:
        limit = self._tile_settings.max_tiles_to_queue
        if len(tiles) > limit:
            logger.warning(f"[SEARCH] Limiting tile queue from {len(tiles)} to {limit} tiles")
        queued = 0
        for tile in tiles[:limit]:
            if self._queue.enqueue(QueueTask.tile(tile, priority)) is not None:
                queued += 1
        return queued

    # ─── Background work ───

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        """Run a coroutine in the background, keeping a reference until done."""
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background_done)
        return task

    def _background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning(f"[SEARCH] Background task failed: {type(error).__name__}: {error}")

    def _trigger_background(
        self, lat: float, lon: float, radius_km: float, result: SearchResult
    ) -> None:
        if self._prefetch.enabled and radius_km <= self._prefetch.max_radius_km:
            self._spawn(self.prefetch_adjacent(lat, lon, radius_km))

        if result.strategy == Strategy.TILES and result.metadata.tiles_used:
            tiles_used = result.metadata.tiles_used
            ratio = result.metadata.tiles_cached / tiles_used
            if ratio < self._tile_settings.min_cache_ratio_for_update:
                missing = min(
                    self._tile_settings.max_tiles_to_fetch_sync,
                    tiles_used - result.metadata.tiles_cached,
                )
                logger.info(
                    f"[SEARCH] Low tile cache ratio ({ratio:.0%}), "
                    f"{missing} tiles flagged for backfill"
                )

    async def prefetch_adjacent(self, lat: float, lon: float, radius_km: float) -> int:
        """Queue the four tiles just beyond the search area at LOW priority."""
        zoom = zoom_for_radius(radius_km)
        n = 2**zoom
        center = tile_for(lat, lon, zoom)
        step = math.ceil(radius_km / tile_size_km(zoom, lat)) + 1

        neighbours = []
        for dx, dy in ((0, -step), (0, step), (step, 0), (-step, 0)):
            y = center.y + dy
            if 0 <= y < n:
                neighbours.append(Tile(zoom=zoom, x=(center.x + dx) % n, y=y))

        queued = 0
        for tile in neighbours:
            if await self._tiles.has_tile(tile):
                continue
            if self._queue.enqueue(QueueTask.tile(tile, QueuePriority.LOW)) is not None:
                queued += 1
        if queued:
            logger.debug(f"[SEARCH] Prefetch queued {queued} adjacent tiles")
        return queued

    # ─── Queue handler ───

    async def handle_task(self, task: QueueTask) -> Any:
        """Execute a queued task. Errors propagate to the queue for retry."""
        if task.kind == TaskKind.TILE:
            tile = task.payload
            entry = await self._tiles.get_entry(tile)
            if entry is not None:
                logger.debug(f"[SEARCH] {tile.cache_key} already cached, skipping fetch")
                return entry.pois
            return await self._fetch_and_cache_tile(tile)

        if task.kind == TaskKind.AREA:
            area = task.payload
            return await self.search(
                area.lat, area.lon, area.radius_km, SearchOptions(priority=task.priority)
            )

        return await self._executor.execute(task.payload)

    # ─── Monitoring & admin ───

    def check_health(self) -> None:
        """Periodic queue check: warn on backlog, clear on emergency, slow down on failures."""
        metrics = self._queue.metrics()

        if metrics.queue_length > self._monitoring.queue_warning_threshold:
            logger.warning(f"[SEARCH] Queue backlog: {metrics.queue_length} tasks pending")
            if metrics.queue_length > self._monitoring.queue_emergency_threshold:
                logger.error("[SEARCH] EMERGENCY: clearing request queue")
                self._queue.clear()

        if metrics.failure_ratio > self._monitoring.failure_rate_warning:
            logger.error(f"[SEARCH] High failure rate detected ({metrics.failure_ratio:.1%})")
            self._queue.adjust_rate_limiting()

    def service_health(self) -> ServiceHealth:
        queue = self._queue.metrics()
        monitor = self._executor.monitor
        failure_ratio = max(queue.failure_ratio, monitor.failure_ratio())

        if queue.queue_length > UNHEALTHY_QUEUE_LENGTH or failure_ratio > UNHEALTHY_FAILURE_RATIO:
            status = HealthStatus.UNHEALTHY
        elif queue.queue_length > DEGRADED_QUEUE_LENGTH or failure_ratio > DEGRADED_FAILURE_RATIO:
            status = HealthStatus.DEGRADED
        else:
            status = HealthStatus.HEALTHY

        return ServiceHealth(
            status=status,
            queue=queue,
            upstream=monitor.global_metrics(),
            servers=monitor.server_metrics(),
        )

    async def precompute_popular_areas(self, force: bool = False) -> list[str]:
        """Warm the result cache for catalog areas. Only runs when forced."""
        if not force:
            logger.info("[SEARCH] Precomputation skipped - manual trigger required")
            return []

        logger.info(f"[SEARCH] Precomputing {len(self._popular_areas)} popular areas")
        done = []
        for i, area in enumerate(self._popular_areas):
            if i:
                await asyncio.sleep(self._monitoring.precompute_delay_s)
            try:
                await self.search(
                    area.lat, area.lon, area.radius_km, SearchOptions(priority=QueuePriority.LOW)
                )
            except POIEngineError as e:
                logger.error(f"[SEARCH] Failed to precompute {area.name}: {e}")
                continue
            done.append(area.name)
            logger.info(f"[SEARCH] Precomputed {area.name}")
        return done

    def perform_maintenance(self) -> dict[str, Any]:
        """Log the upstream report and reset its counters."""
        logger.info("[SEARCH] Starting maintenance")
        monitor = self._executor.monitor
        monitor.log_report()
        summary = {
            "upstream": monitor.global_metrics().model_dump(mode="json"),
            "queue": self._queue.metrics().model_dump(),
        }
        monitor.reset()
        logger.info("[SEARCH] Maintenance completed")
        return summary

    async def clear_cache(self) -> int:
        """Drop cached search results and tiles."""
        cleared = 0
        for pattern in ("search:*", "tile:*"):
            cleared += await self._cache.invalidate(pattern)
        logger.info(f"[SEARCH] Cache cleared ({cleared} keys)")
        return cleared

    async def shutdown(self) -> None:
        """Cancel outstanding background work."""
        pending = list(self._background)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 1)
