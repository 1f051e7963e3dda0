"""Unit tests for the search orchestrator."""

import math
from datetime import datetime, timedelta, timezone

import pytest

from conftest import PARIS, FakeExecutor, make_poi
from poi_engine.config import MonitoringSettings, PopularArea, PrefetchSettings, TileSettings
from poi_engine.errors import SearchValidationError
from poi_engine.models import (
    HealthStatus,
    POISource,
    QueuePriority,
    SearchOptions,
    SearchResult,
    Strategy,
    Tile,
)
from poi_engine.services.clustering import ClusterEngine
from poi_engine.services.queue import QueueTask
from poi_engine.services.search import (
    SearchOrchestrator,
    deduplicate,
    freshness_window,
    is_fresh,
    result_ttl,
    search_cache_key,
    select_strategy,
    sort_by_relevance,
)
from poi_engine.utils.geo import haversine_meters, tile_for, tiles_for_area

DAY = 24 * 3600


def _orchestrator(cache, tile_cache, queue, executor, catalog, **overrides) -> SearchOrchestrator:
    params = dict(
        cache=cache,
        tiles=tile_cache,
        queue=queue,
        clusters=ClusterEngine(catalog.hotspots),
        executor=executor,
        popular_areas=catalog.popular_areas,
        tile_settings=TileSettings(sync_fetch_timeout_s=2.0),
        prefetch_settings=PrefetchSettings(enabled=False),
        monitoring_settings=MonitoringSettings(precompute_delay_s=0.0),
    )
    params.update(overrides)
    return SearchOrchestrator(**params)


class TestPolicies:
    """Tests for strategy, TTL and freshness tables."""

    @pytest.mark.parametrize(
        "radius,clusters,expected",
        [
            (0.5, False, Strategy.TILES),
            (5.0, False, Strategy.TILES),
            (5.1, False, Strategy.HYBRID),
            (20.0, False, Strategy.HYBRID),
            (21.0, False, Strategy.CLUSTERS),
            (20.0, True, Strategy.TILES),
            (21.0, True, Strategy.CLUSTERS),
        ],
    )
    def test_select_strategy(self, radius: float, clusters: bool, expected: Strategy) -> None:
        assert select_strategy(radius, SearchOptions(return_clusters=clusters)) == expected

    def test_forced_strategy_wins(self) -> None:
        options = SearchOptions(force_strategy=Strategy.DIRECT, return_clusters=True)
        assert select_strategy(300, options) == Strategy.DIRECT

    @pytest.mark.parametrize(
        "strategy,radius,count,ttl",
        [
            (Strategy.CLUSTERS, 50, 0, 7 * DAY),
            (Strategy.TILES, 2, 100, 3 * DAY),
            (Strategy.HYBRID, 60, 100, 7 * DAY),
            (Strategy.DIRECT, 15, 100, 3 * DAY),
            (Strategy.DIRECT, 2, 5, 30 * DAY),
            (Strategy.DIRECT, 2, 50, DAY),
        ],
    )
    def test_result_ttl(self, strategy: Strategy, radius: float, count: int, ttl: int) -> None:
        assert result_ttl(strategy, radius, count) == ttl

    def test_freshness_windows(self) -> None:
        assert freshness_window(1) == timedelta(hours=24)
        assert freshness_window(10) == timedelta(days=3)
        assert freshness_window(50) == timedelta(days=7)
        assert freshness_window(51) == timedelta(days=30)

    def test_is_fresh(self) -> None:
        now = datetime(2024, 6, 1, 12, tzinfo=timezone.utc)
        assert is_fresh(now - timedelta(hours=23), 1, now=now)
        assert not is_fresh(now - timedelta(hours=25), 1, now=now)
        # Naive timestamps are read as UTC
        assert is_fresh(datetime(2024, 6, 1, 11), 1, now=now)

    def test_cache_key_rounding(self) -> None:
        assert search_cache_key(48.85661, 2.35222, 3, False) == "search:48.857:2.352:3.0:false"
        assert search_cache_key(48.8566, 2.3522, 3, True).endswith(":true")


class TestRanking:
    """Tests for dedup and sort."""

    def test_deduplicate_keeps_best_and_is_idempotent(self) -> None:
        lat, lon = PARIS
        plain = make_poi("node-1", lat, lon)
        rich = make_poi("node-1", lat, lon, heritage="1")
        other = make_poi("node-2", lat, lon)

        once = deduplicate([plain, other, rich])

        assert [p.id for p in once] == ["node-1", "node-2"]
        assert once[0].tags == {"heritage": "1"}
        assert deduplicate(once) == once

    def test_sort_by_score_then_distance(self) -> None:
        lat, lon = PARIS
        near = make_poi("node-near", lat + 0.001, lon)
        far = make_poi("node-far", lat + 0.01, lon)
        notable = make_poi("node-notable", lat + 0.02, lon, wikipedia="fr:X")

        ordered = sort_by_relevance([far, near, notable], lat, lon)

        assert [p.id for p in ordered] == ["node-notable", "node-near", "node-far"]


class TestValidation:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "lat,lon,radius",
        [
            (91.0, 0.0, 1.0),
            (0.0, -181.0, 1.0),
            (0.0, 0.0, 0.0),
            (0.0, 0.0, -2.0),
            (0.0, 0.0, 501.0),
            (math.nan, 0.0, 1.0),
            (0.0, 0.0, math.inf),
        ],
    )
    async def test_rejects_bad_input(self, orchestrator: SearchOrchestrator, lat, lon, radius) -> None:
        with pytest.raises(SearchValidationError):
            await orchestrator.search(lat, lon, radius)

    @pytest.mark.asyncio
    async def test_validation_error_is_a_value_error(self, orchestrator: SearchOrchestrator) -> None:
        with pytest.raises(ValueError):
            await orchestrator.search(-90.5, 0.0, 1.0)


class TestTilesStrategy:
    """Tests for the tile-based search path."""

    @pytest.mark.asyncio
    async def test_cached_tile_results_within_radius(
        self, orchestrator: SearchOrchestrator, tile_cache, queue, executor
    ) -> None:
        lat, lon = PARIS
        center = tile_for(lat, lon, 16)
        inside = make_poi("node-in", lat + 0.001, lon)
        outside = make_poi("node-out", lat + 0.04, lon)
        assert haversine_meters(lat, lon, outside.lat, outside.lon) > 3000
        await tile_cache.cache_tile(center, [inside, outside])

        result = await orchestrator.search(lat, lon, 3)

        assert result.strategy == Strategy.TILES
        assert [p.id for p in result.items] == ["node-in"]
        assert result.items[0].source == POISource.CACHED
        assert result.sources.cached == 1
        assert result.metadata.tiles_cached == 1
        assert result.metadata.tiles_used == len(tiles_for_area(lat, lon, 3))
        assert not result.degraded
        # Missing tiles are queued at HIGH, capped at five
        assert queue.metrics().queue_length_by_priority["HIGH"] == 5
        assert len(queue) == 5
        assert executor.calls == []

    @pytest.mark.asyncio
    async def test_low_priority_queues_low(self, orchestrator: SearchOrchestrator, queue) -> None:
        await orchestrator.search(*PARIS, 1, SearchOptions(priority=QueuePriority.LOW))
        assert queue.metrics().queue_length_by_priority["LOW"] == 5

    @pytest.mark.asyncio
    async def test_critical_fetches_inline(self, cache, tile_cache, queue, catalog) -> None:
        lat, lon = PARIS
        tiles = tiles_for_area(lat, lon, 0.5)
        executor = FakeExecutor(tile_pois={tiles[0]: [make_poi("node-1", lat, lon)]})
        orchestrator = _orchestrator(cache, tile_cache, queue, executor, catalog)

        result = await orchestrator.search(lat, lon, 0.5, SearchOptions(priority=QueuePriority.CRITICAL))

        assert [call[1] for call in executor.calls] == tiles[:3]
        assert [p.id for p in result.items] == ["node-1"]
        assert result.metadata.query_count == 3
        assert not result.degraded
        assert await tile_cache.has_tile(tiles[0])
        assert queue.metrics().queue_length_by_priority["HIGH"] == 5

    @pytest.mark.asyncio
    async def test_critical_failure_is_degraded_and_not_cached(
        self, cache, tile_cache, queue, catalog
    ) -> None:
        executor = FakeExecutor(fail=True)
        orchestrator = _orchestrator(cache, tile_cache, queue, executor, catalog)

        result = await orchestrator.search(*PARIS, 0.5, SearchOptions(priority=QueuePriority.CRITICAL))

        assert result.degraded
        assert result.items == []
        assert not await cache.exists(search_cache_key(*PARIS, 0.5, False))

    @pytest.mark.asyncio
    async def test_clusters_large_result_when_requested(
        self, orchestrator: SearchOrchestrator, tile_cache
    ) -> None:
        lat, lon = PARIS
        center = tile_for(lat, lon, 16)
        pois = [make_poi(f"node-{i}", lat + i * 0.0001, lon) for i in range(35)]
        await tile_cache.cache_tile(center, pois)

        result = await orchestrator.search(lat, lon, 3, SearchOptions(return_clusters=True))

        assert result.item_kind == "clusters"
        assert sum(c.poi_count for c in result.items) == 35
        assert result.sources.clusters == len(result.items)

    @pytest.mark.asyncio
    async def test_max_results_truncates(self, orchestrator: SearchOrchestrator, tile_cache) -> None:
        lat, lon = PARIS
        pois = [make_poi(f"node-{i}", lat + i * 0.0001, lon) for i in range(20)]
        await tile_cache.cache_tile(tile_for(lat, lon, 16), pois)

        result = await orchestrator.search(lat, lon, 3, SearchOptions(max_results=7))

        assert len(result.items) == 7


class TestOtherStrategies:
    """Tests for clusters, hybrid and direct strategies."""

    @pytest.mark.asyncio
    async def test_wide_area_uses_virtual_clusters_only(
        self, orchestrator: SearchOrchestrator, executor
    ) -> None:
        result = await orchestrator.search(*PARIS, 150)

        assert result.strategy == Strategy.CLUSTERS
        assert result.item_kind == "clusters"
        assert len(result.items) == 4
        assert all(c.virtual for c in result.items)
        assert executor.calls == []

    @pytest.mark.asyncio
    async def test_regional_clusters_make_one_sparse_query(self, cache, tile_cache, queue, catalog) -> None:
        lat, lon = PARIS
        executor = FakeExecutor(
            sparse_pois=[make_poi(f"node-{i}", lat + i * 0.05, lon, wikipedia="fr:X") for i in range(4)]
        )
        orchestrator = _orchestrator(cache, tile_cache, queue, executor, catalog)

        result = await orchestrator.search(lat, lon, 50)

        assert executor.calls == [("sparse", lat, lon, 50, None)]
        assert result.item_kind == "clusters"
        assert sum(c.poi_count for c in result.items) == 4

    @pytest.mark.asyncio
    async def test_hybrid_excludes_inner_radius(self, orchestrator: SearchOrchestrator, executor) -> None:
        lat, lon = PARIS
        result = await orchestrator.search(lat, lon, 8)

        assert result.strategy == Strategy.HYBRID
        assert ("sparse", lat, lon, 8, 4.0) in executor.calls
        assert result.metadata.query_count == 1

    @pytest.mark.asyncio
    async def test_hybrid_inner_radius_is_capped(self, orchestrator: SearchOrchestrator, executor) -> None:
        lat, lon = PARIS
        await orchestrator.search(lat, lon, 15)
        assert ("sparse", lat, lon, 15, 5.0) in executor.calls

    @pytest.mark.asyncio
    async def test_degraded_direct_search_is_not_cached(self, cache, tile_cache, queue, catalog) -> None:
        orchestrator = _orchestrator(cache, tile_cache, queue, FakeExecutor(fail=True), catalog)
        options = SearchOptions(force_strategy=Strategy.DIRECT)

        result = await orchestrator.search(*PARIS, 2, options)

        assert result.degraded
        assert not await cache.exists(search_cache_key(*PARIS, 2, False))


class TestResultCache:
    """Tests for cached search results."""

    @pytest.mark.asyncio
    async def test_second_search_is_a_cache_hit(self, cache, tile_cache, queue, catalog) -> None:
        lat, lon = PARIS
        executor = FakeExecutor(direct_pois=[make_poi("node-1", lat, lon)])
        orchestrator = _orchestrator(cache, tile_cache, queue, executor, catalog)
        options = SearchOptions(force_strategy=Strategy.DIRECT)

        first = await orchestrator.search(lat, lon, 2, options)
        second = await orchestrator.search(lat, lon, 2, options)

        assert not first.cache_hit
        assert second.cache_hit
        assert [p.id for p in second.items] == ["node-1"]
        assert len(executor.calls) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("age_hours,hit", [(23, True), (25, False)])
    async def test_freshness(self, orchestrator: SearchOrchestrator, cache, age_hours: int, hit: bool) -> None:
        lat, lon = PARIS
        stored = SearchResult(
            items=[make_poi("node-old", lat, lon)],
            strategy=Strategy.DIRECT,
            timestamp=datetime.now(timezone.utc) - timedelta(hours=age_hours),
        )
        await cache.set(search_cache_key(lat, lon, 1, False), stored.model_dump(mode="json"))

        result = await orchestrator.search(lat, lon, 1, SearchOptions(force_strategy=Strategy.DIRECT))

        assert result.cache_hit is hit

    @pytest.mark.asyncio
    async def test_cached_clusters_round_trip(self, orchestrator: SearchOrchestrator) -> None:
        await orchestrator.search(*PARIS, 150)
        again = await orchestrator.search(*PARIS, 150)

        assert again.cache_hit
        assert again.item_kind == "clusters"
        assert {c.name for c in again.items} >= {"Versailles"}

    @pytest.mark.asyncio
    async def test_clear_cache(self, orchestrator: SearchOrchestrator, tile_cache, cache) -> None:
        await tile_cache.cache_tile(Tile(zoom=16, x=1, y=1), [])
        await orchestrator.search(*PARIS, 150)

        assert await orchestrator.clear_cache() == 2
        assert not await cache.exists(search_cache_key(*PARIS, 150, False))


class TestQueueHandler:
    """Tests for executing queued tasks."""

    @pytest.mark.asyncio
    async def test_cached_tile_is_not_refetched(
        self, orchestrator: SearchOrchestrator, tile_cache, executor
    ) -> None:
        tile = Tile(zoom=16, x=33185, y=22545)
        await tile_cache.cache_tile(tile, [make_poi("node-1", 48.8584, 2.2945)])

        pois = await orchestrator.handle_task(QueueTask.tile(tile))

        assert [p.id for p in pois] == ["node-1"]
        assert executor.calls == []

    @pytest.mark.asyncio
    async def test_missing_tile_is_fetched_and_cached(
        self, orchestrator: SearchOrchestrator, tile_cache, executor
    ) -> None:
        tile = Tile(zoom=16, x=33185, y=22545)
        await orchestrator.handle_task(QueueTask.tile(tile))

        assert executor.calls == [("tile", tile)]
        assert await tile_cache.has_tile(tile)

    @pytest.mark.asyncio
    async def test_area_task_runs_a_search(self, orchestrator: SearchOrchestrator) -> None:
        result = await orchestrator.handle_task(QueueTask.area(*PARIS, 150))
        assert isinstance(result, SearchResult)

    @pytest.mark.asyncio
    async def test_custom_task_runs_raw_query(self, orchestrator: SearchOrchestrator, executor) -> None:
        await orchestrator.handle_task(QueueTask.custom("[out:json];node(1);out;"))
        assert executor.calls == [("custom", "[out:json];node(1);out;")]


class TestBackground:
    @pytest.mark.asyncio
    async def test_prefetch_queues_adjacent_tiles_at_low(
        self, orchestrator: SearchOrchestrator, queue
    ) -> None:
        queued = await orchestrator.prefetch_adjacent(*PARIS, 1)

        assert queued == 4
        assert queue.metrics().queue_length_by_priority["LOW"] == 4

    @pytest.mark.asyncio
    async def test_prefetch_skips_cached_tiles(
        self, orchestrator: SearchOrchestrator, tile_cache, queue
    ) -> None:
        await orchestrator.prefetch_adjacent(*PARIS, 1)
        tiles = [task.payload for task in queue._queues[QueuePriority.LOW]]
        queue.clear()
        await tile_cache.cache_tile(tiles[0], [])

        assert await orchestrator.prefetch_adjacent(*PARIS, 1) == 3


class TestAdmin:
    """Tests for health, precompute and maintenance."""

    @pytest.mark.asyncio
    async def test_emergency_clear(self, cache, tile_cache, queue, executor, catalog) -> None:
        orchestrator = _orchestrator(
            cache,
            tile_cache,
            queue,
            executor,
            catalog,
            monitoring_settings=MonitoringSettings(queue_warning_threshold=5, queue_emergency_threshold=10),
        )
        for x in range(11):
            queue.enqueue(QueueTask.tile(Tile(zoom=16, x=x, y=0)))

        orchestrator.check_health()

        assert len(queue) == 0

    @pytest.mark.asyncio
    async def test_warning_does_not_clear(self, cache, tile_cache, queue, executor, catalog) -> None:
        orchestrator = _orchestrator(
            cache,
            tile_cache,
            queue,
            executor,
            catalog,
            monitoring_settings=MonitoringSettings(queue_warning_threshold=5, queue_emergency_threshold=10),
        )
        for x in range(7):
            queue.enqueue(QueueTask.tile(Tile(zoom=16, x=x, y=0)))

        orchestrator.check_health()

        assert len(queue) == 7

    def test_service_health_starts_healthy(self, orchestrator: SearchOrchestrator) -> None:
        health = orchestrator.service_health()
        assert health.status == HealthStatus.HEALTHY
        assert health.queue.queue_length == 0

    def test_service_health_unhealthy_on_failures(self, orchestrator: SearchOrchestrator, executor) -> None:
        for _ in range(3):
            started = executor.monitor.record_start("fake")
            executor.monitor.record_failure("fake", started, "boom")
        assert orchestrator.service_health().status == HealthStatus.UNHEALTHY

    @pytest.mark.asyncio
    async def test_precompute_requires_force(self, orchestrator: SearchOrchestrator, cache) -> None:
        assert await orchestrator.precompute_popular_areas() == []
        assert not await cache.exists(search_cache_key(48.8566, 2.3522, 2, False))

    @pytest.mark.asyncio
    async def test_precompute_warms_cache(self, cache, tile_cache, queue, executor, catalog) -> None:
        areas = [PopularArea(name="Lyon", lat=45.7626, lon=4.8226, radius_km=150)]
        orchestrator = _orchestrator(cache, tile_cache, queue, executor, catalog, popular_areas=areas)

        assert await orchestrator.precompute_popular_areas(force=True) == ["Lyon"]
        assert await cache.exists(search_cache_key(45.7626, 4.8226, 150, False))

    def test_maintenance_resets_monitor(self, orchestrator: SearchOrchestrator, executor) -> None:
        started = executor.monitor.record_start("fake")
        executor.monitor.record_success("fake", started, 3)

        summary = orchestrator.perform_maintenance()

        assert summary["upstream"]["total"] == 1
        assert executor.monitor.global_metrics().total == 0
