"""Shared fixtures and fakes for the POI engine tests."""

from typing import Optional

import pytest

from poi_engine.config import (
    LandmarkCatalog,
    MonitoringSettings,
    PrefetchSettings,
    QueueSettings,
    TileSettings,
    load_landmark_catalog,
)
from poi_engine.errors import UpstreamError
from poi_engine.models import POI, Tile
from poi_engine.services.cache import InMemoryCacheService
from poi_engine.services.clustering import ClusterEngine
from poi_engine.services.overpass import OverpassMonitor
from poi_engine.services.queue import RequestQueue
from poi_engine.services.search import SearchOrchestrator
from poi_engine.services.tiles import TileCacheService

PARIS = (48.8566, 2.3522)


def make_poi(
    poi_id: str,
    lat: float,
    lon: float,
    type: str = "attraction",
    name: Optional[str] = None,
    **tags: str,
) -> POI:
    return POI(
        id=poi_id,
        name=name if name is not None else f"Place {poi_id}",
        type=type,
        lat=lat,
        lon=lon,
        tags=tags,
    )


class FakeExecutor:
    """Stands in for OverpassQueryExecutor; records every upstream call."""

    def __init__(
        self,
        tile_pois: Optional[dict[Tile, list[POI]]] = None,
        sparse_pois: Optional[list[POI]] = None,
        direct_pois: Optional[list[POI]] = None,
        fail: bool = False,
    ) -> None:
        self.tile_pois = tile_pois or {}
        self.sparse_pois = sparse_pois or []
        self.direct_pois = direct_pois or []
        self.fail = fail
        self.calls: list[tuple] = []
        self.monitor = OverpassMonitor()

    def _check(self) -> None:
        if self.fail:
            raise UpstreamError("upstream unavailable", server="fake")

    async def fetch_tile(self, tile: Tile) -> list[POI]:
        self.calls.append(("tile", tile))
        self._check()
        return list(self.tile_pois.get(tile, []))

    async def fetch_sparse(self, lat, lon, radius_km, exclude_radius_km=None) -> list[POI]:
        self.calls.append(("sparse", lat, lon, radius_km, exclude_radius_km))
        self._check()
        return list(self.sparse_pois)

    async def fetch_direct(self, lat, lon, radius_km) -> list[POI]:
        self.calls.append(("direct", lat, lon, radius_km))
        self._check()
        return list(self.direct_pois)

    async def execute(self, query: str) -> list[POI]:
        self.calls.append(("custom", query))
        self._check()
        return []

    async def close(self) -> None:
        pass


@pytest.fixture
def catalog() -> LandmarkCatalog:
    return load_landmark_catalog()


@pytest.fixture
def cache() -> InMemoryCacheService:
    return InMemoryCacheService()


@pytest.fixture
def executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def queue() -> RequestQueue:
    return RequestQueue(QueueSettings(min_delay_s=0.0, max_delay_s=0.01, task_timeout_s=2.0))


@pytest.fixture
def tile_cache(cache, catalog) -> TileCacheService:
    return TileCacheService(cache, catalog.tourist_areas)


@pytest.fixture
def orchestrator(cache, tile_cache, queue, executor, catalog) -> SearchOrchestrator:
    return SearchOrchestrator(
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
