"""Tile cache service.

Stores the POIs of each slippy tile under ``tile:{zoom}:{x}:{y}`` with a TTL
derived from how important and how dense the tile is:

- importance >= 8 (tourist zones): 7 days
- importance >= 5 and more than 50 POIs: 3 days
- fewer than 10 POIs (sparse areas change rarely): 30 days
- otherwise: 1 day

Reads never block on a miss: missing tiles are reported back so the caller
can decide whether to fetch them inline or queue them.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, Sequence

from poi_engine.config import Landmark
from poi_engine.errors import CacheError
from poi_engine.models import POI, POISource, Tile, TileCacheEntry
from poi_engine.services.cache import CacheService
from poi_engine.utils.geo import bounds_of
from poi_engine.utils.scoring import is_high_value

logger = logging.getLogger(__name__)

HOUR = 3600
DAY = 24 * HOUR


@dataclass
class TileLookup:
    """Outcome of reading a set of tiles from the cache."""

    pois: list[POI] = field(default_factory=list)
    cached_tiles: list[Tile] = field(default_factory=list)
    missing_tiles: list[Tile] = field(default_factory=list)

    @property
    def hit_ratio(self) -> float:
        total = len(self.cached_tiles) + len(self.missing_tiles)
        return len(self.cached_tiles) / total if total else 1.0


class TileCacheService:
    """Per-tile POI storage on top of a CacheService."""

    def __init__(self, cache: CacheService, landmarks: Iterable[Landmark] = ()) -> None:
        self._cache = cache
        self._landmarks = list(landmarks)

    def importance_of(self, tile: Tile, pois: Sequence[POI]) -> int:
        """Importance 0-10 from landmarks inside the tile and POI quality."""
        bounds = bounds_of(tile)
        importance = 0
        for landmark in self._landmarks:
            if bounds.contains(landmark.lat, landmark.lon):
                importance = max(importance, landmark.importance)

        high_value = sum(1 for poi in pois if is_high_value(poi))
        if high_value > 10:
            importance += 2
        elif high_value > 5:
            importance += 1

        return min(importance, 10)

    @staticmethod
    def ttl_for(importance: int, poi_count: int) -> int:
        """Cache TTL in seconds for a tile."""
        if importance >= 8:
            return 7 * DAY
        if importance >= 5 and poi_count > 50:
            return 3 * DAY
        if poi_count < 10:
            return 30 * DAY
        return DAY

    async def cache_tile(self, tile: Tile, pois: Sequence[POI]) -> TileCacheEntry:
        """Store a tile's POIs. A failed write is logged, not raised."""
        importance = self.importance_of(tile, pois)
        ttl = self.ttl_for(importance, len(pois))
        entry = TileCacheEntry(
            tile=tile,
            pois=list(pois),
            last_updated=datetime.now(timezone.utc),
            poi_count=len(pois),
            importance=importance,
        )

        try:
            await self._cache.set(tile.cache_key, entry.model_dump(mode="json"), ttl_seconds=ttl)
        except CacheError as e:
            logger.warning(f"[TILES] Could not cache {tile.cache_key}: {e}")
            return entry

        logger.info(
            f"[TILES] Cached {tile.cache_key} with {len(pois)} POIs, "
            f"importance: {importance}, TTL: {ttl}s"
        )
        return entry

    async def get_entry(self, tile: Tile) -> TileCacheEntry | None:
        """Read a tile entry; cache failures and corrupt entries count as a miss."""
        try:
            raw = await self._cache.get(tile.cache_key)
        except CacheError as e:
            logger.warning(f"[TILES] Cache read failed for {tile.cache_key}: {e}")
            return None
        if not raw:
            return None
        try:
            return TileCacheEntry.model_validate(raw)
        except ValueError as e:
            logger.warning(f"[TILES] Dropping unreadable entry {tile.cache_key}: {e}")
            return None

    async def has_tile(self, tile: Tile) -> bool:
        return await self.get_entry(tile) is not None

    async def pois_from_tiles(self, tiles: Sequence[Tile]) -> TileLookup:
        """Merge cached POIs of the given tiles.

        POIs shared by neighbouring tiles are kept once; the first tile in
        ``tiles`` order wins.
        """
        entries = await asyncio.gather(*(self.get_entry(tile) for tile in tiles))

        lookup = TileLookup()
        seen: set[str] = set()
        for tile, entry in zip(tiles, entries):
            if entry is None:
                lookup.missing_tiles.append(tile)
                continue
            lookup.cached_tiles.append(tile)
            for poi in entry.pois:
                if poi.id in seen:
                    continue
                seen.add(poi.id)
                lookup.pois.append(poi.model_copy(update={"source": POISource.CACHED}))

        logger.info(f"[TILES] Tile cache hit: {len(lookup.cached_tiles)}/{len(tiles)} tiles")
        return lookup
