"""Result post-processing: distance filter, dedup and relevance sort."""

from typing import Iterable, Sequence

from poi_engine.models import POI
from poi_engine.utils.geo import haversine_meters
from poi_engine.utils.scoring import relevance_score


def filter_by_distance(pois: Iterable[POI], lat: float, lon: float, radius_km: float) -> list[POI]:
    """Keep POIs within the exact search circle."""
    radius_m = radius_km * 1000
    return [poi for poi in pois if haversine_meters(lat, lon, poi.lat, poi.lon) <= radius_m]


def deduplicate(pois: Iterable[POI]) -> list[POI]:
    """One POI per id; the higher-scored duplicate wins, ties keep the first."""
    best: dict[str, POI] = {}
    for poi in pois:
        existing = best.get(poi.id)
        if existing is None or relevance_score(poi) > relevance_score(existing):
            best[poi.id] = poi
    return list(best.values())


def sort_by_relevance(pois: Sequence[POI], lat: float, lon: float) -> list[POI]:
    """Score descending, then distance ascending."""
    return sorted(
        pois,
        key=lambda poi: (-relevance_score(poi), haversine_meters(lat, lon, poi.lat, poi.lon)),
    )


def rank(pois: Iterable[POI], lat: float, lon: float, radius_km: float) -> list[POI]:
    return sort_by_relevance(deduplicate(filter_by_distance(pois, lat, lon, radius_km)), lat, lon)
