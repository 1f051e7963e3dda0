"""Density-based POI clustering for wide-area views.

Groups nearby POIs into ClusterRecords so low-zoom maps render a handful of
summaries instead of hundreds of markers. The grouping is a single-pass
DBSCAN-style walk: a POI with at least ``MIN_NEIGHBORS`` neighbours within
the zoom's cluster radius seeds a cluster that grows breadth-first through
neighbours of neighbours; other POIs become single-member clusters.
"""

import logging
import re
from collections import Counter, deque
from typing import Iterable, Sequence

import numpy as np

from poi_engine.config import Hotspot
from poi_engine.models import POI, Bounds, ClusterRecord, Coordinates
from poi_engine.utils.geo import distance_matrix_meters, haversine_meters
from poi_engine.utils.scoring import is_high_value, representative_score

logger = logging.getLogger(__name__)

MIN_NEIGHBORS = 5
MAX_REPRESENTATIVES = 5

# (min zoom, cluster radius in meters)
_CLUSTER_RADII = ((16, 50.0), (14, 200.0), (12, 500.0), (10, 2000.0))
_COUNTRY_RADIUS_M = 5000.0

VIRTUAL_CLUSTER_SPAN_DEG = 0.01
VIRTUAL_CLUSTER_RADIUS_M = 1000.0
VIRTUAL_TYPE_SHARES = (("viewpoint", 0.3), ("monument", 0.3), ("museum", 0.2), ("park", 0.2))


def cluster_radius_for_zoom(zoom: int) -> float:
    """Cluster radius in meters, from street (50m) to country (5km) level."""
    for min_zoom, radius in _CLUSTER_RADII:
        if zoom >= min_zoom:
            return radius
    return _COUNTRY_RADIUS_M


def cluster_importance(pois: Sequence[POI], type_histogram: dict[str, int]) -> int:
    """Importance 0-10 from size, type diversity and high-quality members."""
    importance = 0

    size = len(pois)
    if size > 50:
        importance += 3
    elif size > 20:
        importance += 2
    elif size > 10:
        importance += 1

    type_count = len(type_histogram)
    if type_count > 5:
        importance += 2
    elif type_count > 3:
        importance += 1

    high_quality = sum(1 for poi in pois if is_high_value(poi))
    if high_quality > 10:
        importance += 3
    elif high_quality > 5:
        importance += 2
    elif high_quality > 2:
        importance += 1

    return min(importance, 10)


def _top_representatives(pois: Iterable[POI]) -> list[POI]:
    unique: dict[str, POI] = {}
    for poi in sorted(pois, key=representative_score, reverse=True):
        unique.setdefault(poi.id, poi)
    return list(unique.values())[:MAX_REPRESENTATIVES]


def _slug(name: str) -> str:
    return re.sub(r"\s+", "-", name.strip().lower())


class ClusterEngine:
    """Builds, merges and synthesizes POI clusters."""

    def __init__(self, hotspots: Iterable[Hotspot] = ()) -> None:
        self._hotspots = list(hotspots)

    def create_clusters(self, pois: Sequence[POI], zoom: int) -> list[ClusterRecord]:
        """Cluster POIs for a map at ``zoom``."""
        if not pois:
            return []
        radius_m = cluster_radius_for_zoom(zoom)
        groups = self._group(pois, radius_m)
        clusters = [self._to_record(group, f"cluster-{zoom}-{i}") for i, group in enumerate(groups)]
        logger.info(
            f"[CLUSTER] {len(pois)} POIs -> {len(clusters)} clusters "
            f"(zoom {zoom}, radius {radius_m:.0f}m)"
        )
        return clusters

    def _group(self, pois: Sequence[POI], radius_m: float) -> list[list[POI]]:
        distances = distance_matrix_meters([p.lat for p in pois], [p.lon for p in pois])
        within = distances <= radius_m
        np.fill_diagonal(within, False)

        groups: list[list[POI]] = []
        visited = np.zeros(len(pois), dtype=bool)

        for i in range(len(pois)):
            if visited[i]:
                continue

            if within[i].sum() < MIN_NEIGHBORS:
                # Noise: emitted as its own cluster
                visited[i] = True
                groups.append([pois[i]])
                continue

            members: list[int] = []
            frontier = deque([i])
            while frontier:
                current = frontier.popleft()
                if visited[current]:
                    continue
                visited[current] = True
                members.append(current)
                frontier.extend(int(j) for j in np.flatnonzero(within[current] & ~visited))
            groups.append([pois[j] for j in members])

        return groups

    def _to_record(self, pois: Sequence[POI], cluster_id: str) -> ClusterRecord:
        count = len(pois)
        centroid = Coordinates(
            lat=sum(p.lat for p in pois) / count,
            lon=sum(p.lon for p in pois) / count,
        )
        bounds = Bounds(
            min_lat=min(p.lat for p in pois),
            max_lat=max(p.lat for p in pois),
            min_lon=min(p.lon for p in pois),
            max_lon=max(p.lon for p in pois),
        )
        histogram = dict(Counter(p.type for p in pois))
        radius = max(haversine_meters(centroid.lat, centroid.lon, p.lat, p.lon) for p in pois)

        return ClusterRecord(
            id=cluster_id,
            centroid=centroid,
            bounds=bounds,
            poi_count=count,
            representative_pois=_top_representatives(pois),
            type_histogram=histogram,
            importance=cluster_importance(pois, histogram),
            radius_meters=radius,
        )

    def merge_clusters(
        self, clusters: Sequence[ClusterRecord], max_distance_m: float
    ) -> list[ClusterRecord]:
        """Greedily merge clusters whose centroids are within ``max_distance_m``.

        Each unmerged cluster absorbs every later cluster close to its own
        centroid. Total POI count is conserved.
        """
        merged: list[ClusterRecord] = []
        used: set[int] = set()

        for i, cluster in enumerate(clusters):
            if i in used:
                continue
            used.add(i)
            group = [cluster]
            for j in range(i + 1, len(clusters)):
                if j in used:
                    continue
                other = clusters[j]
                distance = haversine_meters(
                    cluster.centroid.lat, cluster.centroid.lon,
                    other.centroid.lat, other.centroid.lon,
                )
                if distance <= max_distance_m:
                    group.append(other)
                    used.add(j)

            merged.append(self._merge_group(group) if len(group) > 1 else cluster)

        if len(merged) < len(clusters):
            logger.info(f"[CLUSTER] Merged {len(clusters)} clusters into {len(merged)}")
        return merged

    @staticmethod
    def _merge_group(group: Sequence[ClusterRecord]) -> ClusterRecord:
        total = sum(c.poi_count for c in group)
        if total > 0:
            lat = sum(c.centroid.lat * c.poi_count for c in group) / total
            lon = sum(c.centroid.lon * c.poi_count for c in group) / total
        else:
            lat = sum(c.centroid.lat for c in group) / len(group)
            lon = sum(c.centroid.lon for c in group) / len(group)

        bounds = Bounds(
            min_lat=min(c.bounds.min_lat for c in group),
            max_lat=max(c.bounds.max_lat for c in group),
            min_lon=min(c.bounds.min_lon for c in group),
            max_lon=max(c.bounds.max_lon for c in group),
        )
        histogram: Counter[str] = Counter()
        for c in group:
            histogram.update(c.type_histogram)

        radius = max(
            haversine_meters(lat, lon, corner_lat, corner_lon)
            for corner_lat in (bounds.min_lat, bounds.max_lat)
            for corner_lon in (bounds.min_lon, bounds.max_lon)
        )

        return ClusterRecord(
            id=f"merged-{group[0].id}",
            centroid=Coordinates(lat=lat, lon=lon),
            bounds=bounds,
            poi_count=total,
            representative_pois=_top_representatives(
                poi for c in group for poi in c.representative_pois
            ),
            type_histogram=dict(histogram),
            importance=max(c.importance for c in group),
            radius_meters=radius,
            virtual=all(c.virtual for c in group),
        )

    def virtual_clusters(self, lat: float, lon: float, radius_km: float) -> list[ClusterRecord]:
        """Catalog hotspots within the radius, rendered as clusters.

        No upstream data is involved; counts and histograms are estimates.
        """
        radius_m = radius_km * 1000
        clusters = []
        for spot in self._hotspots:
            if haversine_meters(lat, lon, spot.lat, spot.lon) > radius_m:
                continue
            clusters.append(
                ClusterRecord(
                    id=f"virtual-{_slug(spot.name)}",
                    centroid=Coordinates(lat=spot.lat, lon=spot.lon),
                    bounds=Bounds(
                        min_lat=spot.lat - VIRTUAL_CLUSTER_SPAN_DEG,
                        max_lat=spot.lat + VIRTUAL_CLUSTER_SPAN_DEG,
                        min_lon=spot.lon - VIRTUAL_CLUSTER_SPAN_DEG,
                        max_lon=spot.lon + VIRTUAL_CLUSTER_SPAN_DEG,
                    ),
                    poi_count=spot.count,
                    type_histogram={t: int(spot.count * share) for t, share in VIRTUAL_TYPE_SHARES},
                    importance=spot.importance,
                    radius_meters=VIRTUAL_CLUSTER_RADIUS_M,
                    name=spot.name,
                    virtual=True,
                )
            )
        logger.info(f"[CLUSTER] {len(clusters)} virtual clusters within {radius_km}km")
        return clusters
