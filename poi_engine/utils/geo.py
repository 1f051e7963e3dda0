"""Geographic helpers: haversine distance and slippy-map tile math.

Tiles follow the standard Web-Mercator slippy scheme. Mercator cannot
represent the poles, so latitudes are clamped to +/-85.0511 for projection and
the first/last tile rows absorb the polar caps in ``bounds_of``. This keeps
every function total over lat in [-90, 90], lon in [-180, 180] and
zoom in [0, 20].
"""

import math
from typing import Sequence

import numpy as np
from numpy.typing import NDArray

from poi_engine.models import MAX_ZOOM, Bounds, Tile

EARTH_RADIUS_M = 6371000.0
EARTH_CIRCUMFERENCE_KM = 40075.0
MERCATOR_MAX_LAT = 85.05112878

# Zoom levels by radius:
# 18: neighborhood (~600m tiles), 16: district (~2.5km), 14: city (~10km),
# 12: region (~40km), 10: country (~150km)
_ZOOM_STEPS = ((1.0, 18), (5.0, 16), (20.0, 14), (80.0, 12))
_FALLBACK_ZOOM = 10


def haversine_meters(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two points in meters."""
    p1 = math.radians(lat1)
    p2 = math.radians(lat2)
    dphi = p2 - p1
    dl = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2.0) ** 2 + math.cos(p1) * math.cos(p2) * math.sin(dl / 2.0) ** 2
    return 2 * EARTH_RADIUS_M * math.asin(min(1.0, math.sqrt(a)))


def distance_matrix_meters(lats: Sequence[float], lons: Sequence[float]) -> NDArray[np.float64]:
    """Pairwise haversine distances in meters, shape (n, n)."""
    phi = np.radians(np.asarray(lats, dtype=np.float64))
    lam = np.radians(np.asarray(lons, dtype=np.float64))
    dphi = phi[:, None] - phi[None, :]
    dlam = lam[:, None] - lam[None, :]
    a = np.sin(dphi / 2.0) ** 2 + np.cos(phi)[:, None] * np.cos(phi)[None, :] * np.sin(dlam / 2.0) ** 2
    return 2 * EARTH_RADIUS_M * np.arcsin(np.sqrt(np.clip(a, 0.0, 1.0)))


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def tile_for(lat: float, lon: float, zoom: int) -> Tile:
    """Tile containing (lat, lon) at the given zoom."""
    n = 2**zoom
    lat_c = _clamp(lat, -MERCATOR_MAX_LAT, MERCATOR_MAX_LAT)
    lat_rad = math.radians(lat_c)
    x = math.floor((lon + 180.0) / 360.0 * n)
    y = math.floor((1.0 - math.log(math.tan(lat_rad) + 1.0 / math.cos(lat_rad)) / math.pi) / 2.0 * n)
    # lon=180 and float rounding at the clamped latitude land one past the edge
    x = int(_clamp(x, 0, n - 1))
    y = int(_clamp(y, 0, n - 1))
    return Tile(zoom=zoom, x=x, y=y)


def _row_lat(y: int, n: int) -> float:
    return math.degrees(math.atan(math.sinh(math.pi * (1 - 2 * y / n))))


def bounds_of(tile: Tile) -> Bounds:
    """Latitude/longitude bounds of a tile."""
    n = 2**tile.zoom
    min_lon = tile.x / n * 360.0 - 180.0
    max_lon = (tile.x + 1) / n * 360.0 - 180.0
    max_lat = 90.0 if tile.y == 0 else _row_lat(tile.y, n)
    min_lat = -90.0 if tile.y == n - 1 else _row_lat(tile.y + 1, n)
    return Bounds(min_lat=min_lat, max_lat=max_lat, min_lon=min_lon, max_lon=max_lon)


def zoom_for_radius(radius_km: float) -> int:
    """Pick a zoom level so the tile count per query stays bounded."""
    for limit, zoom in _ZOOM_STEPS:
        if radius_km <= limit:
            return zoom
    return _FALLBACK_ZOOM


def tile_size_km(zoom: int, lat: float) -> float:
    """Approximate tile width in km at a latitude."""
    lat_c = _clamp(lat, -MERCATOR_MAX_LAT, MERCATOR_MAX_LAT)
    return EARTH_CIRCUMFERENCE_KM * math.cos(math.radians(lat_c)) / 2**zoom


def tile_intersects_circle(bounds: Bounds, lat: float, lon: float, radius_m: float) -> bool:
    """Whether a tile's bounds intersect a circle.

    Corner and center-in-bounds tests catch the usual cases. The nearest
    point on the rectangle covers circles that cross an edge without reaching
    a corner. The result may over-include near tile edges, never under-include.
    """
    if bounds.contains(lat, lon):
        return True
    corners = (
        (bounds.min_lat, bounds.min_lon),
        (bounds.min_lat, bounds.max_lon),
        (bounds.max_lat, bounds.min_lon),
        (bounds.max_lat, bounds.max_lon),
    )
    for c_lat, c_lon in corners:
        if haversine_meters(lat, lon, c_lat, c_lon) <= radius_m:
            return True
    near_lat = _clamp(lat, bounds.min_lat, bounds.max_lat)
    near_lon = _clamp(lon, bounds.min_lon, bounds.max_lon)
    return haversine_meters(lat, lon, near_lat, near_lon) <= radius_m


def _lon_half_width(lat: float, angular_radius: float) -> float:
    """Half the longitude extent of a spherical cap, 180 when it holds a pole."""
    cos_lat = math.cos(math.radians(lat))
    if cos_lat <= math.sin(angular_radius):
        return 180.0
    return math.degrees(math.asin(math.sin(angular_radius) / cos_lat))


def tiles_for_area(lat: float, lon: float, radius_km: float, zoom: int | None = None) -> list[Tile]:
    """All tiles intersecting the circle of ``radius_km`` around (lat, lon).

    The candidate window spans the rows between the circle's northern and
    southern edges and the columns of its widest point, which lies poleward
    of the center. Columns wrap across the antimeridian.
    """
    if zoom is None:
        zoom = zoom_for_radius(radius_km)
    zoom = int(_clamp(zoom, 0, MAX_ZOOM))
    n = 2**zoom
    radius_m = radius_km * 1000.0
    angular_radius = radius_m / EARTH_RADIUS_M
    lat_delta = math.degrees(angular_radius)

    center = tile_for(lat, lon, zoom)
    top = tile_for(min(lat + lat_delta, 90.0), lon, zoom).y
    bottom = tile_for(max(lat - lat_delta, -90.0), lon, zoom).y
    rows = range(max(top - 1, 0), min(bottom + 1, n - 1) + 1)

    lon_delta = _lon_half_width(lat, angular_radius)
    if lon_delta >= 180.0:
        columns = range(n)
    else:
        half = math.ceil(lon_delta / (360.0 / n)) + 1
        if 2 * half + 1 >= n:
            columns = range(n)
        else:
            columns = [(center.x + dx) % n for dx in range(-half, half + 1)]

    tiles: list[Tile] = []
    for x in columns:
        for y in rows:
            tile = Tile(zoom=zoom, x=x, y=y)
            if tile_intersects_circle(bounds_of(tile), lat, lon, radius_m):
                tiles.append(tile)
    return tiles


def bboxes_around(lat: float, lon: float, radius_m: float) -> list[Bounds]:
    """Bounding boxes covering a circle.

    A circle crossing the antimeridian yields two boxes, one on each side.
    A circle holding a pole spans every longitude.
    """
    angular_radius = radius_m / EARTH_RADIUS_M
    lat_delta = math.degrees(angular_radius)
    min_lat = max(lat - lat_delta, -90.0)
    max_lat = min(lat + lat_delta, 90.0)

    lon_delta = _lon_half_width(lat, angular_radius)
    if lon_delta >= 180.0:
        return [Bounds(min_lat=min_lat, max_lat=max_lat, min_lon=-180.0, max_lon=180.0)]

    west = lon - lon_delta
    east = lon + lon_delta
    if west < -180.0:
        return [
            Bounds(min_lat=min_lat, max_lat=max_lat, min_lon=-180.0, max_lon=east),
            Bounds(min_lat=min_lat, max_lat=max_lat, min_lon=west + 360.0, max_lon=180.0),
        ]
    if east > 180.0:
        return [
            Bounds(min_lat=min_lat, max_lat=max_lat, min_lon=west, max_lon=180.0),
            Bounds(min_lat=min_lat, max_lat=max_lat, min_lon=-180.0, max_lon=east - 360.0),
        ]
    return [Bounds(min_lat=min_lat, max_lat=max_lat, min_lon=west, max_lon=east)]
