"""OpenStreetMap Overpass API query executor.

This is the only component that talks to the upstream. It builds Overpass QL
for bounding boxes, posts it to one of several interchangeable servers
(round-robin) and parses the returned elements into POIs.

Query shapes:
1. Tile queries: detail depends on the tile zoom (street / district / region)
2. Sparse queries: only notable, named places (wikipedia/heritage tagged)
3. Direct queries: broad single query used as the legacy fallback path
4. Custom queries: raw Overpass QL from a queued task
"""

import logging
from typing import Any, Optional, Sequence

import httpx

from poi_engine.errors import UpstreamError
from poi_engine.models import POI, Bounds, Tile
from poi_engine.services.overpass.monitor import OverpassMonitor
from poi_engine.utils.geo import bboxes_around, bounds_of, haversine_meters

logger = logging.getLogger(__name__)

DIRECT_MAX_RADIUS_KM = 10.0


def build_tile_query(bounds: Bounds, zoom: int) -> str:
    """Overpass QL for one tile; fewer, more notable POIs at low zoom."""
    bbox = bounds.to_overpass_bbox()
    if zoom >= 16:
        # Street level - high detail
        return f"""
[out:json][timeout:15];
(
  node["tourism"]({bbox});
  node["historic"]({bbox});
  node["leisure"~"park|garden"]({bbox});
  node["amenity"~"place_of_worship|fountain"]({bbox});
  way["tourism"]({bbox});
  way["historic"]({bbox});
  way["leisure"~"park|garden"]({bbox});
  way["man_made"~"bridge|lighthouse"]({bbox});
);
out center;
"""
    if zoom >= 14:
        # District level
        return f"""
[out:json][timeout:10];
(
  node["tourism"]["name"]({bbox});
  node["historic"~"monument|memorial|castle"]["name"]({bbox});
  way["leisure"="park"]["name"]({bbox});
  way["tourism"="attraction"]["name"]({bbox});
);
out center 50;
"""
    # City/region level - major POIs only
    return f"""
[out:json][timeout:10];
(
  node["tourism"="viewpoint"]["name"]({bbox});
  node["historic"~"castle|monument"]["name"]["wikipedia"]({bbox});
  way["leisure"="park"]["name"]["wikipedia"]({bbox});
);
out center 20;
"""


_SPARSE_STATEMENTS = (
    'node["tourism"~"viewpoint|museum"]["name"]["wikipedia"]',
    'node["historic"~"castle|monument"]["name"]["heritage"]',
    'way["leisure"="park"]["name"]["wikipedia"]',
)

_DIRECT_STATEMENTS = (
    'node["tourism"~"^(viewpoint|museum|attraction|artwork)$"]["name"]',
    'way["tourism"="museum"]["name"]',
    'node["historic"~"^(monument|castle|memorial)$"]["name"]',
    'way["historic"~"^(castle|monument)$"]["name"]',
    'way["leisure"="park"]',
    'way["leisure"="garden"]["access"!="private"]',
    'node["amenity"="place_of_worship"]["building"="cathedral"]',
    'node["natural"="peak"]["name"]',
    'node["amenity"="fountain"]',
    'way["man_made"~"bridge|lighthouse"]["name"]',
)


def _union(statements: Sequence[str], boxes: Sequence[Bounds]) -> str:
    return "\n".join(
        f"  {statement}({box.to_overpass_bbox()});" for box in boxes for statement in statements
    )


def build_sparse_query(boxes: Sequence[Bounds]) -> str:
    """Very selective query for wide areas."""
    return f"""
[out:json][timeout:15];
(
{_union(_SPARSE_STATEMENTS, boxes)}
);
out center 30;
"""


def build_direct_query(boxes: Sequence[Bounds]) -> str:
    """Broad query over the main tourist categories."""
    return f"""
[out:json][timeout:25];
(
{_union(_DIRECT_STATEMENTS, boxes)}
);
out center 150;
"""


def determine_type(tags: dict[str, str]) -> str:
    """Category from OSM tags, checked in priority order."""
    if tags.get("tourism"):
        return tags["tourism"]
    if tags.get("historic"):
        return tags["historic"]
    if tags.get("leisure"):
        return tags["leisure"]
    amenity = tags.get("amenity")
    if amenity == "place_of_worship":
        building = tags.get("building")
        if building == "cathedral":
            return "cathedral"
        if building == "church":
            return "church"
        return "religious_building"
    if amenity == "fountain":
        return "fountain"
    if tags.get("man_made"):
        return tags["man_made"]
    if tags.get("natural"):
        return tags["natural"]
    return "other"


def default_name(tags: dict[str, str]) -> str:
    """Human-readable fallback name for unnamed elements."""
    if tags.get("leisure") == "park":
        return "Park"
    if tags.get("leisure") == "garden":
        return "Garden"
    if tags.get("tourism") == "viewpoint":
        return "Viewpoint"
    if tags.get("historic") == "monument":
        return "Monument"
    if tags.get("amenity") == "fountain":
        return "Fountain"
    if tags.get("man_made") == "lighthouse":
        return "Lighthouse"
    if tags.get("man_made") == "bridge":
        return "Bridge"
    return "Point of interest"


def parse_element(element: dict[str, Any]) -> Optional[POI]:
    """Convert one Overpass element to a POI.

    Nodes carry their own coordinates; ways and relations need ``out center``.
    Returns None for elements without usable coordinates.
    """
    element_type = element["type"]
    if element_type == "node":
        lat, lon = element.get("lat"), element.get("lon")
    elif "center" in element:
        lat, lon = element["center"].get("lat"), element["center"].get("lon")
    else:
        return None
    if lat is None or lon is None:
        return None

    tags = {str(k): str(v) for k, v in (element.get("tags") or {}).items()}
    return POI(
        id=f"{element_type}-{element['id']}",
        name=tags.get("name") or default_name(tags),
        type=determine_type(tags),
        lat=float(lat),
        lon=float(lon),
        tags=tags,
    )


def parse_elements(data: dict[str, Any]) -> list[POI]:
    """Parse an Overpass JSON response. Bad elements are skipped one by one."""
    pois: list[POI] = []
    skipped = 0
    for element in data.get("elements") or []:
        try:
            poi = parse_element(element)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            skipped += 1
            logger.debug(f"[OVERPASS] Skipping unparseable element: {e}")
            continue
        if poi is not None:
            pois.append(poi)
    if skipped:
        logger.info(f"[OVERPASS] Skipped {skipped} unparseable elements")
    return pois


class OverpassQueryExecutor:
    """Async Overpass client with round-robin server selection.

    Uses a shared httpx client with connection pooling. Every failure is
    raised as ``UpstreamError`` and recorded in the monitor.
    """

    def __init__(
        self,
        servers: Sequence[str],
        timeout: float = 15.0,
        user_agent: str = "POIEngine/1.0",
        monitor: Optional[OverpassMonitor] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if not servers:
            raise ValueError("at least one Overpass server is required")
        self._servers = list(servers)
        self._server_index = 0
        self._timeout = timeout
        self._headers = {"User-Agent": user_agent, "Accept": "application/json"}
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self.monitor = monitor or OverpassMonitor()

    @property
    def servers(self) -> list[str]:
        return list(self._servers)

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create the shared HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self._timeout,
                headers=self._headers,
                limits=httpx.Limits(max_connections=8, max_keepalive_connections=4),
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    def next_server(self) -> str:
        server = self._servers[self._server_index]
        self._server_index = (self._server_index + 1) % len(self._servers)
        return server

    async def execute(self, query: str) -> list[POI]:
        """Run a raw Overpass QL query on the next server."""
        server = self.next_server()
        started_at = self.monitor.record_start(server)
        client = self._get_client()

        try:
            response = await client.post(server, data={"data": query})
            if response.status_code == 429:
                raise UpstreamError(
                    f"Rate limited by {server}",
                    server=server,
                    status_code=429,
                    rate_limited=True,
                )
            response.raise_for_status()
            data = response.json()
        except UpstreamError as e:
            self.monitor.record_failure(server, started_at, str(e), rate_limited=e.rate_limited)
            raise
        except httpx.TimeoutException as e:
            self.monitor.record_failure(server, started_at, f"timeout: {e}", timeout=True)
            raise UpstreamError(f"Timeout querying {server}", server=server, timeout=True) from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            self.monitor.record_failure(server, started_at, f"HTTP {status}")
            raise UpstreamError(
                f"{server} returned HTTP {status}", server=server, status_code=status
            ) from e
        except httpx.HTTPError as e:
            self.monitor.record_failure(server, started_at, str(e) or type(e).__name__)
            raise UpstreamError(f"Request to {server} failed: {e}", server=server) from e
        except ValueError as e:
            self.monitor.record_failure(server, started_at, "invalid JSON")
            raise UpstreamError(f"Invalid JSON from {server}", server=server) from e

        if not isinstance(data, dict):
            self.monitor.record_failure(server, started_at, "unexpected payload")
            raise UpstreamError(f"Unexpected payload from {server}", server=server)

        pois = parse_elements(data)
        self.monitor.record_success(server, started_at, len(pois))
        return pois

    async def fetch_tile(self, tile: Tile) -> list[POI]:
        """Fetch the POIs of one tile."""
        return await self.execute(build_tile_query(bounds_of(tile), tile.zoom))

    async def fetch_sparse(
        self,
        lat: float,
        lon: float,
        radius_km: float,
        exclude_radius_km: Optional[float] = None,
    ) -> list[POI]:
        """Fetch notable POIs around a point, optionally skipping an inner disc."""
        boxes = bboxes_around(lat, lon, radius_km * 1000)
        pois = await self.execute(build_sparse_query(boxes))
        if exclude_radius_km:
            inner_m = exclude_radius_km * 1000
            pois = [p for p in pois if haversine_meters(lat, lon, p.lat, p.lon) > inner_m]
        return pois

    async def fetch_direct(self, lat: float, lon: float, radius_km: float) -> list[POI]:
        """Single broad query; the area is capped to keep the query bounded."""
        effective_km = min(radius_km, DIRECT_MAX_RADIUS_KM)
        boxes = bboxes_around(lat, lon, effective_km * 1000)
        return await self.execute(build_direct_query(boxes))
