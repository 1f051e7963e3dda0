"""Unit tests for the Overpass query executor and parsing."""

from urllib.parse import parse_qs

import httpx
import pytest

from poi_engine.errors import UpstreamError
from poi_engine.models import Tile
from poi_engine.services.overpass import (
    OverpassQueryExecutor,
    build_direct_query,
    build_sparse_query,
    build_tile_query,
    default_name,
    determine_type,
    parse_elements,
)
from poi_engine.utils.geo import bboxes_around, bounds_of

SERVERS = ["https://a.example/api/interpreter", "https://b.example/api/interpreter"]

ELEMENTS = {
    "elements": [
        {
            "type": "node",
            "id": 1,
            "lat": 48.8584,
            "lon": 2.2945,
            "tags": {"name": "Tour Eiffel", "tourism": "attraction", "wikipedia": "fr:Tour Eiffel"},
        },
        {
            "type": "way",
            "id": 2,
            "center": {"lat": 48.8462, "lon": 2.3371},
            "tags": {"leisure": "park"},
        },
        {"type": "way", "id": 3, "tags": {"leisure": "park"}},
        {"type": "node", "id": 4, "lat": "not-a-number", "lon": 2.0},
        {"id": 5, "lat": 1.0, "lon": 1.0},
    ]
}


def _executor(handler) -> OverpassQueryExecutor:
    return OverpassQueryExecutor(SERVERS, transport=httpx.MockTransport(handler))


class TestParsing:
    """Tests for turning Overpass elements into POIs."""

    def test_parse_elements(self) -> None:
        pois = parse_elements(ELEMENTS)

        assert [p.id for p in pois] == ["node-1", "way-2"]
        eiffel, park = pois
        assert eiffel.name == "Tour Eiffel"
        assert eiffel.type == "attraction"
        assert eiffel.tags["wikipedia"] == "fr:Tour Eiffel"
        assert (park.lat, park.lon) == (48.8462, 2.3371)
        assert park.name == "Park"
        assert park.type == "park"

    def test_empty_response(self) -> None:
        assert parse_elements({}) == []
        assert parse_elements({"elements": None}) == []

    @pytest.mark.parametrize(
        "tags,expected",
        [
            ({"tourism": "museum", "historic": "castle"}, "museum"),
            ({"historic": "castle"}, "castle"),
            ({"leisure": "garden"}, "garden"),
            ({"amenity": "place_of_worship", "building": "cathedral"}, "cathedral"),
            ({"amenity": "place_of_worship", "building": "church"}, "church"),
            ({"amenity": "place_of_worship"}, "religious_building"),
            ({"amenity": "fountain"}, "fountain"),
            ({"man_made": "lighthouse"}, "lighthouse"),
            ({"natural": "peak"}, "peak"),
            ({"shop": "bakery"}, "other"),
        ],
    )
    def test_determine_type(self, tags, expected: str) -> None:
        assert determine_type(tags) == expected

    @pytest.mark.parametrize(
        "tags,expected",
        [
            ({"leisure": "park"}, "Park"),
            ({"tourism": "viewpoint"}, "Viewpoint"),
            ({"man_made": "bridge"}, "Bridge"),
            ({}, "Point of interest"),
        ],
    )
    def test_default_name(self, tags, expected: str) -> None:
        assert default_name(tags) == expected


class TestQueries:
    def test_detail_depends_on_zoom(self) -> None:
        bounds = bounds_of(Tile(zoom=16, x=33185, y=22545))
        assert "out center;" in build_tile_query(bounds, 18)
        assert "out center 50;" in build_tile_query(bounds, 14)
        assert "out center 20;" in build_tile_query(bounds, 12)

    def test_bbox_order(self) -> None:
        bounds = bounds_of(Tile(zoom=16, x=33185, y=22545))
        query = build_tile_query(bounds, 16)
        assert f"({bounds.min_lat},{bounds.min_lon},{bounds.max_lat},{bounds.max_lon})" in query

    def test_union_covers_every_box(self) -> None:
        boxes = bboxes_around(-16.5, 179.95, 20000)
        assert len(boxes) == 2
        for query in (build_sparse_query(boxes), build_direct_query(boxes)):
            for box in boxes:
                assert f"({box.to_overpass_bbox()});" in query

    def test_single_box_statement_count(self) -> None:
        boxes = bboxes_around(48.8566, 2.3522, 5000)
        assert build_sparse_query(boxes).count(boxes[0].to_overpass_bbox()) == 3
        assert build_direct_query(boxes).count(boxes[0].to_overpass_bbox()) == 10


class TestExecutor:
    """Tests for HTTP behaviour of the executor."""

    def test_requires_a_server(self) -> None:
        with pytest.raises(ValueError):
            OverpassQueryExecutor([])

    @pytest.mark.asyncio
    async def test_round_robin_and_form_body(self) -> None:
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(str(request.url))
            body = parse_qs(request.content.decode())
            assert body["data"] == ["[out:json];node(1);out;"]
            return httpx.Response(200, json=ELEMENTS)

        executor = _executor(handler)
        try:
            for _ in range(3):
                pois = await executor.execute("[out:json];node(1);out;")
                assert len(pois) == 2
        finally:
            await executor.close()

        assert seen == [SERVERS[0], SERVERS[1], SERVERS[0]]
        metrics = executor.monitor.global_metrics()
        assert metrics.total == 3
        assert metrics.success == 3

    @pytest.mark.asyncio
    async def test_rate_limited(self) -> None:
        executor = _executor(lambda request: httpx.Response(429))
        try:
            with pytest.raises(UpstreamError) as excinfo:
                await executor.execute("q")
        finally:
            await executor.close()

        assert excinfo.value.rate_limited
        assert excinfo.value.status_code == 429
        assert excinfo.value.server == SERVERS[0]
        metrics = executor.monitor.global_metrics()
        assert metrics.failed == 1
        assert metrics.rate_limited == 1
        assert executor.monitor.server_metrics()[SERVERS[0]].rate_limited == 1

    @pytest.mark.asyncio
    async def test_timeout(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        executor = _executor(handler)
        try:
            with pytest.raises(UpstreamError) as excinfo:
                await executor.execute("q")
        finally:
            await executor.close()

        assert excinfo.value.timeout
        assert executor.monitor.global_metrics().timeouts == 1

    @pytest.mark.asyncio
    async def test_server_error(self) -> None:
        executor = _executor(lambda request: httpx.Response(504, text="Gateway Timeout"))
        try:
            with pytest.raises(UpstreamError) as excinfo:
                await executor.execute("q")
        finally:
            await executor.close()

        assert excinfo.value.status_code == 504
        assert not excinfo.value.timeout

    @pytest.mark.asyncio
    async def test_invalid_json(self) -> None:
        executor = _executor(lambda request: httpx.Response(200, text="<html>busy</html>"))
        try:
            with pytest.raises(UpstreamError):
                await executor.execute("q")
        finally:
            await executor.close()

        assert executor.monitor.failure_ratio() == 1.0

    @pytest.mark.asyncio
    async def test_sparse_excludes_inner_radius(self) -> None:
        executor = _executor(lambda request: httpx.Response(200, json=ELEMENTS))
        try:
            # Eiffel is ~0m from center, the park ~3.4km away
            pois = await executor.fetch_sparse(48.8584, 2.2945, 10, exclude_radius_km=1)
        finally:
            await executor.close()

        assert [p.id for p in pois] == ["way-2"]

    @pytest.mark.asyncio
    async def test_direct_caps_area(self) -> None:
        queries = []

        def handler(request: httpx.Request) -> httpx.Response:
            queries.append(parse_qs(request.content.decode())["data"][0])
            return httpx.Response(200, json={"elements": []})

        executor = _executor(handler)
        try:
            await executor.fetch_direct(48.8566, 2.3522, 10)
            await executor.fetch_direct(48.8566, 2.3522, 80)
        finally:
            await executor.close()

        assert queries[0] == queries[1]
        assert "out center 150;" in queries[0]

    @pytest.mark.asyncio
    async def test_sparse_across_antimeridian_queries_both_sides(self) -> None:
        queries = []

        def handler(request: httpx.Request) -> httpx.Response:
            queries.append(parse_qs(request.content.decode())["data"][0])
            return httpx.Response(200, json={"elements": []})

        executor = _executor(handler)
        try:
            await executor.fetch_sparse(-16.5, 179.95, 20)
        finally:
            await executor.close()

        assert len(queries) == 1
        assert ",180.0)" in queries[0]
        assert ",-180.0," in queries[0]
