"""OpenStreetMap Overpass module."""

from .monitor import OverpassMonitor
from .service import (
    OverpassQueryExecutor,
    build_direct_query,
    build_sparse_query,
    build_tile_query,
    default_name,
    determine_type,
    parse_elements,
)

__all__ = [
    "OverpassMonitor",
    "OverpassQueryExecutor",
    "build_direct_query",
    "build_sparse_query",
    "build_tile_query",
    "default_name",
    "determine_type",
    "parse_elements",
]
