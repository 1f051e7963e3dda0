"""Tile cache module."""

from .service import TileCacheService, TileLookup

__all__ = ["TileCacheService", "TileLookup"]
