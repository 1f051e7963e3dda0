"""POI Engine: tile-cached point-of-interest search over OpenStreetMap."""

__version__ = "0.1.0"
