"""HTTP API for the POI engine."""

from .routes import router

__all__ = ["router"]
