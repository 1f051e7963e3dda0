"""POI clustering module."""

from .service import ClusterEngine, cluster_importance, cluster_radius_for_zoom

__all__ = ["ClusterEngine", "cluster_importance", "cluster_radius_for_zoom"]
