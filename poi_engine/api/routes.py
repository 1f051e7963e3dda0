"""API routes for the POI engine.

Thin HTTP layer over ``POIEngine``:
- Search: ``GET /pois/search``
- Admin: health, queue status/clear, cache clear, precompute, rate-limit
  adjustment and maintenance under ``/admin``

Routes never hold state; the engine lives on ``app.state`` and is injected
with ``Depends(get_engine)``.
"""

import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from poi_engine.engine import POIEngine
from poi_engine.errors import SearchValidationError
from poi_engine.models import QueuePriority, SearchOptions, SearchResult, ServiceHealth, Strategy

logger = logging.getLogger(__name__)

router = APIRouter()


def get_engine(request: Request) -> POIEngine:
    """Engine created by the application lifespan."""
    return request.app.state.engine


# ─── Search ───


class SearchResponse(BaseModel):
    """Response model for a POI search."""
    success: bool
    result: SearchResult


@router.get("/pois/search", response_model=SearchResponse)
async def search_pois(
    lat: float = Query(..., description="Center latitude"),
    lon: float = Query(..., description="Center longitude"),
    radius: float = Query(..., description="Search radius in km"),
    clusters: bool = Query(False, description="Return clusters for large result sets"),
    strategy: Optional[Strategy] = Query(None, description="Force a retrieval strategy"),
    priority: str = Query("NORMAL", description="CRITICAL, HIGH, NORMAL or LOW"),
    max_results: int = Query(100, ge=1, le=500),
    engine: POIEngine = Depends(get_engine),
) -> SearchResponse:
    """Search POIs around a point.

    Range checks on lat/lon/radius are done by the orchestrator so that
    invalid input maps to the same VALIDATION_ERROR payload everywhere.
    """
    options = SearchOptions(
        return_clusters=clusters,
        force_strategy=strategy,
        priority=_parse_priority(priority),
        max_results=max_results,
    )
    result = await engine.search.search(lat, lon, radius, options)
    return SearchResponse(success=True, result=result)


def _parse_priority(value: str) -> QueuePriority:
    try:
        return QueuePriority[value.strip().upper()]
    except KeyError:
        raise SearchValidationError(f"Unknown priority: {value!r}") from None


# ─── Admin ───


class MessageResponse(BaseModel):
    success: bool = True
    message: str
    details: dict[str, Any] = Field(default_factory=dict)


class PrecomputeRequest(BaseModel):
    force: bool = Field(default=False, description="Precompute only runs when forced")


@router.get("/admin/health", response_model=ServiceHealth)
async def admin_health(engine: POIEngine = Depends(get_engine)) -> ServiceHealth:
    """Service health with queue and upstream metrics."""
    return engine.search.service_health()


@router.get("/admin/queue/status")
async def queue_status(engine: POIEngine = Depends(get_engine)) -> dict[str, Any]:
    return engine.queue.status()


@router.post("/admin/queue/clear", response_model=MessageResponse)
async def clear_queue(engine: POIEngine = Depends(get_engine)) -> MessageResponse:
    cleared = engine.queue.clear()
    return MessageResponse(message="All queues cleared", details={"cleared": cleared})


@router.post("/admin/cache/clear", response_model=MessageResponse)
async def clear_cache(engine: POIEngine = Depends(get_engine)) -> MessageResponse:
    cleared = await engine.search.clear_cache()
    return MessageResponse(message="Cache cleared", details={"cleared": cleared})


@router.post("/admin/precompute", response_model=MessageResponse)
async def trigger_precompute(
    body: PrecomputeRequest, engine: POIEngine = Depends(get_engine)
) -> MessageResponse:
    """Warm popular areas in the background."""
    engine.run_in_background(
        engine.search.precompute_popular_areas(force=body.force), name="precompute"
    )
    return MessageResponse(message="Precomputation started in background")


@router.post("/admin/rate-limit/adjust", response_model=MessageResponse)
async def adjust_rate_limit(engine: POIEngine = Depends(get_engine)) -> MessageResponse:
    delay = engine.queue.adjust_rate_limiting()
    return MessageResponse(
        message="Rate limiting adjusted based on current metrics",
        details={"current_delay_s": delay},
    )


@router.post("/admin/maintenance", response_model=MessageResponse)
async def run_maintenance(engine: POIEngine = Depends(get_engine)) -> MessageResponse:
    summary = engine.search.perform_maintenance()
    return MessageResponse(message="Maintenance completed", details=summary)
