"""Search orchestration module."""

from .ranking import deduplicate, filter_by_distance, rank, sort_by_relevance
from .service import (
    SearchOrchestrator,
    freshness_window,
    is_fresh,
    result_ttl,
    search_cache_key,
    select_strategy,
)

__all__ = [
    "SearchOrchestrator",
    "deduplicate",
    "filter_by_distance",
    "freshness_window",
    "is_fresh",
    "rank",
    "result_ttl",
    "search_cache_key",
    "select_strategy",
    "sort_by_relevance",
]
