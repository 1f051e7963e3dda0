"""Overpass query monitoring.

Keeps global and per-server counters of query outcomes so the admin surface
can report success rates, response times, rate limits and timeouts.
"""

import logging
import time
from datetime import datetime, timezone

from poi_engine.models import UpstreamMetrics

logger = logging.getLogger(__name__)


class OverpassMonitor:
    """In-process counters for upstream queries."""

    def __init__(self) -> None:
        self._global = UpstreamMetrics()
        self._servers: dict[str, UpstreamMetrics] = {}

    def record_start(self, server: str) -> float:
        """Count a query against ``server`` and return its start time."""
        metrics = self._servers.setdefault(server, UpstreamMetrics())
        metrics.total += 1
        self._global.total += 1
        return time.monotonic()

    def record_success(self, server: str, started_at: float, poi_count: int) -> None:
        duration_ms = (time.monotonic() - started_at) * 1000
        for metrics in (self._servers.get(server), self._global):
            if metrics is None:
                continue
            metrics.success += 1
            # Running mean over successful queries
            metrics.avg_response_ms += (duration_ms - metrics.avg_response_ms) / metrics.success

        logger.debug(f"[OVERPASS] Query success on {server}: {poi_count} POIs in {duration_ms:.0f}ms")

    def record_failure(
        self,
        server: str,
        started_at: float,
        error: str,
        rate_limited: bool = False,
        timeout: bool = False,
    ) -> None:
        duration_ms = (time.monotonic() - started_at) * 1000
        now = datetime.now(timezone.utc)
        for metrics in (self._servers.get(server), self._global):
            if metrics is None:
                continue
            metrics.failed += 1
            if rate_limited:
                metrics.rate_limited += 1
            if timeout:
                metrics.timeouts += 1
            metrics.last_error = error
            metrics.last_error_time = now

        logger.warning(f"[OVERPASS] Query failed on {server} after {duration_ms:.0f}ms: {error}")

    def global_metrics(self) -> UpstreamMetrics:
        return self._global.model_copy()

    def server_metrics(self) -> dict[str, UpstreamMetrics]:
        return {server: m.model_copy() for server, m in self._servers.items()}

    def failure_ratio(self) -> float:
        if self._global.total == 0:
            return 0.0
        return self._global.failed / self._global.total

    def log_report(self) -> None:
        """Log a summary of global and per-server metrics."""
        g = self._global
        logger.info("[OVERPASS] === Metrics report ===")
        logger.info(
            f"[OVERPASS] Global: total={g.total} success={g.success} failed={g.failed} "
            f"rate_limited={g.rate_limited} timeouts={g.timeouts} avg={g.avg_response_ms:.0f}ms"
        )
        for server, m in self._servers.items():
            success_rate = m.success / m.total * 100 if m.total else 0.0
            logger.info(
                f"[OVERPASS] {server}: success rate {success_rate:.1f}%, "
                f"avg time {m.avg_response_ms:.0f}ms, rate limits {m.rate_limited}, "
                f"timeouts {m.timeouts}"
            )

    def reset(self) -> None:
        self._global = UpstreamMetrics()
        self._servers = {}
        logger.info("[OVERPASS] Metrics reset")
