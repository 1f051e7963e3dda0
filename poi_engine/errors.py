"""Exception hierarchy for the POI engine.

- SearchValidationError: bad input, fails fast, never retried.
- UpstreamError: Overpass network/HTTP/timeout failure, retried by the queue.
- CacheError: cache store failure, always treated as a miss by callers.
- QueueFullError: backpressure drop, logged and never surfaced to searches.
"""

from typing import Optional

from poi_engine.models import ErrorCode


class POIEngineError(Exception):
    """Base class for engine errors."""

    code: ErrorCode = ErrorCode.API_ERROR
    user_message: str = "Something went wrong. Please try again."


class SearchValidationError(POIEngineError, ValueError):
    """Invalid search coordinates, radius or options."""

    code = ErrorCode.VALIDATION_ERROR
    user_message = "Invalid search parameters. Please check your input."


class UpstreamError(POIEngineError):
    """An upstream Overpass query failed."""

    code = ErrorCode.UPSTREAM_ERROR
    user_message = "The map data service is unavailable. Please try again later."

    def __init__(
        self,
        message: str,
        *,
        server: Optional[str] = None,
        status_code: Optional[int] = None,
        timeout: bool = False,
        rate_limited: bool = False,
    ) -> None:
        super().__init__(message)
        self.server = server
        self.status_code = status_code
        self.timeout = timeout
        self.rate_limited = rate_limited
        if timeout:
            self.code = ErrorCode.UPSTREAM_TIMEOUT
        elif rate_limited:
            self.code = ErrorCode.RATE_LIMITED


class CacheError(POIEngineError):
    """The cache backend could not be read or written."""

    code = ErrorCode.CACHE_ERROR


class QueueFullError(POIEngineError):
    """A task was dropped by the request queue."""

    code = ErrorCode.QUEUE_FULL
