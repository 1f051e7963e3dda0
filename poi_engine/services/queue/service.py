"""Priority request queue for upstream work.

Every Overpass query that is not on a user's critical path goes through this
queue. It exists to keep the upstream happy:

- Four priority levels (CRITICAL > HIGH > NORMAL > LOW), FIFO within a level
- Hard cap on pending tasks; extra work is dropped with a log line
- Equivalent tile/area tasks already queued are not queued twice
- One dequeue loop spaces dispatches by ``current_delay``, which grows
  exponentially on failures and decays on success
- At most ``max_concurrent`` tasks execute at once
- Failed tasks are requeued at a lower priority, then abandoned

Each accepted task carries an ``asyncio.Future`` that resolves with the
handler's result, or with an exception once the task is abandoned or cleared.
"""

import asyncio
import logging
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, NamedTuple, Optional, Union

from poi_engine.config import QueueSettings
from poi_engine.errors import QueueFullError, UpstreamError
from poi_engine.models import QueueMetrics, QueuePriority, Tile

logger = logging.getLogger(__name__)

PROCESSING_RATE_WINDOW_S = 60.0


class TaskKind(str, Enum):
    TILE = "tile"
    AREA = "area"
    CUSTOM = "custom"


class TaskState(str, Enum):
    QUEUED = "queued"
    EXECUTING = "executing"
    COMPLETED = "completed"
    REQUEUED = "requeued"
    ABANDONED = "abandoned"
    DROPPED = "dropped"


class AreaRequest(NamedTuple):
    """Payload of an area task: a search circle."""

    lat: float
    lon: float
    radius_km: float


TaskPayload = Union[Tile, AreaRequest, str]


@dataclass(eq=False)
class QueueTask:
    """A unit of upstream work owned by the queue."""

    kind: TaskKind
    payload: TaskPayload
    priority: QueuePriority = QueuePriority.NORMAL
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    retry_count: int = 0
    created_at: float = field(default_factory=time.time)
    state: TaskState = TaskState.QUEUED
    future: Optional[asyncio.Future] = None

    @classmethod
    def tile(cls, tile: Tile, priority: QueuePriority = QueuePriority.NORMAL) -> "QueueTask":
        return cls(kind=TaskKind.TILE, payload=tile, priority=priority)

    @classmethod
    def area(
        cls,
        lat: float,
        lon: float,
        radius_km: float,
        priority: QueuePriority = QueuePriority.LOW,
    ) -> "QueueTask":
        return cls(kind=TaskKind.AREA, payload=AreaRequest(lat, lon, radius_km), priority=priority)

    @classmethod
    def custom(cls, query: str, priority: QueuePriority = QueuePriority.NORMAL) -> "QueueTask":
        return cls(kind=TaskKind.CUSTOM, payload=query, priority=priority)

    @property
    def dedup_key(self) -> Optional[tuple]:
        """Identity used for deduplication. Custom queries are never deduplicated."""
        if self.kind == TaskKind.CUSTOM:
            return None
        return (self.kind, self.payload)


TaskHandler = Callable[[QueueTask], Awaitable[Any]]


def _consume_exception(future: asyncio.Future) -> None:
    # Nobody may be waiting on a background task's future
    if not future.cancelled():
        future.exception()


class RequestQueue:
    """Rate-limited priority queue with a single dequeue loop."""

    def __init__(
        self,
        settings: QueueSettings = QueueSettings(),
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._settings = settings
        self._clock = clock
        self._queues: dict[QueuePriority, deque[QueueTask]] = {p: deque() for p in QueuePriority}
        self._pending_keys: dict[tuple, QueueTask] = {}

        # Rate limiting state, only mutated on the event loop
        self.current_delay = settings.min_delay_s
        self.consecutive_failures = 0
        self._last_dispatch: Optional[float] = None

        self._handler: Optional[TaskHandler] = None
        self._loop_task: Optional[asyncio.Task] = None
        self._wakeup: Optional[asyncio.Event] = None
        self._slots: Optional[asyncio.Semaphore] = None
        self._in_flight: dict[asyncio.Task, QueueTask] = {}
        self._active = 0

        self._total = 0
        self._completed = 0
        self._failed = 0
        self._abandoned = 0
        self._dropped = 0
        self._avg_processing_ms = 0.0
        self._completion_times: deque[float] = deque()

    @property
    def settings(self) -> QueueSettings:
        return self._settings

    @property
    def is_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def __len__(self) -> int:
        return sum(len(q) for q in self._queues.values())

    # ─── Enqueue ───

    def enqueue(self, task: QueueTask) -> Optional[asyncio.Future]:
        """Queue a task.

        Returns the future that resolves with the task outcome, the existing
        future if an equivalent task is already queued, or None if the task
        was dropped because the queue is full.
        """
        key = task.dedup_key
        if key is not None and key in self._pending_keys:
            logger.debug(f"[QUEUE] Skipping duplicate {task.kind.value} task {task.id}")
            return self._pending_keys[key].future

        if len(self) >= self._settings.max_size:
            self._dropped += 1
            task.state = TaskState.DROPPED
            logger.warning(
                f"[QUEUE] Queue full ({len(self)}/{self._settings.max_size}), "
                f"dropping {task.kind.value} task {task.id} ({task.priority.name})"
            )
            return None

        if task.future is None:
            task.future = asyncio.get_running_loop().create_future()
            task.future.add_done_callback(_consume_exception)

        task.state = TaskState.QUEUED
        self._queues[task.priority].append(task)
        if key is not None:
            self._pending_keys[key] = task
        self._total += 1
        self._notify()

        logger.debug(
            f"[QUEUE] Queued {task.kind.value} task {task.id} at {task.priority.name}, "
            f"length: {len(self)}"
        )
        return task.future

    def _requeue(self, task: QueueTask) -> bool:
        """Put a failed task back one priority level lower, bypassing dedup."""
        if len(self) >= self._settings.max_size:
            return False
        task.retry_count += 1
        task.priority = task.priority.downgraded()
        task.state = TaskState.REQUEUED
        self._queues[task.priority].append(task)
        key = task.dedup_key
        if key is not None:
            self._pending_keys.setdefault(key, task)
        self._notify()
        logger.info(
            f"[QUEUE] Requeued task {task.id} at {task.priority.name} "
            f"(retry {task.retry_count}/{self._settings.max_retries})"
        )
        return True

    def _pop_next(self) -> Optional[QueueTask]:
        for priority in QueuePriority:
            queue = self._queues[priority]
            if queue:
                task = queue.popleft()
                key = task.dedup_key
                if key is not None and self._pending_keys.get(key) is task:
                    del self._pending_keys[key]
                return task
        return None

    def _notify(self) -> None:
        if self._wakeup is not None:
            self._wakeup.set()

    # ─── Loop ───

    def start(self, handler: TaskHandler) -> None:
        """Start the dequeue loop with the given task handler."""
        if self.is_running:
            return
        self._handler = handler
        self._wakeup = asyncio.Event()
        self._slots = asyncio.Semaphore(self._settings.max_concurrent)
        if len(self):
            self._wakeup.set()
        self._loop_task = asyncio.create_task(self._run(), name="request-queue")
        logger.info(
            f"[QUEUE] Started (max size {self._settings.max_size}, "
            f"max concurrent {self._settings.max_concurrent})"
        )

    async def stop(self) -> None:
        """Stop the loop and cancel in-flight work."""
        if self._loop_task is not None:
            self._loop_task.cancel()
            await asyncio.gather(self._loop_task, return_exceptions=True)
            self._loop_task = None
        in_flight = list(self._in_flight)
        for runner in in_flight:
            runner.cancel()
        if in_flight:
            await asyncio.gather(*in_flight, return_exceptions=True)
        logger.info("[QUEUE] Stopped")

    async def _run(self) -> None:
        assert self._wakeup is not None and self._slots is not None
        while True:
            while not len(self):
                self._wakeup.clear()
                await self._wakeup.wait()

            await self._slots.acquire()

            if self._last_dispatch is not None:
                remaining = self._last_dispatch + self.current_delay - self._clock()
                if remaining > 0:
                    await asyncio.sleep(remaining)

            # The queue may have been cleared while waiting
            task = self._pop_next()
            if task is None:
                self._slots.release()
                continue

            self._last_dispatch = self._clock()
            runner = asyncio.create_task(self._execute(task), name=f"queue-task-{task.id}")
            self._in_flight[runner] = task
            runner.add_done_callback(self._forget_runner)

    def _forget_runner(self, runner: asyncio.Task) -> None:
        task = self._in_flight.pop(runner, None)
        # A runner cancelled before its first step never reaches _execute
        if task is None or not runner.cancelled():
            return
        if task.future is not None and not task.future.done():
            task.future.cancel()

    async def _execute(self, task: QueueTask) -> None:
        assert self._handler is not None and self._slots is not None
        self._active += 1
        task.state = TaskState.EXECUTING
        started = self._clock()
        try:
            result = await asyncio.wait_for(
                self._handler(task), timeout=self._settings.task_timeout_s
            )
        except asyncio.CancelledError:
            if task.future is not None and not task.future.done():
                task.future.cancel()
            raise
        except asyncio.TimeoutError:
            self._on_failure(
                task,
                UpstreamError(
                    f"Task {task.id} timed out after {self._settings.task_timeout_s}s",
                    timeout=True,
                ),
                started,
            )
        except Exception as e:
            self._on_failure(task, e, started)
        else:
            self._on_success(task, result, started)
        finally:
            self._active -= 1
            self._slots.release()

    def _on_success(self, task: QueueTask, result: Any, started: float) -> None:
        elapsed_ms = (self._clock() - started) * 1000
        self._completed += 1
        self._record_processing_time(elapsed_ms)
        self._completion_times.append(self._clock())
        self.record_success()

        task.state = TaskState.COMPLETED
        if task.future is not None and not task.future.done():
            task.future.set_result(result)
        logger.debug(f"[QUEUE] Task {task.id} completed in {elapsed_ms:.0f}ms")

    def _on_failure(self, task: QueueTask, error: Exception, started: float) -> None:
        elapsed_ms = (self._clock() - started) * 1000
        self._failed += 1
        self._record_processing_time(elapsed_ms)
        self.record_failure()
        logger.warning(
            f"[QUEUE] Task {task.id} failed ({type(error).__name__}: {error}), "
            f"delay now {self.current_delay:.1f}s"
        )

        if task.retry_count < self._settings.max_retries and self._requeue(task):
            return

        task.state = TaskState.ABANDONED
        self._abandoned += 1
        if not isinstance(error, UpstreamError):
            wrapped = UpstreamError(f"Task {task.id} failed: {error}")
            wrapped.__cause__ = error
            error = wrapped
        if task.future is not None and not task.future.done():
            task.future.set_exception(error)
        logger.error(f"[QUEUE] Task {task.id} abandoned after {task.retry_count} retries")

    def _record_processing_time(self, elapsed_ms: float) -> None:
        finished = self._completed + self._failed
        self._avg_processing_ms += (elapsed_ms - self._avg_processing_ms) / finished

    # ─── Rate limiting ───

    def record_success(self) -> None:
        """Reset the failure streak and let the delay decay toward the floor."""
        self.consecutive_failures = 0
        self.current_delay = max(self._settings.min_delay_s, self.current_delay * 0.9)

    def record_failure(self) -> None:
        """Grow the delay exponentially with the failure streak."""
        self.consecutive_failures += 1
        self.current_delay = min(
            self._settings.max_delay_s,
            self.current_delay * 2**self.consecutive_failures,
        )

    def adjust_rate_limiting(self) -> float:
        """Tune the delay from the overall failure ratio. Returns the new delay."""
        finished = self._completed + self._failed
        if finished == 0:
            return self.current_delay

        failure_ratio = self._failed / finished
        if failure_ratio > 0.3:
            self.current_delay = min(self._settings.max_delay_s, self.current_delay * 1.5)
            logger.warning(
                f"[QUEUE] High failure rate ({failure_ratio:.1%}), "
                f"increasing delay to {self.current_delay:.1f}s"
            )
        elif failure_ratio < 0.05 and len(self) > 10:
            self.current_delay = max(self._settings.min_delay_s, self.current_delay * 0.8)
            logger.info(
                f"[QUEUE] Low failure rate, decreasing delay to {self.current_delay:.1f}s"
            )
        return self.current_delay

    # ─── Admin ───

    def clear(self) -> int:
        """Drop every pending task. Their futures resolve with QueueFullError."""
        cleared = 0
        for queue in self._queues.values():
            while queue:
                task = queue.popleft()
                task.state = TaskState.DROPPED
                if task.future is not None and not task.future.done():
                    task.future.set_exception(QueueFullError("queue cleared"))
                cleared += 1
        self._pending_keys.clear()
        logger.info(f"[QUEUE] All queues cleared ({cleared} tasks)")
        return cleared

    def metrics(self) -> QueueMetrics:
        now = self._clock()
        while self._completion_times and now - self._completion_times[0] > PROCESSING_RATE_WINDOW_S:
            self._completion_times.popleft()

        return QueueMetrics(
            total_tasks=self._total,
            completed_tasks=self._completed,
            failed_tasks=self._failed,
            abandoned_tasks=self._abandoned,
            dropped_tasks=self._dropped,
            avg_processing_ms=round(self._avg_processing_ms, 1),
            queue_length=len(self),
            queue_length_by_priority={p.name: len(q) for p, q in self._queues.items()},
            active_tasks=self._active,
            current_delay_s=round(self.current_delay, 3),
            consecutive_failures=self.consecutive_failures,
            processing_rate=float(len(self._completion_times)),
        )

    def status(self) -> dict[str, Any]:
        """Per-priority lengths, metrics and operator recommendations."""
        metrics = self.metrics()
        return {
            "queues": [
                {"priority": name, "length": length}
                for name, length in metrics.queue_length_by_priority.items()
            ],
            "metrics": metrics.model_dump(),
            "recommendations": self.recommendations(metrics),
        }

    def recommendations(self, metrics: QueueMetrics) -> list[str]:
        recommendations = []
        if metrics.queue_length > self._settings.max_size * 0.8:
            recommendations.append("Queue backlog is high. Consider clearing low priority tasks.")
        if metrics.failure_ratio > 0.2:
            recommendations.append("High failure rate detected. Check Overpass server status.")
        if metrics.queue_length > 0 and metrics.processing_rate < 1:
            recommendations.append("Processing rate is low. Consider adjusting rate limits.")
        if not recommendations:
            recommendations.append("System is operating normally.")
        return recommendations
