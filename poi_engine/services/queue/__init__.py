"""Request queue module."""

from .service import AreaRequest, QueueTask, RequestQueue, TaskKind, TaskState

__all__ = ["AreaRequest", "QueueTask", "RequestQueue", "TaskKind", "TaskState"]
