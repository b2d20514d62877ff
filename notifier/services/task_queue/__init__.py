from .base import QueueNotFoundError, QueuePolicy, TaskHandle, TaskQueue
from .celery_queue import DISPATCH_TASK_NAME, CeleryTaskQueue

__all__ = [
    "QueueNotFoundError",
    "QueuePolicy",
    "TaskHandle",
    "TaskQueue",
    "CeleryTaskQueue",
    "DISPATCH_TASK_NAME",
]
