from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime

from notifier.config.settings import Settings, settings as default_settings


class QueueNotFoundError(Exception):
    """The target queue does not exist (deleted or never created)."""


@dataclass(frozen=True)
class TaskHandle:
    task_id: str
    queue_name: str
    scheduled_for: datetime


@dataclass(frozen=True)
class QueuePolicy:
    """Retry/backoff and dispatch-rate limits applied to the dispatch queue"""

    max_attempts: int
    min_backoff_seconds: int
    max_backoff_seconds: int
    max_doublings: int
    dispatch_rate: str
    max_burst: int

    @classmethod
    def from_settings(cls, settings: Settings = default_settings) -> "QueuePolicy":
        return cls(
            max_attempts=settings.TASK_MAX_ATTEMPTS,
            min_backoff_seconds=settings.TASK_MIN_BACKOFF_SECONDS,
            max_backoff_seconds=settings.TASK_MAX_BACKOFF_SECONDS,
            max_doublings=settings.TASK_MAX_DOUBLINGS,
            dispatch_rate=settings.TASK_DISPATCH_RATE,
            max_burst=settings.TASK_MAX_BURST,
        )

    @property
    def max_retries(self) -> int:
        return max(0, self.max_attempts - 1)

    def backoff_for(self, retries: int) -> int:
        """Delay before retry number ``retries + 1``: doubles from the minimum, capped."""
        doublings = min(max(0, retries), self.max_doublings)
        return min(self.max_backoff_seconds, self.min_backoff_seconds * (2**doublings))


class TaskQueue(ABC):
    """Durable, delayed task submission"""

    queue_name: str
    policy: QueuePolicy

    @abstractmethod
    def ensure_queue(self) -> bool:
        """Create the queue if absent. True when the queue is ready."""
        pass

    @abstractmethod
    def enqueue(self, body: str, scheduled_for: datetime, task_id: str) -> TaskHandle:
        """
        Submit one task carrying the opaque ``body``, due at ``scheduled_for``.

        Raises QueueNotFoundError when the queue is missing.
        """
        pass
