from datetime import datetime
from typing import Optional

from celery import Celery
from kombu import Exchange, Queue

from notifier.config.settings import Settings, settings as default_settings
from notifier.utils.datetime_utils import to_utc
from notifier.utils.errors import describe_error
from notifier.utils.logging import get_logger

from .base import QueueNotFoundError, QueuePolicy, TaskHandle, TaskQueue

logger = get_logger()

DISPATCH_TASK_NAME = (
    "notifier.tasks.background.notification_dispatch.dispatch_notification_task"
)


def build_dispatch_queue(queue_name: str) -> Queue:
    return Queue(
        queue_name,
        Exchange(queue_name, type="direct", durable=True),
        routing_key=queue_name,
        durable=True,
    )


def is_not_found_error(exc: BaseException) -> bool:
    """Broker reported a missing queue or exchange (AMQP 404 / virtual transport NOT_FOUND)."""
    code = getattr(exc, "code", None) or getattr(exc, "reply_code", None)
    if code in (404, "404"):
        return True
    return "NOT_FOUND" in str(exc)


class CeleryTaskQueue(TaskQueue):
    """TaskQueue on the Celery broker; tasks are delayed with ``eta``."""

    def __init__(
        self,
        celery: Celery,
        settings: Settings = default_settings,
        policy: Optional[QueuePolicy] = None,
    ):
        self.celery = celery
        self.queue_name = settings.TASK_QUEUE_NAME
        self.policy = policy or QueuePolicy.from_settings(settings)
        self.timeout = settings.QUEUE_OPERATION_TIMEOUT_SECONDS
        self.queue = build_dispatch_queue(self.queue_name)

    def ensure_queue(self) -> bool:
        try:
            with self.celery.connection_for_write() as conn:
                conn.ensure_connection(max_retries=1, timeout=self.timeout)
                try:
                    self.queue(conn.channel()).queue_declare(passive=True)
                    logger.debug(f"Task queue {self.queue_name} exists")
                    return True
                except conn.channel_errors as e:
                    if not is_not_found_error(e):
                        raise

                # A failed passive declare closes the channel on AMQP brokers
                self.queue(conn.channel()).declare()
                logger.info(
                    f"Created task queue {self.queue_name} "
                    f"(max_attempts={self.policy.max_attempts}, "
                    f"rate={self.policy.dispatch_rate})"
                )
                return True
        except Exception as e:
            logger.error(
                f"Could not ensure task queue {self.queue_name}: {describe_error(e)}"
            )
            return False

    def enqueue(self, body: str, scheduled_for: datetime, task_id: str) -> TaskHandle:
        eta = to_utc(scheduled_for)
        try:
            self.celery.send_task(
                DISPATCH_TASK_NAME,
                args=[task_id, body],
                task_id=task_id,
                eta=eta,
                queue=self.queue,
                retry=True,
                retry_policy={"max_retries": 1, "timeout": self.timeout},
            )
        except Exception as e:
            if is_not_found_error(e):
                raise QueueNotFoundError(
                    f"Task queue {self.queue_name} does not exist"
                ) from e
            raise

        return TaskHandle(task_id=task_id, queue_name=self.queue_name, scheduled_for=eta)
