from datetime import datetime
from enum import Enum
from typing import Optional

from notifier.schemas.dispatch_schemas import NotificationPayload
from notifier.services.idempotency_service import ClaimResult, IdempotencyService
from notifier.services.payload_codec import encode_dispatch_body
from notifier.services.task_queue.base import QueueNotFoundError, TaskHandle, TaskQueue
from notifier.services.window_calculator import PlannedWindow
from notifier.utils.datetime_utils import to_utc
from notifier.utils.errors import describe_error
from notifier.utils.logging import get_logger

logger = get_logger()


class ScheduleOutcome(str, Enum):
    SCHEDULED = "scheduled"
    ALREADY_CLAIMED = "already_claimed"
    FAILED = "failed"


class NotificationScheduler:
    """
    Turns planned windows into durable dispatch tasks.

    The marker claim happens first and the enqueue second. The two are not
    atomic: when the claim succeeds and the enqueue fails, the marker is
    left ``failed`` and the window is skipped for that day.
    """

    def __init__(self, task_queue: TaskQueue, idempotency: IdempotencyService):
        self.task_queue = task_queue
        self.idempotency = idempotency
        self._ready = False

    def ensure_ready(self) -> bool:
        if not self._ready:
            self._ready = self.task_queue.ensure_queue()
        return self._ready

    def schedule(self, window: PlannedWindow) -> ScheduleOutcome:
        user_id = window.user_id
        claim = self.idempotency.try_claim(user_id, window.local_date, window.window_type)
        if claim == ClaimResult.ALREADY_CLAIMED:
            logger.info(
                f"{window.window_type} for {user_id} on {window.local_date} already claimed"
            )
            return ScheduleOutcome.ALREADY_CLAIMED

        try:
            handle = self.enqueue_payload(window.payload, window.scheduled_for)
        except Exception as e:
            logger.error(
                f"Claimed {window.window_type} for {user_id} on {window.local_date} "
                f"but could not enqueue; window skipped for the day: {describe_error(e)}"
            )
            try:
                self.idempotency.mark_failed(
                    user_id, window.local_date, window.window_type, window.scheduled_for
                )
            except Exception as mark_error:
                logger.error(
                    f"Could not record failed marker for {user_id}: {describe_error(mark_error)}"
                )
            return ScheduleOutcome.FAILED

        self.idempotency.mark_scheduled(
            user_id,
            window.local_date,
            window.window_type,
            window.scheduled_for,
            task_id=handle.task_id,
        )
        logger.info(
            f"Scheduled {window.window_type} for {user_id} at "
            f"{handle.scheduled_for.isoformat()} (task {handle.task_id})"
        )
        return ScheduleOutcome.SCHEDULED

    def enqueue_payload(
        self, payload: NotificationPayload, scheduled_for: Optional[datetime] = None
    ) -> TaskHandle:
        """
        Enqueue one dispatch task without touching markers.

        A missing queue is recreated once and the enqueue retried once.
        """
        when = scheduled_for or payload.scheduled_for
        task_id = payload.notification_id
        if when is None or not task_id:
            raise ValueError("Payload needs a notification id and a delivery instant")
        due = to_utc(when)
        body = encode_dispatch_body(payload)

        try:
            return self.task_queue.enqueue(body, due, task_id)
        except QueueNotFoundError:
            logger.warning(
                f"Task queue {self.task_queue.queue_name} missing, recreating and retrying once"
            )
            self._ready = False
            if not self.ensure_ready():
                raise
            return self.task_queue.enqueue(body, due, task_id)
