import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from notifier.db.models import QuotaTier
from notifier.schemas.dispatch_schemas import HABIT_REMINDER, NotificationPayload
from notifier.schemas.reminder_schemas import HabitReminder
from notifier.services.device_registry import DeviceRegistry
from notifier.services.quota_service import AdmissionDecision, QuotaService, WorkKind
from notifier.services.scheduler_service import NotificationScheduler
from notifier.utils.datetime_utils import local_date_for_offset, local_to_utc, to_utc, utc_now
from notifier.utils.logging import get_logger

logger = get_logger()


@dataclass(frozen=True)
class ScheduledReminder:
    notification_id: str
    reminder: HabitReminder
    scheduled_for: datetime


class HabitReminderService:
    """
    Schedules the first occurrence of each habit reminder.

    Daily reminders carry ``recurrence = daily``; the dispatch handler
    enqueues the following day's occurrence after delivering each one.
    Habit reminders do not count against the notification quota, but
    anonymous users cannot schedule them.
    """

    def __init__(
        self,
        quota: QuotaService,
        device_registry: DeviceRegistry,
        scheduler: NotificationScheduler,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.quota = quota
        self.device_registry = device_registry
        self.scheduler = scheduler
        self.clock = clock

    def schedule_reminders(
        self,
        user_id: str,
        tier: QuotaTier,
        habit_id: str,
        reminders: List[HabitReminder],
        habit_title: Optional[str] = None,
        time_zone_offset_minutes: Optional[int] = None,
    ) -> List[ScheduledReminder]:
        admission = self.quota.evaluate(None, tier, WorkKind.SCHEDULED_NOTIFICATION)
        if admission.decision == AdmissionDecision.DENY:
            # Only the anonymous tier is denied without a record
            self.quota.raise_denied(admission)

        offset = self._resolve_offset(user_id, time_zone_offset_minutes)
        now = to_utc(self.clock())

        scheduled: List[ScheduledReminder] = []
        for reminder in reminders:
            when = self.next_occurrence(reminder, offset, now)
            notification_id = str(uuid.uuid4())
            payload = NotificationPayload(
                user_id=user_id,
                notification_id=notification_id,
                notification_payload=reminder.message,
                window_type=HABIT_REMINDER,
                quota_flag=False,
                recurrence=reminder.frequency,
                scheduled_for=when,
                habit_id=habit_id,
                title=habit_title,
            )
            self.scheduler.enqueue_payload(payload, when)
            scheduled.append(
                ScheduledReminder(
                    notification_id=notification_id, reminder=reminder, scheduled_for=when
                )
            )

        logger.info(
            f"Scheduled {len(scheduled)} reminders for habit {habit_id} of user {user_id}"
        )
        return scheduled

    @staticmethod
    def next_occurrence(
        reminder: HabitReminder, offset_minutes: int, now: datetime
    ) -> datetime:
        """Today at HH:MM local time, or tomorrow when that has already passed."""
        local_day = local_date_for_offset(now, offset_minutes)
        when = local_to_utc(local_day, reminder.hour, reminder.minute, offset_minutes)
        if when <= now:
            when += timedelta(days=1)
        return when

    def _resolve_offset(self, user_id: str, requested: Optional[int]) -> int:
        if requested is not None:
            return requested
        device = self.device_registry.first_time_zone_offset(user_id)
        if device is None:
            return 0
        return device.time_zone_offset_minutes or 0
