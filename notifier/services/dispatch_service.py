import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from notifier.config.settings import Settings, settings as default_settings
from notifier.db.models import (
    DeviceRegistration,
    NotificationRecord,
    NotificationStatus,
    QuotaTier,
)
from notifier.schemas.dispatch_schemas import (
    HABIT_REMINDER,
    DispatchOutcomeResponse,
    DispatchStatus,
    NotificationPayload,
    Recurrence,
)
from notifier.schemas.push_schemas import (
    PlatformOverrides,
    PushMessage,
    PushNotificationContent,
)
from notifier.services.device_registry import DeviceRegistry
from notifier.services.payload_codec import (
    decode_dispatch_body,
    successor_notification_id,
)
from notifier.services.push.base import PushBatchError, PushSender
from notifier.services.quota_service import QuotaService, WorkKind
from notifier.services.scheduler_service import NotificationScheduler
from notifier.utils.datetime_utils import to_naive_utc, to_utc, utc_now
from notifier.utils.errors import TransientDispatchError, describe_error
from notifier.utils.logging import get_logger

logger = get_logger()

HABIT_REMINDER_TITLE = "Habit Reminder"
HABIT_REMINDER_CHANNEL = "habit_reminders"


@dataclass(frozen=True)
class NextOccurrence:
    notification_id: str
    scheduled_for: datetime
    payload: NotificationPayload
    enqueued: bool = False


@dataclass
class DispatchOutcome:
    status: DispatchStatus
    notification_id: str
    record_status: Optional[NotificationStatus] = None
    success_count: int = 0
    failure_count: int = 0
    removed_tokens: List[str] = field(default_factory=list)
    next_occurrence: Optional[NextOccurrence] = None

    def to_response(self) -> DispatchOutcomeResponse:
        return DispatchOutcomeResponse(
            status=self.status,
            notification_id=self.notification_id,
            record_status=self.record_status.value if self.record_status else None,
            success_count=self.success_count,
            failure_count=self.failure_count,
            removed_tokens=self.removed_tokens,
            next_notification_id=(
                self.next_occurrence.notification_id if self.next_occurrence else None
            ),
            next_scheduled_for=(
                self.next_occurrence.scheduled_for if self.next_occurrence else None
            ),
        )


@dataclass
class SendSummary:
    success_count: int = 0
    failure_count: int = 0
    removed_tokens: List[str] = field(default_factory=list)


class DispatchService:
    """
    Delivers one scheduled notification.

    The notification record is written (``pending``) before any push is
    attempted; it is what the app shows in-app, so every path that gets past
    decoding and admission ends with a finalized record. Finalizing and
    counting quota happen in one transaction guarded by
    ``quota_counted = false``; a redelivered task therefore finds the record
    finalized and does nothing.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        device_registry: DeviceRegistry,
        quota: QuotaService,
        push_sender: PushSender,
        scheduler: NotificationScheduler,
        settings: Settings = default_settings,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.session_factory = session_factory
        self.device_registry = device_registry
        self.quota = quota
        self.push_sender = push_sender
        self.scheduler = scheduler
        self.clock = clock

        self.batch_size = settings.PUSH_BATCH_SIZE
        self.send_timeout = settings.PUSH_SEND_TIMEOUT_SECONDS
        self.default_title = settings.PUSH_NOTIFICATION_TITLE
        self.safety_margin = timedelta(seconds=settings.SCHEDULE_SAFETY_MARGIN_SECONDS)
        self.quota_window_types = {slot.type for slot in settings.NOTIFICATION_WINDOWS}

    async def handle(
        self,
        body: Union[bytes, str, Dict[str, Any], None],
        final_attempt: bool = False,
    ) -> DispatchOutcome:
        """Decode a raw task body and dispatch it. Raises PayloadDecodeError on bad input."""
        payload = decode_dispatch_body(body)
        return await self.dispatch(payload, final_attempt=final_attempt)

    async def dispatch(
        self, payload: NotificationPayload, final_attempt: bool = False
    ) -> DispatchOutcome:
        """
        Deliver ``payload`` and finalize its record.

        A push outage with nothing delivered raises TransientDispatchError so
        the queue retries; on the ``final_attempt`` the record is finalized as
        ``in_app_only`` instead, counting quota like any other delivery.
        """
        notification_id = str(payload.notification_id)
        user_id = payload.user_id
        counts_quota = payload.window_type in self.quota_window_types

        tier = self.quota.classify(user_id)

        record = self._get_record(notification_id)
        if record is not None and record.status != NotificationStatus.PENDING:
            return self._duplicate(record)

        if record is None:
            if counts_quota:
                admission = self.quota.admit(user_id, tier, WorkKind.SCHEDULED_NOTIFICATION)
                if not admission.allowed:
                    logger.info(
                        f"Not delivering {notification_id} to {user_id}: {admission.reason}"
                    )
                    return DispatchOutcome(
                        status=DispatchStatus.SKIPPED_QUOTA,
                        notification_id=notification_id,
                    )

            record, created = self._persist_pending(payload)
            if not created and record.status != NotificationStatus.PENDING:
                return self._duplicate(record)
        else:
            logger.info(f"Resuming pending notification {notification_id} for {user_id}")

        devices = self.device_registry.list_for_user(user_id)
        enabled = [d for d in devices if d.notifications_enabled]
        logger.info(
            f"Found {len(devices)} devices, {len(enabled)} enabled for user {user_id}"
        )

        summary = SendSummary()
        if enabled:
            summary = await self._send(
                payload, notification_id, enabled, final_attempt=final_attempt
            )

        final_status = (
            NotificationStatus.DELIVERED
            if summary.success_count > 0
            else NotificationStatus.IN_APP_ONLY
        )
        finalized = self._finalize(
            notification_id, user_id, tier, final_status, summary, counts_quota
        )
        if not finalized:
            # Another invocation finalized it between our read and write
            record = self._get_record(notification_id)
            if record is not None and record.status != NotificationStatus.PENDING:
                outcome = self._duplicate(record)
                outcome.removed_tokens = summary.removed_tokens
                return outcome

        next_occurrence = None
        if finalized:
            next_occurrence = self._chain_next_occurrence(payload)

        logger.info(
            f"Notification {notification_id} for {user_id} finalized as "
            f"{final_status.value}: {summary.success_count} sent, "
            f"{summary.failure_count} failed, {len(summary.removed_tokens)} tokens removed"
        )
        return DispatchOutcome(
            status=DispatchStatus.PROCESSED,
            notification_id=notification_id,
            record_status=final_status,
            success_count=summary.success_count,
            failure_count=summary.failure_count,
            removed_tokens=summary.removed_tokens,
            next_occurrence=next_occurrence,
        )

    def next_occurrence_for(self, payload: NotificationPayload) -> Optional[NextOccurrence]:
        """Successor of a daily notification: same time of day, next day, stable id."""
        if payload.recurrence != Recurrence.DAILY:
            return None

        now = to_utc(self.clock())
        base = to_utc(payload.scheduled_for) if payload.scheduled_for else now
        next_at = base + timedelta(days=1)
        while next_at <= now + self.safety_margin:
            next_at += timedelta(days=1)

        next_id = successor_notification_id(str(payload.notification_id))
        next_payload = payload.model_copy(
            update={
                "notification_id": next_id,
                "scheduled_for": next_at,
                "quota_flag": False,
            }
        )
        return NextOccurrence(
            notification_id=next_id, scheduled_for=next_at, payload=next_payload
        )

    def build_message(
        self,
        payload: NotificationPayload,
        notification_id: str,
        device_token: str,
        badge_count: int,
    ) -> PushMessage:
        is_habit = payload.window_type == HABIT_REMINDER
        title = payload.title or (HABIT_REMINDER_TITLE if is_habit else self.default_title)

        data = {
            "type": payload.window_type,
            "payload": payload.notification_payload,
            "timestamp": to_utc(self.clock()).isoformat(),
            "recordId": notification_id,
            "badgeCount": str(badge_count),
            "limitReached": str(payload.quota_flag).lower(),
        }
        if payload.habit_id:
            data["habitId"] = payload.habit_id

        return PushMessage(
            token=device_token,
            notification=PushNotificationContent(
                title=title, body=payload.notification_payload
            ),
            data=data,
            platform_overrides=PlatformOverrides(
                priority="high" if is_habit else "normal",
                sound="default",
                badge=badge_count,
                **({"channel_id": HABIT_REMINDER_CHANNEL} if is_habit else {}),
            ),
        )

    async def _send(
        self,
        payload: NotificationPayload,
        notification_id: str,
        devices: List[DeviceRegistration],
        final_attempt: bool = False,
    ) -> SendSummary:
        summary = SendSummary()

        messages: List[PushMessage] = []
        for device in devices:
            try:
                badge = self.device_registry.increment_badge(
                    device.device_token, notification_id
                )
            except SQLAlchemyError as e:
                logger.error(
                    f"Badge update failed for device {device.device_token[:8]}..., "
                    f"skipping it: {describe_error(e)}"
                )
                continue
            if badge is None:
                continue
            messages.append(
                self.build_message(payload, notification_id, device.device_token, badge)
            )

        for start in range(0, len(messages), self.batch_size):
            batch = messages[start : start + self.batch_size]
            try:
                results = await asyncio.wait_for(
                    self.push_sender.send_batch(batch), timeout=self.send_timeout
                )
            except (PushBatchError, asyncio.TimeoutError) as e:
                if summary.success_count == 0 and not final_attempt:
                    raise TransientDispatchError(
                        f"Push batch failed for notification {notification_id}: "
                        f"{describe_error(e)}"
                    ) from e
                logger.error(
                    f"Push batch of {len(batch)} failed for {notification_id} "
                    f"({summary.success_count} sent so far, final attempt: {final_attempt}): "
                    f"{describe_error(e)}"
                )
                summary.failure_count += len(batch)
                continue

            for result in results:
                if result.success:
                    summary.success_count += 1
                    continue

                summary.failure_count += 1
                logger.warning(
                    f"Push to {result.token[:8]}... failed: "
                    f"{result.error_code} {result.error_message or ''}"
                )
                if result.invalid_token and self.device_registry.delete(result.token):
                    summary.removed_tokens.append(result.token)

        return summary

    def list_records(
        self, user_id: str, limit: int = 50, offset: int = 0
    ) -> List[NotificationRecord]:
        """The user's in-app notifications, newest first."""
        with self.session_factory() as session:
            return list(
                session.scalars(
                    select(NotificationRecord)
                    .where(NotificationRecord.user_id == user_id)
                    .order_by(
                        NotificationRecord.created_at.desc(), NotificationRecord.id
                    )
                    .limit(limit)
                    .offset(offset)
                ).all()
            )

    def _get_record(self, notification_id: str) -> Optional[NotificationRecord]:
        with self.session_factory() as session:
            return session.get(NotificationRecord, notification_id)

    def _persist_pending(
        self, payload: NotificationPayload
    ) -> Tuple[NotificationRecord, bool]:
        notification_id = str(payload.notification_id)
        is_habit = payload.window_type == HABIT_REMINDER
        record = NotificationRecord(
            id=notification_id,
            user_id=payload.user_id,
            notification_type=payload.window_type,
            title=payload.title
            or (HABIT_REMINDER_TITLE if is_habit else self.default_title),
            body=payload.notification_payload,
            payload=json.dumps(
                payload.model_dump(mode="json", by_alias=True, exclude_none=True)
            ),
            status=NotificationStatus.PENDING,
            limit_reached=payload.quota_flag,
            quota_counted=False,
            created_at=to_naive_utc(self.clock()),
        )
        try:
            with self.session_factory() as session, session.begin():
                session.add(record)
            logger.info(f"Saved pending notification {notification_id} for {payload.user_id}")
            return record, True
        except IntegrityError:
            existing = self._get_record(notification_id)
            if existing is None:
                raise
            return existing, False

    def _finalize(
        self,
        notification_id: str,
        user_id: str,
        tier: QuotaTier,
        status: NotificationStatus,
        summary: SendSummary,
        counts_quota: bool,
    ) -> bool:
        if counts_quota:
            self.quota.ensure_record(user_id, tier)

        with self.session_factory() as session, session.begin():
            result = session.execute(
                update(NotificationRecord)
                .where(
                    NotificationRecord.id == notification_id,
                    NotificationRecord.status == NotificationStatus.PENDING,
                    NotificationRecord.quota_counted.is_(False),
                )
                .values(
                    status=status,
                    quota_counted=True,
                    success_count=summary.success_count,
                    failure_count=summary.failure_count,
                    finalized_at=to_naive_utc(self.clock()),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return False

            if counts_quota:
                self.quota.apply_usage(
                    session, user_id, tier, WorkKind.SCHEDULED_NOTIFICATION
                )
        return True

    def _chain_next_occurrence(
        self, payload: NotificationPayload
    ) -> Optional[NextOccurrence]:
        next_occurrence = self.next_occurrence_for(payload)
        if next_occurrence is None:
            return None

        try:
            self.scheduler.enqueue_payload(
                next_occurrence.payload, next_occurrence.scheduled_for
            )
        except Exception as e:
            logger.error(
                f"Could not enqueue next occurrence {next_occurrence.notification_id} "
                f"of {payload.notification_id}; the daily chain stops here: "
                f"{describe_error(e)}"
            )
            return next_occurrence

        logger.info(
            f"Next occurrence {next_occurrence.notification_id} scheduled for "
            f"{next_occurrence.scheduled_for.isoformat()}"
        )
        return NextOccurrence(
            notification_id=next_occurrence.notification_id,
            scheduled_for=next_occurrence.scheduled_for,
            payload=next_occurrence.payload,
            enqueued=True,
        )

    def _duplicate(self, record: NotificationRecord) -> DispatchOutcome:
        logger.info(
            f"Notification {record.id} already {record.status.value}, nothing to do"
        )
        return DispatchOutcome(
            status=DispatchStatus.DUPLICATE,
            notification_id=record.id,
            record_status=record.status,
            success_count=record.success_count,
            failure_count=record.failure_count,
        )
