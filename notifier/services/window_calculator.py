import random
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Union

from notifier.config.settings import Settings, WindowSlot, settings as default_settings
from notifier.db.models import QuotaTier, User, UserQuotaRecord
from notifier.schemas.dispatch_schemas import NotificationPayload, Recurrence
from notifier.services.content_service import ContentGenerator, fallback_message
from notifier.services.device_registry import DeviceRegistry
from notifier.services.idempotency_service import IdempotencyService
from notifier.utils.auth import AuthUtils
from notifier.utils.datetime_utils import local_date_for_offset, local_to_utc, to_utc, utc_now
from notifier.utils.errors import describe_error
from notifier.utils.logging import get_logger

logger = get_logger()


@dataclass(frozen=True)
class TimeZoneKnown:
    offset_minutes: int
    device_token: str


@dataclass(frozen=True)
class TimeZoneUnknown:
    """No registered device reports an offset; windows are computed in UTC."""

    offset_minutes: int = 0


TimeZoneResolution = Union[TimeZoneKnown, TimeZoneUnknown]


@dataclass(frozen=True)
class PlannedWindow:
    window_type: str
    local_date: str
    scheduled_for: datetime
    payload: NotificationPayload

    @property
    def user_id(self) -> str:
        return self.payload.user_id


@dataclass
class UserPlan:
    user_id: str
    tier: Optional[QuotaTier] = None
    windows: List[PlannedWindow] = field(default_factory=list)
    skip_reason: Optional[str] = None
    already_claimed: int = 0
    time_zone: Optional[TimeZoneResolution] = None


class WindowCalculator:
    """
    Decides which notification windows a user gets today and when.

    For every configured slot the delivery instant is a uniformly random
    minute inside the local window, converted to UTC. Instants that are
    already too close (the job ran late, or the user's local day started
    hours ago) are moved to ``now + safety margin`` instead of being dropped.
    """

    def __init__(
        self,
        device_registry: DeviceRegistry,
        idempotency: IdempotencyService,
        content_generator: ContentGenerator,
        settings: Settings = default_settings,
        clock: Callable[[], datetime] = utc_now,
        rng: Optional[random.Random] = None,
    ):
        self.device_registry = device_registry
        self.idempotency = idempotency
        self.content_generator = content_generator
        self.windows: List[WindowSlot] = list(settings.NOTIFICATION_WINDOWS)
        self.safety_margin = timedelta(seconds=settings.SCHEDULE_SAFETY_MARGIN_SECONDS)
        self.free_lifetime_limit = settings.FREE_NOTIFICATION_LIFETIME_LIMIT
        self.title = settings.PUSH_NOTIFICATION_TITLE
        self.clock = clock
        self.rng = rng or random.Random()

    def resolve_time_zone(self, user_id: str) -> TimeZoneResolution:
        device = self.device_registry.first_time_zone_offset(user_id)
        if device is None:
            logger.info(f"No device time zone for user {user_id}, using UTC")
            return TimeZoneUnknown()
        return TimeZoneKnown(
            offset_minutes=device.time_zone_offset_minutes or 0,
            device_token=device.device_token,
        )

    def plan_for_user(
        self,
        user_id: str,
        user: Optional[User],
        record: Optional[UserQuotaRecord],
        tier: QuotaTier,
        now: Optional[datetime] = None,
    ) -> UserPlan:
        now = to_utc(now or self.clock())
        plan = UserPlan(user_id=user_id, tier=tier)

        if user is None:
            plan.skip_reason = "missing_user"
            return plan
        if tier == QuotaTier.ANONYMOUS or AuthUtils.is_anonymous_provider(
            user.auth_provider
        ):
            plan.skip_reason = "unverified"
            return plan

        used = record.lifetime_notification_count if record else 0
        slots = self.windows
        if tier == QuotaTier.FREE:
            remaining = max(0, self.free_lifetime_limit - used)
            if remaining == 0:
                logger.info(
                    f"Skipping free user {user_id}: lifetime limit reached "
                    f"({used}/{self.free_lifetime_limit})"
                )
                plan.skip_reason = "lifetime_limit"
                return plan
            slots = slots[:remaining]

        plan.time_zone = self.resolve_time_zone(user_id)
        offset = plan.time_zone.offset_minutes
        local_day = local_date_for_offset(now, offset)
        local_date = local_day.isoformat()

        for slot in slots:
            if self.idempotency.is_claimed(user_id, local_date, slot.type):
                logger.debug(f"{slot.type} already scheduled for {user_id} on {local_date}")
                plan.already_claimed += 1
                continue

            scheduled_for = self.pick_instant(slot, local_day, offset, now)

            quota_flag = False
            if tier == QuotaTier.FREE:
                quota_flag = used + len(plan.windows) + 1 >= self.free_lifetime_limit

            plan.windows.append(
                PlannedWindow(
                    window_type=slot.type,
                    local_date=local_date,
                    scheduled_for=scheduled_for,
                    payload=NotificationPayload(
                        user_id=user_id,
                        notification_id=str(uuid.uuid4()),
                        notification_payload=self.generate_message(user_id, slot.type),
                        window_type=slot.type,
                        quota_flag=quota_flag,
                        recurrence=Recurrence.ONCE,
                        scheduled_for=scheduled_for,
                        title=self.title,
                    ),
                )
            )

        return plan

    def pick_instant(
        self, slot: WindowSlot, local_day, offset_minutes: int, now: datetime
    ) -> datetime:
        """Random instant in the slot (UTC), clamped to no earlier than now + margin."""
        window_minutes = (slot.end_hour - slot.start_hour) * 60
        random_minutes = self.rng.randrange(window_minutes)
        instant = local_to_utc(local_day, slot.start_hour, random_minutes, offset_minutes)

        earliest = to_utc(now) + self.safety_margin
        if instant < earliest:
            logger.debug(
                f"{slot.type} instant {instant.isoformat()} is too soon, "
                f"moving to {earliest.isoformat()}"
            )
            return earliest
        return instant

    def generate_message(self, user_id: str, window_type: str) -> str:
        try:
            return self.content_generator.generate_message(user_id, window_type)
        except Exception as e:
            logger.warning(
                f"Content generation failed for {user_id} ({window_type}), "
                f"using fallback: {describe_error(e)}"
            )
            return fallback_message(window_type)
