import asyncio
import inspect
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any, Callable, List, NoReturn, Optional, Protocol

from sqlalchemy import case, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from notifier.config.settings import settings
from notifier.db.models import QuotaTier, Subscription, User, UserQuotaRecord
from notifier.utils.auth import AuthUtils
from notifier.utils.datetime_utils import to_naive_utc, utc_now
from notifier.utils.errors import QuotaExceededError, describe_error
from notifier.utils.logging import get_logger

logger = get_logger()


class WorkKind(str, Enum):
    CHAT_MESSAGE = "chat_message"
    SCHEDULED_NOTIFICATION = "scheduled_notification"


class AdmissionDecision(str, Enum):
    ALLOW = "allow"
    ALLOW_WITH_DELAY = "allow_with_delay"
    DENY = "deny"


ANONYMOUS_LIMIT = "anonymous_limit"
FREE_TIER_LIMIT = "free_tier_limit"


@dataclass(frozen=True)
class Admission:
    decision: AdmissionDecision
    reason: Optional[str] = None
    delay_seconds: float = 0.0

    @property
    def allowed(self) -> bool:
        return self.decision != AdmissionDecision.DENY


class SubscriptionDirectory(Protocol):
    def is_premium(self, user_id: str) -> bool: ...


class DatabaseSubscriptionDirectory:
    """Premium when any configured product has an unexpired subscription."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        product_ids: Optional[List[str]] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.session_factory = session_factory
        self.product_ids = list(product_ids or settings.PREMIUM_PRODUCT_IDS)
        self.clock = clock

    def is_premium(self, user_id: str) -> bool:
        now = to_naive_utc(self.clock())
        with self.session_factory() as session:
            active = session.execute(
                select(Subscription.id)
                .where(
                    Subscription.user_id == user_id,
                    Subscription.product_id.in_(self.product_ids),
                    Subscription.expires_at.is_not(None),
                    Subscription.expires_at > now,
                )
                .limit(1)
            ).first()
        return active is not None


class QuotaService:
    """Tier classification, admission and usage counters."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        subscriptions: SubscriptionDirectory,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.session_factory = session_factory
        self.subscriptions = subscriptions
        self.clock = clock

        self.anonymous_message_limit = settings.ANONYMOUS_MESSAGE_LIMIT
        self.free_message_limit = settings.FREE_MESSAGE_LIMIT
        self.free_notification_limit = settings.FREE_NOTIFICATION_LIFETIME_LIMIT
        self.premium_daily_ceiling = settings.PREMIUM_DAILY_CEILING
        self.premium_penalty_delay = settings.PREMIUM_PENALTY_DELAY_SECONDS

    def classify(self, user_id: str, is_anonymous: Optional[bool] = None) -> QuotaTier:
        """
        Resolve the user's tier.

        ``is_anonymous`` comes from the verified token when available;
        otherwise the user's auth provider is looked up. Any lookup failure
        classifies as free.
        """
        try:
            if is_anonymous is None:
                is_anonymous = self._is_anonymous_user(user_id)

            if is_anonymous:
                tier = QuotaTier.ANONYMOUS
            elif self.subscriptions.is_premium(user_id):
                tier = QuotaTier.PREMIUM
            else:
                tier = QuotaTier.FREE
        except Exception as e:
            logger.warning(
                f"Tier lookup failed for {user_id}, classifying as free: {describe_error(e)}"
            )
            return QuotaTier.FREE

        self._cache_tier(user_id, tier)
        return tier

    def admit(
        self,
        user_id: str,
        tier: QuotaTier,
        work_kind: WorkKind,
        today: Optional[date] = None,
    ) -> Admission:
        with self.session_factory() as session:
            record = session.get(UserQuotaRecord, user_id)
        return self.evaluate(record, tier, work_kind, today)

    def evaluate(
        self,
        record: Optional[UserQuotaRecord],
        tier: QuotaTier,
        work_kind: WorkKind,
        today: Optional[date] = None,
    ) -> Admission:
        """Admission decision against an already loaded quota record."""
        if work_kind == WorkKind.CHAT_MESSAGE:
            if tier == QuotaTier.ANONYMOUS:
                used = record.lifetime_message_count if record else 0
                if used >= self.anonymous_message_limit:
                    return Admission(AdmissionDecision.DENY, reason=ANONYMOUS_LIMIT)
                return Admission(AdmissionDecision.ALLOW)

            if tier == QuotaTier.FREE:
                used = record.lifetime_message_count if record else 0
                if used >= self.free_message_limit:
                    return Admission(AdmissionDecision.DENY, reason=FREE_TIER_LIMIT)
                return Admission(AdmissionDecision.ALLOW)

            if self.rolled_daily_count(record, today) >= self.premium_daily_ceiling:
                return Admission(
                    AdmissionDecision.ALLOW_WITH_DELAY,
                    reason="premium_daily_ceiling",
                    delay_seconds=self.premium_penalty_delay,
                )
            return Admission(AdmissionDecision.ALLOW)

        if tier == QuotaTier.ANONYMOUS:
            return Admission(AdmissionDecision.DENY, reason=ANONYMOUS_LIMIT)
        if tier == QuotaTier.FREE:
            used = record.lifetime_notification_count if record else 0
            if used >= self.free_notification_limit:
                return Admission(AdmissionDecision.DENY, reason=FREE_TIER_LIMIT)
        return Admission(AdmissionDecision.ALLOW)

    def remaining_notifications(self, record: Optional[UserQuotaRecord]) -> int:
        """Free-tier notifications left before the lifetime ceiling."""
        used = record.lifetime_notification_count if record else 0
        return max(0, self.free_notification_limit - used)

    def rolled_daily_count(
        self, record: Optional[UserQuotaRecord], today: Optional[date] = None
    ) -> int:
        if record is None:
            return 0
        if record.daily_count_date != self._day_key(today):
            return 0
        return record.daily_count

    def record_usage(
        self,
        user_id: str,
        tier: QuotaTier,
        work_kind: WorkKind,
        today: Optional[date] = None,
    ) -> None:
        self.ensure_record(user_id, tier)
        with self.session_factory() as session, session.begin():
            self.apply_usage(session, user_id, tier, work_kind, today)

    def claim_chat_message(
        self,
        user_id: str,
        tier: QuotaTier,
        today: Optional[date] = None,
    ) -> Admission:
        """
        Admit one chat message and count it in the same statement.

        Anonymous and free messages are claimed with a conditional increment
        that only matches while the lifetime count is under the limit, so two
        callers at limit - 1 cannot both be admitted. Premium messages are
        never denied; the ceiling only decides the penalty delay.
        """
        self.ensure_record(user_id, tier)

        with self.session_factory() as session, session.begin():
            if tier == QuotaTier.PREMIUM:
                record = session.get(UserQuotaRecord, user_id)
                admission = self.evaluate(record, tier, WorkKind.CHAT_MESSAGE, today)
                self.apply_usage(session, user_id, tier, WorkKind.CHAT_MESSAGE, today)
                return admission

            if tier == QuotaTier.ANONYMOUS:
                limit, reason = self.anonymous_message_limit, ANONYMOUS_LIMIT
            else:
                limit, reason = self.free_message_limit, FREE_TIER_LIMIT

            result = session.execute(
                update(UserQuotaRecord)
                .where(
                    UserQuotaRecord.user_id == user_id,
                    UserQuotaRecord.lifetime_message_count < limit,
                )
                .values(
                    lifetime_message_count=UserQuotaRecord.lifetime_message_count + 1,
                    last_active_at=to_naive_utc(self.clock()),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return Admission(AdmissionDecision.DENY, reason=reason)

        return Admission(AdmissionDecision.ALLOW)

    def apply_usage(
        self,
        session: Session,
        user_id: str,
        tier: QuotaTier,
        work_kind: WorkKind,
        today: Optional[date] = None,
    ) -> bool:
        """
        Increment the counter matching ``tier``/``work_kind`` inside ``session``.

        The update is a single SQL statement so concurrent callers cannot
        lose increments. Returns False when there is nothing to count.
        """
        values: dict[Any, Any] = {}

        if work_kind == WorkKind.CHAT_MESSAGE:
            if tier == QuotaTier.PREMIUM:
                day_key = self._day_key(today)
                values[UserQuotaRecord.daily_count] = case(
                    (
                        UserQuotaRecord.daily_count_date == day_key,
                        UserQuotaRecord.daily_count + 1,
                    ),
                    else_=1,
                )
                values[UserQuotaRecord.daily_count_date] = day_key
            else:
                values[UserQuotaRecord.lifetime_message_count] = (
                    UserQuotaRecord.lifetime_message_count + 1
                )
        else:
            if tier == QuotaTier.PREMIUM:
                values[UserQuotaRecord.total_notifications_received] = (
                    UserQuotaRecord.total_notifications_received + 1
                )
            elif tier == QuotaTier.FREE:
                values[UserQuotaRecord.lifetime_notification_count] = case(
                    (
                        UserQuotaRecord.lifetime_notification_count
                        < self.free_notification_limit,
                        UserQuotaRecord.lifetime_notification_count + 1,
                    ),
                    else_=UserQuotaRecord.lifetime_notification_count,
                )
            else:
                return False

        values[UserQuotaRecord.last_active_at] = to_naive_utc(self.clock())
        session.execute(
            update(UserQuotaRecord)
            .where(UserQuotaRecord.user_id == user_id)
            .values(values)
            .execution_options(synchronize_session=False)
        )
        return True

    async def run_admitted(
        self, admission: Admission, call: Optional[Callable[[], Any]] = None
    ) -> Any:
        """
        Run ``call`` under an admission decision.

        ``deny`` raises QuotaExceededError; ``allow_with_delay`` waits the
        penalty interval first. ``call`` may be sync or async, or omitted when
        the work was already counted.
        """
        if admission.decision == AdmissionDecision.DENY:
            self.raise_denied(admission)

        if admission.decision == AdmissionDecision.ALLOW_WITH_DELAY:
            logger.info(
                f"Premium daily ceiling reached, delaying for {admission.delay_seconds}s"
            )
            await asyncio.sleep(admission.delay_seconds)

        if call is None:
            return None

        result = call()
        if inspect.isawaitable(result):
            result = await result
        return result

    @staticmethod
    def raise_denied(admission: Admission) -> NoReturn:
        reason = admission.reason or FREE_TIER_LIMIT
        raise QuotaExceededError(_denial_message(reason), limit_type=reason)

    def ensure_record(self, user_id: str, tier: QuotaTier) -> None:
        """Create the quota record on first use."""
        with self.session_factory() as session:
            if session.get(UserQuotaRecord, user_id) is not None:
                return
            session.add(UserQuotaRecord(user_id=user_id, tier=tier))
            try:
                session.commit()
            except IntegrityError:
                # Created concurrently
                session.rollback()

    def ensure_user(self, user_id: str, auth_provider: Optional[str]) -> None:
        """Mirror a token subject into ``users`` the first time it calls the API."""
        with self.session_factory() as session:
            user = session.get(User, user_id)
            if user is not None:
                if auth_provider and user.auth_provider != auth_provider:
                    # Anonymous account linked to a real provider
                    user.auth_provider = auth_provider
                    session.commit()
                return
            session.add(User(id=user_id, auth_provider=auth_provider))
            try:
                session.commit()
            except IntegrityError:
                session.rollback()

    def get_record(self, user_id: str) -> Optional[UserQuotaRecord]:
        with self.session_factory() as session:
            return session.get(UserQuotaRecord, user_id)

    def _cache_tier(self, user_id: str, tier: QuotaTier) -> None:
        try:
            self.ensure_record(user_id, tier)
            with self.session_factory() as session, session.begin():
                session.execute(
                    update(UserQuotaRecord)
                    .where(
                        UserQuotaRecord.user_id == user_id,
                        UserQuotaRecord.tier != tier,
                    )
                    .values(tier=tier)
                    .execution_options(synchronize_session=False)
                )
        except Exception as e:
            logger.warning(f"Could not cache tier for {user_id}: {describe_error(e)}")

    def _is_anonymous_user(self, user_id: str) -> bool:
        with self.session_factory() as session:
            user = session.get(User, user_id)
        if user is None:
            return False
        return AuthUtils.is_anonymous_provider(user.auth_provider)

    def _day_key(self, today: Optional[date]) -> str:
        return (today or self.clock().date()).isoformat()


def _denial_message(reason: str) -> str:
    if reason == ANONYMOUS_LIMIT:
        return "You've reached the message limit for guests. Sign in to continue."
    return "You've reached the free plan limit. Upgrade to premium to continue."
