from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from notifier.db.models import User, UserQuotaRecord
from notifier.services.quota_service import QuotaService
from notifier.services.scheduler_service import NotificationScheduler, ScheduleOutcome
from notifier.services.window_calculator import UserPlan, WindowCalculator
from notifier.utils.auth import AuthUtils
from notifier.utils.datetime_utils import to_utc, utc_now
from notifier.utils.errors import describe_error
from notifier.utils.logging import get_logger

logger = get_logger()


@dataclass
class DailyJobReport:
    queue_ready: bool = True
    users_processed: int = 0
    scheduled: int = 0
    already_claimed: int = 0
    skipped_limit: int = 0
    skipped_unverified: int = 0
    failed: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


@dataclass
class UserRunResult:
    plan: UserPlan
    outcomes: List[ScheduleOutcome] = field(default_factory=list)


class DailyNotificationJob:
    """
    Daily eligibility pass over the whole user population.

    Users are independent, so they are processed on a bounded thread pool;
    each worker uses its own sessions. Duplicate scheduling across
    overlapping runs is prevented by the idempotency markers alone.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        quota: QuotaService,
        calculator: WindowCalculator,
        scheduler: NotificationScheduler,
        concurrency: int,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.session_factory = session_factory
        self.quota = quota
        self.calculator = calculator
        self.scheduler = scheduler
        self.concurrency = max(1, concurrency)
        self.clock = clock

    def run(self, now: Optional[datetime] = None) -> DailyJobReport:
        now = to_utc(now or self.clock())
        report = DailyJobReport()

        if not self.scheduler.ensure_ready():
            logger.error("Task queue unavailable, daily notification run aborted")
            report.queue_ready = False
            return report

        user_ids = self._load_user_ids()
        logger.info(
            f"Daily notification run for {len(user_ids)} users "
            f"(concurrency {self.concurrency})"
        )

        with ThreadPoolExecutor(
            max_workers=self.concurrency, thread_name_prefix="daily-job"
        ) as pool:
            futures = {
                pool.submit(self.process_user, user_id, now): user_id
                for user_id in user_ids
            }
            for future in as_completed(futures):
                user_id = futures[future]
                report.users_processed += 1
                try:
                    result = future.result()
                except Exception as e:
                    logger.error(f"Error processing user {user_id}: {describe_error(e)}")
                    report.errors += 1
                    continue
                self._tally(report, result)

        logger.info(f"Daily notification run completed: {report.to_dict()}")
        return report

    def process_user(self, user_id: str, now: datetime) -> UserRunResult:
        with self.session_factory() as session:
            user = session.get(User, user_id)
            record = session.get(UserQuotaRecord, user_id)

        is_anonymous = (
            AuthUtils.is_anonymous_provider(user.auth_provider) if user else None
        )
        tier = self.quota.classify(user_id, is_anonymous=is_anonymous)
        plan = self.calculator.plan_for_user(user_id, user, record, tier, now)

        outcomes = [self.scheduler.schedule(window) for window in plan.windows]
        return UserRunResult(plan=plan, outcomes=outcomes)

    def _load_user_ids(self) -> List[str]:
        with self.session_factory() as session:
            return list(
                session.scalars(
                    select(User.id).where(User.is_active.is_(True)).order_by(User.id)
                ).all()
            )

    @staticmethod
    def _tally(report: DailyJobReport, result: UserRunResult) -> None:
        plan = result.plan
        if plan.skip_reason == "lifetime_limit":
            report.skipped_limit += 1
        elif plan.skip_reason in ("unverified", "missing_user"):
            report.skipped_unverified += 1

        report.already_claimed += plan.already_claimed
        for outcome in result.outcomes:
            if outcome == ScheduleOutcome.SCHEDULED:
                report.scheduled += 1
            elif outcome == ScheduleOutcome.ALREADY_CLAIMED:
                report.already_claimed += 1
            else:
                report.failed += 1
