import math
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from notifier.config.settings import settings
from notifier.db.models import RateLimitCounter
from notifier.utils.datetime_utils import to_naive_utc, utc_now
from notifier.utils.errors import describe_error
from notifier.utils.logging import get_logger

logger = get_logger()


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    count: int
    retry_after_seconds: int = 0
    reason: Optional[str] = None


class RateLimitService:
    """
    Fixed-window request counter per client identity.

    Every call is one transactional read-modify-write on the identity's
    ``rate_limit_counters`` row. The write is a compare-and-set against the
    values that were read, so two concurrent callers cannot both admit from
    the same pre-increment count; the loser re-reads and decides again.
    Store failures deny the request.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        window_seconds: Optional[int] = None,
        max_requests: Optional[int] = None,
        max_attempts: Optional[int] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.session_factory = session_factory
        self.window_seconds = (
            window_seconds
            if window_seconds is not None
            else settings.RATE_LIMIT_WINDOW_SECONDS
        )
        self.max_requests = (
            max_requests if max_requests is not None else settings.RATE_LIMIT_MAX_REQUESTS
        )
        self.max_attempts = (
            max_attempts if max_attempts is not None else settings.RATE_LIMIT_MAX_ATTEMPTS
        )
        self.clock = clock

    def check_and_increment(self, identity: Optional[str]) -> RateLimitDecision:
        if not identity:
            logger.warning("Rate limit check without a client identity, denying")
            return RateLimitDecision(
                allowed=False,
                count=0,
                retry_after_seconds=self.window_seconds,
                reason="missing_identity",
            )

        if self.max_requests <= 0:
            return RateLimitDecision(
                allowed=False,
                count=0,
                retry_after_seconds=self.window_seconds,
                reason="rate_limited",
            )

        for attempt in range(1, self.max_attempts + 1):
            try:
                decision = self._attempt(identity)
            except SQLAlchemyError as e:
                logger.error(
                    f"Rate limit transaction failed for {identity}: {describe_error(e)}"
                )
                return self._unavailable()

            if decision is not None:
                return decision

            logger.debug(
                f"Rate limit counter for {identity} changed concurrently "
                f"(attempt {attempt}/{self.max_attempts})"
            )

        logger.warning(
            f"Rate limit counter for {identity} still contended after "
            f"{self.max_attempts} attempts, denying"
        )
        return self._unavailable()

    def _attempt(self, identity: str) -> Optional[RateLimitDecision]:
        """One read-decide-write round; ``None`` means another writer won the race."""
        try:
            with self.session_factory() as session, session.begin():
                now = to_naive_utc(self.clock())
                counter = session.execute(
                    select(RateLimitCounter)
                    .where(RateLimitCounter.identity == identity)
                    .with_for_update()
                ).scalar_one_or_none()

                if counter is None:
                    session.add(
                        RateLimitCounter(identity=identity, count=1, window_start=now)
                    )
                    return RateLimitDecision(allowed=True, count=1)

                observed_count = counter.count
                observed_start = counter.window_start
                elapsed = (now - observed_start).total_seconds()

                if elapsed > self.window_seconds:
                    new_count, new_start = 1, now
                elif observed_count >= self.max_requests:
                    retry_after = max(1, math.ceil(self.window_seconds - elapsed))
                    logger.info(
                        f"Rate limit exceeded for {identity}: "
                        f"{observed_count}/{self.max_requests}, retry in {retry_after}s"
                    )
                    return RateLimitDecision(
                        allowed=False,
                        count=observed_count,
                        retry_after_seconds=retry_after,
                        reason="rate_limited",
                    )
                else:
                    new_count, new_start = observed_count + 1, observed_start

                result = session.execute(
                    update(RateLimitCounter)
                    .where(
                        RateLimitCounter.identity == identity,
                        RateLimitCounter.count == observed_count,
                        RateLimitCounter.window_start == observed_start,
                    )
                    .values(count=new_count, window_start=new_start)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    return None

                return RateLimitDecision(allowed=True, count=new_count)
        except IntegrityError:
            # First request for this identity raced another insert
            return None

    def _unavailable(self) -> RateLimitDecision:
        return RateLimitDecision(
            allowed=False,
            count=0,
            retry_after_seconds=self.window_seconds,
            reason="unavailable",
        )
