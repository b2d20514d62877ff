from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from notifier.config.settings import settings
from notifier.db.models import MarkerStatus, ScheduledMarker
from notifier.utils.datetime_utils import to_naive_utc, utc_now
from notifier.utils.logging import get_logger

logger = get_logger()


class ClaimResult(str, Enum):
    CLAIMED = "claimed"
    ALREADY_CLAIMED = "already_claimed"


class IdempotencyService:
    """
    Write-once scheduling markers keyed by (user, local date, notification type).

    A claim is a plain INSERT; the composite primary key turns a second
    claim for the same key into a unique-key conflict, which is reported as
    ``ALREADY_CLAIMED``. That is the only guard against scheduling the same
    window twice when the daily job runs more than once.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        ttl_days: Optional[int] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.session_factory = session_factory
        self.ttl = timedelta(days=ttl_days or settings.MARKER_TTL_DAYS)
        self.clock = clock

    def try_claim(
        self, user_id: str, local_date: str, notification_type: str
    ) -> ClaimResult:
        if self._insert_marker(user_id, local_date, notification_type):
            return ClaimResult.CLAIMED

        # The key exists; reclaim it only if the existing marker has expired
        if self._delete_if_expired(user_id, local_date, notification_type):
            if self._insert_marker(user_id, local_date, notification_type):
                logger.info(
                    f"Reclaimed expired marker {user_id}/{local_date}/{notification_type}"
                )
                return ClaimResult.CLAIMED

        logger.debug(f"Marker {user_id}/{local_date}/{notification_type} already claimed")
        return ClaimResult.ALREADY_CLAIMED

    def mark_scheduled(
        self,
        user_id: str,
        local_date: str,
        notification_type: str,
        scheduled_for: datetime,
        task_id: Optional[str] = None,
    ) -> None:
        self._update_marker(
            user_id,
            local_date,
            notification_type,
            status=MarkerStatus.SCHEDULED,
            scheduled_for=to_naive_utc(scheduled_for),
            task_id=task_id,
        )

    def mark_failed(
        self,
        user_id: str,
        local_date: str,
        notification_type: str,
        scheduled_for: Optional[datetime] = None,
    ) -> None:
        self._update_marker(
            user_id,
            local_date,
            notification_type,
            status=MarkerStatus.FAILED,
            scheduled_for=to_naive_utc(scheduled_for) if scheduled_for else None,
        )

    def is_claimed(self, user_id: str, local_date: str, notification_type: str) -> bool:
        """Read-only check for a live marker; ``try_claim`` stays the actual guard."""
        marker = self.get_marker(user_id, local_date, notification_type)
        if marker is None:
            return False
        return marker.expires_at > to_naive_utc(self.clock())

    def get_marker(
        self, user_id: str, local_date: str, notification_type: str
    ) -> Optional[ScheduledMarker]:
        with self.session_factory() as session:
            return session.get(
                ScheduledMarker, (user_id, local_date, notification_type)
            )

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        cutoff = to_naive_utc(now or self.clock())
        with self.session_factory() as session, session.begin():
            result = session.execute(
                delete(ScheduledMarker)
                .where(ScheduledMarker.expires_at <= cutoff)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount or 0

    def _insert_marker(
        self, user_id: str, local_date: str, notification_type: str
    ) -> bool:
        now = to_naive_utc(self.clock())
        try:
            with self.session_factory() as session, session.begin():
                session.add(
                    ScheduledMarker(
                        user_id=user_id,
                        local_date=local_date,
                        notification_type=notification_type,
                        status=MarkerStatus.CLAIMED,
                        created_at=now,
                        expires_at=now + self.ttl,
                    )
                )
            return True
        except IntegrityError:
            return False

    def _delete_if_expired(
        self, user_id: str, local_date: str, notification_type: str
    ) -> bool:
        now = to_naive_utc(self.clock())
        with self.session_factory() as session, session.begin():
            result = session.execute(
                delete(ScheduledMarker)
                .where(
                    ScheduledMarker.user_id == user_id,
                    ScheduledMarker.local_date == local_date,
                    ScheduledMarker.notification_type == notification_type,
                    ScheduledMarker.expires_at <= now,
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def _update_marker(
        self, user_id: str, local_date: str, notification_type: str, **values
    ) -> None:
        with self.session_factory() as session, session.begin():
            session.execute(
                update(ScheduledMarker)
                .where(
                    ScheduledMarker.user_id == user_id,
                    ScheduledMarker.local_date == local_date,
                    ScheduledMarker.notification_type == notification_type,
                )
                .values(**{k: v for k, v in values.items() if v is not None})
                .execution_options(synchronize_session=False)
            )
