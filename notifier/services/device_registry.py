from typing import List, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from notifier.db.models import BadgeIncrement, DeviceRegistration
from notifier.utils.errors import DatabaseError
from notifier.utils.logging import get_logger

logger = get_logger()


class DeviceRegistry:
    """Device registrations: one row per push token."""

    def __init__(self, session_factory: sessionmaker[Session]):
        self.session_factory = session_factory

    def list_for_user(self, user_id: str) -> List[DeviceRegistration]:
        with self.session_factory() as session:
            return list(
                session.scalars(
                    select(DeviceRegistration)
                    .where(DeviceRegistration.user_id == user_id)
                    .order_by(DeviceRegistration.created_at, DeviceRegistration.device_token)
                ).all()
            )

    def list_enabled(self, user_id: str) -> List[DeviceRegistration]:
        return [d for d in self.list_for_user(user_id) if d.notifications_enabled]

    def first_time_zone_offset(self, user_id: str) -> Optional[DeviceRegistration]:
        """First registered device (any opt-in state) that reports an offset."""
        for device in self.list_for_user(user_id):
            if device.time_zone_offset_minutes is not None:
                return device
        return None

    def increment_badge(
        self, device_token: str, notification_id: Optional[str] = None
    ) -> Optional[int]:
        """
        Atomically bump the badge and return the new value (None if the device is gone).

        With ``notification_id`` the bump happens at most once per
        notification and device: the value is stored in ``badge_increments``
        in the same transaction, and later calls return the stored value.
        """
        if notification_id is not None:
            applied = self._applied_badge(notification_id, device_token)
            if applied is not None:
                return applied

        try:
            with self.session_factory() as session, session.begin():
                result = session.execute(
                    update(DeviceRegistration)
                    .where(DeviceRegistration.device_token == device_token)
                    .values(badge_count=DeviceRegistration.badge_count + 1)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    return None
                badge = session.execute(
                    select(DeviceRegistration.badge_count).where(
                        DeviceRegistration.device_token == device_token
                    )
                ).scalar_one()
                if notification_id is not None:
                    session.add(
                        BadgeIncrement(
                            notification_id=notification_id,
                            device_token=device_token,
                            badge_count=badge,
                        )
                    )
            return badge
        except IntegrityError:
            if notification_id is None:
                raise
            # A concurrent attempt for the same notification got there first
            return self._applied_badge(notification_id, device_token)

    def _applied_badge(self, notification_id: str, device_token: str) -> Optional[int]:
        with self.session_factory() as session:
            return session.execute(
                select(BadgeIncrement.badge_count).where(
                    BadgeIncrement.notification_id == notification_id,
                    BadgeIncrement.device_token == device_token,
                )
            ).scalar_one_or_none()

    def reset_badge(self, device_token: str, user_id: Optional[str] = None) -> bool:
        with self.session_factory() as session, session.begin():
            stmt = update(DeviceRegistration).where(
                DeviceRegistration.device_token == device_token
            )
            if user_id is not None:
                stmt = stmt.where(DeviceRegistration.user_id == user_id)
            result = session.execute(
                stmt.values(badge_count=0).execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def delete(self, device_token: str) -> bool:
        with self.session_factory() as session, session.begin():
            result = session.execute(
                delete(DeviceRegistration)
                .where(DeviceRegistration.device_token == device_token)
                .execution_options(synchronize_session=False)
            )
        deleted = result.rowcount == 1
        if deleted:
            logger.info(f"Removed device registration {_mask(device_token)}")
        return deleted

    def register(
        self,
        user_id: str,
        device_token: str,
        notifications_enabled: bool,
        time_zone_offset_minutes: Optional[int] = None,
        platform: Optional[str] = None,
    ) -> DeviceRegistration:
        """Create or update the registration for ``device_token``."""
        for _ in range(2):
            try:
                with self.session_factory() as session, session.begin():
                    device = session.get(DeviceRegistration, device_token)
                    if device is None:
                        device = DeviceRegistration(
                            device_token=device_token,
                            user_id=user_id,
                            badge_count=0,
                        )
                        session.add(device)
                    elif device.user_id != user_id:
                        # Token moved to another account on the same phone
                        device.user_id = user_id
                        device.badge_count = 0

                    device.notifications_enabled = notifications_enabled
                    if time_zone_offset_minutes is not None:
                        device.time_zone_offset_minutes = time_zone_offset_minutes
                    if platform is not None:
                        device.platform = platform
                return device
            except IntegrityError:
                logger.debug(f"Concurrent registration for {_mask(device_token)}, retrying")
        raise DatabaseError(f"Could not register device {_mask(device_token)}")


def _mask(device_token: str) -> str:
    return f"{device_token[:8]}..." if len(device_token) > 8 else device_token
