from typing import List, Optional
from datetime import datetime
from sqlalchemy import (
    String,
    Boolean,
    Integer,
    Text,
    ForeignKey,
    Enum,
    Index,
    CheckConstraint,
    DateTime,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
import enum

from notifier.utils.datetime_utils import naive_utc_now


class Base(DeclarativeBase):
    pass


# Enums
class QuotaTier(enum.Enum):
    ANONYMOUS = "anonymous"
    FREE = "free"
    PREMIUM = "premium"


class NotificationStatus(enum.Enum):
    PENDING = "pending"
    DELIVERED = "delivered"
    IN_APP_ONLY = "in_app_only"


class MarkerStatus(enum.Enum):
    CLAIMED = "claimed"
    SCHEDULED = "scheduled"
    FAILED = "failed"


class AuditMixin:
    """Mixin for common audit fields"""

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=naive_utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=naive_utc_now, onupdate=naive_utc_now
    )


# Read-only mirror of the account store owned by the auth collaborator
class User(Base, AuditMixin):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    auth_provider: Mapped[Optional[str]] = mapped_column(String(50))
    display_name: Mapped[Optional[str]] = mapped_column(String(200))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Relationships
    quota: Mapped[Optional["UserQuotaRecord"]] = relationship(
        back_populates="user", cascade="all, delete-orphan"
    )
    subscriptions: Mapped[List["Subscription"]] = relationship(
        back_populates="user", cascade="all, delete-orphan"
    )
    devices: Mapped[List["DeviceRegistration"]] = relationship(
        back_populates="user", cascade="all, delete-orphan"
    )


# Read-only mirror of the subscription provider's entitlements
class Subscription(Base, AuditMixin):
    __tablename__ = "subscriptions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(
        String(128), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    product_id: Mapped[str] = mapped_column(String(200), nullable=False)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    user: Mapped["User"] = relationship(back_populates="subscriptions")

    __table_args__ = (Index("idx_subscriptions_user_id", "user_id"),)


class UserQuotaRecord(Base, AuditMixin):
    __tablename__ = "user_quota_records"

    user_id: Mapped[str] = mapped_column(
        String(128), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    tier: Mapped[QuotaTier] = mapped_column(
        Enum(QuotaTier), default=QuotaTier.FREE, nullable=False
    )
    lifetime_notification_count: Mapped[int] = mapped_column(
        Integer, default=0, nullable=False
    )
    total_notifications_received: Mapped[int] = mapped_column(
        Integer, default=0, nullable=False
    )
    lifetime_message_count: Mapped[int] = mapped_column(
        Integer, default=0, nullable=False
    )
    daily_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    daily_count_date: Mapped[Optional[str]] = mapped_column(String(10))
    last_active_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    user: Mapped["User"] = relationship(back_populates="quota")

    __table_args__ = (
        CheckConstraint(
            "lifetime_notification_count >= 0", name="ck_quota_lifetime_non_negative"
        ),
        CheckConstraint("daily_count >= 0", name="ck_quota_daily_non_negative"),
    )


class DeviceRegistration(Base, AuditMixin):
    __tablename__ = "device_registrations"

    device_token: Mapped[str] = mapped_column(String(512), primary_key=True)
    user_id: Mapped[str] = mapped_column(
        String(128), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    notifications_enabled: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    badge_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    time_zone_offset_minutes: Mapped[Optional[int]] = mapped_column(Integer)
    platform: Mapped[Optional[str]] = mapped_column(String(20))

    user: Mapped["User"] = relationship(back_populates="devices")

    __table_args__ = (
        CheckConstraint("badge_count >= 0", name="ck_device_badge_non_negative"),
        Index("idx_device_registrations_user_id", "user_id"),
    )


# Badge value handed to a device for one notification; written with the increment
class BadgeIncrement(Base):
    __tablename__ = "badge_increments"

    notification_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    device_token: Mapped[str] = mapped_column(String(512), primary_key=True)
    badge_count: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=naive_utc_now, nullable=False
    )


class ScheduledMarker(Base):
    __tablename__ = "scheduled_markers"

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    local_date: Mapped[str] = mapped_column(String(10), primary_key=True)
    notification_type: Mapped[str] = mapped_column(String(50), primary_key=True)
    status: Mapped[MarkerStatus] = mapped_column(
        Enum(MarkerStatus), default=MarkerStatus.CLAIMED, nullable=False
    )
    scheduled_for: Mapped[Optional[datetime]] = mapped_column(DateTime)
    task_id: Mapped[Optional[str]] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=naive_utc_now, nullable=False
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (Index("idx_scheduled_markers_expires_at", "expires_at"),)


class NotificationRecord(Base, AuditMixin):
    __tablename__ = "notification_records"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(
        String(128), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    notification_type: Mapped[str] = mapped_column(String(50), nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    payload: Mapped[Optional[str]] = mapped_column(Text)
    status: Mapped[NotificationStatus] = mapped_column(
        Enum(NotificationStatus), default=NotificationStatus.PENDING, nullable=False
    )
    limit_reached: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    quota_counted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    success_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failure_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    finalized_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    __table_args__ = (
        Index("idx_notification_records_user_created", "user_id", "created_at"),
        Index("idx_notification_records_status", "status"),
    )


class RateLimitCounter(Base):
    __tablename__ = "rate_limit_counters"

    identity: Mapped[str] = mapped_column(String(255), primary_key=True)
    count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    window_start: Mapped[datetime] = mapped_column(DateTime, nullable=False)
