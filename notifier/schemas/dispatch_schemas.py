from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import Field, field_validator

from notifier.schemas.camel_base_model import CamelCaseBaseModel as BaseModel


HABIT_REMINDER = "habit_reminder"


class Recurrence(str, Enum):
    ONCE = "once"
    DAILY = "daily"


class NotificationPayload(BaseModel):
    """Body of a durable dispatch task"""

    user_id: str = Field(..., min_length=1)
    notification_id: Optional[str] = None
    notification_payload: str = Field(..., min_length=1, description="Message body")
    window_type: str = Field(..., min_length=1)
    quota_flag: bool = False
    recurrence: Recurrence = Recurrence.ONCE
    scheduled_for: Optional[datetime] = None
    title: Optional[str] = None
    habit_id: Optional[str] = None

    @field_validator("user_id", "notification_payload", "window_type")
    @classmethod
    def not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value


class DispatchStatus(str, Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    SKIPPED_QUOTA = "skipped_quota"


class DispatchOutcomeResponse(BaseModel):
    status: DispatchStatus
    notification_id: str
    record_status: Optional[str] = None
    success_count: int = 0
    failure_count: int = 0
    removed_tokens: List[str] = Field(default_factory=list)
    next_notification_id: Optional[str] = None
    next_scheduled_for: Optional[datetime] = None
