import re
from datetime import datetime
from typing import List, Optional

from pydantic import Field, field_validator

from notifier.schemas.camel_base_model import CamelCaseBaseModel as BaseModel
from notifier.schemas.dispatch_schemas import Recurrence

_TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


class HabitReminder(BaseModel):
    time: str = Field(..., description="Local wall-clock time, HH:MM")
    message: str = Field(..., min_length=1, max_length=500)
    frequency: Recurrence = Recurrence.DAILY

    @field_validator("time")
    @classmethod
    def validate_time(cls, value: str) -> str:
        if not _TIME_PATTERN.match(value):
            raise ValueError("time must be HH:MM (24h)")
        return value

    @property
    def hour(self) -> int:
        return int(self.time[:2])

    @property
    def minute(self) -> int:
        return int(self.time[3:])


class ScheduleHabitRemindersRequest(BaseModel):
    habit_title: Optional[str] = Field(default=None, max_length=200)
    time_zone_offset_minutes: Optional[int] = Field(
        default=None, ge=-14 * 60, le=14 * 60
    )
    reminders: List[HabitReminder] = Field(..., min_length=1, max_length=10)


class ScheduledReminderItem(BaseModel):
    notification_id: str
    time: str
    frequency: Recurrence
    scheduled_for: datetime
