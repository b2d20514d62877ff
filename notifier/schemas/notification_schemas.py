from datetime import datetime
from typing import Optional

from pydantic import Field

from notifier.schemas.camel_base_model import CamelCaseBaseModel as BaseModel


class NotificationRecordItem(BaseModel):
    id: str = Field(..., description="Notification id")
    notification_type: str = Field(..., description="Window type or habit_reminder")
    title: str
    body: str
    status: str = Field(..., description="pending, delivered or in_app_only")
    limit_reached: bool = Field(
        ..., description="Last free notification; the app shows the upgrade prompt"
    )
    created_at: datetime
    finalized_at: Optional[datetime] = None
