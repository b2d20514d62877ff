from typing import Dict

from pydantic import Field

from notifier.schemas.camel_base_model import CamelCaseBaseModel as BaseModel


class PushNotificationContent(BaseModel):
    title: str
    body: str


class PlatformOverrides(BaseModel):
    priority: str = Field(default="normal", description="normal or high")
    sound: str = "default"
    badge: int = Field(default=0, ge=0)
    channel_id: str = "daily_messages"


class PushMessage(BaseModel):
    """Transport-neutral push message for one device"""

    token: str
    notification: PushNotificationContent
    data: Dict[str, str] = Field(default_factory=dict)
    platform_overrides: PlatformOverrides = Field(default_factory=PlatformOverrides)
