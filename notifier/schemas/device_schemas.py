from typing import Optional

from pydantic import Field

from notifier.schemas.camel_base_model import CamelCaseBaseModel as BaseModel


class RegisterDeviceRequest(BaseModel):
    """Sent by the app on launch and whenever notification permission changes"""

    token: str = Field(..., min_length=1, max_length=512, description="FCM device token")
    notifications_enabled: bool = Field(
        default=False, description="User opted in to push on this device"
    )
    time_zone_offset_minutes: Optional[int] = Field(
        default=None,
        ge=-14 * 60,
        le=14 * 60,
        description="Minutes east of UTC, e.g. 420 for UTC+7",
    )
    platform: Optional[str] = Field(default=None, max_length=16)


class DeviceResponse(BaseModel):
    token: str
    notifications_enabled: bool
    badge_count: int
    time_zone_offset_minutes: Optional[int] = None
    platform: Optional[str] = None
