from typing import Annotated

from fastapi import APIRouter, Depends, Request

from notifier.middlewares.auth_middleware import AuthState, get_current_user
from notifier.pipeline import Pipeline, get_pipeline
from notifier.schemas.device_schemas import DeviceResponse, RegisterDeviceRequest
from notifier.utils.errors import NotFoundError
from notifier.utils.logging import get_logger
from notifier.utils.responses import ResponseBuilder

devices_router = APIRouter()
logger = get_logger()


@devices_router.post("")
async def register_device(
    request: Request,
    body: RegisterDeviceRequest,
    current_user: Annotated[AuthState, Depends(get_current_user)],
    pipeline: Annotated[Pipeline, Depends(get_pipeline)],
):
    """
    Register or update the caller's device.

    Called on app launch and whenever the notification permission or time
    zone changes. A token that moves to another account starts with a
    fresh badge.
    """
    pipeline.quota.ensure_user(current_user.user_id, current_user.auth_provider)
    device = pipeline.device_registry.register(
        user_id=current_user.user_id,
        device_token=body.token,
        notifications_enabled=body.notifications_enabled,
        time_zone_offset_minutes=body.time_zone_offset_minutes,
        platform=body.platform,
    )

    data = DeviceResponse(
        token=device.device_token,
        notifications_enabled=device.notifications_enabled,
        badge_count=device.badge_count,
        time_zone_offset_minutes=device.time_zone_offset_minutes,
        platform=device.platform,
    )
    return ResponseBuilder.success(
        request=request,
        data=data.model_dump(by_alias=True),
        message="Device registered",
    )


@devices_router.post("/{token}/badge/reset")
async def reset_badge(
    request: Request,
    token: str,
    current_user: Annotated[AuthState, Depends(get_current_user)],
    pipeline: Annotated[Pipeline, Depends(get_pipeline)],
):
    """Reset the badge counter after the user opened the app."""
    if not pipeline.device_registry.reset_badge(token, user_id=current_user.user_id):
        raise NotFoundError("Device not found", "DEVICE_NOT_FOUND")

    return ResponseBuilder.success(
        request=request,
        data={"token": token, "badgeCount": 0},
        message="Badge reset",
    )
