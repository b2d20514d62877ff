from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request

from notifier.middlewares.auth_middleware import AuthState, get_current_user
from notifier.pipeline import Pipeline, get_pipeline
from notifier.schemas.notification_schemas import NotificationRecordItem
from notifier.utils.responses import ResponseBuilder

notifications_router = APIRouter()


@notifications_router.get("")
async def list_notifications(
    request: Request,
    current_user: Annotated[AuthState, Depends(get_current_user)],
    pipeline: Annotated[Pipeline, Depends(get_pipeline)],
    limit: int = Query(
        default=50,
        ge=1,
        le=100,
        description="Maximum number of notifications to return",
    ),
    offset: int = Query(default=0, ge=0, description="Offset for pagination"),
):
    """
    In-app notification history for the caller, newest first.

    Every scheduled notification shows up here, including the ones that were
    never pushed because no device had notifications enabled.
    """
    records = pipeline.dispatcher.list_records(
        current_user.user_id, limit=limit, offset=offset
    )
    notifications = [
        NotificationRecordItem(
            id=record.id,
            notification_type=record.notification_type,
            title=record.title,
            body=record.body,
            status=record.status.value,
            limit_reached=record.limit_reached,
            created_at=record.created_at,
            finalized_at=record.finalized_at,
        ).model_dump(by_alias=True)
        for record in records
    ]

    return ResponseBuilder.success(
        request=request,
        data={
            "notifications": notifications,
            "limit": limit,
            "offset": offset,
            "hasMore": len(notifications) == limit,
        },
        message=f"Retrieved {len(notifications)} notifications",
    )
