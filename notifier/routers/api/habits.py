from typing import Annotated

from fastapi import APIRouter, Depends, Request, status

from notifier.middlewares.auth_middleware import AuthState, get_current_user
from notifier.pipeline import Pipeline, get_pipeline
from notifier.schemas.reminder_schemas import (
    ScheduledReminderItem,
    ScheduleHabitRemindersRequest,
)
from notifier.utils.responses import ResponseBuilder

habits_router = APIRouter()


@habits_router.post("/{habit_id}/reminders")
async def schedule_habit_reminders(
    request: Request,
    habit_id: str,
    body: ScheduleHabitRemindersRequest,
    current_user: Annotated[AuthState, Depends(get_current_user)],
    pipeline: Annotated[Pipeline, Depends(get_pipeline)],
):
    """
    Schedule reminders for a habit.

    Only the next occurrence of each reminder is enqueued; daily reminders
    reschedule themselves after each delivery. Guests get 429 with
    ``limitType = anonymous_limit``.
    """
    user_id = current_user.user_id
    pipeline.quota.ensure_user(user_id, current_user.auth_provider)
    tier = pipeline.quota.classify(user_id, is_anonymous=current_user.is_anonymous)

    scheduled = pipeline.habit_reminders.schedule_reminders(
        user_id=user_id,
        tier=tier,
        habit_id=habit_id,
        reminders=body.reminders,
        habit_title=body.habit_title,
        time_zone_offset_minutes=body.time_zone_offset_minutes,
    )

    items = [
        ScheduledReminderItem(
            notification_id=item.notification_id,
            time=item.reminder.time,
            frequency=item.reminder.frequency,
            scheduled_for=item.scheduled_for,
        ).model_dump(by_alias=True)
        for item in scheduled
    ]
    return ResponseBuilder.success(
        request=request,
        data={"habitId": habit_id, "reminders": items},
        message=f"Scheduled {len(items)} reminders",
        status_code=status.HTTP_201_CREATED,
    )
