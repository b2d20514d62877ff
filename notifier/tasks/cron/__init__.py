from .daily_notification_scheduler import daily_notification_scheduler_task
from .scheduled_marker_cleanup import scheduled_marker_cleanup_task

__all__ = [
    "daily_notification_scheduler_task",
    "scheduled_marker_cleanup_task",
]
