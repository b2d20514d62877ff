from .background import *
from .cron import *

__all__ = [
    "dispatch_notification_task",
    # Scheduled/Cron Tasks
    "daily_notification_scheduler_task",
    "scheduled_marker_cleanup_task",
]
