from celery.schedules import crontab
from kombu import Queue

from notifier.services.task_queue.base import QueuePolicy
from notifier.services.task_queue.celery_queue import (
    DISPATCH_TASK_NAME,
    build_dispatch_queue,
)
from .settings import settings

dispatch_policy = QueuePolicy.from_settings(settings)

# Basic Celery Configuration
broker_url = f"redis://:{settings.REDIS_PASSWORD}@{settings.REDIS_HOST}:{settings.REDIS_PORT}/{settings.REDIS_DB}"
result_backend = f"redis://:{settings.REDIS_PASSWORD}@{settings.REDIS_HOST}:{settings.REDIS_PORT}/{settings.REDIS_DB}"

# Task Discovery
include = ["notifier.tasks"]

# Timezone Configuration
timezone = "UTC"
enable_utc = True

# Task Result Configuration
result_expires = 3600

# Task Serialization
task_serializer = "json"
accept_content = ["json"]
result_serializer = "json"

# Task Execution Configuration
task_track_started = True
task_time_limit = settings.JOB_TIMEOUT_SECONDS + 60
task_soft_time_limit = settings.JOB_TIMEOUT_SECONDS

# Worker Configuration
worker_prefetch_multiplier = 1
worker_max_tasks_per_child = 1000

# Task Retry Configuration
task_acks_late = True
task_reject_on_worker_lost = True
task_default_retry_delay = settings.TASK_MIN_BACKOFF_SECONDS
task_max_retries = settings.TASK_MAX_ATTEMPTS - 1

# Exponential Backoff Settings
task_retry_backoff = True
task_retry_backoff_max = settings.TASK_MAX_BACKOFF_SECONDS
task_retry_jitter = False

# Redis visibility timeout must outlive the furthest eta we enqueue (next day + window)
broker_transport_options = {"visibility_timeout": 2 * 24 * 60 * 60}

# All scheduled tasks use UTC
beat_schedule = {
    # Daily notification scheduling - midnight UTC
    "daily-notification-scheduler": {
        "task": "notifier.tasks.cron.daily_notification_scheduler.daily_notification_scheduler_task",
        "schedule": crontab(hour=0, minute=0),
        "args": ("daily_notification_scheduler_cron",),
    },
    # Idempotency marker cleanup - 00:30 UTC
    "scheduled-marker-cleanup": {
        "task": "notifier.tasks.cron.scheduled_marker_cleanup.scheduled_marker_cleanup_task",
        "schedule": crontab(hour=0, minute=30),
        "args": ("scheduled_marker_cleanup_cron",),
    },
}

# Default Queue
task_default_queue = "notifier"

# Dispatch tasks get their own durable queue with the dispatch policy
task_queues = (
    Queue(task_default_queue, routing_key=task_default_queue),
    build_dispatch_queue(settings.TASK_QUEUE_NAME),
)
task_routes = {DISPATCH_TASK_NAME: {"queue": settings.TASK_QUEUE_NAME}}
task_annotations = {
    DISPATCH_TASK_NAME: {"rate_limit": dispatch_policy.dispatch_rate},
}

# Beat Scheduler Configuration
beat_schedule_filename = "tmp/celerybeat-schedule"
