import random
from dataclasses import dataclass, field
from datetime import datetime
from functools import lru_cache
from typing import Callable, Optional

from sqlalchemy.orm import Session, sessionmaker

from notifier.config.settings import Settings, settings as default_settings
from notifier.services.content_service import ContentGenerator
from notifier.services.daily_job_service import DailyNotificationJob
from notifier.services.device_registry import DeviceRegistry
from notifier.services.dispatch_service import DispatchService
from notifier.services.habit_reminder_service import HabitReminderService
from notifier.services.idempotency_service import IdempotencyService
from notifier.services.push.base import PushSender
from notifier.services.quota_service import QuotaService, SubscriptionDirectory
from notifier.services.rate_limit_service import RateLimitService
from notifier.services.scheduler_service import NotificationScheduler
from notifier.services.task_queue.base import TaskQueue
from notifier.services.window_calculator import WindowCalculator
from notifier.utils.datetime_utils import utc_now


@dataclass
class Pipeline:
    """
    Wires the notification services around shared collaborators.

    Routers, Celery tasks and tests all go through one of these so that a
    test can swap the push transport, task queue or clock in one place.
    """

    session_factory: sessionmaker[Session]
    push_sender: PushSender
    task_queue: TaskQueue
    content_generator: ContentGenerator
    subscriptions: SubscriptionDirectory
    settings: Settings = field(default_factory=lambda: default_settings)
    clock: Callable[[], datetime] = utc_now
    rng: Optional[random.Random] = None

    rate_limiter: RateLimitService = field(init=False)
    quota: QuotaService = field(init=False)
    idempotency: IdempotencyService = field(init=False)
    device_registry: DeviceRegistry = field(init=False)
    calculator: WindowCalculator = field(init=False)
    scheduler: NotificationScheduler = field(init=False)
    dispatcher: DispatchService = field(init=False)
    daily_job: DailyNotificationJob = field(init=False)
    habit_reminders: HabitReminderService = field(init=False)

    def __post_init__(self):
        self.rate_limiter = RateLimitService(self.session_factory, clock=self.clock)
        self.quota = QuotaService(
            self.session_factory, self.subscriptions, clock=self.clock
        )
        self.idempotency = IdempotencyService(self.session_factory, clock=self.clock)
        self.device_registry = DeviceRegistry(self.session_factory)
        self.calculator = WindowCalculator(
            self.device_registry,
            self.idempotency,
            self.content_generator,
            settings=self.settings,
            clock=self.clock,
            rng=self.rng,
        )
        self.scheduler = NotificationScheduler(self.task_queue, self.idempotency)
        self.dispatcher = DispatchService(
            self.session_factory,
            self.device_registry,
            self.quota,
            self.push_sender,
            self.scheduler,
            settings=self.settings,
            clock=self.clock,
        )
        self.daily_job = DailyNotificationJob(
            self.session_factory,
            self.quota,
            self.calculator,
            self.scheduler,
            concurrency=self.settings.SCHEDULER_CONCURRENCY,
            clock=self.clock,
        )
        self.habit_reminders = HabitReminderService(
            self.quota, self.device_registry, self.scheduler, clock=self.clock
        )


def build_pipeline(settings: Settings = default_settings) -> Pipeline:
    """Production wiring: database sessions, FCM, the Celery broker and Ollama."""
    from notifier.celery import celery
    from notifier.db.session import SessionLocal
    from notifier.services.content_service import LangChainContentGenerator
    from notifier.services.push.firebase_sender import FirebasePushSender
    from notifier.services.quota_service import DatabaseSubscriptionDirectory
    from notifier.services.task_queue.celery_queue import CeleryTaskQueue

    return Pipeline(
        session_factory=SessionLocal,
        push_sender=FirebasePushSender(settings),
        task_queue=CeleryTaskQueue(celery, settings),
        content_generator=LangChainContentGenerator(settings),
        subscriptions=DatabaseSubscriptionDirectory(SessionLocal),
        settings=settings,
    )


@lru_cache(maxsize=1)
def get_pipeline() -> Pipeline:
    """FastAPI dependency and task entry point for the shared pipeline."""
    return build_pipeline()
