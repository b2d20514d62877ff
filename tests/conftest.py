import random
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

import pytest
from fastapi.testclient import TestClient

from notifier.db.models import (
    Base,
    DeviceRegistration,
    QuotaTier,
    Subscription,
    User,
    UserQuotaRecord,
)
from notifier.db.session import build_engine, build_session_factory
from notifier.pipeline import Pipeline, get_pipeline
from notifier.services.payload_codec import decode_dispatch_body
from notifier.services.push.base import (
    INVALID_TOKEN,
    SEND_FAILED,
    PushBatchError,
    PushResult,
    PushSender,
)
from notifier.services.quota_service import DatabaseSubscriptionDirectory
from notifier.services.task_queue.base import (
    QueueNotFoundError,
    QueuePolicy,
    TaskHandle,
    TaskQueue,
)
from notifier.utils.auth import AuthUtils

# Monday 2025-03-10 00:00 UTC, the moment the daily job fires
FIXED_NOW = datetime(2025, 3, 10, 0, 0, 0, tzinfo=timezone.utc)


class FixedClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakePushSender(PushSender):
    """Records batches; tokens can be marked invalid or failing."""

    def __init__(self):
        self.batches: List[list] = []
        self.invalid_tokens = set()
        self.failing_tokens = set()
        self.fail_next_batches = 0

    async def send_batch(self, messages):
        self.batches.append(list(messages))
        if self.fail_next_batches > 0:
            self.fail_next_batches -= 1
            raise PushBatchError("push service unavailable")

        results = []
        for message in messages:
            if message.token in self.invalid_tokens:
                results.append(
                    PushResult(
                        token=message.token,
                        success=False,
                        error_code=INVALID_TOKEN,
                        error_message="Requested entity was not found.",
                    )
                )
            elif message.token in self.failing_tokens:
                results.append(
                    PushResult(
                        token=message.token,
                        success=False,
                        error_code=SEND_FAILED,
                        error_message="internal error",
                    )
                )
            else:
                results.append(
                    PushResult(
                        token=message.token,
                        success=True,
                        message_id=f"projects/test/messages/{len(results)}",
                    )
                )
        return results

    @property
    def sent_messages(self):
        return [message for batch in self.batches for message in batch]

    @property
    def sent_tokens(self):
        return [message.token for message in self.sent_messages]


@dataclass
class EnqueuedTask:
    body: str
    scheduled_for: datetime
    task_id: str


class FakeTaskQueue(TaskQueue):
    """In-memory queue that can pretend to be missing or unreachable."""

    def __init__(self, policy: Optional[QueuePolicy] = None):
        self.queue_name = "daily-notifications"
        self.policy = policy or QueuePolicy.from_settings()
        self.exists = True
        self.reachable = True
        self.enqueue_error: Optional[Exception] = None
        self.ensure_calls = 0
        self.tasks: List[EnqueuedTask] = []

    def ensure_queue(self) -> bool:
        self.ensure_calls += 1
        if not self.reachable:
            return False
        self.exists = True
        return True

    def enqueue(self, body: str, scheduled_for: datetime, task_id: str) -> TaskHandle:
        if self.enqueue_error is not None:
            raise self.enqueue_error
        if not self.exists:
            raise QueueNotFoundError(f"Task queue {self.queue_name} does not exist")
        self.tasks.append(EnqueuedTask(body, scheduled_for, task_id))
        return TaskHandle(
            task_id=task_id, queue_name=self.queue_name, scheduled_for=scheduled_for
        )

    @property
    def payloads(self):
        return [decode_dispatch_body(task.body) for task in self.tasks]


class FakeContentGenerator:
    def __init__(self):
        self.calls = []
        self.error: Optional[Exception] = None

    def generate_message(self, user_id: str, window_type: str) -> str:
        self.calls.append((user_id, window_type))
        if self.error is not None:
            raise self.error
        return f"Small steps count. ({window_type})"


@pytest.fixture
def engine(tmp_path):
    """File-backed SQLite so threads see each other's commits."""
    engine = build_engine(f"sqlite:///{tmp_path / 'notifier-test.db'}")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def push_sender():
    return FakePushSender()


@pytest.fixture
def task_queue():
    return FakeTaskQueue()


@pytest.fixture
def content_generator():
    return FakeContentGenerator()


@pytest.fixture
def pipeline(session_factory, push_sender, task_queue, content_generator, clock):
    return Pipeline(
        session_factory=session_factory,
        push_sender=push_sender,
        task_queue=task_queue,
        content_generator=content_generator,
        subscriptions=DatabaseSubscriptionDirectory(session_factory, clock=clock),
        clock=clock,
        rng=random.Random(7),
    )


# Test data factories
@pytest.fixture
def make_user(session_factory, clock) -> Callable[..., User]:
    def _make_user(
        user_id: str,
        auth_provider: Optional[str] = "password",
        premium: bool = False,
        lifetime_notification_count: Optional[int] = None,
        is_active: bool = True,
    ) -> User:
        with session_factory() as session:
            user = User(id=user_id, auth_provider=auth_provider, is_active=is_active)
            session.add(user)
            if premium:
                session.add(
                    Subscription(
                        user_id=user_id,
                        product_id="com.stoa.premium.monthly",
                        expires_at=(clock() + timedelta(days=30)).replace(tzinfo=None),
                    )
                )
            if lifetime_notification_count is not None:
                session.add(
                    UserQuotaRecord(
                        user_id=user_id,
                        tier=QuotaTier.PREMIUM if premium else QuotaTier.FREE,
                        lifetime_notification_count=lifetime_notification_count,
                    )
                )
            session.commit()
            return user

    return _make_user


@pytest.fixture
def make_device(session_factory) -> Callable[..., DeviceRegistration]:
    created = datetime(2025, 1, 1)

    def _make_device(
        user_id: str,
        token: str,
        enabled: bool = True,
        offset: Optional[int] = None,
        badge_count: int = 0,
    ) -> DeviceRegistration:
        nonlocal created
        created = created + timedelta(minutes=1)
        with session_factory() as session:
            device = DeviceRegistration(
                device_token=token,
                user_id=user_id,
                notifications_enabled=enabled,
                time_zone_offset_minutes=offset,
                badge_count=badge_count,
                created_at=created,
            )
            session.add(device)
            session.commit()
            return device

    return _make_device


@pytest.fixture
def client(pipeline):
    from notifier.main import app

    app.dependency_overrides[get_pipeline] = lambda: pipeline
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers() -> Callable[..., dict]:
    def _auth_headers(user_id: str, provider: Optional[str] = "password") -> dict:
        token = AuthUtils.generate_access_token(user_id, auth_provider=provider)
        return {"Authorization": f"Bearer {token}"}

    return _auth_headers
