import asyncio
from datetime import timedelta

import pytest

from notifier.db.models import (
    DeviceRegistration,
    NotificationRecord,
    NotificationStatus,
    UserQuotaRecord,
)
from notifier.schemas.dispatch_schemas import (
    DispatchStatus,
    NotificationPayload,
    Recurrence,
)
from notifier.services.payload_codec import successor_notification_id
from notifier.utils.errors import PayloadDecodeError, TransientDispatchError


def make_payload(user_id="u1", notification_id="n-1", **overrides) -> NotificationPayload:
    values = dict(
        user_id=user_id,
        notification_id=notification_id,
        notification_payload="Small steps count.",
        window_type="notification_morning",
    )
    values.update(overrides)
    return NotificationPayload(**values)


def get_record(session_factory, notification_id):
    with session_factory() as session:
        return session.get(NotificationRecord, notification_id)


def lifetime_count(session_factory, user_id):
    with session_factory() as session:
        return session.get(UserQuotaRecord, user_id).lifetime_notification_count


class TestInAppOnly:
    """No enabled device: record only."""

    @pytest.mark.asyncio
    async def test_no_devices(self, pipeline, push_sender, session_factory, make_user):
        make_user("u1")

        outcome = await pipeline.dispatcher.dispatch(make_payload())

        assert outcome.status == DispatchStatus.PROCESSED
        assert outcome.record_status == NotificationStatus.IN_APP_ONLY
        assert push_sender.batches == []
        assert get_record(session_factory, "n-1").status == NotificationStatus.IN_APP_ONLY
        assert lifetime_count(session_factory, "u1") == 1

    @pytest.mark.asyncio
    async def test_only_disabled_devices(self, pipeline, push_sender, make_user, make_device):
        make_user("u1")
        make_device("u1", "tok-off", enabled=False)

        outcome = await pipeline.dispatcher.dispatch(make_payload())

        assert outcome.record_status == NotificationStatus.IN_APP_ONLY
        assert push_sender.batches == []


class TestDelivery:
    """Push to enabled devices and reconcile results."""

    @pytest.mark.asyncio
    async def test_delivers_to_enabled_devices_only(
        self, pipeline, push_sender, session_factory, make_user, make_device
    ):
        make_user("u1")
        make_device("u1", "tok-on-1", badge_count=2)
        make_device("u1", "tok-off", enabled=False)
        make_device("u1", "tok-on-2")

        outcome = await pipeline.dispatcher.dispatch(make_payload(quota_flag=True))

        assert outcome.record_status == NotificationStatus.DELIVERED
        assert outcome.success_count == 2
        assert sorted(push_sender.sent_tokens) == ["tok-on-1", "tok-on-2"]

        message = next(m for m in push_sender.sent_messages if m.token == "tok-on-1")
        assert message.notification.title == "Your Daily Message"
        assert message.notification.body == "Small steps count."
        assert message.data["type"] == "notification_morning"
        assert message.data["recordId"] == "n-1"
        assert message.data["badgeCount"] == "3"
        assert message.data["limitReached"] == "true"
        assert message.platform_overrides.badge == 3
        assert message.platform_overrides.priority == "normal"

        record = get_record(session_factory, "n-1")
        assert record.status == NotificationStatus.DELIVERED
        assert record.limit_reached is True
        assert record.quota_counted is True

    @pytest.mark.asyncio
    async def test_invalid_tokens_are_removed(
        self, pipeline, push_sender, session_factory, make_user, make_device
    ):
        make_user("u1")
        make_device("u1", "tok-good")
        make_device("u1", "tok-stale")
        push_sender.invalid_tokens.add("tok-stale")

        outcome = await pipeline.dispatcher.dispatch(make_payload())

        assert outcome.success_count == 1
        assert outcome.failure_count == 1
        assert outcome.removed_tokens == ["tok-stale"]
        with session_factory() as session:
            assert session.get(DeviceRegistration, "tok-stale") is None
            assert session.get(DeviceRegistration, "tok-good") is not None

        await pipeline.dispatcher.dispatch(make_payload(notification_id="n-2"))

        assert push_sender.sent_tokens.count("tok-stale") == 1

    @pytest.mark.asyncio
    async def test_other_failures_keep_the_device(
        self, pipeline, push_sender, session_factory, make_user, make_device
    ):
        make_user("u1")
        make_device("u1", "tok-flaky")
        push_sender.failing_tokens.add("tok-flaky")

        outcome = await pipeline.dispatcher.dispatch(make_payload())

        assert outcome.record_status == NotificationStatus.IN_APP_ONLY
        assert outcome.removed_tokens == []
        with session_factory() as session:
            assert session.get(DeviceRegistration, "tok-flaky") is not None

    @pytest.mark.asyncio
    async def test_sends_in_batches(self, pipeline, push_sender, make_user, make_device):
        make_user("u1")
        for i in range(5):
            make_device("u1", f"tok-{i}")
        pipeline.dispatcher.batch_size = 2

        outcome = await pipeline.dispatcher.dispatch(make_payload())

        assert [len(batch) for batch in push_sender.batches] == [2, 2, 1]
        assert outcome.success_count == 5


class TestIdempotence:
    """Redelivery of the same notification id."""

    @pytest.mark.asyncio
    async def test_second_invocation_is_duplicate(
        self, pipeline, push_sender, session_factory, make_user, make_device
    ):
        make_user("u1")
        make_device("u1", "tok-1")

        first = await pipeline.dispatcher.dispatch(make_payload())
        second = await pipeline.dispatcher.dispatch(make_payload())

        assert first.status == DispatchStatus.PROCESSED
        assert second.status == DispatchStatus.DUPLICATE
        assert second.record_status == NotificationStatus.DELIVERED
        assert len(push_sender.batches) == 1
        assert lifetime_count(session_factory, "u1") == 1

    @pytest.mark.asyncio
    async def test_concurrent_invocations_count_once(
        self, pipeline, session_factory, make_user
    ):
        make_user("u1")

        outcomes = await asyncio.gather(
            *[pipeline.dispatcher.dispatch(make_payload()) for _ in range(3)]
        )

        assert [o.status for o in outcomes].count(DispatchStatus.PROCESSED) >= 1
        assert lifetime_count(session_factory, "u1") == 1
        assert get_record(session_factory, "n-1").status == NotificationStatus.IN_APP_ONLY

    @pytest.mark.asyncio
    async def test_status_never_regresses(self, pipeline, push_sender, session_factory, make_user, make_device):
        make_user("u1")
        make_device("u1", "tok-1")
        await pipeline.dispatcher.dispatch(make_payload())

        # Device gone; a redelivery must not rewrite delivered -> in_app_only
        pipeline.device_registry.delete("tok-1")
        await pipeline.dispatcher.dispatch(make_payload())

        assert get_record(session_factory, "n-1").status == NotificationStatus.DELIVERED


class TestQuota:
    """Counters and the free lifetime ceiling."""

    @pytest.mark.asyncio
    async def test_free_ceiling_holds_at_dispatch(self, pipeline, session_factory, make_user):
        make_user("u1", lifetime_notification_count=3)

        first = await pipeline.dispatcher.dispatch(make_payload(notification_id="n-1"))
        second = await pipeline.dispatcher.dispatch(make_payload(notification_id="n-2"))

        assert first.status == DispatchStatus.PROCESSED
        assert second.status == DispatchStatus.SKIPPED_QUOTA
        assert get_record(session_factory, "n-2") is None
        assert lifetime_count(session_factory, "u1") == 4

    @pytest.mark.asyncio
    async def test_premium_counts_total_received(self, pipeline, session_factory, make_user):
        make_user("p1", premium=True)

        await pipeline.dispatcher.dispatch(make_payload(user_id="p1"))

        with session_factory() as session:
            record = session.get(UserQuotaRecord, "p1")
            assert record.total_notifications_received == 1
            assert record.lifetime_notification_count == 0

    @pytest.mark.asyncio
    async def test_anonymous_user_is_skipped(self, pipeline, session_factory, make_user):
        make_user("g1", auth_provider="anonymous")

        outcome = await pipeline.dispatcher.dispatch(make_payload(user_id="g1"))

        assert outcome.status == DispatchStatus.SKIPPED_QUOTA
        assert get_record(session_factory, "n-1") is None

    @pytest.mark.asyncio
    async def test_habit_reminders_do_not_count(self, pipeline, push_sender, session_factory, make_user, make_device):
        make_user("u1", lifetime_notification_count=4)
        make_device("u1", "tok-1")

        outcome = await pipeline.dispatcher.dispatch(
            make_payload(window_type="habit_reminder", habit_id="h-42", notification_payload="Stretch")
        )

        assert outcome.record_status == NotificationStatus.DELIVERED
        message = push_sender.sent_messages[0]
        assert message.notification.title == "Habit Reminder"
        assert message.data["habitId"] == "h-42"
        assert message.platform_overrides.priority == "high"
        assert message.platform_overrides.channel_id == "habit_reminders"
        assert lifetime_count(session_factory, "u1") == 4


class TestTransientFailures:
    """Wholesale batch failures are retried by the queue."""

    @pytest.mark.asyncio
    async def test_batch_failure_raises_and_leaves_pending(
        self, pipeline, push_sender, session_factory, make_user, make_device
    ):
        make_user("u1")
        make_device("u1", "tok-1")
        push_sender.fail_next_batches = 1

        with pytest.raises(TransientDispatchError):
            await pipeline.dispatcher.dispatch(make_payload())

        record = get_record(session_factory, "n-1")
        assert record.status == NotificationStatus.PENDING
        assert record.quota_counted is False
        assert lifetime_count(session_factory, "u1") == 0

        retried = await pipeline.dispatcher.dispatch(make_payload())

        assert retried.status == DispatchStatus.PROCESSED
        assert retried.record_status == NotificationStatus.DELIVERED
        assert lifetime_count(session_factory, "u1") == 1

    @pytest.mark.asyncio
    async def test_later_batch_failure_is_counted(self, pipeline, push_sender, make_user, make_device):
        make_user("u1")
        for i in range(3):
            make_device("u1", f"tok-{i}")
        pipeline.dispatcher.batch_size = 2

        original = push_sender.send_batch
        calls = {"n": 0}

        async def fail_second(messages):
            calls["n"] += 1
            if calls["n"] == 2:
                push_sender.fail_next_batches = 1
            return await original(messages)

        push_sender.send_batch = fail_second

        outcome = await pipeline.dispatcher.dispatch(make_payload())

        assert outcome.record_status == NotificationStatus.DELIVERED
        assert outcome.success_count == 2
        assert outcome.failure_count == 1

    @pytest.mark.asyncio
    async def test_send_timeout_is_transient(self, pipeline, push_sender, make_user, make_device):
        make_user("u1")
        make_device("u1", "tok-1")
        pipeline.dispatcher.send_timeout = 0.01

        async def hang(messages):
            await asyncio.sleep(1)

        push_sender.send_batch = hang

        with pytest.raises(TransientDispatchError):
            await pipeline.dispatcher.dispatch(make_payload())

    @pytest.mark.asyncio
    async def test_final_attempt_finalizes_in_app_only(
        self, pipeline, push_sender, session_factory, make_user, make_device
    ):
        """An outage on the last attempt still finalizes and counts the notification."""
        make_user("u1")
        make_device("u1", "tok-1")
        push_sender.fail_next_batches = 3

        for _ in range(2):
            with pytest.raises(TransientDispatchError):
                await pipeline.dispatcher.dispatch(make_payload())
        outcome = await pipeline.dispatcher.dispatch(make_payload(), final_attempt=True)

        assert outcome.status == DispatchStatus.PROCESSED
        assert outcome.record_status == NotificationStatus.IN_APP_ONLY
        assert outcome.success_count == 0
        assert outcome.failure_count == 1
        record = get_record(session_factory, "n-1")
        assert record.status == NotificationStatus.IN_APP_ONLY
        assert record.quota_counted is True
        assert lifetime_count(session_factory, "u1") == 1

    @pytest.mark.asyncio
    async def test_final_attempt_reaches_handle(
        self, pipeline, push_sender, session_factory, make_user, make_device
    ):
        make_user("u1")
        make_device("u1", "tok-1")
        push_sender.fail_next_batches = 1
        body = make_payload().model_dump(mode="json", by_alias=True, exclude_none=True)

        outcome = await pipeline.dispatcher.handle(body, final_attempt=True)

        assert outcome.record_status == NotificationStatus.IN_APP_ONLY
        assert get_record(session_factory, "n-1").quota_counted is True

    @pytest.mark.asyncio
    async def test_retries_increment_badge_once(
        self, pipeline, push_sender, session_factory, make_user, make_device
    ):
        """Each device's badge moves by one per notification however many attempts it takes."""
        make_user("u1")
        make_device("u1", "tok-1", badge_count=0)
        push_sender.fail_next_batches = 2

        for _ in range(2):
            with pytest.raises(TransientDispatchError):
                await pipeline.dispatcher.dispatch(make_payload())
        outcome = await pipeline.dispatcher.dispatch(make_payload())

        assert outcome.record_status == NotificationStatus.DELIVERED
        with session_factory() as session:
            assert session.get(DeviceRegistration, "tok-1").badge_count == 1
        assert [m.data["badgeCount"] for m in push_sender.sent_messages] == ["1", "1", "1"]

    @pytest.mark.asyncio
    async def test_separate_notifications_each_increment_badge(
        self, pipeline, push_sender, session_factory, make_user, make_device
    ):
        make_user("u1")
        make_device("u1", "tok-1", badge_count=0)

        await pipeline.dispatcher.dispatch(make_payload(notification_id="n-1"))
        await pipeline.dispatcher.dispatch(make_payload(notification_id="n-2"))

        with session_factory() as session:
            assert session.get(DeviceRegistration, "tok-1").badge_count == 2


class TestRecurrence:
    """Daily payloads chain their next occurrence."""

    @pytest.mark.asyncio
    async def test_daily_payload_enqueues_successor(self, pipeline, task_queue, clock, make_user):
        make_user("u1")
        scheduled_for = clock() - timedelta(minutes=1)

        outcome = await pipeline.dispatcher.dispatch(
            make_payload(
                window_type="habit_reminder",
                recurrence=Recurrence.DAILY,
                scheduled_for=scheduled_for,
            )
        )

        next_occurrence = outcome.next_occurrence
        assert next_occurrence.enqueued
        assert next_occurrence.notification_id == successor_notification_id("n-1")
        assert next_occurrence.scheduled_for == scheduled_for + timedelta(days=1)

        successor = task_queue.payloads[0]
        assert task_queue.tasks[0].task_id == next_occurrence.notification_id
        assert successor.recurrence == Recurrence.DAILY
        assert successor.quota_flag is False

    @pytest.mark.asyncio
    async def test_duplicate_does_not_enqueue_again(self, pipeline, task_queue, clock, make_user):
        make_user("u1")
        payload = make_payload(
            window_type="habit_reminder",
            recurrence=Recurrence.DAILY,
            scheduled_for=clock(),
        )

        await pipeline.dispatcher.dispatch(payload)
        await pipeline.dispatcher.dispatch(payload)

        assert len(task_queue.tasks) == 1

    @pytest.mark.asyncio
    async def test_one_off_payload_has_no_successor(self, pipeline, task_queue, make_user):
        make_user("u1")

        outcome = await pipeline.dispatcher.dispatch(make_payload())

        assert outcome.next_occurrence is None
        assert task_queue.tasks == []

    @pytest.mark.asyncio
    async def test_successor_enqueue_failure_still_finalizes(
        self, pipeline, task_queue, session_factory, clock, make_user
    ):
        make_user("u1")
        task_queue.enqueue_error = ConnectionError("broker down")

        outcome = await pipeline.dispatcher.dispatch(
            make_payload(window_type="habit_reminder", recurrence=Recurrence.DAILY, scheduled_for=clock())
        )

        assert outcome.status == DispatchStatus.PROCESSED
        assert outcome.next_occurrence.enqueued is False
        assert get_record(session_factory, "n-1").status == NotificationStatus.IN_APP_ONLY


class TestHandle:
    """Raw body entry point."""

    @pytest.mark.asyncio
    async def test_malformed_body_raises(self, pipeline):
        with pytest.raises(PayloadDecodeError):
            await pipeline.dispatcher.handle(b"not a payload")

    @pytest.mark.asyncio
    async def test_legacy_body_without_id_is_idempotent(self, pipeline, session_factory, make_user):
        make_user("u1")
        body = {"userId": "u1", "quote": "Keep going", "sendType": "notification_evening"}

        first = await pipeline.dispatcher.handle(dict(body))
        second = await pipeline.dispatcher.handle(dict(body))

        assert first.status == DispatchStatus.PROCESSED
        assert second.status == DispatchStatus.DUPLICATE
        assert first.notification_id == second.notification_id
        assert lifetime_count(session_factory, "u1") == 1
