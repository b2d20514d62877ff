from concurrent.futures import ThreadPoolExecutor

import pytest

from notifier.db.models import (
    NotificationRecord,
    NotificationStatus,
    ScheduledMarker,
    UserQuotaRecord,
)


class TestDailyRun:
    """Full-population scheduling pass."""

    def test_schedules_eligible_users(self, pipeline, task_queue, make_user, make_device):
        make_user("free-1")
        make_user("premium-1", premium=True)
        make_user("guest-1", auth_provider="anonymous")
        make_user("capped-1", lifetime_notification_count=4)
        make_user("inactive-1", is_active=False)
        make_device("free-1", "tok-free", offset=420)

        report = pipeline.daily_job.run()

        assert report.queue_ready
        assert report.users_processed == 4
        assert report.scheduled == 4
        assert report.skipped_unverified == 1
        assert report.skipped_limit == 1
        assert report.errors == 0
        assert {p.user_id for p in task_queue.payloads} == {"free-1", "premium-1"}

    def test_free_user_at_ceiling_gets_nothing(self, pipeline, task_queue, session_factory, make_user):
        make_user("capped-1", lifetime_notification_count=4)

        report = pipeline.daily_job.run()

        assert report.skipped_limit == 1
        assert task_queue.tasks == []
        with session_factory() as session:
            assert session.query(ScheduledMarker).count() == 0

    def test_repeated_runs_do_not_duplicate(self, pipeline, task_queue, session_factory, make_user):
        make_user("u1")
        make_user("u2", premium=True)

        first = pipeline.daily_job.run()
        second = pipeline.daily_job.run()

        assert first.scheduled == 4
        assert second.scheduled == 0
        assert second.already_claimed == 4
        assert len(task_queue.tasks) == 4
        with session_factory() as session:
            assert session.query(ScheduledMarker).count() == 4

    def test_concurrent_runs_schedule_each_window_once(
        self, pipeline, task_queue, session_factory, make_user
    ):
        for i in range(5):
            make_user(f"u{i}", premium=True)

        with ThreadPoolExecutor(max_workers=3) as pool:
            reports = list(pool.map(lambda _: pipeline.daily_job.run(), range(3)))

        assert sum(r.scheduled for r in reports) == 10
        keys = [(p.user_id, p.window_type) for p in task_queue.payloads]
        assert len(keys) == len(set(keys)) == 10
        with session_factory() as session:
            assert session.query(ScheduledMarker).count() == 10

    def test_unavailable_queue_aborts_before_claiming(
        self, pipeline, task_queue, session_factory, make_user
    ):
        make_user("u1")
        task_queue.reachable = False

        report = pipeline.daily_job.run()

        assert not report.queue_ready
        assert report.users_processed == 0
        with session_factory() as session:
            assert session.query(ScheduledMarker).count() == 0

    def test_one_user_failing_does_not_stop_the_run(self, pipeline, task_queue, make_user, monkeypatch):
        make_user("u1")
        make_user("u2")
        original = pipeline.daily_job.process_user

        def flaky(user_id, now):
            if user_id == "u1":
                raise RuntimeError("boom")
            return original(user_id, now)

        monkeypatch.setattr(pipeline.daily_job, "process_user", flaky)

        report = pipeline.daily_job.run()

        assert report.errors == 1
        assert report.scheduled == 2


class TestEndToEnd:
    """Job then handler, against the same store."""

    @pytest.mark.asyncio
    async def test_user_without_devices_gets_in_app_record(
        self, pipeline, task_queue, push_sender, session_factory, make_user
    ):
        make_user("u1", lifetime_notification_count=0)
        pipeline.daily_job.run()
        morning = next(
            task
            for task, payload in zip(task_queue.tasks, task_queue.payloads)
            if payload.window_type == "notification_morning"
        )

        outcome = await pipeline.dispatcher.handle(morning.body)

        assert outcome.record_status == NotificationStatus.IN_APP_ONLY
        assert push_sender.batches == []
        with session_factory() as session:
            record = session.get(NotificationRecord, morning.task_id)
            assert record.status == NotificationStatus.IN_APP_ONLY
            assert session.get(UserQuotaRecord, "u1").lifetime_notification_count == 1
