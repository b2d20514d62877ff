import random
from datetime import date, datetime, timedelta, timezone

import pytest

from notifier.config.settings import WindowSlot
from notifier.db.models import QuotaTier, UserQuotaRecord
from notifier.services.window_calculator import TimeZoneKnown, TimeZoneUnknown

MORNING = WindowSlot(type="notification_morning", start_hour=7, end_hour=9)
EVENING = WindowSlot(type="notification_evening", start_hour=18, end_hour=20)


@pytest.fixture
def calculator(pipeline):
    return pipeline.calculator


class TestTimeZoneResolution:
    """Offset comes from the first device that reports one."""

    def test_unknown_without_devices(self, calculator, make_user):
        make_user("u1")
        resolution = calculator.resolve_time_zone("u1")

        assert isinstance(resolution, TimeZoneUnknown)
        assert resolution.offset_minutes == 0

    def test_first_reporting_device_wins(self, calculator, make_user, make_device):
        make_user("u1")
        make_device("u1", "tok-a", enabled=False, offset=None)
        make_device("u1", "tok-b", enabled=False, offset=420)
        make_device("u1", "tok-c", enabled=True, offset=-300)

        resolution = calculator.resolve_time_zone("u1")

        assert resolution == TimeZoneKnown(offset_minutes=420, device_token="tok-b")


class TestPickInstant:
    """Random minute inside the window, clamped to now + margin."""

    def test_instant_inside_local_window(self, calculator):
        now = datetime(2025, 3, 9, 12, 0, tzinfo=timezone.utc)
        for seed in range(20):
            calculator.rng = random.Random(seed)
            instant = calculator.pick_instant(MORNING, date(2025, 3, 10), 420, now)

            # 07:00-09:00 at UTC+7 is 00:00-02:00 UTC
            assert datetime(2025, 3, 10, 0, 0, tzinfo=timezone.utc) <= instant
            assert instant < datetime(2025, 3, 10, 2, 0, tzinfo=timezone.utc)

    def test_past_instant_clamped_to_safety_margin(self, calculator):
        now = datetime(2025, 3, 10, 3, 0, tzinfo=timezone.utc)

        instant = calculator.pick_instant(MORNING, date(2025, 3, 10), 420, now)

        assert instant == now + timedelta(seconds=300)

    def test_negative_offset(self, calculator):
        now = datetime(2025, 3, 10, 0, 0, tzinfo=timezone.utc)
        instant = calculator.pick_instant(EVENING, date(2025, 3, 9), -300, now)

        # 18:00-20:00 at UTC-5 is 23:00-01:00 UTC
        assert datetime(2025, 3, 9, 23, 0, tzinfo=timezone.utc) <= instant
        assert instant < datetime(2025, 3, 10, 1, 0, tzinfo=timezone.utc)
        assert instant >= now + timedelta(seconds=300)


class TestPlanForUser:
    """Eligibility and window selection."""

    def test_free_user_gets_both_windows(self, calculator, make_user, make_device, clock):
        user = make_user("u1")
        make_device("u1", "tok-1", offset=420)

        plan = calculator.plan_for_user("u1", user, None, QuotaTier.FREE, clock())

        assert plan.skip_reason is None
        assert [w.window_type for w in plan.windows] == [
            "notification_morning",
            "notification_evening",
        ]
        assert all(w.local_date == "2025-03-10" for w in plan.windows)
        assert all(w.scheduled_for >= clock() + timedelta(seconds=300) for w in plan.windows)
        assert [w.payload.quota_flag for w in plan.windows] == [False, False]

    def test_free_user_near_ceiling_gets_remaining_windows(self, calculator, make_user, clock):
        user = make_user("u1")
        record = UserQuotaRecord(user_id="u1", lifetime_notification_count=3)

        plan = calculator.plan_for_user("u1", user, record, QuotaTier.FREE, clock())

        assert [w.window_type for w in plan.windows] == ["notification_morning"]
        assert plan.windows[0].payload.quota_flag is True

    def test_free_user_at_ceiling_skipped(self, calculator, make_user, clock):
        user = make_user("u1")
        record = UserQuotaRecord(user_id="u1", lifetime_notification_count=4)

        plan = calculator.plan_for_user("u1", user, record, QuotaTier.FREE, clock())

        assert plan.skip_reason == "lifetime_limit"
        assert plan.windows == []

    def test_premium_user_ignores_lifetime_count(self, calculator, make_user, clock):
        user = make_user("p1", premium=True)
        record = UserQuotaRecord(user_id="p1", lifetime_notification_count=4)

        plan = calculator.plan_for_user("p1", user, record, QuotaTier.PREMIUM, clock())

        assert len(plan.windows) == 2

    def test_anonymous_user_skipped(self, calculator, make_user, clock):
        user = make_user("g1", auth_provider="anonymous")

        plan = calculator.plan_for_user("g1", user, None, QuotaTier.ANONYMOUS, clock())

        assert plan.skip_reason == "unverified"

    def test_already_claimed_windows_skipped(self, calculator, pipeline, make_user, clock):
        user = make_user("u1")
        pipeline.idempotency.try_claim("u1", "2025-03-10", "notification_morning")

        plan = calculator.plan_for_user("u1", user, None, QuotaTier.FREE, clock())

        assert [w.window_type for w in plan.windows] == ["notification_evening"]
        assert plan.already_claimed == 1

    def test_generator_failure_uses_fallback(self, calculator, content_generator, make_user, clock):
        user = make_user("u1")
        content_generator.error = TimeoutError("model unavailable")

        plan = calculator.plan_for_user("u1", user, None, QuotaTier.FREE, clock())

        assert plan.windows[0].payload.notification_payload.startswith("Good morning!")
        assert plan.windows[1].payload.notification_payload.startswith("Good evening!")

    def test_local_date_follows_device_offset(self, calculator, make_user, make_device, clock):
        user = make_user("u1")
        make_device("u1", "tok-1", offset=-300)

        plan = calculator.plan_for_user("u1", user, None, QuotaTier.FREE, clock())

        # 00:00 UTC is still the previous evening at UTC-5
        assert all(w.local_date == "2025-03-09" for w in plan.windows)
