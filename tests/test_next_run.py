from datetime import datetime, timedelta, timezone

import pytest

from conftest import make_schedule
from table_backup.tasks import compute_next_run

UTC = timezone.utc


class TestDaily:
    def test_before_time_of_day_runs_today(self):
        schedule = make_schedule("daily")
        now = datetime(2025, 3, 10, 1, 59, tzinfo=UTC)
        assert compute_next_run(schedule, now) == datetime(2025, 3, 10, 2, 0, tzinfo=UTC)

    @pytest.mark.parametrize("minute", [0, 5])
    def test_at_or_after_time_of_day_runs_tomorrow(self, minute):
        schedule = make_schedule("daily")
        now = datetime(2025, 3, 10, 2, minute, tzinfo=UTC)
        assert compute_next_run(schedule, now) == datetime(2025, 3, 11, 2, 0, tzinfo=UTC)

    def test_uses_schedule_timezone(self):
        schedule = make_schedule(
            "daily", config={"hour": 2, "minute": 0, "timezone": "America/New_York"}
        )
        # 07:00 EST, so 02:00 local has passed today
        now = datetime(2025, 1, 15, 12, 0, tzinfo=UTC)
        assert compute_next_run(schedule, now) == datetime(2025, 1, 16, 7, 0, tzinfo=UTC)

    def test_time_inside_dst_gap_moves_forward(self):
        schedule = make_schedule(
            "daily", config={"hour": 2, "minute": 30, "timezone": "America/New_York"}
        )
        # 01:00 EST on the spring-forward day; 02:30 local does not exist
        now = datetime(2025, 3, 9, 6, 0, tzinfo=UTC)
        next_run = compute_next_run(schedule, now)
        assert next_run == datetime(2025, 3, 9, 7, 30, tzinfo=UTC)
        assert next_run > now

    def test_naive_now_is_treated_as_utc(self):
        schedule = make_schedule("daily")
        assert compute_next_run(schedule, datetime(2025, 3, 10, 1, 0)) == datetime(
            2025, 3, 10, 2, 0, tzinfo=UTC
        )


class TestWeekly:
    # 2025-01-01 is a Wednesday
    def test_advances_to_configured_weekday(self):
        schedule = make_schedule(
            "weekly", config={"hour": 3, "minute": 0, "day_of_week": 0}
        )
        now = datetime(2025, 1, 1, 12, 0, tzinfo=UTC)
        assert compute_next_run(schedule, now) == datetime(2025, 1, 5, 3, 0, tzinfo=UTC)

    def test_same_weekday_later_today(self):
        schedule = make_schedule(
            "weekly", config={"hour": 10, "minute": 0, "day_of_week": 3}
        )
        now = datetime(2025, 1, 1, 9, 0, tzinfo=UTC)
        assert compute_next_run(schedule, now) == datetime(2025, 1, 1, 10, 0, tzinfo=UTC)

    def test_same_weekday_already_passed_rolls_a_week(self):
        schedule = make_schedule(
            "weekly", config={"hour": 10, "minute": 0, "day_of_week": 3}
        )
        now = datetime(2025, 1, 1, 10, 0, tzinfo=UTC)
        assert compute_next_run(schedule, now) == datetime(2025, 1, 8, 10, 0, tzinfo=UTC)

    def test_earlier_weekday_rolls_to_next_week(self):
        schedule = make_schedule(
            "weekly", config={"hour": 0, "minute": 0, "day_of_week": 1}
        )
        now = datetime(2025, 1, 1, 0, 0, tzinfo=UTC)
        assert compute_next_run(schedule, now) == datetime(2025, 1, 6, 0, 0, tzinfo=UTC)


class TestMonthly:
    def test_day_31_clamps_in_30_day_month(self):
        schedule = make_schedule(
            "monthly", config={"hour": 2, "minute": 0, "day_of_month": 31}
        )
        now = datetime(2025, 4, 10, 0, 0, tzinfo=UTC)
        assert compute_next_run(schedule, now) == datetime(2025, 4, 30, 2, 0, tzinfo=UTC)

    def test_passed_day_advances_and_reclamps_to_february(self):
        schedule = make_schedule(
            "monthly", config={"hour": 2, "minute": 0, "day_of_month": 31}
        )
        now = datetime(2025, 1, 31, 3, 0, tzinfo=UTC)
        assert compute_next_run(schedule, now) == datetime(2025, 2, 28, 2, 0, tzinfo=UTC)

    def test_leap_year_february(self):
        schedule = make_schedule(
            "monthly", config={"hour": 2, "minute": 0, "day_of_month": 30}
        )
        now = datetime(2024, 1, 31, 3, 0, tzinfo=UTC)
        assert compute_next_run(schedule, now) == datetime(2024, 2, 29, 2, 0, tzinfo=UTC)

    def test_year_rollover(self):
        schedule = make_schedule(
            "monthly", config={"hour": 6, "minute": 30, "day_of_month": 15}
        )
        now = datetime(2025, 12, 20, 0, 0, tzinfo=UTC)
        assert compute_next_run(schedule, now) == datetime(2026, 1, 15, 6, 30, tzinfo=UTC)

    def test_later_this_month(self):
        schedule = make_schedule(
            "monthly", config={"hour": 2, "minute": 0, "day_of_month": 20}
        )
        now = datetime(2025, 6, 10, 2, 5, tzinfo=UTC)
        assert compute_next_run(schedule, now) == datetime(2025, 6, 20, 2, 0, tzinfo=UTC)


class TestFallbacks:
    NOW = datetime(2025, 6, 10, 2, 5, tzinfo=UTC)

    def test_custom_adds_one_day_with_warning(self, log_messages):
        schedule = make_schedule("custom")
        assert compute_next_run(schedule, self.NOW) == self.NOW + timedelta(days=1)
        assert any("daily fallback" in message for message in log_messages)

    def test_unknown_type_adds_one_day(self, log_messages):
        schedule = make_schedule("hourly")
        assert compute_next_run(schedule, self.NOW) == self.NOW + timedelta(days=1)
        assert any("Unknown schedule type" in message for message in log_messages)

    def test_malformed_timezone_falls_back(self):
        schedule = make_schedule(
            "daily", config={"hour": 2, "minute": 0, "timezone": "Mars/Olympus_Mons"}
        )
        assert compute_next_run(schedule, self.NOW) == self.NOW + timedelta(days=1)

    def test_is_pure(self):
        schedule = make_schedule(
            "monthly", config={"hour": 2, "minute": 0, "day_of_month": 31}
        )
        first = compute_next_run(schedule, self.NOW)
        second = compute_next_run(schedule, self.NOW)
        assert first == second
        assert first > self.NOW
