"""Tests for digest schedule arithmetic."""

from datetime import UTC, datetime, time

import pytest

from mailflow.db.store import DigestSchedule
from mailflow.engine.schedule import calculate_next_occurrence, parse_time_of_day


def _schedule(interval_days: int = 1, time_of_day: str = "08:00") -> DigestSchedule:
    return DigestSchedule(
        id="s1", account_id="acct-1", interval_days=interval_days, time_of_day=time_of_day
    )


class TestParseTimeOfDay:
    def test_hours_and_minutes(self):
        assert parse_time_of_day("07:30") == time(7, 30)

    def test_hours_only(self):
        assert parse_time_of_day(" 18 ") == time(18, 0)

    @pytest.mark.parametrize("value", ["25:00", "08:61", "eight", ""])
    def test_invalid(self, value):
        with pytest.raises(ValueError):
            parse_time_of_day(value)


class TestNextOccurrence:
    def test_later_today(self):
        now = datetime(2026, 5, 1, 6, 0, tzinfo=UTC)
        assert calculate_next_occurrence(_schedule(), now) == datetime(2026, 5, 1, 8, 0, tzinfo=UTC)

    def test_slot_already_passed(self):
        now = datetime(2026, 5, 1, 9, 0, tzinfo=UTC)
        assert calculate_next_occurrence(_schedule(), now) == datetime(2026, 5, 2, 8, 0, tzinfo=UTC)

    def test_exactly_at_slot_moves_forward(self):
        now = datetime(2026, 5, 1, 8, 0, tzinfo=UTC)
        assert calculate_next_occurrence(_schedule(), now) == datetime(2026, 5, 2, 8, 0, tzinfo=UTC)

    def test_weekly_interval(self):
        now = datetime(2026, 5, 1, 9, 0, tzinfo=UTC)
        assert calculate_next_occurrence(_schedule(7, "08:15"), now) == datetime(
            2026, 5, 8, 8, 15, tzinfo=UTC
        )

    def test_zero_interval_treated_as_daily(self):
        now = datetime(2026, 5, 1, 9, 0, tzinfo=UTC)
        assert calculate_next_occurrence(_schedule(0), now).day == 2

    def test_naive_now_is_utc(self):
        result = calculate_next_occurrence(_schedule(), datetime(2026, 5, 1, 6, 0))
        assert result == datetime(2026, 5, 1, 8, 0, tzinfo=UTC)
