"""
Tests for fortune_batch.domain.schedule.

Validates the pure schedule helpers: HH:MM validation, time_to_cron(),
cron parsing, matches_cron(), next_cron_match() and seconds_until_next().
"""

from dataclasses import FrozenInstanceError
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from fortune_kernel.exceptions import (
    InvalidCronExpressionError,
    InvalidScheduleTimeError,
)

from fortune_batch.domain.schedule import (
    DEFAULT_FORTUNE_UPDATE_TIME,
    CronSpec,
    _parse_cron_field,
    is_valid_update_time,
    matches_cron,
    next_cron_match,
    parse_cron,
    seconds_until_next,
    time_to_cron,
    validate_update_time,
)


# =============================================================================
# HH:MM helpers
# =============================================================================


class TestUpdateTime:
    @pytest.mark.parametrize("value", ["00:00", "03:00", "09:05", "19:59", "23:59"])
    def test_valid_times(self, value):
        assert is_valid_update_time(value)
        assert validate_update_time(value) == value

    @pytest.mark.parametrize(
        "value", ["24:00", "3:00", "03:60", "0300", "03:00:00", " 03:00", "", None, 300],
    )
    def test_invalid_times(self, value):
        assert not is_valid_update_time(value)
        with pytest.raises(InvalidScheduleTimeError):
            validate_update_time(value)

    def test_default_is_three_am(self):
        assert DEFAULT_FORTUNE_UPDATE_TIME == "03:00"


class TestTimeToCron:
    def test_default_time(self):
        assert time_to_cron("03:00") == "0 3 * * *"

    def test_leading_zeros_dropped(self):
        assert time_to_cron("04:30") == "30 4 * * *"
        assert time_to_cron("00:05") == "5 0 * * *"

    def test_late_evening(self):
        assert time_to_cron("23:59") == "59 23 * * *"

    def test_result_parses(self):
        spec = parse_cron(time_to_cron("17:45"))
        assert spec.minutes == frozenset({45})
        assert spec.hours == frozenset({17})

    def test_invalid_raises(self):
        with pytest.raises(InvalidScheduleTimeError) as exc_info:
            time_to_cron("25:00")
        assert exc_info.value.code == "INVALID_SCHEDULE_TIME"


# =============================================================================
# Cron parsing
# =============================================================================


class TestCronSpec:
    def test_frozen(self):
        spec = CronSpec()
        with pytest.raises(FrozenInstanceError):
            spec.minutes = frozenset()  # type: ignore[misc]

    def test_defaults_cover_all_values(self):
        spec = CronSpec()
        assert spec.minutes == frozenset(range(60))
        assert spec.hours == frozenset(range(24))
        assert spec.days_of_month == frozenset(range(1, 32))
        assert spec.months == frozenset(range(1, 13))
        assert spec.days_of_week == frozenset(range(7))


class TestParseCronField:
    def test_wildcard(self):
        assert _parse_cron_field("*", 0, 59) == frozenset(range(60))

    def test_single_value(self):
        assert _parse_cron_field("5", 0, 59) == frozenset({5})

    def test_list(self):
        assert _parse_cron_field("1,15,30", 0, 59) == frozenset({1, 15, 30})

    def test_range(self):
        assert _parse_cron_field("1-5", 0, 6) == frozenset({1, 2, 3, 4, 5})

    def test_step(self):
        assert _parse_cron_field("*/15", 0, 59) == frozenset({0, 15, 30, 45})

    def test_range_with_step(self):
        assert _parse_cron_field("0-10/5", 0, 59) == frozenset({0, 5, 10})

    @pytest.mark.parametrize("text", ["60", "-1", "5-2", "*/0", "a", "1,,2", "0-70/5"])
    def test_invalid(self, text):
        with pytest.raises(ValueError):
            _parse_cron_field(text, 0, 59)


class TestParseCron:
    def test_daily_midnight(self):
        spec = parse_cron("0 0 * * *")
        assert spec.minutes == frozenset({0})
        assert spec.hours == frozenset({0})

    def test_wrong_field_count(self):
        with pytest.raises(InvalidCronExpressionError) as exc_info:
            parse_cron("0 0 * *")
        assert "expected 5 fields" in str(exc_info.value)

    def test_out_of_range_wrapped(self):
        with pytest.raises(InvalidCronExpressionError) as exc_info:
            parse_cron("0 24 * * *")
        assert exc_info.value.expression == "0 24 * * *"


# =============================================================================
# Matching
# =============================================================================


class TestMatchesCron:
    def test_exact_minute(self):
        spec = parse_cron("0 3 * * *")
        assert matches_cron(spec, datetime(2026, 2, 1, 3, 0))
        assert not matches_cron(spec, datetime(2026, 2, 1, 3, 1))

    def test_sunday_is_zero(self):
        spec = parse_cron("0 0 * * 0")
        assert matches_cron(spec, datetime(2026, 2, 1, 0, 0))  # Sunday
        assert not matches_cron(spec, datetime(2026, 2, 2, 0, 0))  # Monday


class TestNextCronMatch:
    def test_later_same_day(self):
        spec = parse_cron("0 3 * * *")
        assert next_cron_match(spec, datetime(2026, 2, 1, 1, 30)) == datetime(2026, 2, 1, 3, 0)

    def test_strictly_after(self):
        spec = parse_cron("0 3 * * *")
        assert next_cron_match(spec, datetime(2026, 2, 1, 3, 0)) == datetime(2026, 2, 2, 3, 0)

    def test_seconds_truncated(self):
        spec = parse_cron("* * * * *")
        assert next_cron_match(spec, datetime(2026, 2, 1, 12, 0, 45)) == datetime(2026, 2, 1, 12, 1)

    def test_next_day(self):
        spec = parse_cron("0 0 * * *")
        assert next_cron_match(spec, datetime(2026, 2, 1, 12, 0)) == datetime(2026, 2, 2, 0, 0)

    def test_month_rollover(self):
        spec = parse_cron("30 4 1 * *")
        assert next_cron_match(spec, datetime(2026, 2, 1, 12, 0)) == datetime(2026, 3, 1, 4, 30)

    def test_weekday(self):
        spec = parse_cron("0 9 * * 5")  # Friday
        assert next_cron_match(spec, datetime(2026, 2, 1, 12, 0)) == datetime(2026, 2, 6, 9, 0)

    def test_keeps_tzinfo(self):
        tokyo = ZoneInfo("Asia/Tokyo")
        spec = parse_cron("0 3 * * *")
        result = next_cron_match(spec, datetime(2026, 2, 1, 12, 0, tzinfo=tokyo))
        assert result == datetime(2026, 2, 2, 3, 0, tzinfo=tokyo)
        assert result.tzinfo is tokyo

    def test_impossible_date_raises(self):
        spec = parse_cron("0 0 31 2 *")
        with pytest.raises(ValueError):
            next_cron_match(spec, datetime(2026, 2, 1, 12, 0))


class TestSecondsUntilNext:
    def test_naive_delay(self):
        fire_at, delay = seconds_until_next("0 3 * * *", datetime(2026, 2, 1, 2, 0))
        assert fire_at == datetime(2026, 2, 1, 3, 0)
        assert delay == 3600.0

    def test_aware_delay_in_local_zone(self):
        tokyo = ZoneInfo("Asia/Tokyo")
        # 2026-02-01 12:00 UTC is 21:00 in Tokyo; next 03:00 Tokyo is 6 hours later
        now = datetime(2026, 2, 1, 12, 0, tzinfo=timezone.utc).astimezone(tokyo)
        fire_at, delay = seconds_until_next("0 3 * * *", now)
        assert fire_at == datetime(2026, 2, 2, 3, 0, tzinfo=tokyo)
        assert delay == timedelta(hours=6).total_seconds()

    def test_never_negative(self):
        _, delay = seconds_until_next("* * * * *", datetime(2026, 2, 1, 12, 0, 59, 999999))
        assert delay >= 0.0

    def test_invalid_expression(self):
        with pytest.raises(InvalidCronExpressionError):
            seconds_until_next("not a cron", datetime(2026, 2, 1, 12, 0))

    def test_never_fires(self):
        with pytest.raises(InvalidCronExpressionError):
            seconds_until_next("0 0 30 2 *", datetime(2026, 2, 1, 12, 0))
