"""
Pure cron and scheduled-time evaluation.

Contract:
    Every function here is PURE -- no I/O, no clock reads.  The scheduler
    passes in the current local time and receives the next trigger instant.

Architecture: fortune_batch/domain.  ZERO I/O.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from fortune_kernel.exceptions import (
    InvalidCronExpressionError,
    InvalidScheduleTimeError,
)

# Strict 24-hour HH:MM.
TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")
DEFAULT_FORTUNE_UPDATE_TIME = "03:00"


# =============================================================================
# Scheduled time (HH:MM) helpers
# =============================================================================


def is_valid_update_time(value: object) -> bool:
    return isinstance(value, str) and TIME_PATTERN.match(value) is not None


def validate_update_time(value: object) -> str:
    """Return ``value`` unchanged if it is HH:MM, else raise."""
    if not is_valid_update_time(value):
        raise InvalidScheduleTimeError(value)
    return value  # type: ignore[return-value]


def time_to_cron(value: str) -> str:
    """Convert ``"HH:MM"`` into the daily cron expression ``"M H * * *"``.

    Raises:
        InvalidScheduleTimeError: If ``value`` is not a 24-hour HH:MM string.
    """
    match = TIME_PATTERN.match(value) if isinstance(value, str) else None
    if match is None:
        raise InvalidScheduleTimeError(value)
    hour, minute = int(match.group(1)), int(match.group(2))
    return f"{minute} {hour} * * *"


# =============================================================================
# CronSpec (lightweight cron parser)
# =============================================================================


@dataclass(frozen=True)
class CronSpec:
    """Parsed cron expression (minute hour day_of_month month day_of_week).

    Each field is a frozenset of valid integer values.
    Supports: *, values, lists, ranges (1-5), steps (*/5, 1-10/2).
    """

    minutes: frozenset[int] = field(default_factory=lambda: frozenset(range(60)))
    hours: frozenset[int] = field(default_factory=lambda: frozenset(range(24)))
    days_of_month: frozenset[int] = field(default_factory=lambda: frozenset(range(1, 32)))
    months: frozenset[int] = field(default_factory=lambda: frozenset(range(1, 13)))
    days_of_week: frozenset[int] = field(default_factory=lambda: frozenset(range(7)))


def _parse_int(text: str) -> int:
    try:
        return int(text)
    except ValueError:
        raise ValueError(f"Not a number: '{text}'") from None


def _parse_cron_field(field_str: str, min_val: int, max_val: int) -> frozenset[int]:
    """Parse a single cron field into a frozenset of valid values.

    Raises:
        ValueError: If the field is syntactically invalid or values out of range.
    """
    values: set[int] = set()

    for part in field_str.split(","):
        part = part.strip()
        if not part:
            raise ValueError("Empty list element")

        if "/" in part:
            range_part, step_str = part.split("/", 1)
            step = _parse_int(step_str)
            if step <= 0:
                raise ValueError(f"Step must be positive: {step}")

            if range_part == "*":
                start, end = min_val, max_val
            elif "-" in range_part:
                s, e = range_part.split("-", 1)
                start, end = _parse_int(s), _parse_int(e)
            else:
                start, end = _parse_int(range_part), max_val

            if start < min_val or end > max_val or start > end:
                raise ValueError(
                    f"Range {start}-{end} outside [{min_val}, {max_val}]"
                )
            values.update(range(start, end + 1, step))

        elif part == "*":
            values.update(range(min_val, max_val + 1))

        elif "-" in part:
            s, e = part.split("-", 1)
            start, end = _parse_int(s), _parse_int(e)
            if start > end:
                raise ValueError(f"Range start > end: {start}-{end}")
            if start < min_val or end > max_val:
                raise ValueError(
                    f"Range {start}-{end} outside [{min_val}, {max_val}]"
                )
            values.update(range(start, end + 1))

        else:
            v = _parse_int(part)
            if v < min_val or v > max_val:
                raise ValueError(
                    f"Value {v} outside range [{min_val}, {max_val}]"
                )
            values.add(v)

    return frozenset(values)


def parse_cron(expression: str) -> CronSpec:
    """Parse a 5-field cron expression into a CronSpec.

    Format: ``minute hour day_of_month month day_of_week``

    Raises:
        InvalidCronExpressionError: If the expression is malformed.
    """
    parts = expression.strip().split()
    if len(parts) != 5:
        raise InvalidCronExpressionError(
            expression, f"expected 5 fields, got {len(parts)}"
        )

    try:
        return CronSpec(
            minutes=_parse_cron_field(parts[0], 0, 59),
            hours=_parse_cron_field(parts[1], 0, 23),
            days_of_month=_parse_cron_field(parts[2], 1, 31),
            months=_parse_cron_field(parts[3], 1, 12),
            days_of_week=_parse_cron_field(parts[4], 0, 6),
        )
    except ValueError as exc:
        raise InvalidCronExpressionError(expression, str(exc)) from exc


def matches_cron(spec: CronSpec, dt: datetime) -> bool:
    """Check if a datetime matches a cron spec.

    Cron convention: 0=Sunday, 1=Monday, ..., 6=Saturday.
    Python datetime.weekday(): 0=Monday, ..., 6=Sunday.
    """
    cron_dow = (dt.weekday() + 1) % 7
    return (
        dt.minute in spec.minutes
        and dt.hour in spec.hours
        and dt.day in spec.days_of_month
        and dt.month in spec.months
        and cron_dow in spec.days_of_week
    )


def next_cron_match(spec: CronSpec, after: datetime) -> datetime:
    """Find the first minute strictly after ``after`` that matches ``spec``.

    ``after`` keeps its tzinfo; the scan walks wall-clock minutes, so the
    caller should pass local time in the zone the expression is meant for.
    Scans day by day, then minute by minute inside a matching day, bounded
    to 366 days.

    Raises:
        ValueError: If nothing matches within 366 days (e.g. ``0 0 31 2 *``).
    """
    candidate = after.replace(second=0, microsecond=0) + timedelta(minutes=1)
    horizon = candidate + timedelta(days=366)

    while candidate < horizon:
        cron_dow = (candidate.weekday() + 1) % 7
        if (
            candidate.month not in spec.months
            or candidate.day not in spec.days_of_month
            or cron_dow not in spec.days_of_week
        ):
            candidate = (candidate + timedelta(days=1)).replace(hour=0, minute=0)
            continue
        if matches_cron(spec, candidate):
            return candidate
        candidate += timedelta(minutes=1)

    raise ValueError(f"No cron match found within 366 days after {after}")


def seconds_until_next(expression: str, now: datetime) -> tuple[datetime, float]:
    """Next trigger instant for ``expression`` and the delay until it.

    Raises:
        InvalidCronExpressionError: If the expression is malformed or can
            never fire.
    """
    spec = parse_cron(expression)
    try:
        fire_at = next_cron_match(spec, now)
    except ValueError as exc:
        raise InvalidCronExpressionError(expression, str(exc)) from exc
    if fire_at.tzinfo is not None:
        delay = (fire_at.astimezone(UTC) - now.astimezone(UTC)).total_seconds()
    else:
        delay = (fire_at - now).total_seconds()
    return fire_at, max(delay, 0.0)
