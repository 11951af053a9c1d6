"""Calendar helpers for billing periods.

A period is a calendar month identified as ``YYYY-MM``. All clock reads go
through utc_now() so callers can pass an explicit ``now`` in tests.
"""

import calendar
import re
from datetime import UTC, date, datetime

from spendwatch.core.errors import ValidationError

_PERIOD_PATTERN = re.compile(r"^(\d{4})-(0[1-9]|1[0-2])$")


def utc_now() -> datetime:
    """Return the current UTC time."""
    return datetime.now(UTC)


def to_iso(moment: datetime) -> str:
    """Serialize a timestamp as a fixed-width UTC ISO string.

    Fixed microsecond precision keeps stored timestamps comparable as text.
    """
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC).isoformat(timespec="microseconds")


def from_iso(value: str) -> datetime:
    """Parse a stored ISO timestamp, assuming UTC when no offset is present."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def parse_period(period: str) -> tuple[int, int]:
    """Split a ``YYYY-MM`` string into (year, month).

    Raises:
        ValidationError: If the string is not a valid period.
    """
    match = _PERIOD_PATTERN.match(period or "")
    if not match:
        raise ValidationError("period", f"expected YYYY-MM, got {period!r}")
    return int(match.group(1)), int(match.group(2))


def period_of(day: date) -> str:
    """Return the period containing a date."""
    return f"{day.year:04d}-{day.month:02d}"


def shift_period(period: str, months: int) -> str:
    """Move a period forward (positive) or backward (negative) by whole months."""
    year, month = parse_period(period)
    index = year * 12 + (month - 1) + months
    return f"{index // 12:04d}-{index % 12 + 1:02d}"


def next_period(period: str) -> str:
    """Return the period following the given one."""
    return shift_period(period, 1)


def period_bounds(period: str) -> tuple[date, date]:
    """Return the first and last day of a period."""
    year, month = parse_period(period)
    last = calendar.monthrange(year, month)[1]
    return date(year, month, 1), date(year, month, last)


def days_in_period(period: str) -> int:
    """Return the number of days in a period."""
    year, month = parse_period(period)
    return calendar.monthrange(year, month)[1]


def days_left_in_period(today: date) -> int:
    """Whole days remaining in today's period after today."""
    last = calendar.monthrange(today.year, today.month)[1]
    return max(0, last - today.day)


def subtract_months(day: date, months: int) -> date:
    """Return the same day-of-month ``months`` earlier, clamped to month end."""
    index = day.year * 12 + (day.month - 1) - months
    year, month = index // 12, index % 12 + 1
    return date(year, month, min(day.day, calendar.monthrange(year, month)[1]))


def parse_day(value: str | date) -> date:
    """Coerce a ``YYYY-MM-DD`` string (or date) to a date.

    Raises:
        ValidationError: If the value is not a valid ISO date.
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(value)
    except (TypeError, ValueError) as e:
        raise ValidationError("date", f"expected YYYY-MM-DD, got {value!r}") from e
