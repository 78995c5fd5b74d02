"""Recurrence expansion: one template window replicated across calendar dates."""
import calendar
from datetime import date, timedelta

from app.core.enums import parse_enum
from app.core.errors import InvalidPattern, InvalidRange
from app.modules.availability.models import RecurrencePattern


def add_months(d: date, months: int) -> date:
    """Calendar-month arithmetic, clamping to the last day of shorter months."""
    idx = d.month - 1 + months
    year, month = d.year + idx // 12, idx % 12 + 1
    day = min(d.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def default_end_date(start_date: date, months: int) -> date:
    return add_months(start_date, months)


def expand(start_date: date, pattern: RecurrencePattern | str, end_date: date) -> list[date]:
    """Dates a recurring window applies to, ascending, both ends inclusive.

    MONTHLY steps one calendar month from the previous occurrence, so a
    clamp carries forward: Jan 31 -> Feb 28 -> Mar 28.
    """
    pattern = parse_enum(RecurrencePattern, pattern, InvalidPattern)
    if pattern is None:
        raise InvalidPattern("Recurrence pattern is required")
    if start_date > end_date:
        raise InvalidRange(
            f"Recurrence end date {end_date} is before start date {start_date}",
            start=start_date.isoformat(), end=end_date.isoformat(),
        )

    dates: list[date] = []
    current = start_date
    while current <= end_date:
        dates.append(current)
        current = _advance(current, pattern)
    return dates


def _advance(d: date, pattern: RecurrencePattern) -> date:
    if pattern is RecurrencePattern.MONTHLY:
        return add_months(d, 1)
    return d + timedelta(days=1 if pattern is RecurrencePattern.DAILY else 7)
