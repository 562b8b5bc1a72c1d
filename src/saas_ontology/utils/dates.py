"""Calendar arithmetic used across analytics periods."""
import calendar
from datetime import date, datetime, timedelta
from typing import TypeVar

DateT = TypeVar("DateT", date, datetime)

# Month length used for tenure style conversions
DAYS_PER_MONTH = 30


def add_months(value: DateT, months: int) -> DateT:
    """Shift a date by whole calendar months, clamping to the month's last day."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def month_start(value: datetime) -> datetime:
    """Midnight on the first day of ``value``'s month."""
    return value.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def month_end(value: datetime) -> datetime:
    """Last microsecond of ``value``'s month."""
    return add_months(month_start(value), 1) - timedelta(microseconds=1)


def month_key(value: date) -> str:
    """``YYYY-MM`` key of a date."""
    return f"{value.year:04d}-{value.month:02d}"


def months_between(start: datetime, end: datetime) -> int:
    """Whole 30-day months elapsed from ``start`` to ``end`` (floored, never negative)."""
    return max(0, (end - start).days // DAYS_PER_MONTH)


def fractional_months(start: datetime, end: datetime) -> float:
    """Elapsed months as a fraction of 30-day months."""
    return (end - start).total_seconds() / (DAYS_PER_MONTH * 86400)
