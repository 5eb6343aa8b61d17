"""
Time helpers.

All persisted timestamps are naive UTC datetimes.
"""
import calendar
from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def from_epoch(value: Optional[int]) -> Optional[datetime]:
    """Convert a provider epoch-seconds timestamp to naive UTC."""
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)


def add_months(moment: datetime, months: int) -> datetime:
    """Add calendar months, clamping the day to the target month's length."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def add_weeks(moment: datetime, weeks: int) -> datetime:
    return moment + timedelta(weeks=weeks)
