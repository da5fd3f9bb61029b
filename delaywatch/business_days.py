"""
Business-day arithmetic used for delivery-window estimates.

Business days exclude Saturday and Sunday; carrier holiday calendars are not
modelled. Every function works on naive UTC datetimes, which is how the
models store timestamps.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional

SATURDAY = 5
SUNDAY = 6


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def start_of_day(value: datetime) -> datetime:
    return to_naive_utc(value).replace(hour=0, minute=0, second=0, microsecond=0)


def is_weekend(value: datetime) -> bool:
    return value.weekday() in (SATURDAY, SUNDAY)


def is_business_day(value: datetime) -> bool:
    return not is_weekend(value)


def add_business_days(start: datetime, business_days: int) -> datetime:
    """
    Add business days to a date.

    A start date falling on a weekend first rolls forward to Monday without
    counting that move. The result is at midnight UTC.

    Example: Friday 2026-02-06 + 1 business day -> Monday 2026-02-09
    """
    if business_days < 0:
        raise ValueError("business_days must be non-negative")

    current = start_of_day(start)
    if business_days == 0:
        return current

    while is_weekend(current):
        current += timedelta(days=1)

    remaining = business_days
    while remaining > 0:
        current += timedelta(days=1)
        if is_business_day(current):
            remaining -= 1

    return current


def difference_in_business_days(start: datetime, end: datetime) -> int:
    """Business days in [start, end); negative when end precedes start."""
    first = start_of_day(start)
    last = start_of_day(end)
    if first == last:
        return 0

    forward = first < last
    current, stop = (first, last) if forward else (last, first)

    count = 0
    while current < stop:
        if is_business_day(current):
            count += 1
        current += timedelta(days=1)

    return count if forward else -count


def next_business_day(value: datetime) -> datetime:
    current = start_of_day(value)
    while not is_business_day(current):
        current += timedelta(days=1)
    return current


def calculate_expected_delivery_date(ship_date: datetime, business_days: int) -> datetime:
    return add_business_days(ship_date, business_days)


def difference_in_calendar_days(later: datetime, earlier: datetime) -> int:
    return (to_naive_utc(later).date() - to_naive_utc(earlier).date()).days


def is_past_deadline(expected_delivery_date: datetime, grace_hours: float = 8, now: Optional[datetime] = None) -> bool:
    """True once ``now`` is strictly later than the expected date plus the grace period."""
    now = to_naive_utc(now) if now else utcnow()
    deadline = to_naive_utc(expected_delivery_date) + timedelta(hours=grace_hours)
    return now > deadline


def calculate_days_delayed(expected_delivery_date: datetime, now: Optional[datetime] = None) -> int:
    """Calendar days between the expected date and now, floored at zero."""
    now = now or utcnow()
    return max(0, difference_in_calendar_days(now, expected_delivery_date))
