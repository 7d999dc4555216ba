from datetime import datetime, timedelta, timezone

from backend.config import DAY_UTC_OFFSET_MINUTES


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Naive values are treated as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def local_day_bounds(now: datetime, *, offset_minutes: int | None = None) -> tuple[datetime, datetime]:
    """
    Returns the [start, end) UTC instants of the gym-local calendar day that
    contains `now`, using a fixed UTC offset.
    """
    offset = timedelta(minutes=DAY_UTC_OFFSET_MINUTES if offset_minutes is None else offset_minutes)
    local = as_utc(now) + offset
    local_midnight = local.replace(hour=0, minute=0, second=0, microsecond=0)
    start = local_midnight - offset
    return start, start + timedelta(days=1)
