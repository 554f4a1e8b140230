"""
Time helpers.

All timestamps are stored as naive UTC (SQLAlchemy ``DateTime`` without
timezone) so that PostgreSQL and SQLite compare them the same way.
"""
from datetime import datetime, timezone


def utc_now() -> datetime:
    """Current time as naive UTC"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Normalize an aware or naive datetime to naive UTC"""
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def from_epoch_ms(epoch_ms: int) -> datetime:
    """Epoch milliseconds to an aware UTC datetime"""
    return datetime.fromtimestamp(epoch_ms / 1000, tz=timezone.utc)
