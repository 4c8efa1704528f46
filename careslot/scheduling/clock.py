"""Time source for scheduling operations."""

from datetime import datetime, timezone
from typing import Callable, Optional
from zoneinfo import ZoneInfo

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def wall_clock_to_utc(value: datetime, tz_name: str) -> datetime:
    """Convert a provider's naive wall-clock time in ``tz_name`` to UTC."""
    tz = timezone.utc if tz_name == "UTC" else ZoneInfo(tz_name)
    return value.replace(tzinfo=tz).astimezone(timezone.utc)
