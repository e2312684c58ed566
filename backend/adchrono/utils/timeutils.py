"""UTC helpers.

SQLite hands timezone-aware columns back as naive datetimes, PostgreSQL keeps
the offset. Everything in the services goes through `ensure_utc` so both
backends compare the same way.
"""

from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes, convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def floor_to_second(value: datetime) -> datetime:
    return ensure_utc(value).replace(microsecond=0)
