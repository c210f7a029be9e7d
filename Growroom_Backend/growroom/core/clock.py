from __future__ import annotations

from datetime import datetime, timezone
from functools import lru_cache
from typing import Optional
from zoneinfo import ZoneInfo

from growroom.core import config


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@lru_cache(maxsize=8)
def _zone(name: str) -> ZoneInfo:
    return ZoneInfo(name)


def to_local(value: datetime, tz_name: Optional[str] = None) -> datetime:
    return as_utc(value).astimezone(_zone(tz_name or config.AUTOMATION_TIMEZONE))


def minutes_of_day(value: datetime) -> int:
    return value.hour * 60 + value.minute


def weekday_sunday_first(value: datetime) -> int:
    # 0 = Sunday ... 6 = Saturday
    return (value.weekday() + 1) % 7
