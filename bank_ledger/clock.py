"""Wall-clock helpers. Components take a clock callable so tests can pin time."""

from datetime import date, datetime, timezone
from typing import Callable
from zoneinfo import ZoneInfo

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def business_day(timestamp: datetime, tz_name: str) -> date:
    """Calendar day of ``timestamp`` in the bank's timezone"""
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return timestamp.astimezone(ZoneInfo(tz_name)).date()
