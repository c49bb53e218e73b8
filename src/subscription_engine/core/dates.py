# subscription_engine/core/dates.py
"""The one definition of "how many days are left"."""

from __future__ import annotations
import math
from datetime import date, datetime, timedelta
from zoneinfo import ZoneInfo

from subscription_engine.models.subscription import ensure_utc as as_utc

DAY = timedelta(days=1)


def days_until(end: datetime, now: datetime) -> int:
    """Whole days from now to end, rounded up. Negative once end has passed."""
    seconds = (as_utc(end) - as_utc(now)).total_seconds()
    return math.ceil(seconds / DAY.total_seconds())


def calendar_day(now: datetime, tz_name: str = "UTC") -> date:
    """Calendar day of `now` in the given timezone (used for once-per-day guards)."""
    return as_utc(now).astimezone(ZoneInfo(tz_name)).date()
