"""Utilities for working with timestamps in UTC and the clinic's local calendar."""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone, tzinfo
from functools import lru_cache
from typing import Optional, Tuple
from zoneinfo import ZoneInfo


def utc_now() -> datetime:
    """Return the current time as a timezone-aware ``datetime`` in UTC."""

    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Normalise ``dt`` to a timezone-aware UTC ``datetime``."""

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


@lru_cache(maxsize=16)
def resolve_timezone(name: Optional[str]) -> tzinfo:
    """Return the tzinfo for *name*, treating blanks and ``UTC`` as UTC."""

    if not name or name.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(name)


def local_date(dt: datetime, tz: tzinfo) -> date:
    """Return the calendar date of *dt* as observed in *tz*."""

    return ensure_utc(dt).astimezone(tz).date()


def at_local_time(day: date, time_of_day: time, tz: tzinfo) -> datetime:
    """Return the UTC instant for ``time_of_day`` on ``day`` in *tz*."""

    local = datetime.combine(day, time_of_day.replace(tzinfo=None)).replace(tzinfo=tz)
    return local.astimezone(timezone.utc)


def local_day_bounds(dt: datetime, tz: tzinfo) -> Tuple[datetime, datetime]:
    """Return the UTC ``[start, end)`` interval of the local calendar day of *dt*."""

    day = local_date(dt, tz)
    start = datetime.combine(day, time.min).replace(tzinfo=tz)
    end = datetime.combine(day + timedelta(days=1), time.min).replace(tzinfo=tz)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


def format_display(dt: Optional[datetime], tz: tzinfo = timezone.utc) -> str:
    """Format *dt* for message bodies, e.g. ``2024-05-02 14:30``."""

    if dt is None:
        return ""
    return ensure_utc(dt).astimezone(tz).strftime("%Y-%m-%d %H:%M")


__all__ = [
    "utc_now",
    "ensure_utc",
    "resolve_timezone",
    "local_date",
    "at_local_time",
    "local_day_bounds",
    "format_display",
]
