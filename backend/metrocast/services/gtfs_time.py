"""
GTFS time helpers.

GTFS stop times are local wall-clock offsets from the midnight that starts
the service date, and may exceed 24:00:00 for trips that run past midnight.
These helpers turn them into absolute UTC instants without consulting the
process' own timezone.
"""

from __future__ import annotations

import re
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from metrocast.services.errors import GTFSTimeFormatError

_GTFS_TIME_RE = re.compile(r"([0-9]{1,2}):([0-5][0-9]):([0-5][0-9])")
_SERVICE_DATE_FORMAT = "%Y%m%d"


def seconds_since_midnight(time_of_day: str) -> int:
    """Convert a GTFS ``HH:MM:SS`` string to seconds after service midnight.

    >>> seconds_since_midnight("01:23:45")
    5025
    >>> seconds_since_midnight("25:00:00")
    90000
    """
    match = _GTFS_TIME_RE.fullmatch(time_of_day)
    if not match:
        raise GTFSTimeFormatError(f"Invalid GTFS time format: {time_of_day!r}")

    hours, minutes, seconds = (int(part) for part in match.groups())
    return hours * 3600 + minutes * 60 + seconds


def parse_service_date(service_date: str) -> date:
    """Parse a ``YYYYMMDD`` service date."""
    try:
        return datetime.strptime(service_date, _SERVICE_DATE_FORMAT).date()
    except ValueError as exc:
        raise GTFSTimeFormatError(
            f"Invalid GTFS service date: {service_date!r}"
        ) from exc


def format_service_date(day: date) -> str:
    return day.strftime(_SERVICE_DATE_FORMAT)


def local_midnight(service_date: str, tz: ZoneInfo) -> datetime:
    """Return local midnight of the service date in ``tz`` as a UTC instant."""
    day = parse_service_date(service_date)
    return datetime.combine(day, time(0, 0), tzinfo=tz).astimezone(timezone.utc)


def gtfs_timestamp(service_date: str, time_of_day: str, tz: ZoneInfo) -> datetime:
    """Convert a service date plus a GTFS local time into a UTC instant.

    The seconds are added to midnight *after* converting it to UTC, so on
    DST transition days the result reflects elapsed time rather than a
    wall-clock reading. This matches how GTFS defines stop times.
    """
    seconds = seconds_since_midnight(time_of_day)
    return local_midnight(service_date, tz) + timedelta(seconds=seconds)


def service_date_for(instant: datetime, tz: ZoneInfo) -> str:
    """Return the ``YYYYMMDD`` calendar date of an instant in ``tz``."""
    return format_service_date(instant.astimezone(tz).date())


def local_time_of_day(service_date: str, instant: datetime, tz: ZoneInfo) -> str:
    """Inverse of :func:`gtfs_timestamp` for a known service date."""
    elapsed = int((instant - local_midnight(service_date, tz)).total_seconds())
    hours, remainder = divmod(elapsed, 3600)
    minutes, seconds = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}"


def days_between(service_date: str, today: date) -> int:
    """Whole days from ``today`` to the service date (negative if past)."""
    return (parse_service_date(service_date) - today).days
