"""
Booking time parsing.

Booking times reach us from admin entry, UI slot labels and legacy rows, so
the parser accepts several shapes and resolves them to a timezone-aware
datetime on the booking date:

    "09:00", "9:00:00"            24-hour clock
    "9:00 AM", "09:30PM"          12-hour clock
    "09:00-09:30", "09:00–09:30"  slot labels (start of range is used)
    "2025-10-20T09:00:00+05:30"   full timestamps

Unparseable input returns None; callers map that to INVALID_TIME_FORMAT.
"""

import logging
import re
from datetime import date, datetime, time
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dateutil import parser as date_parser

logger = logging.getLogger(__name__)

_DASHES = re.compile("[\u2013\u2014\u2015]")
_ODD_SPACES = re.compile("[\u202f\u00a0]")
_CLOCK_24H = re.compile(r"^(\d{1,2}):(\d{2})(?::(\d{2}))?$")
_HAS_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}[T ]\d")
_TRAILING_OFFSET = re.compile(r"\d[+]\d{2}:?\d{2}$")

_CLOCK_12H_FORMATS = (
    "%I:%M %p",
    "%I:%M:%S %p",
    "%I:%M%p",
    "%I:%M:%S%p",
    "%I %p",
    "%I%p",
)


def resolve_timezone(tz_name: Optional[str], fallback: str) -> ZoneInfo:
    """Return the ZoneInfo for ``tz_name``, or ``fallback`` if unknown/unset."""
    if tz_name:
        try:
            return ZoneInfo(tz_name)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning(f"Unknown timezone '{tz_name}', using {fallback}")
    return ZoneInfo(fallback)


def _normalize(raw: str) -> str:
    s = _DASHES.sub("-", raw)
    s = _ODD_SPACES.sub(" ", s)
    return s.strip()


def _looks_like_timestamp(s: str) -> bool:
    return (
        bool(_HAS_DATE.match(s))
        or "T" in s
        or s.endswith("Z")
        or bool(_TRAILING_OFFSET.search(s))
    )


def _parse_timestamp(s: str, tz: ZoneInfo) -> Optional[datetime]:
    try:
        parsed = date_parser.isoparse(s)
    except (ValueError, OverflowError):
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=tz)
    return parsed.astimezone(tz)


def _parse_date(booking_date: str) -> Optional[date]:
    try:
        return date.fromisoformat(booking_date.strip())
    except ValueError:
        return None


def _combine(day: date, clock: time, tz: ZoneInfo) -> datetime:
    return datetime.combine(day, clock.replace(microsecond=0), tzinfo=tz)


def parse_booking_start(
    booking_date: str,
    booking_time: str,
    tz: ZoneInfo,
) -> Optional[datetime]:
    """
    Resolve ``booking_date`` + ``booking_time`` to an aware datetime in ``tz``.

    Args:
        booking_date: ``YYYY-MM-DD``
        booking_time: Loosely formatted time (see module docstring)
        tz: Counselor timezone

    Returns:
        Aware datetime, or None if nothing matched
    """
    if not booking_date or not booking_time:
        return None

    s = _normalize(str(booking_time))
    if not s:
        return None

    if _looks_like_timestamp(s):
        parsed = _parse_timestamp(s, tz)
        if parsed is not None:
            return parsed

    if "-" in s:
        s = s.split("-", 1)[0].strip()

    day = _parse_date(str(booking_date))

    match = _CLOCK_24H.match(s)
    if match and day is not None:
        hour, minute = int(match.group(1)), int(match.group(2))
        second = int(match.group(3)) if match.group(3) else 0
        if hour < 24 and minute < 60 and second < 60:
            return _combine(day, time(hour, minute, second), tz)

    if day is not None:
        upper = s.upper()
        for fmt in _CLOCK_12H_FORMATS:
            try:
                clock = datetime.strptime(upper, fmt).time()
            except ValueError:
                continue
            return _combine(day, clock, tz)

    # Last resort: let dateutil have a go at "date time"
    try:
        parsed = date_parser.parse(f"{booking_date} {s}")
    except (ValueError, OverflowError, TypeError):
        return None

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=tz)
    return parsed.astimezone(tz)


def format_clock(dt: datetime) -> str:
    """``HH:MM`` in the datetime's own timezone."""
    return dt.strftime("%H:%M")


def format_booking_time(dt: datetime) -> str:
    """``HH:MM:SS`` as stored on the booking row."""
    return dt.strftime("%H:%M:%S")
