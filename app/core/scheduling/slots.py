"""
Slot generation.

Lays a fixed grid of ``duration``-minute slots over a counselor's working
hours and drops every slot that overlaps a busy range. Slots are never
shortened or shifted to fit around busy time. All intervals are half-open
``[start, end)``, so a slot ending exactly when a busy range starts is free.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Any, Iterable, Optional
from zoneinfo import ZoneInfo

from dateutil import parser as date_parser

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BusyRange:
    """Occupied interval reported by the calendar provider."""

    start: datetime
    end: datetime

    @classmethod
    def from_dict(cls, data: dict[str, Any], tz: ZoneInfo) -> Optional["BusyRange"]:
        """Parse a free/busy entry; returns None for unusable timestamps."""
        try:
            start = date_parser.isoparse(str(data["start"]))
            end = date_parser.isoparse(str(data["end"]))
        except (KeyError, TypeError, ValueError, OverflowError):
            return None

        if start.tzinfo is None:
            start = start.replace(tzinfo=tz)
        if end.tzinfo is None:
            end = end.replace(tzinfo=tz)
        return cls(start=start.astimezone(tz), end=end.astimezone(tz))

    def to_dict(self) -> dict:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}


@dataclass(frozen=True)
class CandidateSlot:
    """A bookable slot; ``label`` is ``HH:MM-HH:MM`` in the counselor's zone."""

    start: datetime
    end: datetime
    label: str

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "startISO": self.start.isoformat(),
            "endISO": self.end.isoformat(),
            "label": self.label,
        }


def overlaps(start1: datetime, end1: datetime, start2: datetime, end2: datetime) -> bool:
    """Half-open interval overlap; touching endpoints do not overlap."""
    return start1 < end2 and start2 < end1


def parse_clock(value: str) -> Optional[time]:
    """Parse ``HH:MM`` or ``HH:MM:SS`` working-hour strings."""
    parts = str(value).strip().split(":")
    if len(parts) not in (2, 3):
        return None
    try:
        numbers = [int(p) for p in parts]
        return time(*numbers)
    except ValueError:
        return None


def generate_time_slots(
    day: date,
    working_start: str,
    working_end: str,
    duration_minutes: int,
    tz: ZoneInfo,
    busy_ranges: Iterable[BusyRange],
) -> list[CandidateSlot]:
    """
    Produce free slots for one day.

    Args:
        day: Calendar date in the counselor's timezone
        working_start: ``HH:MM`` start of working hours
        working_end: ``HH:MM`` end of working hours
        duration_minutes: Slot length, also the grid step
        tz: Counselor timezone
        busy_ranges: Occupied intervals (any timezone)

    Returns:
        Slots in chronological order
    """
    start_clock = parse_clock(working_start)
    end_clock = parse_clock(working_end)
    if start_clock is None or end_clock is None or duration_minutes <= 0:
        logger.warning(
            f"Unusable working hours {working_start!r}-{working_end!r} "
            f"or duration {duration_minutes}"
        )
        return []

    window_start = datetime.combine(day, start_clock, tzinfo=tz)
    window_end = datetime.combine(day, end_clock, tzinfo=tz)
    step = timedelta(minutes=duration_minutes)
    busy = list(busy_ranges)

    slots: list[CandidateSlot] = []
    cursor = window_start
    while cursor + step <= window_end:
        slot_end = cursor + step
        if not any(overlaps(cursor, slot_end, b.start, b.end) for b in busy):
            slots.append(
                CandidateSlot(
                    start=cursor,
                    end=slot_end,
                    label=f"{cursor.strftime('%H:%M')}-{slot_end.strftime('%H:%M')}",
                )
            )
        cursor = slot_end

    return slots
