"""
Scheduling Module

Booking-slot reconciliation against counselors' Google Calendars.

Usage:
    from app.core.scheduling import BookingReconciler, BookingRequest

    reconciler = BookingReconciler(gateway, bookings, students, slot_locks)
    result = await reconciler.book_session(
        BookingRequest(counselor_id=15, booking_date="2025-10-20",
                       booking_time="09:00-10:00", student_email="a@uni.edu")
    )
    if not result.success:
        print(result.error)  # ErrorKind.SLOT_UNAVAILABLE, ...
"""

# Result type and error kinds
from app.core.scheduling.errors import CalendarResult, ErrorKind

# Time parsing and slot generation
from app.core.scheduling.time_parser import (
    format_booking_time,
    format_clock,
    parse_booking_start,
    resolve_timezone,
)
from app.core.scheduling.slots import (
    BusyRange,
    CandidateSlot,
    generate_time_slots,
    overlaps,
)

# Google Calendar
from app.core.scheduling.calendar_gateway import (
    AuthorizedCalendar,
    GoogleCalendarGateway,
    expiry_to_datetime,
)

# Status rules
from app.core.scheduling.status import (
    Actor,
    ActorRole,
    can_transition,
    normalize_status,
)

# Reconciler (main orchestrator)
from app.core.scheduling.reconciler import (
    BookingReconciler,
    BookingRequest,
    build_event,
    match_event_for_booking,
)

__all__ = [
    "CalendarResult",
    "ErrorKind",
    "format_booking_time",
    "format_clock",
    "parse_booking_start",
    "resolve_timezone",
    "BusyRange",
    "CandidateSlot",
    "generate_time_slots",
    "overlaps",
    "AuthorizedCalendar",
    "GoogleCalendarGateway",
    "expiry_to_datetime",
    "Actor",
    "ActorRole",
    "can_transition",
    "normalize_status",
    "BookingReconciler",
    "BookingRequest",
    "build_event",
    "match_event_for_booking",
]
