"""
Booking reconciler.

Keeps local booking rows and counselor Google calendars in step:

- Slot queries: free/busy from Google -> slot grid.
- Booking: re-check free/busy for the exact window under a slot lock,
  create the Google event, then persist the booking (pending -> confirmed).
- Reschedule: find the existing event (stored id, else heuristic search),
  patch it, or create a replacement when it cannot be found or patched.
  The local row is moved regardless of the calendar outcome.
- Status changes and cancellation, with best-effort event deletion.

Calendar failures while booking are fatal to the request. Calendar
failures while rescheduling or canceling are reported, never fatal.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Any, Optional, Union

from sqlalchemy.exc import SQLAlchemyError

from app.config import get_settings
from app.core.scheduling.calendar_gateway import AuthorizedCalendar, GoogleCalendarGateway
from app.core.scheduling.errors import CalendarResult, ErrorKind
from app.core.scheduling.slots import generate_time_slots
from app.core.scheduling.status import (
    Actor,
    can_change_status,
    can_reschedule,
    can_transition,
    is_terminal,
    normalize_status,
)
from app.core.scheduling.time_parser import (
    format_booking_time,
    format_clock,
    parse_booking_start,
    resolve_timezone,
)
from app.infra.redis import SlotLockStore
from app.models.database import Booking, BookingStatus
from app.repositories.booking import BookingRepository
from app.repositories.student import StudentRepository

logger = logging.getLogger(__name__)


@dataclass
class BookingRequest:
    """Input to ``book_session``."""

    counselor_id: Optional[int]
    booking_date: Optional[str]
    booking_time: Optional[str]
    student_id: Optional[int] = None
    student_email: Optional[str] = None
    duration: Optional[int] = None
    summary: Optional[str] = None
    description: Optional[str] = None
    timezone: Optional[str] = None
    year_level: Optional[str] = None
    additional_notes: Optional[str] = None


def build_event(
    counselor_email: str,
    student_email: Optional[str],
    start: datetime,
    end: datetime,
    summary: Optional[str] = None,
    description: Optional[str] = None,
) -> dict:
    """Google event body for a counseling session."""
    attendees = [{"email": counselor_email}]
    if student_email:
        attendees.append({"email": student_email})

    tz_name = getattr(start.tzinfo, "key", None) or str(start.tzinfo)
    return {
        "summary": summary or f"Counselling session with {student_email or 'student'}",
        "description": description or "",
        "start": {"dateTime": start.isoformat(), "timeZone": tz_name},
        "end": {"dateTime": end.isoformat(), "timeZone": tz_name},
        "attendees": attendees,
        "reminders": {"useDefault": True},
    }


def match_event_for_booking(events: list[dict], booking: Booking) -> Optional[dict]:
    """
    Guess which calendar event belongs to a booking that has no stored id.

    Matches on student attendee email, booking id in the summary, or the
    student's name in the summary. The first hit wins.
    """
    email = (booking.student_email or "").lower()
    name = (booking.student_name or "").lower()
    booking_ref = str(booking.id) if booking.id is not None else ""

    for event in events:
        if not event:
            continue
        attendees = event.get("attendees") or []
        if email and any((a.get("email") or "").lower() == email for a in attendees):
            return event

        summary = str(event.get("summary") or "")
        if booking_ref and booking_ref in summary:
            return event
        if name and name in summary.lower():
            return event
    return None


def _parse_day(value: Union[str, date, None]) -> Optional[date]:
    if isinstance(value, date):
        return value
    if not value:
        return None
    try:
        return date.fromisoformat(str(value).strip())
    except ValueError:
        return None


class BookingReconciler:
    """
    Orchestrates bookings against a counselor's Google Calendar.

    One instance per request; collaborators share the request's session.
    """

    def __init__(
        self,
        gateway: GoogleCalendarGateway,
        bookings: BookingRepository,
        students: StudentRepository,
        slot_locks: SlotLockStore,
    ):
        self.settings = get_settings()
        self.gateway = gateway
        self.bookings = bookings
        self.students = students
        self.slot_locks = slot_locks

    # === Availability ===

    async def get_available_slots(
        self,
        counselor_id: int,
        day: Union[str, date],
        duration_minutes: Optional[int] = None,
    ) -> CalendarResult[dict]:
        """
        Free slots for one day.

        Calendar authorization problems are an expected state here and come
        back as a successful ``{"connected": False, "slots": []}`` carrying
        the auth error kind under ``reason`` and its message under ``error``.

        Returns:
            ``{"connected": True, "slots": [CandidateSlot, ...]}``
        """
        duration = duration_minutes or self.settings.default_session_minutes
        target_day = _parse_day(day)
        if target_day is None:
            return CalendarResult.fail(ErrorKind.INVALID_TIME_FORMAT, "Invalid date, expected YYYY-MM-DD")

        auth = await self.gateway.get_authorized_client(counselor_id)
        if not auth.success:
            if auth.error and auth.error.is_auth_error:
                logger.info(f"Counselor {counselor_id} calendar not connected: {auth.error.value}")
                return CalendarResult.ok(
                    {
                        "connected": False,
                        "slots": [],
                        "reason": auth.error.value,
                        "error": auth.message,
                    },
                )
            return auth.cast()

        calendar = auth.value
        counselor = calendar.counselor
        tz = calendar.timezone

        day_start = datetime.combine(target_day, time.min, tzinfo=tz)
        day_end = day_start + timedelta(days=1)

        busy = await self.gateway.query_free_busy(
            calendar, calendar.calendar_id, day_start, day_end, tz
        )
        if not busy.success:
            return busy.cast()

        slots = generate_time_slots(
            target_day,
            counselor.work_start_time or self.settings.default_work_start,
            counselor.work_end_time or self.settings.default_work_end,
            duration,
            tz,
            busy.value or [],
        )
        logger.info(
            f"Counselor {counselor_id} has {len(slots)} free {duration}-minute slots on {target_day}"
        )
        return CalendarResult.ok({"connected": True, "slots": slots})

    # === Booking ===

    async def resolve_student(
        self,
        student_id: Optional[int],
        student_email: Optional[str],
    ) -> Optional[int]:
        """Explicit id wins, else find or create a student by email."""
        if student_id is not None:
            return student_id
        if not student_email:
            return None

        found = await self.students.find_by_email(student_email)
        if found is not None:
            return found.id

        guest_name = student_email.split("@")[0] or "Guest Student"
        created = await self.students.create(guest_name, student_email)
        return created.id

    async def book_session(self, request: BookingRequest) -> CalendarResult[dict]:
        """
        Book a session: verify the slot, create the event, persist the row.

        The free/busy re-check, event creation and booking insert run while
        holding the slot lock for ``(counselor, date, HH:MM)``; a concurrent
        request for the same slot gets SLOT_UNAVAILABLE.

        Returns:
            ``{"booking": {...}, "googleEvent": {...}}``
        """
        if not request.counselor_id or not request.booking_date or not request.booking_time:
            return CalendarResult.fail(
                ErrorKind.MISSING_FIELDS,
                "counselor_id, booking_date and booking_time are required",
            )
        if request.student_id is None and not request.student_email:
            return CalendarResult.fail(
                ErrorKind.STUDENT_REQUIRED, "student_id or student_email required"
            )

        auth = await self.gateway.get_authorized_client(request.counselor_id)
        if not auth.success:
            return auth.cast()
        calendar = auth.value

        tz = (
            resolve_timezone(request.timezone, self.settings.default_timezone)
            if request.timezone
            else calendar.timezone
        )
        start = parse_booking_start(request.booking_date, request.booking_time, tz)
        if start is None:
            return CalendarResult.fail(
                ErrorKind.INVALID_TIME_FORMAT,
                "Invalid booking_time format, expected HH:mm or HH:mm:ss or common "
                "human formats (e.g. '9:00 AM' or '09:00-09:30')",
            )
        end = start + timedelta(minutes=request.duration or self.settings.default_session_minutes)

        lock_key = SlotLockStore.slot_key(
            request.counselor_id, start.date().isoformat(), format_clock(start)
        )
        async with self.slot_locks.hold(lock_key) as acquired:
            if not acquired:
                logger.info(f"Slot {lock_key} is being booked by another request")
                return CalendarResult.fail(
                    ErrorKind.SLOT_UNAVAILABLE, "Selected slot is no longer available"
                )
            return await self._book_locked(request, calendar, start, end)

    async def _book_locked(
        self,
        request: BookingRequest,
        calendar: AuthorizedCalendar,
        start: datetime,
        end: datetime,
    ) -> CalendarResult[dict]:
        busy = await self.gateway.query_free_busy(
            calendar, calendar.calendar_id, start, end, start.tzinfo
        )
        if not busy.success:
            return busy.cast()
        if busy.value:
            logger.info(
                f"Slot {start.isoformat()} for counselor {request.counselor_id} is busy"
            )
            return CalendarResult.fail(
                ErrorKind.SLOT_UNAVAILABLE, "Selected slot is no longer available"
            )

        event_body = build_event(
            calendar.counselor.email,
            request.student_email,
            start,
            end,
            summary=request.summary,
            description=request.description or request.additional_notes,
        )
        created = await self.gateway.create_event(calendar, event_body)
        if not created.success:
            return created.cast()
        google_event = created.value or {}

        try:
            student_id = await self.resolve_student(request.student_id, request.student_email)
            booking = await self.bookings.create(
                student_id,
                request.counselor_id,
                start.date(),
                format_booking_time(start),
                year_level=request.year_level,
                additional_notes=request.additional_notes,
            )
        except SQLAlchemyError as e:
            logger.error(f"Failed to persist booking for counselor {request.counselor_id}: {e}")
            await self.bookings.session.rollback()
            await self._discard_event(calendar, google_event.get("id"))
            return CalendarResult.fail(ErrorKind.PERSISTENCE_FAILED, "Failed to save booking")

        booking_id = booking.id
        if google_event.get("id"):
            try:
                await self.bookings.set_external_event_id(booking_id, google_event["id"])
            except SQLAlchemyError as e:
                logger.warning(f"Could not store Google event id on booking {booking_id}: {e}")

        booking = await self.bookings.update_status(booking_id, BookingStatus.CONFIRMED)

        logger.info(f"Booking {booking.id} confirmed with Google event {google_event.get('id')}")
        return CalendarResult.ok({"booking": booking.to_dict(), "googleEvent": google_event})

    async def _discard_event(self, calendar: AuthorizedCalendar, event_id: Optional[str]) -> None:
        if not event_id:
            return
        deleted = await self.gateway.delete_event(calendar, event_id)
        if not deleted.success:
            logger.warning(f"Orphaned Google event {event_id} could not be deleted: {deleted.message}")

    # === Reschedule ===

    async def reschedule_event_for_booking(
        self,
        booking_or_id: Union[Booking, int],
        new_date: str,
        new_time: str,
        duration_minutes: Optional[int] = None,
    ) -> CalendarResult[dict]:
        """
        Move the booking's Google event to a new start time.

        Conflicts at the new time are logged but do not block; a reschedule
        is an explicit human decision.

        Returns:
            Success detail carries ``googleEvent`` and either
            ``updatedEventId`` or ``createdNewEvent``.
        """
        if isinstance(booking_or_id, Booking):
            booking = booking_or_id
        else:
            booking = await self.bookings.get_by_id(booking_or_id)
        if booking is None:
            return CalendarResult.fail(ErrorKind.BOOKING_NOT_FOUND, "Booking not found")
        if not booking.counselor_id:
            return CalendarResult.fail(ErrorKind.MISSING_COUNSELOR_ID, "Booking has no counselor")

        auth = await self.gateway.get_authorized_client(booking.counselor_id)
        if not auth.success:
            return auth.cast()
        calendar = auth.value

        start = parse_booking_start(new_date, new_time, calendar.timezone)
        if start is None:
            return CalendarResult.fail(ErrorKind.INVALID_NEW_START_TIME, "Invalid new start time")
        end = start + timedelta(minutes=duration_minutes or self.settings.default_session_minutes)

        busy = await self.gateway.query_free_busy(
            calendar, calendar.calendar_id, start, end, calendar.timezone
        )
        if busy.success and busy.value:
            logger.warning(
                f"Rescheduling booking {booking.id} onto a busy window at {start.isoformat()}"
            )
        elif not busy.success:
            logger.warning(f"Free/busy check for booking {booking.id} failed: {busy.message}")

        event_id = booking.external_event_id or await self._find_event_id(calendar, booking, start, end)
        if not event_id:
            return await self._recreate_event(calendar, booking, start, end)

        existing = await self.gateway.get_event(calendar, event_id)
        if not existing.success:
            logger.warning(f"Google event {event_id} for booking {booking.id} unavailable: {existing.message}")
            return await self._recreate_event(calendar, booking, start, end)

        patched = await self.gateway.patch_event(
            calendar,
            event_id,
            {
                "start": {"dateTime": start.isoformat(), "timeZone": calendar.timezone.key},
                "end": {"dateTime": end.isoformat(), "timeZone": calendar.timezone.key},
            },
        )
        if not patched.success:
            logger.warning(f"Failed to patch Google event {event_id}: {patched.message}")
            return await self._recreate_event(calendar, booking, start, end)

        logger.info(f"Moved Google event {event_id} for booking {booking.id}")
        return CalendarResult.ok(patched.value, googleEvent=patched.value, updatedEventId=event_id)

    async def _find_event_id(
        self,
        calendar: AuthorizedCalendar,
        booking: Booking,
        start: datetime,
        end: datetime,
    ) -> Optional[str]:
        """Heuristic lookup for legacy rows that never stored an event id."""
        listed = await self.gateway.list_events_in_window(
            calendar,
            start - timedelta(days=1),
            end + timedelta(days=1),
            query=booking.student_email or str(booking.id),
        )
        if not listed.success:
            logger.warning(f"Event search for booking {booking.id} failed: {listed.message}")
            return None

        match = match_event_for_booking(listed.value or [], booking)
        if match is None:
            return None
        logger.info(f"Matched booking {booking.id} to Google event {match.get('id')}")
        return match.get("id")

    async def _recreate_event(
        self,
        calendar: AuthorizedCalendar,
        booking: Booking,
        start: datetime,
        end: datetime,
    ) -> CalendarResult[dict]:
        booking_id = booking.id
        event_body = build_event(
            calendar.counselor.email,
            booking.student_email,
            start,
            end,
            description=booking.additional_notes,
        )
        created = await self.gateway.create_event(calendar, event_body)
        if not created.success:
            logger.error(f"Fallback event creation for booking {booking_id} failed: {created.message}")
            return created.cast()

        new_event = created.value or {}
        if new_event.get("id"):
            try:
                await self.bookings.set_external_event_id(booking_id, new_event["id"])
            except SQLAlchemyError as e:
                logger.warning(f"Could not store new Google event id on booking {booking_id}: {e}")

        return CalendarResult.ok(new_event, googleEvent=new_event, createdNewEvent=True)

    async def reschedule_booking(
        self,
        booking_id: int,
        new_date: str,
        new_time: str,
        actor: Actor,
        duration_minutes: Optional[int] = None,
    ) -> CalendarResult[dict]:
        """
        Move a booking locally and on the calendar.

        The local date/time always changes once the input is valid; the
        calendar outcome is returned alongside as ``googleResult``.
        """
        booking = await self.bookings.get_by_id(booking_id)
        if booking is None:
            return CalendarResult.fail(ErrorKind.BOOKING_NOT_FOUND, "Booking not found")
        if not can_reschedule(actor, booking):
            return CalendarResult.fail(ErrorKind.FORBIDDEN, "Not allowed to reschedule this booking")
        if is_terminal(booking.status):
            return CalendarResult.fail(
                ErrorKind.INVALID_STATUS_TRANSITION,
                f"Cannot reschedule a {booking.status.value} booking",
            )

        counselor = await self.gateway.counselors.get_by_id(booking.counselor_id)
        tz = resolve_timezone(
            counselor.timezone if counselor else None, self.settings.default_timezone
        )
        start = parse_booking_start(new_date, new_time, tz)
        if start is None:
            return CalendarResult.fail(ErrorKind.INVALID_NEW_START_TIME, "Invalid new start time")

        google_result = await self.reschedule_event_for_booking(
            booking, new_date, new_time, duration_minutes
        )
        if not google_result.success:
            logger.warning(
                f"Calendar sync for reschedule of booking {booking_id} failed: {google_result.message}"
            )

        updated = await self.bookings.reschedule(booking_id, start.date(), format_booking_time(start))
        return CalendarResult.ok(
            {
                "booking": (updated or booking).to_dict(),
                "googleResult": google_result.to_dict(),
            }
        )

    # === Status ===

    async def update_status(
        self,
        booking_id: int,
        status: Optional[str],
        actor: Actor,
    ) -> CalendarResult[dict]:
        """Apply an explicit status change from an actor."""
        target = normalize_status(status)
        if target is None:
            return CalendarResult.fail(ErrorKind.INVALID_STATUS, f"Invalid status: {status!r}")

        if target == BookingStatus.CANCELED:
            return await self.cancel_booking(booking_id, actor)

        booking = await self.bookings.get_by_id(booking_id)
        if booking is None:
            return CalendarResult.fail(ErrorKind.BOOKING_NOT_FOUND, "Booking not found")
        if not can_change_status(actor, booking, target):
            return CalendarResult.fail(ErrorKind.FORBIDDEN, "Not allowed to change this booking")

        if booking.status == target:
            return CalendarResult.ok({"booking": booking.to_dict()})
        if not can_transition(booking.status, target):
            return CalendarResult.fail(
                ErrorKind.INVALID_STATUS_TRANSITION,
                f"Cannot move booking from {booking.status.value} to {target.value}",
            )

        updated = await self.bookings.update_status(booking_id, target)
        logger.info(f"Booking {booking_id} moved to {target.value} by {actor.role.value}")
        return CalendarResult.ok({"booking": (updated or booking).to_dict()})

    async def cancel_booking(self, booking_id: int, actor: Actor) -> CalendarResult[dict]:
        """
        Cancel a booking, then try to delete its Google event.

        Returns:
            ``{"booking": {...}, "googleResult": {...}}``
        """
        booking = await self.bookings.get_by_id(booking_id)
        if booking is None:
            return CalendarResult.fail(ErrorKind.BOOKING_NOT_FOUND, "Booking not found")
        if not can_change_status(actor, booking, BookingStatus.CANCELED):
            return CalendarResult.fail(ErrorKind.FORBIDDEN, "Not allowed to cancel this booking")

        if booking.status == BookingStatus.CANCELED:
            return CalendarResult.ok(
                {"booking": booking.to_dict(), "googleResult": CalendarResult.ok(skipped=True).to_dict()}
            )
        if not can_transition(booking.status, BookingStatus.CANCELED):
            return CalendarResult.fail(
                ErrorKind.INVALID_STATUS_TRANSITION,
                f"Cannot cancel a {booking.status.value} booking",
            )

        event_id = booking.external_event_id
        updated = await self.bookings.update_status(booking_id, BookingStatus.CANCELED)
        logger.info(f"Booking {booking_id} canceled by {actor.role.value}")

        google_result = await self._delete_booking_event(booking.counselor_id, event_id)
        return CalendarResult.ok(
            {"booking": (updated or booking).to_dict(), "googleResult": google_result}
        )

    async def _delete_booking_event(self, counselor_id: int, event_id: Optional[str]) -> dict[str, Any]:
        if not event_id:
            return CalendarResult.ok(skipped=True).to_dict()

        auth = await self.gateway.get_authorized_client(counselor_id)
        if not auth.success:
            logger.warning(f"Cannot delete Google event {event_id}: {auth.message}")
            return auth.to_dict()

        deleted = await self.gateway.delete_event(auth.value, event_id)
        if not deleted.success:
            logger.warning(f"Failed to delete Google event {event_id}: {deleted.message}")
        return deleted.to_dict()
