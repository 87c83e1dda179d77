"""
Booking Repository

Booking rows are created ``pending`` and moved through their lifecycle by
the reconciler. Reads used by the scheduling core eagerly load the student
so reschedule heuristics can match on email and name.
"""

import logging
from datetime import date
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.models.database import Booking, BookingStatus

logger = logging.getLogger(__name__)


class BookingRepository:
    """Async repository over the ``bookings`` table."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        student_id: Optional[int],
        counselor_id: int,
        booking_date: date,
        booking_time: str,
        year_level: Optional[str] = None,
        additional_notes: Optional[str] = None,
    ) -> Booking:
        """
        Insert a new booking in ``pending`` state.

        Args:
            student_id: Student row id (None for orphaned guest rows)
            counselor_id: Owning counselor
            booking_date: Local calendar date
            booking_time: Local ``HH:MM:SS`` start time
            year_level: Optional student year
            additional_notes: Optional free text

        Returns:
            The flushed Booking (id assigned)
        """
        booking = Booking(
            student_id=student_id,
            counselor_id=counselor_id,
            booking_date=booking_date,
            booking_time=booking_time,
            year_level=year_level,
            additional_notes=additional_notes,
            status=BookingStatus.PENDING,
        )
        self.session.add(booking)
        await self.session.flush()
        logger.info(
            f"Created booking {booking.id} for counselor {counselor_id} "
            f"on {booking_date} {booking_time}"
        )
        return booking

    async def get_by_id(self, booking_id: int) -> Optional[Booking]:
        """Load a booking with its student."""
        result = await self.session.execute(
            select(Booking)
            .options(selectinload(Booking.student))
            .where(Booking.id == booking_id)
        )
        return result.scalar_one_or_none()

    async def update_status(
        self,
        booking_id: int,
        status: BookingStatus,
    ) -> Optional[Booking]:
        booking = await self.get_by_id(booking_id)
        if booking is None:
            return None
        booking.status = status
        await self.session.flush()
        return booking

    async def set_external_event_id(
        self,
        booking_id: int,
        event_id: Optional[str],
    ) -> Optional[Booking]:
        """
        Link the booking to its calendar event.

        Runs in a savepoint: if the write fails only the link is rolled back
        and the session stays usable. The booking instance is expired in
        that case, so callers must not read attributes from it afterwards.
        """
        async with self.session.begin_nested():
            booking = await self.get_by_id(booking_id)
            if booking is None:
                return None
            booking.external_event_id = event_id
            await self.session.flush()
        return booking

    async def reschedule(
        self,
        booking_id: int,
        booking_date: date,
        booking_time: str,
    ) -> Optional[Booking]:
        """Move a booking; status is left unchanged."""
        booking = await self.get_by_id(booking_id)
        if booking is None:
            return None
        booking.booking_date = booking_date
        booking.booking_time = booking_time
        await self.session.flush()
        return booking
