"""
Booking status state machine and actor permissions.

    pending ──> confirmed ──> completed
       │            │
       └────────────┴──> canceled

``completed`` and ``canceled`` are terminal. Admins may make any valid
transition, counselors only on their own bookings, and students may only
cancel their own booking.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from app.models.database import Booking, BookingStatus

ALLOWED_TRANSITIONS: dict[BookingStatus, frozenset[BookingStatus]] = {
    BookingStatus.PENDING: frozenset({BookingStatus.CONFIRMED, BookingStatus.CANCELED}),
    BookingStatus.CONFIRMED: frozenset({BookingStatus.COMPLETED, BookingStatus.CANCELED}),
    BookingStatus.COMPLETED: frozenset(),
    BookingStatus.CANCELED: frozenset(),
}

_ALIASES = {
    "cancelled": BookingStatus.CANCELED,
    "cancel": BookingStatus.CANCELED,
    "complete": BookingStatus.COMPLETED,
    "confirm": BookingStatus.CONFIRMED,
}


class ActorRole(str, Enum):
    """Who is asking for a booking change."""
    ADMIN = "admin"
    COUNSELOR = "counselor"
    STUDENT = "student"


@dataclass(frozen=True)
class Actor:
    """Caller identity as forwarded by the upstream gateway."""

    role: ActorRole
    id: Optional[int] = None
    email: Optional[str] = None

    def owns(self, booking: Booking) -> bool:
        """True if the booking belongs to this actor."""
        if self.role == ActorRole.ADMIN:
            return True
        if self.role == ActorRole.COUNSELOR:
            return self.id is not None and booking.counselor_id == self.id
        if self.id is not None and booking.student_id == self.id:
            return True
        student_email = booking.student_email
        return bool(
            self.email and student_email and self.email.lower() == student_email.lower()
        )


def normalize_status(value: Optional[str]) -> Optional[BookingStatus]:
    """Map user input (case-insensitive, common aliases) to a status."""
    if not value:
        return None
    key = str(value).strip().lower()
    if key in _ALIASES:
        return _ALIASES[key]
    try:
        return BookingStatus(key)
    except ValueError:
        return None


def can_transition(current: BookingStatus, target: BookingStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def is_terminal(status: BookingStatus) -> bool:
    """Completed and canceled bookings accept no further changes."""
    return not ALLOWED_TRANSITIONS.get(status)


def can_change_status(actor: Actor, booking: Booking, target: BookingStatus) -> bool:
    """Permission check only; the transition itself is checked separately."""
    if actor.role == ActorRole.ADMIN:
        return True
    if actor.role == ActorRole.COUNSELOR:
        return actor.owns(booking)
    return target == BookingStatus.CANCELED and actor.owns(booking)


def can_reschedule(actor: Actor, booking: Booking) -> bool:
    """Only admins and the owning counselor may move a booking."""
    if actor.role == ActorRole.ADMIN:
        return True
    return actor.role == ActorRole.COUNSELOR and actor.owns(booking)
