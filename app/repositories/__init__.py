"""Persistence collaborators used by the scheduling core."""

from app.repositories.booking import BookingRepository
from app.repositories.counselor import CounselorRepository
from app.repositories.student import StudentRepository

__all__ = [
    "BookingRepository",
    "CounselorRepository",
    "StudentRepository",
]
