"""
Database Models

SQLAlchemy ORM models for the counseling booking platform. Only the columns
the scheduling core reads or writes are modelled here.
"""

from datetime import date, datetime
from enum import Enum
from typing import Optional, List

from sqlalchemy import (
    Boolean, Date, DateTime, ForeignKey, Index, Integer, String, Text,
    Enum as SQLEnum, inspect, text
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all database models."""
    pass


class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamp columns."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        server_default=text("CURRENT_TIMESTAMP"),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        server_default=text("CURRENT_TIMESTAMP"),
        nullable=False
    )


class BookingStatus(str, Enum):
    """Booking status enumeration."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELED = "canceled"


class Counselor(Base, TimestampMixin):
    """
    Counselor model.

    Carries the Google Calendar credential columns. ``google_connected`` is
    only a cached flag; use ``calendar_connected`` which also requires a
    refresh token on file.
    """

    __tablename__ = "counselors"
    __table_args__ = (
        Index("idx_counselor_email", "email"),
        Index("idx_counselor_oauth_state", "google_oauth_state", unique=True),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    timezone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    work_start_time: Mapped[Optional[str]] = mapped_column(String(8), nullable=True)
    work_end_time: Mapped[Optional[str]] = mapped_column(String(8), nullable=True)

    # Google OAuth / calendar columns
    google_connected: Mapped[bool] = mapped_column(Boolean, default=False)
    google_access_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    google_refresh_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    google_token_expiry: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True
    )
    google_calendar_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    google_oauth_state: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # Relationships
    bookings: Mapped[List["Booking"]] = relationship(
        "Booking",
        back_populates="counselor"
    )

    @property
    def calendar_connected(self) -> bool:
        """A stale connected flag without a refresh token counts as disconnected."""
        return bool(self.google_connected and self.google_refresh_token)

    def __repr__(self) -> str:
        return (
            f"<Counselor(id={self.id}, email='{self.email}', "
            f"connected={self.calendar_connected})>"
        )


class Student(Base, TimestampMixin):
    """Student model. Guests booking by email get a row created on the fly."""

    __tablename__ = "students"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)

    bookings: Mapped[List["Booking"]] = relationship(
        "Booking",
        back_populates="student"
    )

    def __repr__(self) -> str:
        return f"<Student(id={self.id}, email='{self.email}')>"


class Booking(Base, TimestampMixin):
    """
    Booking model.

    ``booking_time`` is a local ``HH:MM:SS`` string in the counselor's
    timezone. ``external_event_id`` links the row to its Google Calendar
    event and is nullable for rows that were never synced.
    """

    __tablename__ = "bookings"
    __table_args__ = (
        Index("idx_booking_counselor_date", "counselor_id", "booking_date"),
        Index("idx_booking_student", "student_id"),
        Index("idx_booking_status", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    student_id: Mapped[Optional[int]] = mapped_column(
        Integer,
        ForeignKey("students.id", ondelete="SET NULL"),
        nullable=True
    )
    counselor_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("counselors.id", ondelete="CASCADE"),
        nullable=False
    )
    booking_date: Mapped[date] = mapped_column(Date, nullable=False)
    booking_time: Mapped[str] = mapped_column(String(8), nullable=False)
    year_level: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    additional_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[BookingStatus] = mapped_column(
        SQLEnum(BookingStatus, values_callable=lambda e: [m.value for m in e]),
        default=BookingStatus.PENDING,
        nullable=False
    )
    external_event_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Relationships
    counselor: Mapped["Counselor"] = relationship("Counselor", back_populates="bookings")
    student: Mapped[Optional["Student"]] = relationship("Student", back_populates="bookings")

    def _loaded_student(self) -> Optional["Student"]:
        # Never trigger a lazy load; async sessions cannot perform one implicitly.
        if "student" in inspect(self).unloaded:
            return None
        return self.student

    @property
    def student_email(self) -> Optional[str]:
        """Email of the linked student, if loaded."""
        student = self._loaded_student()
        return student.email if student is not None else None

    @property
    def student_name(self) -> Optional[str]:
        """Name of the linked student, if loaded."""
        student = self._loaded_student()
        return student.name if student is not None else None

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses."""
        return {
            "booking_id": self.id,
            "student_id": self.student_id,
            "counselor_id": self.counselor_id,
            "booking_date": self.booking_date.isoformat() if self.booking_date else None,
            "booking_time": self.booking_time,
            "year_level": self.year_level,
            "additional_notes": self.additional_notes,
            "status": self.status.value if self.status else None,
            "external_event_id": self.external_event_id,
        }

    def __repr__(self) -> str:
        return (
            f"<Booking(id={self.id}, counselor_id={self.counselor_id}, "
            f"date={self.booking_date}, time={self.booking_time}, "
            f"status={self.status.value if self.status else None})>"
        )
