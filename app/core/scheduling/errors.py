"""
Scheduling error kinds and the result type shared by the calendar gateway
and the booking reconciler.

Every gateway/reconciler operation returns a ``CalendarResult``. Exceptions
are left for programmer errors.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, Optional, TypeVar

T = TypeVar("T")


class ErrorKind(str, Enum):
    """Failure kinds surfaced by the scheduling core."""

    # Calendar authorization
    NO_REFRESH_TOKEN = "NO_REFRESH_TOKEN"
    INVALID_GRANT = "INVALID_GRANT"
    AUTH_ERROR = "AUTH_ERROR"

    # OAuth flow
    INVALID_STATE = "INVALID_STATE"
    MISSING_STATE = "MISSING_STATE"
    COUNSELOR_NOT_FOUND = "COUNSELOR_NOT_FOUND"

    # Client input
    INVALID_TIME_FORMAT = "INVALID_TIME_FORMAT"
    INVALID_NEW_START_TIME = "INVALID_NEW_START_TIME"
    MISSING_FIELDS = "MISSING_FIELDS"
    STUDENT_REQUIRED = "STUDENT_REQUIRED"
    INVALID_STATUS = "INVALID_STATUS"

    # Booking conflicts / state
    SLOT_UNAVAILABLE = "SLOT_UNAVAILABLE"
    INVALID_STATUS_TRANSITION = "INVALID_STATUS_TRANSITION"
    FORBIDDEN = "FORBIDDEN"

    # Provider failures (transient)
    FREEBUSY_QUERY_FAILED = "FREEBUSY_QUERY_FAILED"
    EVENT_CREATE_FAILED = "EVENT_CREATE_FAILED"
    EVENT_PATCH_FAILED = "EVENT_PATCH_FAILED"
    EVENT_NOT_FOUND = "EVENT_NOT_FOUND"
    EVENT_LIST_FAILED = "EVENT_LIST_FAILED"
    EVENT_DELETE_FAILED = "EVENT_DELETE_FAILED"
    TIMEOUT = "TIMEOUT"

    # Reschedule target resolution
    BOOKING_NOT_FOUND = "BOOKING_NOT_FOUND"
    MISSING_COUNSELOR_ID = "MISSING_COUNSELOR_ID"

    PERSISTENCE_FAILED = "PERSISTENCE_FAILED"

    @property
    def requires_reauthorization(self) -> bool:
        """Only these should drive the "please reconnect" prompt."""
        return self in (ErrorKind.NO_REFRESH_TOKEN, ErrorKind.INVALID_GRANT)

    @property
    def is_auth_error(self) -> bool:
        """Any calendar authorization failure."""
        return self in (
            ErrorKind.NO_REFRESH_TOKEN,
            ErrorKind.INVALID_GRANT,
            ErrorKind.AUTH_ERROR,
        )

    @property
    def is_client_error(self) -> bool:
        """Bad input from the caller; never worth retrying as-is."""
        return self in (
            ErrorKind.INVALID_TIME_FORMAT,
            ErrorKind.INVALID_NEW_START_TIME,
            ErrorKind.MISSING_FIELDS,
            ErrorKind.STUDENT_REQUIRED,
            ErrorKind.INVALID_STATUS,
            ErrorKind.INVALID_STATE,
            ErrorKind.MISSING_STATE,
            ErrorKind.INVALID_STATUS_TRANSITION,
        )


@dataclass
class CalendarResult(Generic[T]):
    """Success value or a typed failure."""

    success: bool
    value: Optional[T] = None
    error: Optional[ErrorKind] = None
    message: Optional[str] = None
    detail: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, value: Optional[T] = None, **detail: Any) -> "CalendarResult[T]":
        """Build a successful result."""
        return cls(success=True, value=value, detail=detail)

    @classmethod
    def fail(
        cls,
        error: ErrorKind,
        message: Optional[str] = None,
        **detail: Any,
    ) -> "CalendarResult[T]":
        """Build a failed result."""
        return cls(success=False, error=error, message=message or error.value, detail=detail)

    def cast(self) -> "CalendarResult[Any]":
        """Re-type a failure so it can be propagated from another operation."""
        return CalendarResult(
            success=self.success,
            error=self.error,
            message=self.message,
            detail=dict(self.detail),
        )

    @property
    def requires_reauthorization(self) -> bool:
        return bool(self.error and self.error.requires_reauthorization)

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses."""
        result: dict[str, Any] = {"success": self.success}
        if self.error:
            result["reason"] = self.error.value
        if self.message and not self.success:
            result["error"] = self.message
        result.update(self.detail)
        return result
