"""Mapping from scheduling error kinds to HTTP responses."""

from typing import Any, Optional

from fastapi import status
from fastapi.responses import JSONResponse

from app.core.scheduling.errors import CalendarResult, ErrorKind

REAUTHORIZE_MESSAGE = (
    "Google calendar authorization invalid or expired. Reauthorization required."
)

_STATUS_BY_KIND = {
    ErrorKind.SLOT_UNAVAILABLE: status.HTTP_409_CONFLICT,
    ErrorKind.COUNSELOR_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.BOOKING_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.FORBIDDEN: status.HTTP_403_FORBIDDEN,
    ErrorKind.TIMEOUT: status.HTTP_504_GATEWAY_TIMEOUT,
}


def status_for_error(kind: Optional[ErrorKind]) -> int:
    """HTTP status for a failed CalendarResult."""
    if kind is None:
        return status.HTTP_500_INTERNAL_SERVER_ERROR
    if kind.requires_reauthorization or kind.is_client_error:
        return status.HTTP_400_BAD_REQUEST
    return _STATUS_BY_KIND.get(kind, status.HTTP_500_INTERNAL_SERVER_ERROR)


def error_response(result: CalendarResult[Any], **extra: Any) -> JSONResponse:
    """
    JSON error body for a failed result.

    Reauthorization failures carry ``connected: false`` and a message the
    frontend uses to prompt the counselor to reconnect.
    """
    content = result.to_dict()
    content.update(extra)
    if result.requires_reauthorization:
        content["connected"] = False
        content["error"] = REAUTHORIZE_MESSAGE
    return JSONResponse(status_code=status_for_error(result.error), content=content)
