"""
Google Calendar API Endpoints.

OAuth connection management for counselors, slot queries and booking.
"""

import logging
from datetime import date as date_type
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel, ConfigDict, EmailStr, Field

from app.api.dependencies import (
    get_calendar_gateway,
    get_counselor_repository,
    get_reconciler,
)
from app.api.errors import REAUTHORIZE_MESSAGE, error_response
from app.config import settings
from app.core.scheduling.calendar_gateway import GoogleCalendarGateway
from app.core.scheduling.errors import ErrorKind
from app.core.scheduling.reconciler import BookingReconciler, BookingRequest
from app.repositories import CounselorRepository

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/google-calendar", tags=["Google Calendar"])


class OAuthExchangeRequest(BaseModel):
    """Authorization code posted back by the frontend."""

    model_config = ConfigDict(populate_by_name=True)

    code: str = Field(..., min_length=1, description="Authorization code from Google")
    state: Optional[str] = Field(default=None, description="State nonce from the auth URL")
    counselor_id: Optional[int] = Field(default=None, alias="counselorId")


class BookSessionRequest(BaseModel):
    """Book a session with a counselor."""

    counselor_id: int = Field(..., description="Counselor to book with", examples=[15])
    booking_date: str = Field(..., description="YYYY-MM-DD", examples=["2025-10-20"])
    booking_time: str = Field(
        ...,
        description="Start time, e.g. '09:00', '9:00 AM' or a slot label '09:00-10:00'",
        examples=["09:00-10:00"],
    )
    student_id: Optional[int] = None
    student_email: Optional[EmailStr] = None
    duration: Optional[int] = Field(default=None, ge=5, le=480)
    summary: Optional[str] = Field(default=None, max_length=255)
    description: Optional[str] = None
    timezone: Optional[str] = None
    year_level: Optional[str] = None
    additional_notes: Optional[str] = None

    def to_booking_request(self) -> BookingRequest:
        return BookingRequest(
            counselor_id=self.counselor_id,
            booking_date=self.booking_date,
            booking_time=self.booking_time,
            student_id=self.student_id,
            student_email=str(self.student_email) if self.student_email else None,
            duration=self.duration,
            summary=self.summary,
            description=self.description,
            timezone=self.timezone,
            year_level=self.year_level,
            additional_notes=self.additional_notes,
        )


def _frontend_redirect(**params: str) -> RedirectResponse:
    return RedirectResponse(
        url=f"{settings.frontend_origin.rstrip('/')}/?{urlencode(params)}",
        status_code=status.HTTP_307_TEMPORARY_REDIRECT,
    )


@router.get(
    "/auth-url",
    summary="Get Google consent URL",
    description="Returns the URL a counselor visits to connect Google Calendar.",
)
async def auth_url(
    counselor_id: int = Query(..., alias="counselorId"),
    gateway: GoogleCalendarGateway = Depends(get_calendar_gateway),
):
    result = await gateway.generate_auth_url(counselor_id)
    if not result.success:
        return error_response(result)
    return result.value


@router.get(
    "/callback",
    summary="OAuth redirect target",
    description="Browser lands here after consent; redirects back to the frontend.",
    response_class=RedirectResponse,
)
async def oauth_callback(
    code: Optional[str] = Query(default=None),
    state: Optional[str] = Query(default=None),
    error: Optional[str] = Query(default=None),
    error_description: Optional[str] = Query(default=None),
    gateway: GoogleCalendarGateway = Depends(get_calendar_gateway),
) -> RedirectResponse:
    """
    Finish the OAuth flow started by ``/auth-url``.

    Always answers with a redirect to the frontend carrying
    ``google_connected=1`` or ``google_connected=0&error=...``.
    """
    if not code:
        reason = error_description or error or "missing_code"
        logger.warning(f"OAuth callback without code: {reason}")
        return _frontend_redirect(google_connected="0", error=reason)

    result = await gateway.exchange_code_and_store_tokens(code, state=state)
    if not result.success:
        logger.warning(f"OAuth callback exchange failed: {result.message}")
        return _frontend_redirect(google_connected="0", error=result.message or "oauth_exchange_failed")

    logger.info("Google Calendar connected via OAuth callback")
    return _frontend_redirect(google_connected="1")


@router.post(
    "/oauth",
    summary="Exchange an authorization code",
)
async def exchange_oauth_code(
    request: OAuthExchangeRequest,
    gateway: GoogleCalendarGateway = Depends(get_calendar_gateway),
):
    result = await gateway.exchange_code_and_store_tokens(
        request.code,
        counselor_id=request.counselor_id,
        state=request.state,
    )
    if not result.success:
        return error_response(result)
    return {"success": True, **(result.value or {})}


@router.get(
    "/status",
    summary="Calendar connection status",
)
async def connection_status(
    counselor_id: int = Query(..., alias="counselorId"),
    gateway: GoogleCalendarGateway = Depends(get_calendar_gateway),
):
    result = await gateway.connection_status(counselor_id)
    if not result.success:
        return error_response(result)
    return result.value


@router.post(
    "/disconnect",
    summary="Disconnect Google Calendar",
    description="Revokes the stored Google token and forgets all credentials.",
)
async def disconnect(
    counselor_id: int = Query(..., alias="counselorId"),
    gateway: GoogleCalendarGateway = Depends(get_calendar_gateway),
):
    result = await gateway.disconnect(counselor_id)
    if not result.success:
        return error_response(result)
    return {"success": True, **(result.value or {})}


@router.get(
    "/available-slots",
    summary="Free slots for a day",
    responses={
        200: {"description": "Slots, or connected=false when the calendar is not linked"},
        400: {"description": "Google authorization failed or must be renewed"},
        404: {"description": "Counselor not found"},
    },
)
async def available_slots(
    counselor_id: int = Query(..., alias="counselorId"),
    date: date_type = Query(..., description="YYYY-MM-DD"),
    duration: int = Query(default=60, ge=5, le=480),
    counselors: CounselorRepository = Depends(get_counselor_repository),
    reconciler: BookingReconciler = Depends(get_reconciler),
):
    """
    Slots are computed from the counselor's working hours minus Google
    free/busy time. Counselors without a calendar connection get
    ``{"connected": false, "slots": []}``.
    An authorization failure found while reading the calendar is a 400 with
    an ``error`` message.
    """
    counselor = await counselors.get_by_id(counselor_id)
    if counselor is None:
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content={"error": "Counselor not found"},
        )
    if not counselor.calendar_connected:
        return {"connected": False, "slots": []}

    result = await reconciler.get_available_slots(counselor_id, date, duration)
    if not result.success:
        return error_response(result, connected=False, slots=[])

    value = result.value or {}
    if not value.get("connected"):
        reason = value.get("reason")
        if reason in (ErrorKind.INVALID_GRANT.value, ErrorKind.NO_REFRESH_TOKEN.value):
            message = REAUTHORIZE_MESSAGE
        else:
            message = value.get("error") or "Google calendar authorization failed"
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"connected": False, "slots": [], "reason": reason, "error": message},
        )

    return {
        "connected": True,
        "slots": [slot.to_dict() for slot in value.get("slots", [])],
    }


@router.post(
    "/book-session",
    summary="Book a counseling session",
    responses={
        200: {"description": "Booked and confirmed"},
        400: {"description": "Invalid input or calendar not connected"},
        409: {"description": "Slot no longer available"},
    },
)
async def book_session(
    request: BookSessionRequest,
    counselors: CounselorRepository = Depends(get_counselor_repository),
    reconciler: BookingReconciler = Depends(get_reconciler),
):
    counselor = await counselors.get_by_id(request.counselor_id)
    if counselor is None:
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content={"success": False, "error": "Counselor not found"},
        )
    if not counselor.calendar_connected:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                "success": False,
                "connected": False,
                "error": "Counselor has not connected Google Calendar",
            },
        )

    result = await reconciler.book_session(request.to_booking_request())
    if not result.success:
        return error_response(result)
    return {"success": True, "result": result.value}
