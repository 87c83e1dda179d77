"""
Booking API Endpoints.

Status changes and reschedules requested by admins, counselors and
students. Calendar sync results are reported alongside the booking and
never change the HTTP status of a successful local update.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from app.api.dependencies import get_actor, get_reconciler
from app.api.errors import error_response
from app.core.scheduling.reconciler import BookingReconciler
from app.core.scheduling.status import Actor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/bookings", tags=["Bookings"])


class StatusUpdateRequest(BaseModel):
    """New booking status."""

    status: str = Field(
        ...,
        description="pending, confirmed, completed or canceled ('cancelled' accepted)",
        examples=["confirmed"],
    )


class RescheduleRequest(BaseModel):
    """New date/time for a booking."""

    booking_date: str = Field(..., description="YYYY-MM-DD", examples=["2025-10-21"])
    booking_time: str = Field(..., description="Start time", examples=["14:00"])
    duration: Optional[int] = Field(default=None, ge=5, le=480)


@router.patch(
    "/{booking_id}/status",
    summary="Change booking status",
    responses={
        400: {"description": "Invalid status or transition"},
        403: {"description": "Actor may not change this booking"},
        404: {"description": "Booking not found"},
    },
)
async def update_status(
    booking_id: int,
    request: StatusUpdateRequest,
    actor: Actor = Depends(get_actor),
    reconciler: BookingReconciler = Depends(get_reconciler),
):
    result = await reconciler.update_status(booking_id, request.status, actor)
    if not result.success:
        return error_response(result)
    return {"success": True, **(result.value or {})}


@router.post(
    "/{booking_id}/reschedule",
    summary="Reschedule a booking",
    responses={
        400: {"description": "Invalid new start time"},
        403: {"description": "Only admins and the owning counselor may reschedule"},
        404: {"description": "Booking not found"},
    },
)
async def reschedule(
    booking_id: int,
    request: RescheduleRequest,
    actor: Actor = Depends(get_actor),
    reconciler: BookingReconciler = Depends(get_reconciler),
):
    """
    Move a booking. The Google Calendar outcome comes back as
    ``googleResult``; a calendar failure does not undo the local change.
    """
    result = await reconciler.reschedule_booking(
        booking_id,
        request.booking_date,
        request.booking_time,
        actor,
        duration_minutes=request.duration,
    )
    if not result.success:
        return error_response(result)
    return {"success": True, **(result.value or {})}
