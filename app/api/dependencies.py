"""
FastAPI dependency providers.

Each request gets its own repositories, calendar gateway and reconciler,
all sharing the request's database session.
"""

import logging
from typing import AsyncGenerator, Optional

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.scheduling.calendar_gateway import GoogleCalendarGateway
from app.core.scheduling.reconciler import BookingReconciler
from app.core.scheduling.status import Actor, ActorRole
from app.infra.database import get_db
from app.infra.redis import SlotLockStore, get_slot_lock_store
from app.repositories import BookingRepository, CounselorRepository, StudentRepository

logger = logging.getLogger(__name__)


async def get_counselor_repository(
    db: AsyncSession = Depends(get_db),
) -> CounselorRepository:
    return CounselorRepository(db)


async def get_calendar_gateway(
    counselors: CounselorRepository = Depends(get_counselor_repository),
) -> AsyncGenerator[GoogleCalendarGateway, None]:
    """Gateway whose HTTP client is closed when the request ends."""
    gateway = GoogleCalendarGateway(counselors)
    try:
        yield gateway
    finally:
        await gateway.close()


async def get_reconciler(
    db: AsyncSession = Depends(get_db),
    gateway: GoogleCalendarGateway = Depends(get_calendar_gateway),
    slot_locks: SlotLockStore = Depends(get_slot_lock_store),
) -> BookingReconciler:
    return BookingReconciler(
        gateway=gateway,
        bookings=BookingRepository(db),
        students=StudentRepository(db),
        slot_locks=slot_locks,
    )


def get_actor(
    x_actor_role: str = Header(
        ...,
        alias="X-Actor-Role",
        description="Caller role: admin, counselor or student",
    ),
    x_actor_id: Optional[int] = Header(
        default=None,
        alias="X-Actor-Id",
        description="Counselor or student id of the caller",
    ),
    x_actor_email: Optional[str] = Header(
        default=None,
        alias="X-Actor-Email",
        description="Caller email (students)",
    ),
) -> Actor:
    """
    Caller identity forwarded by the upstream auth gateway.

    Authentication happens upstream; this service only applies ownership rules.
    """
    try:
        role = ActorRole(x_actor_role.strip().lower())
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unknown actor role: {x_actor_role}",
        )
    return Actor(role=role, id=x_actor_id, email=x_actor_email)
