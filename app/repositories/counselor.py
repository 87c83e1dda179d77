"""
Counselor Repository

Reads and writes the Google Calendar credential columns on the counselor
row. Token values are never logged.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.database import Counselor

logger = logging.getLogger(__name__)


class CounselorRepository:
    """Async repository over the ``counselors`` table."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, counselor_id: int) -> Optional[Counselor]:
        """
        Load a counselor, always re-reading the row.

        Token columns may have been rewritten by a concurrent refresh in
        another session, so the identity map copy is not trusted.
        """
        result = await self.session.execute(
            select(Counselor)
            .where(Counselor.id == counselor_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def find_by_oauth_state(self, state: str) -> Optional[Counselor]:
        """Find the counselor with a pending OAuth ``state`` nonce."""
        if not state:
            return None
        result = await self.session.execute(
            select(Counselor).where(Counselor.google_oauth_state == state)
        )
        return result.scalar_one_or_none()

    async def set_oauth_state(self, counselor_id: int, state: str) -> bool:
        """Store a new pending nonce, replacing any previous one."""
        counselor = await self.get_by_id(counselor_id)
        if counselor is None:
            return False
        counselor.google_oauth_state = state
        await self.session.flush()
        return True

    async def store_tokens(
        self,
        counselor_id: int,
        access_token: Optional[str],
        refresh_token: Optional[str],
        expiry: Optional[datetime],
        calendar_id: Optional[str] = None,
    ) -> bool:
        """
        Persist tokens after a successful authorization code exchange.

        Marks the counselor connected and consumes the OAuth state. An
        existing refresh token or calendar id is kept when the provider
        does not send a new one.
        """
        counselor = await self.get_by_id(counselor_id)
        if counselor is None:
            return False

        counselor.google_connected = True
        counselor.google_access_token = access_token
        if refresh_token:
            counselor.google_refresh_token = refresh_token
        counselor.google_token_expiry = expiry
        counselor.google_calendar_id = counselor.google_calendar_id or calendar_id
        counselor.google_oauth_state = None
        await self.session.flush()

        logger.info(
            f"Stored Google tokens for counselor {counselor_id} "
            f"(refresh token on file: {bool(counselor.google_refresh_token)})"
        )
        return True

    async def update_access_token(
        self,
        counselor_id: int,
        access_token: str,
        expiry: Optional[datetime],
    ) -> bool:
        """Persist a refreshed access token and its expiry."""
        counselor = await self.get_by_id(counselor_id)
        if counselor is None:
            return False
        counselor.google_access_token = access_token
        counselor.google_token_expiry = expiry
        await self.session.flush()
        return True

    async def clear_google_connection(self, counselor_id: int) -> bool:
        """Forget every stored Google credential for the counselor."""
        counselor = await self.get_by_id(counselor_id)
        if counselor is None:
            return False

        counselor.google_connected = False
        counselor.google_access_token = None
        counselor.google_refresh_token = None
        counselor.google_token_expiry = None
        counselor.google_calendar_id = None
        counselor.google_oauth_state = None
        await self.session.flush()

        logger.info(f"Cleared Google connection for counselor {counselor_id}")
        return True
