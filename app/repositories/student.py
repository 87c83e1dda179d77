"""Student Repository."""

import logging
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.database import Student

logger = logging.getLogger(__name__)


class StudentRepository:
    """Async repository over the ``students`` table."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, student_id: int) -> Optional[Student]:
        return await self.session.get(Student, student_id)

    async def find_by_email(self, email: str) -> Optional[Student]:
        """Case-insensitive lookup by email."""
        if not email:
            return None
        result = await self.session.execute(
            select(Student).where(func.lower(Student.email) == email.strip().lower())
        )
        return result.scalars().first()

    async def create(self, name: Optional[str], email: str) -> Student:
        student = Student(name=name, email=email.strip())
        self.session.add(student)
        await self.session.flush()
        logger.info(f"Created student {student.id}")
        return student
