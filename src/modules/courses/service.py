"""Course catalog and catalog-access collaborators.

The enrollment core only reads courses (``CourseCatalog``) and toggles
membership rows (``CatalogAccess``). Both run inside the caller's session, so
a grant or revoke commits or rolls back together with the status change that
caused it.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.exceptions import NotFoundError
from src.core.logging import get_logger
from src.modules.courses.models import Course, CourseMember

logger = get_logger(__name__)


@dataclass(frozen=True)
class CourseSnapshot:
    """Price and title as read at the moment of enrollment."""

    id: int
    title: str
    price: Decimal
    is_active: bool = True


class CourseCatalog(Protocol):
    async def get_course(self, course_id: int) -> CourseSnapshot: ...


class CatalogAccess(Protocol):
    async def grant(self, student_id: int, course_id: int) -> None: ...

    async def revoke(self, student_id: int, course_id: int) -> None: ...


class SqlCourseCatalog:
    """Reads courses from the local ``courses`` table."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_course(self, course_id: int) -> CourseSnapshot:
        result = await self.db.execute(select(Course).where(Course.id == course_id))
        course = result.scalar_one_or_none()
        if not course:
            raise NotFoundError("Course", course_id)
        return CourseSnapshot(
            id=course.id,
            title=course.title,
            price=Decimal(str(course.price)),
            is_active=course.is_active,
        )


class SqlCatalogAccess:
    """Grants and revokes course membership rows. Both calls are idempotent."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def grant(self, student_id: int, course_id: int) -> None:
        result = await self.db.execute(
            select(CourseMember.id).where(
                CourseMember.course_id == course_id,
                CourseMember.student_id == student_id,
            )
        )
        if result.scalar_one_or_none() is not None:
            return
        self.db.add(CourseMember(course_id=course_id, student_id=student_id))
        await self.db.flush()
        logger.info("course_access_granted", student_id=student_id, course_id=course_id)

    async def revoke(self, student_id: int, course_id: int) -> None:
        await self.db.execute(
            delete(CourseMember).where(
                CourseMember.course_id == course_id,
                CourseMember.student_id == student_id,
            )
        )
        logger.info("course_access_revoked", student_id=student_id, course_id=course_id)

    async def has_access(self, student_id: int, course_id: int) -> bool:
        result = await self.db.execute(
            select(CourseMember.id).where(
                CourseMember.course_id == course_id,
                CourseMember.student_id == student_id,
            )
        )
        return result.scalar_one_or_none() is not None
