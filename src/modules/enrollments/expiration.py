"""Expiration sweep: flips approved enrollments past their term to expired.

Each candidate is handled in its own session with a conditional UPDATE, so
a failure on one row leaves the others untouched and a second run (or a
concurrent one) finds nothing left to do.
"""

import asyncio
import contextlib
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.core.audit.service import AuditAction, AuditService
from src.core.logging import get_logger
from src.core.notifications import LogNotifier, Notifier, send_notification
from src.modules.courses.service import CatalogAccess, SqlCatalogAccess
from src.modules.enrollments.models import Enrollment, EnrollmentStatus
from src.shared.utils.dates import utc_now

logger = get_logger(__name__)

AccessFactory = Callable[[AsyncSession], CatalogAccess]


@dataclass
class SweepResult:
    """Counts from one sweep run."""

    found: int = 0
    expired: int = 0
    failed: int = 0


def _due(now: datetime):
    return (
        Enrollment.status == EnrollmentStatus.APPROVED.value,
        Enrollment.is_expired.is_(False),
        Enrollment.expiration_date.is_not(None),
        Enrollment.expiration_date <= now,
    )


async def expire_enrollments(
    session_factory: async_sessionmaker[AsyncSession],
    now: datetime | None = None,
    access_factory: AccessFactory = SqlCatalogAccess,
    notifier: Notifier | None = None,
) -> SweepResult:
    """Expire every approved enrollment whose expiration date is at or before ``now``."""
    now = now or utc_now()
    notifier = notifier or LogNotifier()

    async with session_factory() as session:
        result = await session.execute(select(Enrollment.id).where(*_due(now)).order_by(Enrollment.id))
        candidate_ids = list(result.scalars().all())

    sweep = SweepResult(found=len(candidate_ids))
    logger.info("expiration_sweep_started", candidates=sweep.found, now=now.isoformat())

    for enrollment_id in candidate_ids:
        try:
            expired = await _expire_one(session_factory, enrollment_id, now, access_factory)
        except Exception:
            sweep.failed += 1
            logger.exception("enrollment_expire_failed", enrollment_id=enrollment_id)
            continue

        if expired is None:
            # Someone else got there first (another sweep, an extension, a rejection)
            continue

        sweep.expired += 1
        student_id, course_id = expired
        logger.info(
            "enrollment_expired",
            enrollment_id=enrollment_id,
            student_id=student_id,
            course_id=course_id,
        )
        await send_notification(
            notifier,
            student_id,
            "Course access expired",
            "Your access to the course has expired. Contact us to extend it.",
        )

    logger.info(
        "expiration_sweep_finished",
        found=sweep.found,
        expired=sweep.expired,
        failed=sweep.failed,
    )
    return sweep


async def _expire_one(
    session_factory: async_sessionmaker[AsyncSession],
    enrollment_id: int,
    now: datetime,
    access_factory: AccessFactory,
) -> tuple[int, int] | None:
    async with session_factory() as session:
        row = (
            await session.execute(
                select(Enrollment.student_id, Enrollment.course_id).where(Enrollment.id == enrollment_id)
            )
        ).one_or_none()
        if row is None:
            return None

        updated = await session.execute(
            update(Enrollment)
            .where(Enrollment.id == enrollment_id, *_due(now))
            .values(is_expired=True, version_id=Enrollment.version_id + 1)
            .execution_options(synchronize_session=False)
        )
        if updated.rowcount != 1:
            await session.rollback()
            return None

        student_id, course_id = row
        await access_factory(session).revoke(student_id, course_id)
        await AuditService(session).log(
            action=AuditAction.EXPIRE_ENROLLMENT,
            entity_type="Enrollment",
            entity_id=enrollment_id,
            new_values={"is_expired": True},
            comment="Expiration date reached",
        )
        await session.commit()
        return student_id, course_id


class ExpirationSweepWorker:
    """Background task that runs the expiration sweep on a fixed interval."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        notifier: Notifier | None = None,
        access_factory: AccessFactory = SqlCatalogAccess,
    ) -> None:
        self.session_factory = session_factory
        self.notifier = notifier
        self.access_factory = access_factory
        self._running = False
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self, interval_seconds: int = 86400) -> None:
        """Start the background sweep worker."""
        if self._running:
            logger.warning("expiration_sweep_already_running")
            return

        self._running = True
        self._task = asyncio.create_task(
            self._worker_loop(interval_seconds),
            name="expiration_sweep",
        )
        logger.info("expiration_sweep_worker_started", interval_seconds=interval_seconds)

    async def stop(self) -> None:
        """Stop the background worker. An interrupted run resumes on the next start."""
        if not self._running:
            return

        self._running = False
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task

        logger.info("expiration_sweep_worker_stopped")

    async def run_once(self) -> SweepResult:
        return await expire_enrollments(
            self.session_factory,
            access_factory=self.access_factory,
            notifier=self.notifier,
        )

    async def _worker_loop(self, interval_seconds: int) -> None:
        while self._running:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("expiration_sweep_error")

            await asyncio.sleep(interval_seconds)
