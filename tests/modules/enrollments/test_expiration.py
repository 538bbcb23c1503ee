"""Tests for the enrollment expiration sweep."""

import asyncio
from datetime import datetime, timedelta, timezone

from httpx import AsyncClient

from src.core.audit.service import AuditAction, AuditService
from src.modules.courses.service import SqlCatalogAccess
from src.modules.enrollments.expiration import ExpirationSweepWorker, expire_enrollments
from src.modules.enrollments.schemas import EnrollmentFilters
from src.modules.enrollments.service import EnrollmentService

ADMIN = 1
STUDENT = 100


async def _enroll_expiring(db_session, course_id: int, student_ids: list[int], days: int = -1) -> dict[int, int]:
    """Enroll students directly and move their expiration date ``days`` from now."""
    service = EnrollmentService(db_session)
    await service.bulk_enroll(course_id, student_ids, ADMIN)
    enrollments, _ = await service.list_enrollments(EnrollmentFilters(course_id=course_id))
    when = datetime.now(timezone.utc) + timedelta(days=days)
    for enrollment in enrollments:
        await service.set_expiration(enrollment.id, when, ADMIN)
    await db_session.commit()
    return {e.student_id: e.id for e in enrollments}


class FlakyAccess(SqlCatalogAccess):
    """Revoking access for student 101 always fails."""

    async def revoke(self, student_id: int, course_id: int) -> None:
        if student_id == 101:
            raise RuntimeError("catalog unavailable")
        await super().revoke(student_id, course_id)


class TestExpirationSweep:
    async def test_expires_past_due_enrollment(
        self, db_session, session_factory, course, access_calls, recording_access_factory, notifier
    ):
        ids = await _enroll_expiring(db_session, course.id, [STUDENT])

        result = await expire_enrollments(
            session_factory, access_factory=recording_access_factory, notifier=notifier
        )

        assert (result.found, result.expired, result.failed) == (1, 1, 0)
        assert access_calls == [("revoke", STUDENT, course.id)]
        assert "Course access expired" in notifier.titles_for(STUDENT)

        service = EnrollmentService(db_session)
        enrollment = await service.get_enrollment(ids[STUDENT])
        assert enrollment.is_expired is True
        assert enrollment.status == "approved"
        assert await service.check_access(STUDENT, course.id) is False
        assert await SqlCatalogAccess(db_session).has_access(STUDENT, course.id) is False

        trail = await AuditService(db_session).list_for_entity("Enrollment", ids[STUDENT])
        assert [entry.action for entry in trail][-1] == AuditAction.EXPIRE_ENROLLMENT.value

    async def test_second_run_does_nothing(
        self, db_session, session_factory, course, access_calls, recording_access_factory
    ):
        await _enroll_expiring(db_session, course.id, [STUDENT])
        await expire_enrollments(session_factory, access_factory=recording_access_factory)

        again = await expire_enrollments(session_factory, access_factory=recording_access_factory)

        assert (again.found, again.expired, again.failed) == (0, 0, 0)
        assert len(access_calls) == 1

    async def test_future_and_pending_are_left_alone(self, db_session, session_factory, make_course):
        current = await make_course(title="Current")
        requested = await make_course(title="Requested")
        ids = await _enroll_expiring(db_session, current.id, [STUDENT], days=10)
        await EnrollmentService(db_session).request_enrollment(
            STUDENT, requested.id, receipt_ref="receipts/slip.jpg"
        )

        result = await expire_enrollments(session_factory)

        assert result.found == 0
        service = EnrollmentService(db_session)
        assert (await service.get_enrollment(ids[STUDENT])).is_expired is False
        assert await service.check_access(STUDENT, current.id) is True

    async def test_failure_is_isolated(self, db_session, session_factory, course):
        ids = await _enroll_expiring(db_session, course.id, [101, 102])

        result = await expire_enrollments(session_factory, access_factory=FlakyAccess)

        assert (result.found, result.expired, result.failed) == (2, 1, 1)
        service = EnrollmentService(db_session)
        assert (await service.get_enrollment(ids[101])).is_expired is False
        assert (await service.get_enrollment(ids[102])).is_expired is True
        # The failed row stays a candidate for the next run
        retry = await expire_enrollments(session_factory)
        assert (retry.found, retry.expired) == (1, 1)

    async def test_notification_failure_does_not_undo_expiry(
        self, db_session, session_factory, course, failing_notifier
    ):
        ids = await _enroll_expiring(db_session, course.id, [STUDENT])

        result = await expire_enrollments(session_factory, notifier=failing_notifier)

        assert result.expired == 1
        assert (await EnrollmentService(db_session).get_enrollment(ids[STUDENT])).is_expired is True

    async def test_extension_reactivates(
        self, db_session, session_factory, course, recording_access, access_calls, notifier
    ):
        ids = await _enroll_expiring(db_session, course.id, [STUDENT])
        await expire_enrollments(session_factory)
        service = EnrollmentService(db_session, access=recording_access, notifier=notifier)

        updated = await service.set_expiration(
            ids[STUDENT], datetime.now(timezone.utc) + timedelta(days=30), ADMIN
        )

        assert updated.is_expired is False
        assert access_calls == [("grant", STUDENT, course.id)]
        assert await service.check_access(STUDENT, course.id) is True
        assert "Course access extended" in notifier.titles_for(STUDENT)

    async def test_rejected_after_expiry_is_not_swept_again(self, db_session, session_factory, course):
        ids = await _enroll_expiring(db_session, course.id, [STUDENT])
        await expire_enrollments(session_factory)
        await EnrollmentService(db_session).set_status(ids[STUDENT], "rejected", ADMIN, "refunded")

        result = await expire_enrollments(session_factory)

        assert result.found == 0


class TestExpirationSweepWorker:
    async def test_run_once(self, db_session, session_factory, course, notifier):
        await _enroll_expiring(db_session, course.id, [STUDENT])
        worker = ExpirationSweepWorker(session_factory, notifier=notifier)

        result = await worker.run_once()

        assert result.expired == 1
        assert notifier.titles_for(STUDENT) == ["Course access expired"]

    async def test_start_runs_sweep_and_stop_cancels(self, db_session, session_factory, course, notifier):
        await _enroll_expiring(db_session, course.id, [STUDENT])
        worker = ExpirationSweepWorker(session_factory, notifier=notifier)

        await worker.start(interval_seconds=3600)
        assert worker.running is True
        for _ in range(100):
            if notifier.sent:
                break
            await asyncio.sleep(0.01)
        await worker.stop()

        assert worker.running is False
        assert notifier.titles_for(STUDENT) == ["Course access expired"]

    async def test_stop_without_start(self, session_factory):
        worker = ExpirationSweepWorker(session_factory)
        await worker.stop()
        assert worker.running is False


class TestExpirationEndpoint:
    async def test_admin_runs_sweep(
        self, client: AsyncClient, db_session, course, admin_headers, student_headers, notifier
    ):
        await _enroll_expiring(db_session, course.id, [STUDENT])

        response = await client.post("/api/v1/enrollments/expire", headers=admin_headers)

        assert response.status_code == 200
        assert response.json()["data"] == {"found": 1, "expired": 1, "failed": 0}
        access = await client.get(f"/api/v1/enrollments/access/{course.id}", headers=student_headers)
        assert access.json()["data"]["has_access"] is False
        assert "Course access expired" in notifier.titles_for(STUDENT)

    async def test_student_cannot_run_sweep(self, client: AsyncClient, student_headers):
        response = await client.post("/api/v1/enrollments/expire", headers=student_headers)
        assert response.status_code == 403
