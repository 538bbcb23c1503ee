"""Tests for Payments module."""

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.exceptions import (
    AuthorizationError,
    ConflictError,
    InvalidTransitionError,
    ValidationError,
)
from src.modules.courses.service import SqlCatalogAccess
from src.modules.enrollments.models import Enrollment, EnrollmentStatus
from src.modules.enrollments.service import EnrollmentService
from src.modules.payments.models import PaymentMethod, PaymentStatus
from src.modules.payments.schemas import PaymentFilters
from src.modules.payments.service import PaymentService, parse_payment_date

STUDENT = 100
OTHER_STUDENT = 200
ADMIN = 1


async def _request(db_session: AsyncSession, course_id: int, student_id: int = STUDENT) -> Enrollment:
    await db_session.commit()
    return await EnrollmentService(db_session).request_enrollment(
        student_id, course_id, receipt_ref="receipts/slip.jpg", bank_name="Equity"
    )


async def _bare_enrollment(db_session: AsyncSession, course_id: int, student_id: int = STUDENT) -> Enrollment:
    enrollment = Enrollment(
        student_id=student_id,
        course_id=course_id,
        status=EnrollmentStatus.PENDING.value,
        enrollment_date=datetime.now(timezone.utc),
        is_expired=False,
    )
    db_session.add(enrollment)
    await db_session.flush()
    return enrollment


class TestParsePaymentDate:
    def test_defaults_to_today(self):
        assert parse_payment_date(None) == datetime.now(timezone.utc).date()

    def test_iso_string(self):
        assert parse_payment_date("2024-03-01") == date(2024, 3, 1)

    def test_garbage(self):
        with pytest.raises(ValidationError):
            parse_payment_date("first of march")

    def test_future(self):
        with pytest.raises(ValidationError):
            parse_payment_date(datetime.now(timezone.utc).date() + timedelta(days=2))


class TestRecordPayment:
    async def test_records_pending_payment_with_history(self, db_session, course):
        enrollment = await _bare_enrollment(db_session, course.id)
        payment = await PaymentService(db_session).record_payment(
            enrollment.id,
            Decimal("100.00"),
            PaymentMethod.BANK_TRANSFER,
            requested_by_id=STUDENT,
            receipt_ref="receipts/slip.jpg",
            payment_date="2024-05-02",
            bank_name="KCB",
        )

        assert payment.status == PaymentStatus.PENDING.value
        assert payment.payment_date == date(2024, 5, 2)
        assert payment.bank_name == "KCB"
        assert payment.original_amount is None
        assert [h.status for h in payment.status_history] == ["pending"]

    async def test_receipt_required_unless_card(self, db_session, course):
        enrollment = await _bare_enrollment(db_session, course.id)
        with pytest.raises(ValidationError):
            await PaymentService(db_session).record_payment(
                enrollment.id, Decimal("100"), PaymentMethod.CASH, requested_by_id=STUDENT
            )

    async def test_card_needs_no_receipt(self, db_session, course):
        enrollment = await _bare_enrollment(db_session, course.id)
        payment = await PaymentService(db_session).record_payment(
            enrollment.id, Decimal("100"), "card", requested_by_id=STUDENT
        )
        assert payment.receipt_ref is None
        assert payment.payment_method == "card"

    async def test_amount_must_be_positive(self, db_session, course):
        enrollment = await _bare_enrollment(db_session, course.id)
        with pytest.raises(ValidationError):
            await PaymentService(db_session).record_payment(
                enrollment.id, Decimal("0"), PaymentMethod.CASH, STUDENT, receipt_ref="r"
            )

    async def test_future_date_rejected(self, db_session, course):
        enrollment = await _bare_enrollment(db_session, course.id)
        tomorrow = datetime.now(timezone.utc).date() + timedelta(days=2)
        with pytest.raises(ValidationError):
            await PaymentService(db_session).record_payment(
                enrollment.id, Decimal("10"), PaymentMethod.CASH, STUDENT, receipt_ref="r", payment_date=tomorrow
            )

    async def test_only_for_own_enrollment(self, db_session, course):
        enrollment = await _bare_enrollment(db_session, course.id, student_id=OTHER_STUDENT)
        with pytest.raises(AuthorizationError):
            await PaymentService(db_session).record_payment(
                enrollment.id, Decimal("10"), PaymentMethod.CASH, STUDENT, receipt_ref="r"
            )

    async def test_one_payment_per_enrollment(self, db_session, course):
        enrollment = await _request(db_session, course.id)
        with pytest.raises(ConflictError) as exc_info:
            await PaymentService(db_session).record_payment(
                enrollment.id, Decimal("100"), PaymentMethod.CASH, STUDENT, receipt_ref="r"
            )
        assert exc_info.value.details["code"] == "payment_exists"


class TestPaymentStatus:
    async def test_scenario_reject_then_reupload(self, db_session, course, notifier):
        """Rejected payment rejects the enrollment; a reupload only reopens the payment."""
        enrollment = await _request(db_session, course.id)
        payments = PaymentService(db_session, notifier=notifier)
        payment = await payments.get_payment_for_enrollment(enrollment.id)

        payment = await payments.transition_status(
            payment.id, PaymentStatus.REJECTED, ADMIN, reason="blurry receipt"
        )
        assert payment.status == "rejected"
        assert payment.status_history[-1].reason == "blurry receipt"
        assert payment.status_history[-1].updated_by_id == ADMIN

        enrollments = EnrollmentService(db_session)
        enrollment = await enrollments.get_enrollment(enrollment.id)
        assert enrollment.status == "rejected"
        assert enrollment.rejection_reason == "blurry receipt"
        assert "Payment rejected" in notifier.titles_for(STUDENT)

        payment = await payments.reupload_evidence(payment.id, "receipts/clear.jpg", STUDENT)
        assert payment.status == "pending"
        assert payment.receipt_ref == "receipts/clear.jpg"
        assert [h.status for h in payment.status_history] == ["pending", "rejected", "pending"]

        enrollment = await enrollments.get_enrollment(enrollment.id)
        assert enrollment.status == "rejected"

    async def test_verify_does_not_approve_enrollment(self, db_session, course, notifier):
        enrollment = await _request(db_session, course.id)
        payments = PaymentService(db_session, notifier=notifier)
        payment = await payments.get_payment_for_enrollment(enrollment.id)

        payment = await payments.transition_status(payment.id, "verified", ADMIN)

        assert payment.status == "verified"
        enrollment = await EnrollmentService(db_session).get_enrollment(enrollment.id)
        assert enrollment.status == "pending"
        assert "Payment verified" in notifier.titles_for(STUDENT)

    async def test_rejecting_verified_payment_revokes_access(
        self, db_session, course, recording_access, access_calls
    ):
        enrollment = await _request(db_session, course.id)
        payments = PaymentService(db_session, access=recording_access)
        payment = await payments.get_payment_for_enrollment(enrollment.id)
        await payments.transition_status(payment.id, "verified", ADMIN)
        await EnrollmentService(db_session, access=recording_access).set_status(
            enrollment.id, EnrollmentStatus.APPROVED, ADMIN
        )
        assert await SqlCatalogAccess(db_session).has_access(STUDENT, course.id)

        await payments.transition_status(payment.id, "rejected", ADMIN, reason="chargeback")

        enrollment = await EnrollmentService(db_session).get_enrollment(enrollment.id)
        assert enrollment.status == "rejected"
        assert enrollment.approval_date is None
        assert access_calls == [("grant", STUDENT, course.id), ("revoke", STUDENT, course.id)]
        assert not await SqlCatalogAccess(db_session).has_access(STUDENT, course.id)

    async def test_reject_requires_reason(self, db_session, course):
        enrollment = await _request(db_session, course.id)
        payments = PaymentService(db_session)
        payment = await payments.get_payment_for_enrollment(enrollment.id)
        with pytest.raises(ValidationError):
            await payments.transition_status(payment.id, "rejected", ADMIN, reason="   ")

    async def test_rejected_cannot_be_verified(self, db_session, course):
        enrollment = await _request(db_session, course.id)
        payments = PaymentService(db_session)
        payment = await payments.get_payment_for_enrollment(enrollment.id)
        await payments.transition_status(payment.id, "rejected", ADMIN, reason="wrong amount")

        with pytest.raises(InvalidTransitionError):
            await payments.transition_status(payment.id, "verified", ADMIN)

    async def test_reupload_only_when_rejected(self, db_session, course):
        enrollment = await _request(db_session, course.id)
        payments = PaymentService(db_session)
        payment = await payments.get_payment_for_enrollment(enrollment.id)
        with pytest.raises(InvalidTransitionError):
            await payments.reupload_evidence(payment.id, "receipts/new.jpg", STUDENT)

    async def test_reupload_only_by_owner(self, db_session, course):
        enrollment = await _request(db_session, course.id)
        payments = PaymentService(db_session)
        payment = await payments.get_payment_for_enrollment(enrollment.id)
        await payments.transition_status(payment.id, "rejected", ADMIN, reason="blurry")
        with pytest.raises(AuthorizationError):
            await payments.reupload_evidence(payment.id, "receipts/new.jpg", OTHER_STUDENT)

    async def test_notification_failure_does_not_undo_status(self, db_session, course, failing_notifier):
        enrollment = await _request(db_session, course.id)
        payments = PaymentService(db_session, notifier=failing_notifier)
        payment = await payments.get_payment_for_enrollment(enrollment.id)

        payment = await payments.transition_status(payment.id, "verified", ADMIN)
        assert payment.status == "verified"

    async def test_list_filters(self, db_session, make_course):
        course = await make_course()
        other = await make_course(title="Other", price="50.00")
        await _request(db_session, course.id)
        second = await _request(db_session, other.id)
        payments = PaymentService(db_session)
        payment = await payments.get_payment_for_enrollment(second.id)
        await payments.transition_status(payment.id, "verified", ADMIN)

        items, total = await payments.list_payments(PaymentFilters(student_id=STUDENT))
        assert total == 2
        items, total = await payments.list_payments(PaymentFilters(status=PaymentStatus.VERIFIED))
        assert total == 1
        assert items[0].amount == Decimal("50.00")


class TestPaymentEndpoints:
    async def test_admin_rejects_over_api(
        self, client: AsyncClient, db_session, course, admin_headers, student_headers
    ):
        enrollment = await _request(db_session, course.id)
        payment = await PaymentService(db_session).get_payment_for_enrollment(enrollment.id)

        missing_reason = await client.patch(
            f"/api/v1/payments/{payment.id}/status",
            headers=admin_headers,
            json={"status": "rejected"},
        )
        assert missing_reason.status_code == 422

        response = await client.patch(
            f"/api/v1/payments/{payment.id}/status",
            headers=admin_headers,
            json={"status": "rejected", "reason": "blurry receipt"},
        )
        assert response.status_code == 200
        assert response.json()["data"]["status"] == "rejected"

        reupload = await client.post(
            f"/api/v1/payments/{payment.id}/reupload",
            headers=student_headers,
            json={"receipt_ref": "receipts/clear.jpg"},
        )
        assert reupload.status_code == 200
        assert reupload.json()["data"]["status"] == "pending"

    async def test_student_sees_only_own_payments(
        self, client: AsyncClient, db_session, course, student_headers, other_student_headers
    ):
        enrollment = await _request(db_session, course.id)
        payment = await PaymentService(db_session).get_payment_for_enrollment(enrollment.id)

        own = await client.get(f"/api/v1/payments/{payment.id}", headers=student_headers)
        assert own.status_code == 200

        other = await client.get(f"/api/v1/payments/{payment.id}", headers=other_student_headers)
        assert other.status_code == 403

        listing = await client.get("/api/v1/payments", headers=other_student_headers)
        assert listing.json()["data"]["total"] == 0

    async def test_invalid_transition_is_conflict(
        self, client: AsyncClient, db_session, course, admin_headers
    ):
        enrollment = await _request(db_session, course.id)
        payment = await PaymentService(db_session).get_payment_for_enrollment(enrollment.id)

        response = await client.patch(
            f"/api/v1/payments/{payment.id}/status",
            headers=admin_headers,
            json={"status": "pending"},
        )
        assert response.status_code == 409
        assert response.json()["code"] == "invalid_transition"
