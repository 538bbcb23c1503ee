"""Service for Enrollments module."""

from datetime import datetime, time, timezone
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.audit.service import AuditAction, AuditService
from src.core.config import settings
from src.core.database import commit_or_conflict, flush_or_conflict
from src.core.exceptions import (
    AppException,
    AuthorizationError,
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from src.core.logging import get_logger
from src.core.notifications import LogNotifier, Notifier, send_notification
from src.modules.courses.service import (
    CatalogAccess,
    CourseCatalog,
    SqlCatalogAccess,
    SqlCourseCatalog,
)
from src.modules.enrollments.models import Enrollment, EnrollmentStatus
from src.modules.enrollments.schemas import EnrollmentFilters
from src.modules.enrollments.transitions import approve_enrollment, reject_enrollment
from src.modules.payments.models import PaymentMethod
from src.modules.payments.service import PaymentService
from src.modules.vouchers.service import VoucherService, canonical_code
from src.shared.utils.dates import as_utc, utc_now

logger = get_logger(__name__)

CONCURRENT_CHANGE = "Enrollment was changed concurrently, reload and retry"


class EnrollmentService:
    """Enrollment lifecycle: request, approve/reject, access checks, terms."""

    def __init__(
        self,
        db: AsyncSession,
        access: CatalogAccess | None = None,
        catalog: CourseCatalog | None = None,
        notifier: Notifier | None = None,
        term_days: int | None = None,
    ):
        self.db = db
        self.access = access or SqlCatalogAccess(db)
        self.catalog = catalog or SqlCourseCatalog(db)
        self.notifier = notifier or LogNotifier()
        self.term_days = term_days if term_days is not None else settings.enrollment_term_days
        self.audit = AuditService(db)
        self.vouchers = VoucherService(db, catalog=self.catalog, notifier=self.notifier)
        self.payments = PaymentService(db, access=self.access, notifier=self.notifier)

    # --- Student actions ---

    async def request_enrollment(
        self,
        student_id: int,
        course_id: int,
        receipt_ref: str | None = None,
        voucher_code: str | None = None,
        payment_method: PaymentMethod | str = PaymentMethod.BANK_TRANSFER,
        bank_name: str | None = None,
        account_reference: str | None = None,
        transaction_id: str | None = None,
    ) -> Enrollment:
        """
        Create a pending enrollment with its payment, redeeming a voucher if given.

        A rejected enrollment for the same course is reused. Everything happens
        in one transaction: if the voucher cannot be redeemed nothing is saved.
        """
        payment_method = PaymentMethod(payment_method)
        if payment_method == PaymentMethod.CARD:
            raise ValidationError(
                "Card payments are submitted through the card checkout", field="payment_method"
            )
        enrollment = await self.submit(
            student_id,
            course_id,
            receipt_ref=receipt_ref,
            voucher_code=voucher_code,
            payment_method=payment_method,
            payment_details={
                "bank_name": bank_name,
                "account_reference": account_reference,
                "transaction_id": transaction_id,
            },
        )
        await commit_or_conflict(self.db, CONCURRENT_CHANGE)
        return await self.get_enrollment(enrollment.id)

    async def submit(
        self,
        student_id: int,
        course_id: int,
        receipt_ref: str | None,
        voucher_code: str | None,
        payment_method: PaymentMethod,
        payment_details: dict | None = None,
        gateway_order_id: str | None = None,
    ) -> Enrollment:
        """Request/resubmit without committing. Rolls back on any failure."""
        course = await self.catalog.get_course(course_id)
        if not course.is_active:
            raise ValidationError("Course is not open for enrollment", field="course_id")

        existing = await self._find(student_id, course_id)
        if existing is not None and not existing.is_rejected:
            if existing.is_approved:
                raise ConflictError("Already enrolled in this course", code="already_enrolled")
            raise ConflictError("Enrollment request is already awaiting review", code="already_requested")

        prior_usage = None
        if existing is not None:
            prior_usage = await self.vouchers.get_usage_for_enrollment(existing.id)
            if prior_usage and voucher_code and canonical_code(voucher_code) != prior_usage.voucher_code:
                raise ConflictError(
                    f"Enrollment already carries voucher {prior_usage.voucher_code}",
                    code="voucher_already_applied",
                )

        try:
            enrollment = await self._create_or_reset(
                existing, student_id, course_id, receipt_ref, payment_method
            )

            usage = prior_usage
            if usage is None and voucher_code:
                usage = await self.vouchers.redeem(
                    voucher_code,
                    student_id=student_id,
                    course_id=course_id,
                    enrollment_id=enrollment.id,
                    applied_by_id=student_id,
                    price=course.price,
                    commit=False,
                )
            amount = usage.final_price if usage is not None else course.price
            await self._attach_payment(
                enrollment,
                existing is not None,
                Decimal(str(amount)),
                payment_method,
                receipt_ref,
                payment_details or {},
                gateway_order_id,
            )
            if usage is not None:
                enrollment.voucher_code = usage.voucher_code

            await self.audit.log(
                action=AuditAction.RESUBMIT_ENROLLMENT if existing else AuditAction.REQUEST_ENROLLMENT,
                entity_type="Enrollment",
                entity_id=enrollment.id,
                user_id=student_id,
                new_values={
                    "course_id": course_id,
                    "amount": str(amount),
                    "voucher_code": enrollment.voucher_code,
                    "payment_method": payment_method.value,
                },
            )
            await flush_or_conflict(self.db, CONCURRENT_CHANGE)
        except AppException:
            await self.db.rollback()
            raise

        logger.info(
            "enrollment_requested",
            enrollment_id=enrollment.id,
            student_id=student_id,
            course_id=course_id,
            resubmitted=existing is not None,
        )
        return enrollment

    async def _create_or_reset(
        self,
        existing: Enrollment | None,
        student_id: int,
        course_id: int,
        receipt_ref: str | None,
        payment_method: PaymentMethod,
    ) -> Enrollment:
        now = utc_now()
        if existing is None:
            enrollment = Enrollment(
                student_id=student_id,
                course_id=course_id,
                status=EnrollmentStatus.PENDING.value,
                is_expired=False,
            )
            self.db.add(enrollment)
        else:
            enrollment = existing
            enrollment.status = EnrollmentStatus.PENDING.value
            enrollment.rejection_reason = None
            enrollment.approval_date = None
            enrollment.expiration_date = None
            enrollment.is_expired = False
        enrollment.payment_receipt_ref = receipt_ref
        enrollment.payment_method = payment_method.value
        enrollment.enrollment_date = now
        await flush_or_conflict(self.db, "An enrollment for this course already exists")
        return enrollment

    async def _attach_payment(
        self,
        enrollment: Enrollment,
        resubmitted: bool,
        amount: Decimal,
        payment_method: PaymentMethod,
        receipt_ref: str | None,
        payment_details: dict,
        gateway_order_id: str | None,
    ) -> None:
        payment = None
        if resubmitted:
            payment = await self.payments.get_payment_for_enrollment(enrollment.id)

        if amount <= 0:
            # A rejected payment must go back to pending, which needs evidence
            if payment is not None and not payment.is_verified:
                raise ValidationError(
                    "This enrollment already has a payment; resubmit it with a receipt",
                    field="voucher_code",
                )
            return
        if payment_method != PaymentMethod.CARD and not receipt_ref:
            raise ValidationError("A payment receipt is required", field="receipt_ref")

        if payment is not None:
            await self.payments.resubmit_for_enrollment(
                payment,
                receipt_ref,
                amount,
                payment_method,
                enrollment.student_id,
                gateway_order_id=gateway_order_id,
            )
            return

        await self.payments.record_payment(
            enrollment.id,
            amount,
            payment_method,
            enrollment.student_id,
            receipt_ref=receipt_ref,
            gateway_order_id=gateway_order_id,
            commit=False,
            **{k: v for k, v in payment_details.items() if v},
        )

    # --- Administrator actions ---

    async def set_status(
        self,
        enrollment_id: int,
        new_status: EnrollmentStatus | str,
        updated_by_id: int | None,
        rejection_reason: str | None = None,
        commit: bool = True,
    ) -> Enrollment:
        """
        Approve or reject an enrollment.

        Approval grants catalog access and is refused while the payment is
        rejected; re-approval is a no-op. Rejection requires a reason and
        revokes access if it had been granted.
        """
        enrollment = await self.get_enrollment(enrollment_id)
        new_status = EnrollmentStatus(new_status)
        old_status = enrollment.status

        if new_status == EnrollmentStatus.PENDING:
            raise InvalidTransitionError("Enrollment", old_status, new_status.value)

        if new_status == EnrollmentStatus.APPROVED:
            payment = await self.payments.get_payment_for_enrollment(enrollment.id)
            if payment is not None and payment.is_rejected and not enrollment.is_approved:
                raise ValidationError(
                    "Cannot approve an enrollment whose payment is rejected", field="status"
                )
            changed = await approve_enrollment(enrollment, self.access, self.term_days)
            action = AuditAction.APPROVE
        else:
            reason = rejection_reason.strip() if rejection_reason else ""
            if not reason:
                raise ValidationError("A rejection reason is required", field="rejection_reason")
            changed = await reject_enrollment(enrollment, reason, self.access)
            action = AuditAction.REJECT

        if not changed and new_status == EnrollmentStatus.APPROVED:
            return enrollment

        await self.audit.log(
            action=action,
            entity_type="Enrollment",
            entity_id=enrollment.id,
            user_id=updated_by_id,
            old_values={"status": old_status},
            new_values={"status": new_status.value},
            comment=enrollment.rejection_reason,
        )
        await flush_or_conflict(self.db, CONCURRENT_CHANGE)
        logger.info(
            "enrollment_status_changed",
            enrollment_id=enrollment.id,
            old_status=old_status,
            new_status=new_status.value,
        )

        if not commit:
            return enrollment

        await commit_or_conflict(self.db, CONCURRENT_CHANGE)
        await self._notify_status(enrollment)
        return await self.get_enrollment(enrollment.id)

    async def set_expiration(
        self,
        enrollment_id: int,
        expiration_date: datetime,
        updated_by_id: int,
    ) -> Enrollment:
        """
        Set or extend the access term.

        Moving an expired enrollment's date into the future clears the
        expiry flag and grants access again.
        """
        enrollment = await self.get_enrollment(enrollment_id)
        expiration_date = as_utc(expiration_date)
        old_value = as_utc(enrollment.expiration_date)
        reactivated = False

        enrollment.expiration_date = expiration_date
        if enrollment.is_expired and expiration_date > utc_now():
            enrollment.is_expired = False
            await self.access.grant(enrollment.student_id, enrollment.course_id)
            reactivated = True

        await self.audit.log(
            action=AuditAction.SET_EXPIRATION,
            entity_type="Enrollment",
            entity_id=enrollment.id,
            user_id=updated_by_id,
            old_values={"expiration_date": old_value.isoformat() if old_value else None},
            new_values={
                "expiration_date": expiration_date.isoformat(),
                "reactivated": reactivated,
            },
        )
        await commit_or_conflict(self.db, CONCURRENT_CHANGE)
        logger.info(
            "enrollment_expiration_set",
            enrollment_id=enrollment.id,
            expiration_date=expiration_date.isoformat(),
            reactivated=reactivated,
        )
        if reactivated:
            await send_notification(
                self.notifier,
                enrollment.student_id,
                "Course access extended",
                f"Your access has been extended until {expiration_date.date().isoformat()}.",
            )
        return await self.get_enrollment(enrollment.id)

    async def bulk_enroll(
        self,
        course_id: int,
        student_ids: list[int],
        enrolled_by_id: int,
    ) -> tuple[list[int], list[int]]:
        """Approve access for students without an enrollment. Returns (enrolled, skipped)."""
        await self.catalog.get_course(course_id)

        wanted = list(dict.fromkeys(student_ids))
        result = await self.db.execute(
            select(Enrollment.student_id).where(
                Enrollment.course_id == course_id,
                Enrollment.student_id.in_(wanted),
            )
        )
        already = set(result.scalars().all())
        enrolled = [sid for sid in wanted if sid not in already]
        skipped = [sid for sid in wanted if sid in already]

        now = utc_now()
        for student_id in enrolled:
            enrollment = Enrollment(
                student_id=student_id,
                course_id=course_id,
                status=EnrollmentStatus.PENDING.value,
                enrollment_date=now,
                is_expired=False,
            )
            self.db.add(enrollment)
            await approve_enrollment(enrollment, self.access, self.term_days, now=now)
        await flush_or_conflict(self.db, "Some students were enrolled concurrently, retry")

        await self.audit.log(
            action=AuditAction.BULK_ENROLL,
            entity_type="Course",
            entity_id=course_id,
            user_id=enrolled_by_id,
            new_values={"enrolled": enrolled, "skipped": skipped},
        )
        await commit_or_conflict(self.db, "Some students were enrolled concurrently, retry")
        logger.info("bulk_enrolled", course_id=course_id, enrolled=len(enrolled), skipped=len(skipped))
        return enrolled, skipped

    # --- Queries ---

    async def check_access(self, student_id: int, course_id: int) -> bool:
        """True iff the student holds an approved, unexpired enrollment for the course."""
        result = await self.db.execute(
            select(Enrollment).where(
                Enrollment.student_id == student_id,
                Enrollment.course_id == course_id,
                Enrollment.status == EnrollmentStatus.APPROVED.value,
                Enrollment.is_expired.is_(False),
            )
        )
        enrollment = result.scalar_one_or_none()
        if enrollment is None:
            return False
        expires = as_utc(enrollment.expiration_date)
        return expires is None or expires > utc_now()

    async def get_enrollment(self, enrollment_id: int) -> Enrollment:
        result = await self.db.execute(
            select(Enrollment)
            .where(Enrollment.id == enrollment_id)
            .execution_options(populate_existing=True)
        )
        enrollment = result.scalar_one_or_none()
        if not enrollment:
            raise NotFoundError("Enrollment", enrollment_id)
        return enrollment

    async def get_enrollment_for_user(self, enrollment_id: int, user_id: int, is_admin: bool) -> Enrollment:
        enrollment = await self.get_enrollment(enrollment_id)
        if not is_admin and enrollment.student_id != user_id:
            raise AuthorizationError("Not authorized to view this enrollment")
        return enrollment

    async def list_enrollments(self, filters: EnrollmentFilters) -> tuple[list[Enrollment], int]:
        """List enrollments with filters."""
        query = select(Enrollment)

        if filters.course_id:
            query = query.where(Enrollment.course_id == filters.course_id)
        if filters.student_id:
            query = query.where(Enrollment.student_id == filters.student_id)
        if filters.status:
            query = query.where(Enrollment.status == filters.status.value)
        if filters.date_from:
            start = datetime.combine(filters.date_from, time.min, tzinfo=timezone.utc)
            query = query.where(Enrollment.enrollment_date >= start)
        if filters.date_to:
            end = datetime.combine(filters.date_to, time.max, tzinfo=timezone.utc)
            query = query.where(Enrollment.enrollment_date <= end)

        count_query = select(func.count()).select_from(query.subquery())
        total = (await self.db.execute(count_query)).scalar() or 0

        query = query.order_by(Enrollment.enrollment_date.desc(), Enrollment.id.desc())
        query = query.offset((filters.page - 1) * filters.limit).limit(filters.limit)

        result = await self.db.execute(query)
        return list(result.scalars().all()), total

    async def list_my_enrollments(self, student_id: int) -> list[Enrollment]:
        result = await self.db.execute(
            select(Enrollment)
            .where(Enrollment.student_id == student_id)
            .order_by(Enrollment.enrollment_date.desc(), Enrollment.id.desc())
        )
        return list(result.scalars().all())

    async def _find(self, student_id: int, course_id: int) -> Enrollment | None:
        result = await self.db.execute(
            select(Enrollment)
            .where(Enrollment.student_id == student_id, Enrollment.course_id == course_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _notify_status(self, enrollment: Enrollment) -> None:
        if enrollment.is_approved:
            await send_notification(
                self.notifier,
                enrollment.student_id,
                "Enrollment approved",
                "Your enrollment has been approved. You can now access the course.",
            )
        elif enrollment.is_rejected:
            await send_notification(
                self.notifier,
                enrollment.student_id,
                "Enrollment rejected",
                f"Your enrollment was rejected: {enrollment.rejection_reason}",
            )
