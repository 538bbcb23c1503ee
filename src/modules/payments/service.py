"""Service for Payments module."""

from datetime import date
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.audit.service import AuditAction, AuditService
from src.core.database import commit_or_conflict, flush_or_conflict
from src.core.exceptions import (
    AuthorizationError,
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from src.core.logging import get_logger
from src.core.notifications import LogNotifier, Notifier, send_notification
from src.modules.courses.service import CatalogAccess, SqlCatalogAccess
from src.modules.enrollments.models import Enrollment
from src.modules.enrollments.transitions import reject_enrollment
from src.modules.payments.models import (
    PAYMENT_TRANSITIONS,
    Payment,
    PaymentMethod,
    PaymentStatus,
    PaymentStatusHistory,
)
from src.modules.payments.schemas import PaymentFilters
from src.modules.vouchers.models import VoucherUsage
from src.shared.utils.dates import utc_now
from src.shared.utils.money import round_money

logger = get_logger(__name__)

CONCURRENT_CHANGE = "Payment was changed concurrently, reload and retry"


def parse_payment_date(value: date | str | None) -> date:
    """Payment date from a date or ISO string; today when missing. Future dates are rejected."""
    if value is None:
        return utc_now().date()
    if isinstance(value, str):
        try:
            value = date.fromisoformat(value.strip())
        except ValueError:
            raise ValidationError(f"Invalid payment date: {value!r}", field="payment_date")
    if value > utc_now().date():
        raise ValidationError("Payment date cannot be in the future", field="payment_date")
    return value


class PaymentService:
    """Payment ledger: records payments and owns their status trail."""

    def __init__(
        self,
        db: AsyncSession,
        access: CatalogAccess | None = None,
        notifier: Notifier | None = None,
    ):
        self.db = db
        self.access = access or SqlCatalogAccess(db)
        self.notifier = notifier or LogNotifier()
        self.audit = AuditService(db)

    async def record_payment(
        self,
        enrollment_id: int,
        amount: Decimal,
        payment_method: PaymentMethod | str,
        requested_by_id: int,
        receipt_ref: str | None = None,
        payment_date: date | str | None = None,
        bank_name: str | None = None,
        account_reference: str | None = None,
        transaction_id: str | None = None,
        gateway_order_id: str | None = None,
        notes: str | None = None,
        commit: bool = True,
    ) -> Payment:
        """
        Record a pending payment for the requester's own enrollment.

        When the enrollment carries a voucher redemption the payment copies
        its original price, discount and voucher id.
        """
        enrollment = await self._get_enrollment(enrollment_id)
        if enrollment.student_id != requested_by_id:
            raise AuthorizationError("Enrollment belongs to another student")

        amount = round_money(amount)
        if amount <= 0:
            raise ValidationError("Payment amount must be positive", field="amount")
        try:
            payment_method = PaymentMethod(payment_method)
        except ValueError:
            raise ValidationError(f"Unknown payment method: {payment_method}", field="payment_method")
        if payment_method != PaymentMethod.CARD and not receipt_ref:
            raise ValidationError("A payment receipt is required unless paying by card", field="receipt_ref")
        paid_on = parse_payment_date(payment_date)

        if await self.get_payment_for_enrollment(enrollment_id) is not None:
            raise ConflictError(
                "A payment already exists for this enrollment; reupload the receipt instead",
                code="payment_exists",
            )

        usage = await self._get_voucher_usage(enrollment_id)
        now = utc_now()
        payment = Payment(
            enrollment_id=enrollment.id,
            student_id=enrollment.student_id,
            course_id=enrollment.course_id,
            amount=amount,
            original_amount=usage.original_price if usage else None,
            discount_amount=usage.discount_amount if usage else None,
            voucher_id=usage.voucher_id if usage else None,
            payment_date=paid_on,
            payment_method=payment_method.value,
            bank_name=bank_name,
            account_reference=account_reference,
            transaction_id=transaction_id,
            gateway_order_id=gateway_order_id,
            receipt_ref=receipt_ref,
            notes=notes,
            status=PaymentStatus.PENDING.value,
            status_history=[
                PaymentStatusHistory(
                    status=PaymentStatus.PENDING.value,
                    updated_by_id=requested_by_id,
                    updated_at=now,
                )
            ],
        )
        self.db.add(payment)
        await flush_or_conflict(self.db, "A payment already exists for this enrollment")

        if usage is not None and usage.payment_id is None:
            usage.payment_id = payment.id

        await self.audit.log(
            action=AuditAction.RECORD_PAYMENT,
            entity_type="Payment",
            entity_id=payment.id,
            user_id=requested_by_id,
            new_values={
                "enrollment_id": enrollment.id,
                "amount": str(amount),
                "payment_method": payment_method.value,
            },
        )
        logger.info(
            "payment_recorded",
            payment_id=payment.id,
            enrollment_id=enrollment.id,
            amount=str(amount),
            method=payment_method.value,
        )

        if commit:
            await commit_or_conflict(self.db, CONCURRENT_CHANGE)
            return await self.get_payment_by_id(payment.id)
        return payment

    async def transition_status(
        self,
        payment_id: int,
        new_status: PaymentStatus | str,
        updated_by_id: int | None,
        reason: str | None = None,
        commit: bool = True,
    ) -> Payment:
        """
        Verify or reject a payment and append to its history.

        Rejection cascades to the enrollment (revoking access if it had been
        granted) in the same transaction. Verification never approves the
        enrollment.
        """
        payment = await self.get_payment_by_id(payment_id)
        new_status = PaymentStatus(new_status)
        reason = reason.strip() if reason else None
        if new_status == PaymentStatus.REJECTED and not reason:
            raise ValidationError("A reason is required when rejecting a payment", field="reason")
        PAYMENT_TRANSITIONS.ensure_transition(payment.status, new_status)

        old_status = payment.status
        payment.status = new_status.value
        payment.status_history.append(
            PaymentStatusHistory(
                status=new_status.value,
                updated_by_id=updated_by_id,
                updated_at=utc_now(),
                reason=reason,
            )
        )

        if new_status == PaymentStatus.REJECTED:
            enrollment = await self._get_enrollment(payment.enrollment_id)
            await reject_enrollment(enrollment, reason, self.access)

        await self.audit.log(
            action=AuditAction.PAYMENT_STATUS,
            entity_type="Payment",
            entity_id=payment.id,
            user_id=updated_by_id,
            old_values={"status": old_status},
            new_values={"status": new_status.value},
            comment=reason,
        )
        await flush_or_conflict(self.db, CONCURRENT_CHANGE)
        logger.info(
            "payment_status_changed",
            payment_id=payment.id,
            old_status=old_status,
            new_status=new_status.value,
        )

        if not commit:
            return payment

        await commit_or_conflict(self.db, CONCURRENT_CHANGE)
        await self._notify_status(payment, reason)
        return await self.get_payment_by_id(payment.id)

    async def reupload_evidence(self, payment_id: int, receipt_ref: str, requested_by_id: int) -> Payment:
        """
        Replace the receipt of a rejected payment and send it back to pending.

        The enrollment keeps its rejected status until an administrator acts.
        """
        payment = await self.get_payment_by_id(payment_id)
        if payment.student_id != requested_by_id:
            raise AuthorizationError("Not authorized to update this payment")
        if not payment.is_rejected:
            raise InvalidTransitionError("Payment", payment.status, PaymentStatus.PENDING.value)
        if not receipt_ref or not receipt_ref.strip():
            raise ValidationError("A new receipt is required", field="receipt_ref")

        old_ref = payment.receipt_ref
        self._reset_to_pending(payment, receipt_ref, requested_by_id, "Receipt reuploaded")

        await self.audit.log(
            action=AuditAction.REUPLOAD_EVIDENCE,
            entity_type="Payment",
            entity_id=payment.id,
            user_id=requested_by_id,
            old_values={"status": PaymentStatus.REJECTED.value, "receipt_ref": old_ref},
            new_values={"status": PaymentStatus.PENDING.value, "receipt_ref": receipt_ref},
        )
        await commit_or_conflict(self.db, CONCURRENT_CHANGE)
        logger.info("payment_evidence_reuploaded", payment_id=payment.id)
        return await self.get_payment_by_id(payment.id)

    async def resubmit_for_enrollment(
        self,
        payment: Payment,
        receipt_ref: str | None,
        amount: Decimal,
        payment_method: PaymentMethod | str,
        requested_by_id: int,
        gateway_order_id: str | None = None,
    ) -> Payment:
        """
        Reuse the enrollment's payment when the student applies again.

        A verified payment is left untouched; otherwise the payment returns to
        pending with the new evidence. Does not commit.
        """
        if payment.is_verified:
            return payment
        payment.amount = round_money(amount)
        payment.payment_method = PaymentMethod(payment_method).value
        payment.payment_date = utc_now().date()
        payment.gateway_order_id = gateway_order_id
        self._reset_to_pending(payment, receipt_ref, requested_by_id, "Enrollment resubmitted")
        await flush_or_conflict(self.db, CONCURRENT_CHANGE)
        return payment

    def _reset_to_pending(
        self,
        payment: Payment,
        receipt_ref: str | None,
        updated_by_id: int,
        reason: str,
    ) -> None:
        payment.receipt_ref = receipt_ref
        payment.status = PaymentStatus.PENDING.value
        payment.status_history.append(
            PaymentStatusHistory(
                status=PaymentStatus.PENDING.value,
                updated_by_id=updated_by_id,
                updated_at=utc_now(),
                reason=reason,
            )
        )

    async def _notify_status(self, payment: Payment, reason: str | None) -> None:
        if payment.is_verified:
            await send_notification(
                self.notifier,
                payment.student_id,
                "Payment verified",
                f"Your payment of {payment.amount} has been verified.",
            )
        elif payment.is_rejected:
            await send_notification(
                self.notifier,
                payment.student_id,
                "Payment rejected",
                f"Your payment was rejected: {reason}. Please upload a new receipt.",
            )

    # --- Queries ---

    async def get_payment_by_id(self, payment_id: int) -> Payment:
        """Get payment by ID with its status history."""
        result = await self.db.execute(
            select(Payment)
            .where(Payment.id == payment_id)
            .execution_options(populate_existing=True)
        )
        payment = result.scalar_one_or_none()
        if not payment:
            raise NotFoundError("Payment", payment_id)
        return payment

    async def get_payment_for_user(self, payment_id: int, user_id: int, is_admin: bool) -> Payment:
        """Get payment; students may only see their own."""
        payment = await self.get_payment_by_id(payment_id)
        if not is_admin and payment.student_id != user_id:
            raise AuthorizationError("Not authorized to view this payment")
        return payment

    async def get_payment_for_enrollment(self, enrollment_id: int) -> Payment | None:
        result = await self.db.execute(
            select(Payment)
            .where(Payment.enrollment_id == enrollment_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_payments(self, filters: PaymentFilters) -> tuple[list[Payment], int]:
        """List payments with filters."""
        query = select(Payment)

        if filters.student_id:
            query = query.where(Payment.student_id == filters.student_id)
        if filters.course_id:
            query = query.where(Payment.course_id == filters.course_id)
        if filters.status:
            query = query.where(Payment.status == filters.status.value)
        if filters.payment_method:
            query = query.where(Payment.payment_method == filters.payment_method.value)
        if filters.date_from:
            query = query.where(Payment.payment_date >= filters.date_from)
        if filters.date_to:
            query = query.where(Payment.payment_date <= filters.date_to)

        # Count total
        count_query = select(func.count()).select_from(query.subquery())
        total = (await self.db.execute(count_query)).scalar() or 0

        # Paginate
        query = query.order_by(Payment.created_at.desc(), Payment.id.desc())
        query = query.offset((filters.page - 1) * filters.limit).limit(filters.limit)

        result = await self.db.execute(query)
        return list(result.scalars().all()), total

    async def _get_enrollment(self, enrollment_id: int) -> Enrollment:
        result = await self.db.execute(
            select(Enrollment)
            .where(Enrollment.id == enrollment_id)
            .execution_options(populate_existing=True)
        )
        enrollment = result.scalar_one_or_none()
        if not enrollment:
            raise NotFoundError("Enrollment", enrollment_id)
        return enrollment

    async def _get_voucher_usage(self, enrollment_id: int) -> VoucherUsage | None:
        result = await self.db.execute(
            select(VoucherUsage).where(VoucherUsage.enrollment_id == enrollment_id)
        )
        return result.scalars().first()
