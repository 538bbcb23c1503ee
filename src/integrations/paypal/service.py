"""Card checkout: order creation, capture, status sync and gateway webhooks."""

import secrets

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.audit.service import AuditAction, AuditService
from src.core.config import settings
from src.core.database import commit_or_conflict
from src.core.exceptions import (
    ConflictError,
    GatewayError,
    NotFoundError,
    ValidationError,
)
from src.core.logging import get_logger
from src.core.notifications import LogNotifier, Notifier, send_notification
from src.integrations.paypal.client import PaymentGateway
from src.integrations.paypal.models import CardOrder, CardOrderStatus, map_gateway_status
from src.integrations.paypal.schemas import PayPalWebhookEvent
from src.modules.courses.service import CatalogAccess, SqlCatalogAccess
from src.modules.enrollments.models import Enrollment, EnrollmentStatus
from src.modules.enrollments.service import EnrollmentService
from src.modules.payments.models import Payment, PaymentMethod, PaymentStatus
from src.modules.payments.service import PaymentService
from src.modules.vouchers.service import VoucherService, canonical_code
from src.shared.utils.money import round_money

logger = get_logger(__name__)

OPEN_STATUSES = (CardOrderStatus.CREATED.value, CardOrderStatus.APPROVED.value)


class CardPaymentService:
    """Drives the card path from order creation to an approved enrollment."""

    def __init__(
        self,
        db: AsyncSession,
        gateway: PaymentGateway,
        access: CatalogAccess | None = None,
        notifier: Notifier | None = None,
        auto_approve: bool | None = None,
    ):
        self.db = db
        self.gateway = gateway
        self.notifier = notifier or LogNotifier()
        self.auto_approve = settings.card_auto_approve if auto_approve is None else auto_approve
        self.audit = AuditService(db)
        self.enrollments = EnrollmentService(db, access=access or SqlCatalogAccess(db), notifier=self.notifier)
        self.payments = self.enrollments.payments
        self.vouchers = VoucherService(db, catalog=self.enrollments.catalog, notifier=self.notifier)

    def verify_webhook_token(self, token: str) -> bool:
        configured = (settings.paypal_webhook_token or "").strip()
        if not configured:
            return False
        return secrets.compare_digest(token or "", configured)

    # --- Checkout ---

    async def create_order(
        self,
        student_id: int,
        course_id: int,
        voucher_code: str | None = None,
    ) -> CardOrder:
        """Open a gateway order for the course price (voucher-adjusted). Reuses an open order."""
        course = await self.enrollments.catalog.get_course(course_id)
        if not course.is_active:
            raise ValidationError("Course is not open for enrollment", field="course_id")
        await self._ensure_can_enroll(student_id, course_id)

        existing = await self.db.scalar(
            select(CardOrder).where(
                CardOrder.student_id == student_id,
                CardOrder.course_id == course_id,
                CardOrder.status.in_(OPEN_STATUSES),
            )
        )
        if existing is not None:
            return existing

        amount = round_money(course.price)
        if voucher_code:
            check = await self.vouchers.validate(voucher_code, course_id, student_id, price=course.price)
            if not check.valid:
                raise self.vouchers._redeem_error(check)
            amount = check.final_price
        if amount <= 0:
            raise ValidationError("Nothing to pay for this course; request enrollment directly")

        created = await self.gateway.create_order(
            amount,
            settings.currency,
            reference=f"course-{course_id}-student-{student_id}",
            description=course.title,
        )
        order = CardOrder(
            gateway_order_id=created.order_id,
            student_id=student_id,
            course_id=course_id,
            amount=amount,
            currency=settings.currency,
            status=map_gateway_status(created.status).value,
            approval_url=created.approval_url,
            voucher_code=canonical_code(voucher_code) if voucher_code else None,
        )
        self.db.add(order)
        await commit_or_conflict(self.db, "Card order already recorded")
        logger.info(
            "card_order_created",
            order_id=created.order_id,
            student_id=student_id,
            course_id=course_id,
            amount=str(amount),
        )
        return await self._get_order(created.order_id, student_id)

    async def verify_card_payment(
        self,
        student_id: int,
        order_id: str,
        voucher_code: str | None = None,
    ) -> tuple[Enrollment, Payment | None]:
        """
        Capture the order and enroll the student.

        Idempotent per order: a completed order returns the enrollment it
        produced. The card payment is recorded without a receipt and marked
        verified by the gateway; with auto-approve the enrollment is approved
        in the same transaction.
        """
        order = await self._get_order(order_id, student_id)

        if order.status == CardOrderStatus.COMPLETED.value and order.payment_id is not None:
            payment = await self.payments.get_payment_by_id(order.payment_id)
            enrollment = await self.enrollments.get_enrollment(payment.enrollment_id)
            return enrollment, payment
        if order.status in (CardOrderStatus.CANCELLED.value, CardOrderStatus.FAILED.value):
            raise ConflictError(f"Card order is {order.status}", code="order_closed")

        await self._ensure_can_enroll(student_id, order.course_id)
        voucher_code = voucher_code or order.voucher_code
        if voucher_code:
            check = await self.vouchers.validate(voucher_code, order.course_id, student_id)
            if not check.valid:
                raise self.vouchers._redeem_error(check)

        if order.status != CardOrderStatus.COMPLETED.value:
            capture = await self.gateway.capture(order_id)
            order.status = CardOrderStatus.COMPLETED.value
            order.payer_id = capture.payer_id
            order.gateway_payment_id = capture.payment_id
            await self.db.commit()
            logger.info("card_payment_captured", order_id=order_id, payment_id=capture.payment_id)

        try:
            enrollment = await self.enrollments.submit(
                student_id,
                order.course_id,
                receipt_ref=None,
                voucher_code=voucher_code,
                payment_method=PaymentMethod.CARD,
                payment_details={"transaction_id": order.gateway_payment_id},
                gateway_order_id=order_id,
            )
            payment = await self.payments.get_payment_for_enrollment(enrollment.id)
            if payment is not None and not payment.is_verified:
                payment = await self.payments.transition_status(
                    payment.id,
                    PaymentStatus.VERIFIED,
                    updated_by_id=None,
                    reason="Captured by card gateway",
                    commit=False,
                )
            if self.auto_approve:
                enrollment = await self.enrollments.set_status(
                    enrollment.id, EnrollmentStatus.APPROVED, updated_by_id=None, commit=False
                )
            order = await self._get_order(order_id, student_id)
            order.payment_id = payment.id if payment is not None else None

            await self.audit.log(
                action=AuditAction.CAPTURE_CARD_PAYMENT,
                entity_type="Enrollment",
                entity_id=enrollment.id,
                user_id=student_id,
                entity_identifier=order_id,
                new_values={
                    "gateway_payment_id": order.gateway_payment_id,
                    "amount": str(order.amount),
                    "auto_approved": self.auto_approve,
                },
            )
            await commit_or_conflict(self.db, "Enrollment was changed concurrently, reload and retry")
        except Exception:
            # The gateway already holds the money; someone has to reconcile by hand.
            logger.exception("card_capture_not_enrolled", order_id=order_id, student_id=student_id)
            raise

        if enrollment.status == EnrollmentStatus.APPROVED.value:
            await send_notification(
                self.notifier,
                student_id,
                "Enrollment approved",
                "Your card payment was received and your enrollment is approved.",
            )
        enrollment = await self.enrollments.get_enrollment(enrollment.id)
        payment = await self.payments.get_payment_by_id(payment.id) if payment is not None else None
        return enrollment, payment

    async def sync_order_status(self, order_id: str, student_id: int) -> CardOrder:
        """Refresh the order status from the gateway; keep the cached one if the gateway is down."""
        order = await self._get_order(order_id, student_id)
        if order.status in (CardOrderStatus.COMPLETED.value, CardOrderStatus.FAILED.value):
            return order
        try:
            gateway_status = await self.gateway.get_order_status(order_id)
        except GatewayError:
            logger.warning("card_order_status_unavailable", order_id=order_id)
            return order
        order.status = map_gateway_status(gateway_status).value
        await self.db.commit()
        return await self._get_order(order_id, student_id)

    # --- Webhooks ---

    async def handle_webhook(self, event: PayPalWebhookEvent) -> str:
        """Apply a gateway event. Returns a short description of what happened."""
        resource = event.resource or {}
        related_order = (
            (resource.get("supplementary_data") or {}).get("related_ids") or {}
        ).get("order_id")

        if event.event_type == "CHECKOUT.ORDER.APPROVED":
            order = await self._find_order(resource.get("id"))
            if order is not None and order.status == CardOrderStatus.CREATED.value:
                order.status = CardOrderStatus.APPROVED.value
                await self.db.commit()
                return "order approved"
            return "ignored"

        if event.event_type == "PAYMENT.CAPTURE.COMPLETED":
            order = await self._find_order(related_order)
            if order is not None and order.status != CardOrderStatus.COMPLETED.value:
                order.status = CardOrderStatus.COMPLETED.value
                order.gateway_payment_id = resource.get("id")
                await self.db.commit()
                return "capture completed"
            return "ignored"

        if event.event_type == "PAYMENT.CAPTURE.DENIED":
            order = await self._find_order(related_order)
            if order is None:
                return "ignored"
            order.status = CardOrderStatus.FAILED.value
            if order.payment_id is not None:
                payment = await self.payments.get_payment_by_id(order.payment_id)
                if not payment.is_rejected:
                    await self.payments.transition_status(
                        payment.id,
                        PaymentStatus.REJECTED,
                        updated_by_id=None,
                        reason="Card payment denied by gateway",
                    )
                    logger.warning("card_payment_denied", order_id=order.gateway_order_id, payment_id=payment.id)
                    return "payment rejected"
            await self.db.commit()
            return "order failed"

        logger.info("paypal_webhook_unhandled", event_type=event.event_type)
        return "ignored"

    # --- Helpers ---

    async def _ensure_can_enroll(self, student_id: int, course_id: int) -> None:
        existing = await self.db.scalar(
            select(Enrollment).where(
                Enrollment.student_id == student_id,
                Enrollment.course_id == course_id,
            )
        )
        if existing is None or existing.is_rejected:
            return
        if existing.is_approved:
            raise ConflictError("Already enrolled in this course", code="already_enrolled")
        raise ConflictError("Enrollment request is already awaiting review", code="already_requested")

    async def _get_order(self, order_id: str, student_id: int) -> CardOrder:
        order = await self.db.scalar(
            select(CardOrder)
            .where(CardOrder.gateway_order_id == order_id, CardOrder.student_id == student_id)
            .execution_options(populate_existing=True)
        )
        if order is None:
            raise NotFoundError("Card order", order_id)
        return order

    async def _find_order(self, order_id: str | None) -> CardOrder | None:
        if not order_id:
            return None
        return await self.db.scalar(select(CardOrder).where(CardOrder.gateway_order_id == order_id))
