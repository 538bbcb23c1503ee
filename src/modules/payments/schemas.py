"""Pydantic schemas for Payments module."""

from datetime import date, datetime
from decimal import Decimal

from pydantic import Field, model_validator

from src.shared.schemas.base import BaseSchema
from src.modules.payments.models import PaymentMethod, PaymentStatus


class PaymentCreate(BaseSchema):
    """Schema for recording a payment. Receipt reference required unless paid by card."""

    enrollment_id: int
    amount: Decimal = Field(gt=0, description="Payment amount (must be positive)")
    payment_method: PaymentMethod
    payment_date: date | None = None
    receipt_ref: str | None = Field(None, max_length=512)
    bank_name: str | None = Field(None, max_length=100)
    account_reference: str | None = Field(None, max_length=100)
    transaction_id: str | None = Field(None, max_length=100)
    notes: str | None = None

    @model_validator(mode="after")
    def require_receipt_unless_card(self):
        if self.payment_method != PaymentMethod.CARD and not self.receipt_ref:
            raise ValueError("A payment receipt is required unless paying by card")
        return self


class PaymentStatusUpdate(BaseSchema):
    """Administrator verifies or rejects a payment. Rejection needs a reason."""

    status: PaymentStatus
    reason: str | None = Field(None, max_length=1000)

    @model_validator(mode="after")
    def require_reason_on_reject(self):
        if self.status == PaymentStatus.REJECTED and not (self.reason and self.reason.strip()):
            raise ValueError("A reason is required when rejecting a payment")
        return self


class ReuploadRequest(BaseSchema):
    """New evidence for a rejected payment."""

    receipt_ref: str = Field(..., min_length=1, max_length=512)


class PaymentStatusHistoryResponse(BaseSchema):
    """One entry of the payment status trail."""

    status: str
    updated_by_id: int | None
    reason: str | None
    updated_at: datetime


class PaymentResponse(BaseSchema):
    """Schema for payment response."""

    id: int
    enrollment_id: int
    student_id: int
    course_id: int
    amount: Decimal
    original_amount: Decimal | None
    discount_amount: Decimal | None
    voucher_id: int | None
    payment_date: date
    payment_method: str
    bank_name: str | None
    account_reference: str | None
    transaction_id: str | None
    gateway_order_id: str | None
    receipt_ref: str | None
    notes: str | None
    status: str
    status_history: list[PaymentStatusHistoryResponse]
    created_at: datetime
    updated_at: datetime


class PaymentFilters(BaseSchema):
    """Filters for listing payments."""

    student_id: int | None = None
    course_id: int | None = None
    status: PaymentStatus | None = None
    payment_method: PaymentMethod | None = None
    date_from: date | None = None
    date_to: date | None = None
    page: int = Field(1, ge=1)
    limit: int = Field(50, ge=1, le=100)
