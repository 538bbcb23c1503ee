"""Pydantic schemas for Enrollments module."""

from datetime import date, datetime

from pydantic import Field, field_validator, model_validator

from src.shared.schemas.base import BaseSchema
from src.shared.utils.dates import as_utc
from src.modules.enrollments.models import EnrollmentStatus
from src.modules.payments.models import PaymentMethod


class EnrollmentRequest(BaseSchema):
    """Student asks for access to a course, with payment evidence."""

    course_id: int
    receipt_ref: str | None = Field(None, max_length=512)
    voucher_code: str | None = Field(None, max_length=50)
    payment_method: PaymentMethod = PaymentMethod.BANK_TRANSFER
    bank_name: str | None = Field(None, max_length=100)
    account_reference: str | None = Field(None, max_length=100)
    transaction_id: str | None = Field(None, max_length=100)

    @field_validator("voucher_code")
    @classmethod
    def blank_code_is_none(cls, v: str | None) -> str | None:
        if v is None or not v.strip():
            return None
        return v.strip().upper()


class EnrollmentStatusUpdate(BaseSchema):
    """Administrator approves or rejects an enrollment."""

    status: EnrollmentStatus
    rejection_reason: str | None = Field(None, max_length=1000)

    @model_validator(mode="after")
    def require_reason_on_reject(self):
        if self.status == EnrollmentStatus.REJECTED and not (
            self.rejection_reason and self.rejection_reason.strip()
        ):
            raise ValueError("A rejection reason is required")
        return self


class ExpirationUpdate(BaseSchema):
    """Set or extend the access term."""

    expiration_date: datetime

    @field_validator("expiration_date")
    @classmethod
    def to_utc(cls, v: datetime) -> datetime:
        return as_utc(v)


class BulkEnrollRequest(BaseSchema):
    """Enroll several students at once (approved, no payment)."""

    course_id: int
    student_ids: list[int] = Field(..., min_length=1)


class BulkEnrollResult(BaseSchema):
    enrolled: list[int]
    skipped: list[int]


class EnrollmentResponse(BaseSchema):
    """Schema for enrollment response."""

    id: int
    student_id: int
    course_id: int
    status: str
    payment_receipt_ref: str | None
    payment_method: str | None
    voucher_code: str | None
    enrollment_date: datetime
    approval_date: datetime | None
    rejection_reason: str | None
    expiration_date: datetime | None
    is_expired: bool
    created_at: datetime
    updated_at: datetime


class AccessCheckResponse(BaseSchema):
    course_id: int
    student_id: int
    has_access: bool


class SweepResponse(BaseSchema):
    found: int
    expired: int
    failed: int


class EnrollmentFilters(BaseSchema):
    """Filters for listing enrollments."""

    course_id: int | None = None
    student_id: int | None = None
    status: EnrollmentStatus | None = None
    date_from: date | None = None
    date_to: date | None = None
    page: int = Field(1, ge=1)
    limit: int = Field(50, ge=1, le=100)
