"""Pydantic schemas for Vouchers module."""

from datetime import datetime
from decimal import Decimal

from pydantic import Field, field_validator, model_validator

from src.shared.schemas.base import BaseSchema
from src.shared.utils.dates import as_utc


class VoucherCreate(BaseSchema):
    """Schema for creating a voucher."""

    code: str = Field(..., min_length=1, max_length=50)
    description: str | None = None
    discount_percentage: Decimal = Field(..., ge=0, le=100)
    course_ids: list[int] = Field(..., min_length=1)
    usage_limit: int = Field(..., ge=1)
    valid_from: datetime
    valid_until: datetime

    @field_validator("code")
    @classmethod
    def canonical_code(cls, v: str) -> str:
        v = v.strip().upper()
        if not v:
            raise ValueError("Voucher code is required")
        return v

    @field_validator("valid_from", "valid_until")
    @classmethod
    def to_utc(cls, v: datetime) -> datetime:
        return as_utc(v)

    @model_validator(mode="after")
    def check_window(self):
        if self.valid_until <= self.valid_from:
            raise ValueError("valid_until must be after valid_from")
        return self


class VoucherUpdate(BaseSchema):
    """Schema for updating a voucher. Only provided fields change."""

    code: str | None = Field(None, min_length=1, max_length=50)
    description: str | None = None
    discount_percentage: Decimal | None = Field(None, ge=0, le=100)
    course_ids: list[int] | None = Field(None, min_length=1)
    usage_limit: int | None = Field(None, ge=1)
    valid_from: datetime | None = None
    valid_until: datetime | None = None
    is_active: bool | None = None

    @field_validator("code")
    @classmethod
    def canonical_code(cls, v: str | None) -> str | None:
        if v is None:
            return v
        v = v.strip().upper()
        if not v:
            raise ValueError("Voucher code is required")
        return v

    @field_validator("valid_from", "valid_until")
    @classmethod
    def to_utc(cls, v: datetime | None) -> datetime | None:
        return as_utc(v)


class VoucherResponse(BaseSchema):
    """Schema for voucher response."""

    id: int
    code: str
    description: str | None
    discount_percentage: Decimal
    applicable_course_ids: list[int]
    usage_limit: int
    used_count: int
    remaining_uses: int
    valid_from: datetime
    valid_until: datetime
    is_active: bool
    created_by_id: int
    created_at: datetime


class VoucherUsageResponse(BaseSchema):
    """Schema for voucher usage (redemption) response."""

    id: int
    voucher_id: int
    voucher_code: str
    student_id: int
    course_id: int
    enrollment_id: int
    payment_id: int | None
    original_price: Decimal
    discount_amount: Decimal
    final_price: Decimal
    applied_by_id: int
    used_at: datetime


class VoucherDetailResponse(VoucherResponse):
    """Voucher with usage statistics."""

    usage_count: int
    recent_usages: list[VoucherUsageResponse]


class VoucherValidateRequest(BaseSchema):
    """Check a code against a course for the calling student."""

    code: str = Field(..., min_length=1, max_length=50)
    course_id: int


class VoucherValidationResponse(BaseSchema):
    """
    Structured validation result.

    ``valid=false`` is a normal answer, not an error: ``code`` says why
    (not_found, inactive, not_yet_valid, expired, exhausted, not_applicable,
    already_used) and ``message`` is ready to show to the student.
    """

    valid: bool
    code: str | None = None
    message: str | None = None
    voucher_code: str | None = None
    discount_percentage: Decimal | None = None
    original_price: Decimal | None = None
    discount_amount: Decimal | None = None
    final_price: Decimal | None = None


class ApplyRetroactiveRequest(BaseSchema):
    """Administrator applies a voucher to an existing enrollment."""

    enrollment_id: int
    code: str = Field(..., min_length=1, max_length=50)


class VoucherDeleteResult(BaseSchema):
    """Outcome of a delete request: removed outright or deactivated."""

    id: int
    deleted: bool
    deactivated: bool


class VoucherFilters(BaseSchema):
    """Filters for listing vouchers."""

    is_active: bool | None = None
    course_id: int | None = None
    search: str | None = None
    page: int = Field(1, ge=1)
    limit: int = Field(50, ge=1, le=100)
