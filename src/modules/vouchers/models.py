"""Voucher and VoucherUsage models."""

from datetime import datetime
from decimal import Decimal
from enum import StrEnum

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.core.database.base import Base, BigIntPK


class VoucherReason(StrEnum):
    """Why a voucher cannot be applied. Checked in this order."""

    NOT_FOUND = "not_found"
    INACTIVE = "inactive"
    NOT_YET_VALID = "not_yet_valid"
    EXPIRED = "expired"
    EXHAUSTED = "exhausted"
    NOT_APPLICABLE = "not_applicable"
    ALREADY_USED = "already_used"


voucher_courses = Table(
    "voucher_courses",
    Base.metadata,
    Column(
        "voucher_id",
        BigIntPK,
        ForeignKey("vouchers.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column(
        "course_id",
        BigIntPK,
        ForeignKey("courses.id", ondelete="CASCADE"),
        primary_key=True,
    ),
)


class Voucher(Base):
    """
    Percentage discount code.

    ``used_count`` is only ever changed by the conditional UPDATE in
    VoucherService, in the same transaction that inserts the VoucherUsage.
    """

    __tablename__ = "vouchers"
    __table_args__ = (
        CheckConstraint(
            "discount_percentage >= 0 AND discount_percentage <= 100",
            name="ck_vouchers_percentage_range",
        ),
        CheckConstraint("usage_limit >= 1", name="ck_vouchers_usage_limit_positive"),
        CheckConstraint(
            "used_count >= 0 AND used_count <= usage_limit",
            name="ck_vouchers_used_count_within_limit",
        ),
        CheckConstraint("valid_until > valid_from", name="ck_vouchers_valid_window"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(
        String(50), nullable=False, unique=True, index=True
    )  # stored upper-case
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    discount_percentage: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)
    usage_limit: Mapped[int] = mapped_column(Integer, nullable=False)
    used_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    valid_from: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    valid_until: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False, index=True)
    created_by_id: Mapped[int] = mapped_column(BigIntPK, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    # Relationships
    courses: Mapped[list["Course"]] = relationship(
        "Course", secondary=voucher_courses, lazy="selectin"
    )

    @property
    def applicable_course_ids(self) -> list[int]:
        return sorted(c.id for c in self.courses)

    @property
    def remaining_uses(self) -> int:
        return max(self.usage_limit - self.used_count, 0)


class VoucherUsage(Base):
    """One redemption of a voucher by a student. At most one per (voucher, student)."""

    __tablename__ = "voucher_usages"
    __table_args__ = (
        UniqueConstraint("voucher_id", "student_id", name="uq_voucher_usages_voucher_student"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    voucher_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("vouchers.id"), nullable=False, index=True
    )
    student_id: Mapped[int] = mapped_column(BigIntPK, nullable=False, index=True)
    course_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("courses.id"), nullable=False, index=True
    )
    enrollment_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("enrollments.id"), nullable=False, index=True
    )
    payment_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("payments.id"), nullable=True
    )

    original_price: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    discount_amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    final_price: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)

    applied_by_id: Mapped[int] = mapped_column(BigIntPK, nullable=False)
    used_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False, index=True
    )

    # Relationships
    voucher: Mapped["Voucher"] = relationship("Voucher", lazy="joined")

    @property
    def voucher_code(self) -> str:
        return self.voucher.code


# Import for type hints
from src.modules.courses.models import Course
