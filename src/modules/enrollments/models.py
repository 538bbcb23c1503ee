"""Enrollment model."""

from datetime import datetime
from enum import StrEnum

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from src.core.database.base import Base, BigIntPK
from src.shared.utils.state_machine import StateMachine


class EnrollmentStatus(StrEnum):
    """Enrollment status options."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


# rejected -> pending happens only when the student submits again.
ENROLLMENT_TRANSITIONS = StateMachine(
    "Enrollment",
    {
        EnrollmentStatus.PENDING: {EnrollmentStatus.APPROVED, EnrollmentStatus.REJECTED},
        EnrollmentStatus.APPROVED: {EnrollmentStatus.REJECTED},
        EnrollmentStatus.REJECTED: {EnrollmentStatus.APPROVED},
    },
)


class Enrollment(Base):
    """
    A student's request for access to a course.

    Exactly one row per (student, course). A rejected enrollment is reused
    when the student applies again. ``is_expired`` is set by the expiration
    sweep and only on approved enrollments.
    """

    __tablename__ = "enrollments"
    __table_args__ = (
        UniqueConstraint("student_id", "course_id", name="uq_enrollments_student_course"),
        CheckConstraint(
            "(status = 'approved' AND approval_date IS NOT NULL) "
            "OR (status <> 'approved' AND approval_date IS NULL)",
            name="ck_enrollments_approval_date",
        ),
        CheckConstraint(
            "NOT is_expired OR status = 'approved'",
            name="ck_enrollments_expired_only_when_approved",
        ),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    student_id: Mapped[int] = mapped_column(BigIntPK, nullable=False, index=True)
    course_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("courses.id"), nullable=False, index=True
    )

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=EnrollmentStatus.PENDING.value, index=True
    )
    payment_receipt_ref: Mapped[str | None] = mapped_column(String(512), nullable=True)
    payment_method: Mapped[str | None] = mapped_column(String(20), nullable=True)
    voucher_code: Mapped[str | None] = mapped_column(
        String(50), nullable=True
    )  # denormalized for display and audit

    enrollment_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    approval_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    expiration_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True
    )
    is_expired: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False, index=True)

    version_id: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def is_pending(self) -> bool:
        return self.status == EnrollmentStatus.PENDING.value

    @property
    def is_approved(self) -> bool:
        return self.status == EnrollmentStatus.APPROVED.value

    @property
    def is_rejected(self) -> bool:
        return self.status == EnrollmentStatus.REJECTED.value
