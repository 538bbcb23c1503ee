"""Payment and PaymentStatusHistory models."""

from datetime import date, datetime
from decimal import Decimal
from enum import StrEnum

from sqlalchemy import (
    BigInteger,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.core.database.base import Base, BigIntPK
from src.shared.utils.state_machine import StateMachine


class PaymentMethod(StrEnum):
    """Payment method options."""

    BANK_TRANSFER = "bank_transfer"
    CASH = "cash"
    CARD = "card"
    OTHER = "other"


class PaymentStatus(StrEnum):
    """Payment status options."""

    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"


# rejected -> pending is only reachable through evidence reupload.
PAYMENT_TRANSITIONS = StateMachine(
    "Payment",
    {
        PaymentStatus.PENDING: {PaymentStatus.VERIFIED, PaymentStatus.REJECTED},
        PaymentStatus.VERIFIED: {PaymentStatus.REJECTED},
        PaymentStatus.REJECTED: set(),
    },
)


class Payment(Base):
    """
    Payment submitted for an enrollment.

    One payment per enrollment: a rejected payment is re-submitted by
    resetting it to pending, never by creating a second row.
    """

    __tablename__ = "payments"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)

    enrollment_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("enrollments.id"), nullable=False, unique=True, index=True
    )
    student_id: Mapped[int] = mapped_column(BigIntPK, nullable=False, index=True)
    course_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("courses.id"), nullable=False, index=True
    )

    amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    original_amount: Mapped[Decimal | None] = mapped_column(Numeric(15, 2), nullable=True)
    discount_amount: Mapped[Decimal | None] = mapped_column(Numeric(15, 2), nullable=True)
    voucher_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("vouchers.id"), nullable=True
    )

    payment_date: Mapped[date] = mapped_column(Date, nullable=False)
    payment_method: Mapped[str] = mapped_column(String(20), nullable=False)

    # Method-specific details
    bank_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    account_reference: Mapped[str | None] = mapped_column(String(100), nullable=True)
    transaction_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    gateway_order_id: Mapped[str | None] = mapped_column(
        String(100), nullable=True, unique=True
    )  # card payments only

    receipt_ref: Mapped[str | None] = mapped_column(
        String(512), nullable=True
    )  # evidence storage reference; not required for card payments
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PaymentStatus.PENDING.value, index=True
    )
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

    # Relationships
    status_history: Mapped[list["PaymentStatusHistory"]] = relationship(
        "PaymentStatusHistory",
        back_populates="payment",
        order_by="PaymentStatusHistory.id",
        lazy="selectin",
        cascade="all, delete-orphan",
    )

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def is_pending(self) -> bool:
        return self.status == PaymentStatus.PENDING.value

    @property
    def is_verified(self) -> bool:
        return self.status == PaymentStatus.VERIFIED.value

    @property
    def is_rejected(self) -> bool:
        return self.status == PaymentStatus.REJECTED.value


class PaymentStatusHistory(Base):
    """Append-only audit trail of payment status changes."""

    __tablename__ = "payment_status_history"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    payment_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("payments.id", ondelete="CASCADE"), nullable=False, index=True
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    updated_by_id: Mapped[int | None] = mapped_column(
        BigIntPK, nullable=True
    )  # None for gateway callbacks
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    payment: Mapped["Payment"] = relationship("Payment", back_populates="status_history")
