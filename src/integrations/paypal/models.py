"""Card gateway orders, kept for idempotent capture and status sync."""

from datetime import datetime
from decimal import Decimal
from enum import StrEnum

from sqlalchemy import BigInteger, DateTime, ForeignKey, Numeric, String, func
from sqlalchemy.orm import Mapped, mapped_column

from src.core.database.base import Base, BigIntPK


class CardOrderStatus(StrEnum):
    CREATED = "created"
    APPROVED = "approved"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


# Gateway vocabulary -> ours. Unknown values fall back to CREATED.
GATEWAY_STATUS_MAP: dict[str, CardOrderStatus] = {
    "CREATED": CardOrderStatus.CREATED,
    "SAVED": CardOrderStatus.CREATED,
    "APPROVED": CardOrderStatus.APPROVED,
    "PAYER_ACTION_REQUIRED": CardOrderStatus.APPROVED,
    "VOIDED": CardOrderStatus.CANCELLED,
    "COMPLETED": CardOrderStatus.COMPLETED,
}


def map_gateway_status(value: str | None) -> CardOrderStatus:
    return GATEWAY_STATUS_MAP.get((value or "").upper(), CardOrderStatus.CREATED)


class CardOrder(Base):
    __tablename__ = "card_orders"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)

    gateway_order_id: Mapped[str] = mapped_column(String(100), nullable=False, unique=True, index=True)
    student_id: Mapped[int] = mapped_column(BigIntPK, nullable=False, index=True)
    course_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("courses.id"), nullable=False, index=True
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=CardOrderStatus.CREATED.value, index=True
    )
    voucher_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    approval_url: Mapped[str | None] = mapped_column(String(512), nullable=True)
    payer_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    gateway_payment_id: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    payment_id: Mapped[int | None] = mapped_column(
        BigIntPK, ForeignKey("payments.id", ondelete="SET NULL"), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )
