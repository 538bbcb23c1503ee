from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field

from src.modules.enrollments.schemas import EnrollmentResponse
from src.modules.payments.schemas import PaymentResponse


class CreateOrderRequest(BaseModel):
    course_id: int
    voucher_code: str | None = Field(None, max_length=50)


class CardOrderResponse(BaseModel):
    gateway_order_id: str
    course_id: int
    amount: Decimal
    currency: str
    status: str
    approval_url: str | None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class VerifyPaymentRequest(BaseModel):
    order_id: str = Field(..., min_length=1, max_length=100)
    voucher_code: str | None = Field(None, max_length=50)


class CardPaymentResult(BaseModel):
    enrollment: EnrollmentResponse
    payment: PaymentResponse | None


class PayPalWebhookEvent(BaseModel):
    """Subset of the PayPal webhook envelope we act on."""

    id: str | None = None
    event_type: str
    resource: dict[str, Any] = Field(default_factory=dict)


class WebhookAck(BaseModel):
    message: str
