"""API endpoints for card checkout through PayPal."""

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.auth.dependencies import StudentUser
from src.core.database.session import get_db
from src.core.dependencies import get_gateway, get_notifier
from src.core.notifications import Notifier
from src.integrations.paypal.client import PaymentGateway
from src.integrations.paypal.schemas import (
    CardOrderResponse,
    CardPaymentResult,
    CreateOrderRequest,
    PayPalWebhookEvent,
    VerifyPaymentRequest,
    WebhookAck,
)
from src.integrations.paypal.service import CardPaymentService
from src.modules.enrollments.schemas import EnrollmentResponse
from src.modules.payments.schemas import PaymentResponse
from src.shared.schemas.base import ApiResponse

router = APIRouter(prefix="/paypal", tags=["PayPal"])


@router.post(
    "/orders",
    response_model=ApiResponse[CardOrderResponse],
    status_code=status.HTTP_201_CREATED,
)
async def create_card_order(
    data: CreateOrderRequest,
    current_user: StudentUser,
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
):
    """Open a card order for a course; the student completes it at approval_url."""
    service = CardPaymentService(db, gateway)
    order = await service.create_order(current_user.id, data.course_id, data.voucher_code)
    return ApiResponse(data=CardOrderResponse.model_validate(order), message="Order created")


@router.post("/verify", response_model=ApiResponse[CardPaymentResult])
async def verify_card_payment(
    data: VerifyPaymentRequest,
    current_user: StudentUser,
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    notifier: Notifier = Depends(get_notifier),
):
    """Capture an approved order and enroll the student."""
    service = CardPaymentService(db, gateway, notifier=notifier)
    enrollment, payment = await service.verify_card_payment(
        current_user.id, data.order_id, data.voucher_code
    )
    return ApiResponse(
        data=CardPaymentResult(
            enrollment=EnrollmentResponse.model_validate(enrollment),
            payment=PaymentResponse.model_validate(payment) if payment else None,
        ),
        message="Payment captured",
    )


@router.get("/orders/{order_id}", response_model=ApiResponse[CardOrderResponse])
async def get_card_order(
    order_id: str,
    current_user: StudentUser,
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
):
    service = CardPaymentService(db, gateway)
    order = await service.sync_order_status(order_id, current_user.id)
    return ApiResponse(data=CardOrderResponse.model_validate(order))


@router.post("/webhook/{token}", response_model=WebhookAck)
async def paypal_webhook(
    token: str,
    event: PayPalWebhookEvent,
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    notifier: Notifier = Depends(get_notifier),
):
    service = CardPaymentService(db, gateway, notifier=notifier)
    if not service.verify_webhook_token(token):
        # Do not reveal the endpoint when the token is missing or wrong.
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not found")

    message = await service.handle_webhook(event)
    return WebhookAck(message=message)
