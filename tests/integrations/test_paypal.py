from __future__ import annotations

import json
from decimal import Decimal

import httpx
import pytest
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.config import settings
from src.core.exceptions import (
    ConflictError,
    GatewayError,
    NotFoundError,
    ValidationError,
    VoucherUnavailableError,
)
from src.integrations.paypal.client import PayPalGateway
from src.integrations.paypal.models import CardOrder, CardOrderStatus, map_gateway_status
from src.integrations.paypal.schemas import PayPalWebhookEvent
from src.integrations.paypal.service import CardPaymentService
from src.modules.enrollments.service import EnrollmentService
from src.modules.vouchers.service import VoucherService

STUDENT = 100
ADMIN = 1


def test_map_gateway_status():
    assert map_gateway_status("COMPLETED") == CardOrderStatus.COMPLETED
    assert map_gateway_status("payer_action_required") == CardOrderStatus.APPROVED
    assert map_gateway_status("VOIDED") == CardOrderStatus.CANCELLED
    assert map_gateway_status("SOMETHING_NEW") == CardOrderStatus.CREATED
    assert map_gateway_status(None) == CardOrderStatus.CREATED


# --- Checkout service ---


@pytest.mark.asyncio
async def test_card_checkout_approves_enrollment(db_session: AsyncSession, course, gateway, notifier):
    service = CardPaymentService(db_session, gateway, notifier=notifier, auto_approve=True)

    order = await service.create_order(STUDENT, course.id)
    assert order.status == CardOrderStatus.CREATED.value
    assert order.amount == Decimal("100.00")
    assert order.approval_url.endswith(order.gateway_order_id)

    enrollment, payment = await service.verify_card_payment(STUDENT, order.gateway_order_id)

    assert enrollment.status == "approved"
    assert enrollment.payment_method == "card"
    assert enrollment.payment_receipt_ref is None
    assert payment.status == "verified"
    assert payment.transaction_id == f"CAPTURE-{order.gateway_order_id}"
    assert payment.gateway_order_id == order.gateway_order_id
    assert gateway.captured == [order.gateway_order_id]
    assert await EnrollmentService(db_session).check_access(STUDENT, course.id) is True
    assert "Enrollment approved" in notifier.titles_for(STUDENT)

    stored = await db_session.scalar(
        select(CardOrder).where(CardOrder.gateway_order_id == order.gateway_order_id)
    )
    assert stored.status == CardOrderStatus.COMPLETED.value
    assert stored.payment_id == payment.id
    assert stored.payer_id == "PAYER-1"


@pytest.mark.asyncio
async def test_card_checkout_without_auto_approve(db_session: AsyncSession, course, gateway):
    service = CardPaymentService(db_session, gateway, auto_approve=False)
    order = await service.create_order(STUDENT, course.id)

    enrollment, payment = await service.verify_card_payment(STUDENT, order.gateway_order_id)

    assert enrollment.status == "pending"
    assert payment.status == "verified"
    approved = await EnrollmentService(db_session).set_status(enrollment.id, "approved", ADMIN)
    assert approved.status == "approved"


@pytest.mark.asyncio
async def test_verify_is_idempotent(db_session: AsyncSession, course, gateway):
    service = CardPaymentService(db_session, gateway)
    order = await service.create_order(STUDENT, course.id)

    first, first_payment = await service.verify_card_payment(STUDENT, order.gateway_order_id)
    second, second_payment = await service.verify_card_payment(STUDENT, order.gateway_order_id)

    assert first.id == second.id
    assert first_payment.id == second_payment.id
    assert gateway.captured == [order.gateway_order_id]


@pytest.mark.asyncio
async def test_create_order_reuses_open_order(db_session: AsyncSession, course, gateway):
    service = CardPaymentService(db_session, gateway)

    first = await service.create_order(STUDENT, course.id)
    second = await service.create_order(STUDENT, course.id)

    assert first.gateway_order_id == second.gateway_order_id
    assert len(gateway.orders) == 1


@pytest.mark.asyncio
async def test_create_order_with_voucher(db_session: AsyncSession, course, gateway, make_voucher):
    voucher = await make_voucher([course], code="SAVE10", percentage="10")
    service = CardPaymentService(db_session, gateway)

    order = await service.create_order(STUDENT, course.id, voucher_code=" save10 ")
    assert order.amount == Decimal("90.00")
    assert order.voucher_code == "SAVE10"

    enrollment, payment = await service.verify_card_payment(STUDENT, order.gateway_order_id)

    assert enrollment.voucher_code == "SAVE10"
    assert payment.amount == Decimal("90.00")
    assert payment.discount_amount == Decimal("10.00")
    assert (await VoucherService(db_session).get_voucher_by_id(voucher.id)).used_count == 1


@pytest.mark.asyncio
async def test_voucher_checked_before_capture(db_session: AsyncSession, course, gateway, make_voucher):
    voucher = await make_voucher([course], code="SAVE10")
    service = CardPaymentService(db_session, gateway)
    order = await service.create_order(STUDENT, course.id, voucher_code="SAVE10")

    voucher.is_active = False
    await db_session.commit()

    with pytest.raises(VoucherUnavailableError):
        await service.verify_card_payment(STUDENT, order.gateway_order_id)
    assert gateway.captured == []


@pytest.mark.asyncio
async def test_full_discount_cannot_be_paid_by_card(db_session: AsyncSession, course, gateway, make_voucher):
    await make_voucher([course], code="FREE", percentage="100")
    service = CardPaymentService(db_session, gateway)

    with pytest.raises(ValidationError):
        await service.create_order(STUDENT, course.id, voucher_code="FREE")
    assert gateway.orders == {}


@pytest.mark.asyncio
async def test_create_order_when_already_enrolled(db_session: AsyncSession, course, gateway):
    await EnrollmentService(db_session).bulk_enroll(course.id, [STUDENT], ADMIN)

    with pytest.raises(ConflictError) as exc_info:
        await CardPaymentService(db_session, gateway).create_order(STUDENT, course.id)
    assert exc_info.value.details["code"] == "already_enrolled"


@pytest.mark.asyncio
async def test_capture_failure_leaves_order_open(db_session: AsyncSession, course, gateway):
    service = CardPaymentService(db_session, gateway)
    order = await service.create_order(STUDENT, course.id)
    gateway.fail_capture = True

    with pytest.raises(GatewayError):
        await service.verify_card_payment(STUDENT, order.gateway_order_id)

    stored = await service.sync_order_status(order.gateway_order_id, STUDENT)
    assert stored.status == CardOrderStatus.CREATED.value
    assert await EnrollmentService(db_session).list_my_enrollments(STUDENT) == []

    # The student can retry once the gateway recovers
    gateway.fail_capture = False
    enrollment, _ = await service.verify_card_payment(STUDENT, order.gateway_order_id)
    assert enrollment.status == "approved"


@pytest.mark.asyncio
async def test_verify_unknown_or_foreign_order(db_session: AsyncSession, course, gateway):
    service = CardPaymentService(db_session, gateway)
    order = await service.create_order(STUDENT, course.id)

    with pytest.raises(NotFoundError):
        await service.verify_card_payment(STUDENT, "ORDER-404")
    with pytest.raises(NotFoundError):
        await service.verify_card_payment(200, order.gateway_order_id)


@pytest.mark.asyncio
async def test_sync_order_status(db_session: AsyncSession, course, gateway, monkeypatch):
    service = CardPaymentService(db_session, gateway)
    order = await service.create_order(STUDENT, course.id)

    gateway.orders[order.gateway_order_id]["status"] = "APPROVED"
    synced = await service.sync_order_status(order.gateway_order_id, STUDENT)
    assert synced.status == CardOrderStatus.APPROVED.value

    async def unavailable(order_id):
        raise GatewayError("Payment gateway timed out")

    monkeypatch.setattr(gateway, "get_order_status", unavailable)
    cached = await service.sync_order_status(order.gateway_order_id, STUDENT)
    assert cached.status == CardOrderStatus.APPROVED.value


# --- Webhooks ---


@pytest.mark.asyncio
async def test_webhook_approved_then_completed(db_session: AsyncSession, course, gateway):
    service = CardPaymentService(db_session, gateway)
    order = await service.create_order(STUDENT, course.id)
    order_id = order.gateway_order_id

    approved = await service.handle_webhook(
        PayPalWebhookEvent(event_type="CHECKOUT.ORDER.APPROVED", resource={"id": order_id})
    )
    assert approved == "order approved"

    completed = await service.handle_webhook(
        PayPalWebhookEvent(
            event_type="PAYMENT.CAPTURE.COMPLETED",
            resource={"id": "CAP-9", "supplementary_data": {"related_ids": {"order_id": order_id}}},
        )
    )
    assert completed == "capture completed"

    # Already captured at the gateway: verify enrolls without capturing again
    enrollment, payment = await service.verify_card_payment(STUDENT, order_id)
    assert enrollment.status == "approved"
    assert payment.transaction_id == "CAP-9"
    assert gateway.captured == []


@pytest.mark.asyncio
async def test_webhook_denied_rejects_payment(db_session: AsyncSession, course, gateway, notifier):
    service = CardPaymentService(db_session, gateway, notifier=notifier)
    order = await service.create_order(STUDENT, course.id)
    enrollment, payment = await service.verify_card_payment(STUDENT, order.gateway_order_id)

    message = await service.handle_webhook(
        PayPalWebhookEvent(
            event_type="PAYMENT.CAPTURE.DENIED",
            resource={
                "id": payment.transaction_id,
                "supplementary_data": {"related_ids": {"order_id": order.gateway_order_id}},
            },
        )
    )

    assert message == "payment rejected"
    enrollments = EnrollmentService(db_session)
    rejected = await enrollments.get_enrollment(enrollment.id)
    assert rejected.status == "rejected"
    assert rejected.rejection_reason == "Card payment denied by gateway"
    assert await enrollments.check_access(STUDENT, course.id) is False
    stored = await db_session.scalar(
        select(CardOrder).where(CardOrder.gateway_order_id == order.gateway_order_id)
    )
    assert stored.status == CardOrderStatus.FAILED.value

    with pytest.raises(ConflictError) as exc_info:
        await service.verify_card_payment(STUDENT, order.gateway_order_id)
    assert exc_info.value.details["code"] == "order_closed"


@pytest.mark.asyncio
async def test_webhook_unknown_event_is_ignored(db_session: AsyncSession, gateway):
    service = CardPaymentService(db_session, gateway)
    assert await service.handle_webhook(PayPalWebhookEvent(event_type="BILLING.PLAN.CREATED")) == "ignored"
    assert (
        await service.handle_webhook(
            PayPalWebhookEvent(event_type="CHECKOUT.ORDER.APPROVED", resource={"id": "NOPE"})
        )
        == "ignored"
    )


# --- Endpoints ---


@pytest.mark.asyncio
async def test_card_endpoints(client: AsyncClient, db_session: AsyncSession, course, student_headers, notifier):
    await db_session.commit()

    created = await client.post(
        "/api/v1/paypal/orders", headers=student_headers, json={"course_id": course.id}
    )
    assert created.status_code == 201
    order_id = created.json()["data"]["gateway_order_id"]
    assert Decimal(created.json()["data"]["amount"]) == Decimal("100")

    fetched = await client.get(f"/api/v1/paypal/orders/{order_id}", headers=student_headers)
    assert fetched.status_code == 200
    assert fetched.json()["data"]["status"] == "created"

    verified = await client.post(
        "/api/v1/paypal/verify", headers=student_headers, json={"order_id": order_id}
    )
    assert verified.status_code == 200
    data = verified.json()["data"]
    assert data["payment"]["status"] == "verified"
    assert data["enrollment"]["course_id"] == course.id


@pytest.mark.asyncio
async def test_webhook_endpoint_token(client: AsyncClient, monkeypatch):
    monkeypatch.setattr(settings, "paypal_webhook_token", "hook-secret")
    payload = {"event_type": "BILLING.PLAN.CREATED", "resource": {}}

    bad = await client.post("/api/v1/paypal/webhook/wrong", json=payload)
    assert bad.status_code == 404

    good = await client.post("/api/v1/paypal/webhook/hook-secret", json=payload)
    assert good.status_code == 200
    assert good.json() == {"message": "ignored"}


@pytest.mark.asyncio
async def test_webhook_disabled_without_token(client: AsyncClient, monkeypatch):
    monkeypatch.setattr(settings, "paypal_webhook_token", "")
    r = await client.post("/api/v1/paypal/webhook/anything", json={"event_type": "X"})
    assert r.status_code == 404


# --- HTTP client ---


def _paypal_transport(routes: dict[tuple[str, str], httpx.Response], seen: list[httpx.Request]):
    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.url.path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "token-123", "expires_in": 3600})
        return routes[(request.method, request.url.path)]

    return httpx.MockTransport(handler)


@pytest.mark.asyncio
async def test_paypal_client_create_and_capture():
    seen: list[httpx.Request] = []
    routes = {
        ("POST", "/v2/checkout/orders"): httpx.Response(
            201,
            json={
                "id": "5O190127TN364715T",
                "status": "CREATED",
                "links": [
                    {"rel": "self", "href": "https://api.test/v2/checkout/orders/5O190127TN364715T"},
                    {"rel": "approve", "href": "https://paypal.test/checkoutnow?token=5O190127TN364715T"},
                ],
            },
        ),
        ("POST", "/v2/checkout/orders/5O190127TN364715T/capture"): httpx.Response(
            201,
            json={
                "id": "5O190127TN364715T",
                "status": "COMPLETED",
                "payer": {"payer_id": "QYR5Z8XDVJNXQ"},
                "purchase_units": [{"payments": {"captures": [{"id": "3C679366HH908993F"}]}}],
            },
        ),
    }
    client = PayPalGateway("id", "secret", "https://api.test/", transport=_paypal_transport(routes, seen))

    created = await client.create_order(Decimal("90"), "USD", reference="course-1-student-100", description="Python")
    assert created.order_id == "5O190127TN364715T"
    assert created.approval_url == "https://paypal.test/checkoutnow?token=5O190127TN364715T"

    order_request = seen[1]
    assert order_request.headers["Authorization"] == "Bearer token-123"
    body = json.loads(order_request.content)
    assert body["intent"] == "CAPTURE"
    assert body["purchase_units"][0]["amount"] == {"currency_code": "USD", "value": "90.00"}

    captured = await client.capture("5O190127TN364715T")
    assert captured.payment_id == "3C679366HH908993F"
    assert captured.payer_id == "QYR5Z8XDVJNXQ"
    assert captured.status == "COMPLETED"


@pytest.mark.asyncio
async def test_paypal_client_errors():
    seen: list[httpx.Request] = []
    routes = {("GET", "/v2/checkout/orders/BROKEN"): httpx.Response(500, text="boom")}
    client = PayPalGateway("id", "secret", "https://api.test", transport=_paypal_transport(routes, seen))

    with pytest.raises(GatewayError):
        await client.get_order_status("BROKEN")

    def refuse_auth(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"error": "invalid_client"})

    unauthorized = PayPalGateway("id", "bad", "https://api.test", transport=httpx.MockTransport(refuse_auth))
    with pytest.raises(GatewayError):
        await unauthorized.get_order_status("ANY")

    def unreachable(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    offline = PayPalGateway("id", "secret", "https://api.test", transport=httpx.MockTransport(unreachable))
    with pytest.raises(GatewayError):
        await offline.get_order_status("ANY")
