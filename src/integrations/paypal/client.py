"""Card gateway client (PayPal Orders v2).

Only the contract the enrollment core consumes lives here: create an order,
capture it, read its status. ``PaymentGateway`` is what services depend on;
tests pass a fake.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Protocol

import httpx

from src.core.config import Settings
from src.core.exceptions import GatewayError
from src.core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class CreatedOrder:
    order_id: str
    status: str
    approval_url: str | None


@dataclass(frozen=True)
class CaptureResult:
    payer_id: str | None
    payment_id: str | None
    status: str


class PaymentGateway(Protocol):
    async def create_order(
        self, amount: Decimal, currency: str, reference: str, description: str
    ) -> CreatedOrder: ...

    async def capture(self, order_id: str) -> CaptureResult: ...

    async def get_order_status(self, order_id: str) -> str: ...


class PayPalGateway:
    """PayPal REST client using OAuth client credentials."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        base_url: str,
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> "PayPalGateway":
        return cls(
            client_id=settings.paypal_client_id,
            client_secret=settings.paypal_client_secret,
            base_url=settings.paypal_base_url,
            timeout=settings.paypal_timeout_seconds,
        )

    async def create_order(
        self, amount: Decimal, currency: str, reference: str, description: str
    ) -> CreatedOrder:
        body = {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "reference_id": reference,
                    "custom_id": reference,
                    "description": description[:127],
                    "amount": {"currency_code": currency, "value": f"{amount:.2f}"},
                }
            ],
        }
        data = await self._request("POST", "/v2/checkout/orders", json=body)
        approval_url = next(
            (link.get("href") for link in data.get("links", []) if link.get("rel") in ("approve", "payer-action")),
            None,
        )
        return CreatedOrder(order_id=data["id"], status=data.get("status", ""), approval_url=approval_url)

    async def capture(self, order_id: str) -> CaptureResult:
        data = await self._request("POST", f"/v2/checkout/orders/{order_id}/capture", json={})
        payment_id = None
        try:
            payment_id = data["purchase_units"][0]["payments"]["captures"][0]["id"]
        except (KeyError, IndexError, TypeError):
            logger.warning("paypal_capture_without_id", order_id=order_id)
        payer_id = (data.get("payer") or {}).get("payer_id")
        return CaptureResult(payer_id=payer_id, payment_id=payment_id, status=data.get("status", ""))

    async def get_order_status(self, order_id: str) -> str:
        data = await self._request("GET", f"/v2/checkout/orders/{order_id}")
        return data.get("status", "")

    async def _access_token(self, client: httpx.AsyncClient) -> str:
        response = await client.post(
            "/v1/oauth2/token",
            data={"grant_type": "client_credentials"},
            auth=(self._client_id, self._client_secret),
        )
        if response.status_code != httpx.codes.OK:
            logger.error("paypal_auth_failed", status_code=response.status_code)
            raise GatewayError("Could not authenticate with the payment gateway")
        return response.json()["access_token"]

    async def _request(self, method: str, path: str, json: dict | None = None) -> dict[str, Any]:
        try:
            async with httpx.AsyncClient(
                base_url=self._base_url, timeout=self._timeout, transport=self._transport
            ) as client:
                token = await self._access_token(client)
                response = await client.request(
                    method,
                    path,
                    json=json,
                    headers={"Authorization": f"Bearer {token}"},
                )
        except httpx.TimeoutException as e:
            logger.error("paypal_timeout", path=path, error=str(e))
            raise GatewayError("Payment gateway timed out") from e
        except httpx.RequestError as e:
            logger.error("paypal_request_error", path=path, error=str(e))
            raise GatewayError("Payment gateway is unreachable") from e

        if response.status_code >= 400:
            logger.error(
                "paypal_request_failed",
                path=path,
                status_code=response.status_code,
                response_text=response.text[:500],
            )
            raise GatewayError(f"Payment gateway error: {response.status_code}")
        return response.json()
