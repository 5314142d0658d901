"""
Payment Gateway Clients

The gateway is an opaque external service: it opens checkout sessions and
later calls our webhook. Two implementations:

- MockPaymentGateway: local checkout URLs, statuses set by hand (dev, tests)
- HttpPaymentGateway: generic JSON-over-HTTP provider
"""
import hashlib
import hmac
import uuid
from abc import ABC, abstractmethod
from enum import Enum
from typing import Optional

import httpx
from pydantic import BaseModel

from topup.errors import GatewayError
from topup.logging import get_logger, sanitize_id_for_logging

logger = get_logger(__name__)

# Upstream statuses worth retrying
RETRYABLE_STATUS_CODES = {408, 425, 429, 500, 502, 503, 504}


class PaymentOutcome(str, Enum):
    """Outcome reported by the gateway for a checkout session."""
    PAID = "paid"
    FAILED = "failed"
    PENDING = "pending"
    UNKNOWN = "unknown"


class CheckoutSession(BaseModel):
    """Checkout session opened at the gateway."""
    reference: str
    pay_url: str


def sign_payload(body: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of a raw request body."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature: Optional[str], secret: str) -> bool:
    """Constant-time check of a webhook signature."""
    if not signature or not secret:
        return False
    expected = sign_payload(body, secret)
    return hmac.compare_digest(signature.strip().lower(), expected)


class PaymentGateway(ABC):
    """Client side of the payment provider."""

    @abstractmethod
    async def create_checkout_session(
        self, order_id: str, amount: int, description: str = ""
    ) -> CheckoutSession:
        """
        Open a checkout session for an order.

        Raises:
            GatewayError: Provider failure (retryable unless stated otherwise)
        """

    @abstractmethod
    async def get_payment_status(self, reference: str) -> PaymentOutcome:
        """Poll the provider for the outcome of a session."""

    async def aclose(self) -> None:
        """Release network resources."""


class MockPaymentGateway(PaymentGateway):
    """
    In-process gateway.

    Pay URLs follow `<checkout_url>?order=<order_id>`. Tests can queue failures
    with `fail_next` and set outcomes with `set_status`.
    """

    def __init__(self, checkout_url: str = "https://example-payment-gateway/checkout"):
        self.checkout_url = checkout_url.rstrip("/")
        self.sessions: dict[str, str] = {}  # reference -> order_id
        self.statuses: dict[str, PaymentOutcome] = {}
        self.calls = 0
        self._failures: list[GatewayError] = []

    def fail_next(self, times: int = 1, retryable: bool = True) -> None:
        for _ in range(times):
            self._failures.append(GatewayError("Mock gateway failure", retryable=retryable))

    def set_status(self, reference: str, outcome: PaymentOutcome) -> None:
        self.statuses[reference] = outcome

    async def create_checkout_session(
        self, order_id: str, amount: int, description: str = ""
    ) -> CheckoutSession:
        self.calls += 1
        if self._failures:
            raise self._failures.pop(0)

        reference = f"mock_{uuid.uuid4().hex}"
        self.sessions[reference] = order_id
        self.statuses[reference] = PaymentOutcome.PENDING
        return CheckoutSession(
            reference=reference,
            pay_url=f"{self.checkout_url}?order={order_id}",
        )

    async def get_payment_status(self, reference: str) -> PaymentOutcome:
        return self.statuses.get(reference, PaymentOutcome.UNKNOWN)


class HttpPaymentGateway(PaymentGateway):
    """
    JSON-over-HTTP payment provider.

    POST {base}/sessions   -> {"id": ..., "url": ...}
    GET  {base}/sessions/{id} -> {"status": "paid" | "failed" | "pending"}

    Session creation sends the order id as Idempotency-Key, so a retry after a
    timeout with unknown outcome cannot open a second session.
    """

    def __init__(self, base_url: str, api_key: str, webapp_url: str = ""):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.webapp_url = webapp_url.rstrip("/")

        # HTTP client (lazy init)
        self._http_client: httpx.AsyncClient | None = None

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Lazy creation of shared httpx client with timeouts."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(10.0, connect=5.0, read=10.0, write=10.0),
                limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
            )
        return self._http_client

    def _headers(self, idempotency_key: Optional[str] = None) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        client = await self._get_http_client()
        try:
            response = await client.request(method, f"{self.base_url}{path}", **kwargs)
        except httpx.TimeoutException as e:
            logger.warning("Gateway timeout on %s %s", method, path)
            raise GatewayError(f"Gateway timeout: {e!s}") from e
        except httpx.RequestError as e:
            logger.warning("Gateway network error on %s %s: %s", method, path, e)
            raise GatewayError(f"Failed to connect to payment gateway: {e!s}") from e

        if response.status_code >= 400:
            detail = response.text[:200] if response.text else "No response body"
            retryable = response.status_code in RETRYABLE_STATUS_CODES
            logger.error(
                "Gateway API error %s on %s %s: %s",
                response.status_code, method, path, detail,
            )
            raise GatewayError(f"Gateway API error {response.status_code}", retryable=retryable)

        try:
            data = response.json()
        except ValueError as e:
            raise GatewayError("Gateway returned invalid JSON") from e
        if not isinstance(data, dict):
            raise GatewayError("Gateway returned unexpected payload")
        return data

    async def create_checkout_session(
        self, order_id: str, amount: int, description: str = ""
    ) -> CheckoutSession:
        payload = {
            "order_id": order_id,
            "amount": amount,
            "description": (description or f"Order {order_id}")[:60],
        }
        if self.webapp_url:
            payload["callback_url"] = f"{self.webapp_url}/api/payment-webhook"
            payload["redirect_url"] = f"{self.webapp_url}/?order={order_id}"

        logger.info(
            "Gateway session creation for order %s: amount=%s",
            sanitize_id_for_logging(order_id),
            amount,
        )
        data = await self._request(
            "POST", "/sessions", json=payload, headers=self._headers(idempotency_key=order_id)
        )

        reference = data.get("id")
        pay_url = data.get("url")
        if not reference or not pay_url:
            logger.error("Gateway: id/url missing in response. Keys: %s", list(data.keys()))
            raise GatewayError("Payment URL not found in gateway response", retryable=False)
        return CheckoutSession(reference=str(reference), pay_url=str(pay_url))

    async def get_payment_status(self, reference: str) -> PaymentOutcome:
        data = await self._request("GET", f"/sessions/{reference}", headers=self._headers())
        raw = str(data.get("status", "")).strip().lower()
        try:
            return PaymentOutcome(raw)
        except ValueError:
            logger.warning("Gateway: unrecognized status '%s' for %s", raw, reference)
            return PaymentOutcome.UNKNOWN

    async def aclose(self) -> None:
        """Close http client if created."""
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None
