"""
Payment Webhook Handler

Applies gateway callbacks to order status. Gateways deliver at least once and
in any order, so the same callback may arrive twice or concurrently; only the
first delivery moves the order and fires a notification.
"""
import json
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from topup.errors import (
    InvalidRequestError,
    UnauthorizedError,
    ERROR_INVALID_SIGNATURE,
    ERROR_MISSING_SIGNATURE,
)
from topup.logging import get_logger, sanitize_id_for_logging, sanitize_string_for_logging
from topup.orders.models import OrderStatus
from topup.orders.service import OrderService
from topup.orders.store import OrderStore
from topup.payments.gateway import verify_signature

logger = get_logger(__name__)

SIGNATURE_HEADER = "X-Signature"


class WebhookStatus(str, Enum):
    PAID = "paid"
    FAILED = "failed"


# Webhook status -> order status
WEBHOOK_TARGETS: dict[WebhookStatus, OrderStatus] = {
    WebhookStatus.PAID: OrderStatus.PAID,
    WebhookStatus.FAILED: OrderStatus.FAILED,
}


class WebhookOutcome(str, Enum):
    APPLIED = "applied"      # this delivery moved the order
    DUPLICATE = "duplicate"  # order already in the reported state
    IGNORED = "ignored"      # order settled differently; acknowledged without change


class PaymentWebhookPayload(BaseModel):
    """Gateway callback body."""
    payment_reference: str = Field(alias="paymentReference", min_length=1)
    status: WebhookStatus
    amount: Optional[int] = None

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class WebhookResult(BaseModel):
    order_id: str
    status: OrderStatus
    outcome: WebhookOutcome


class PaymentWebhookHandler:
    """Verifies and applies payment gateway callbacks."""

    def __init__(self, store: OrderStore, order_service: OrderService, secret: str):
        self.store = store
        self.order_service = order_service
        self.secret = secret

    def verify(self, body: bytes, signature: Optional[str]) -> None:
        """
        Check the HMAC signature of a raw webhook body.

        Raises:
            UnauthorizedError: Missing or invalid signature
        """
        if not signature:
            logger.warning("SECURITY: payment webhook without signature rejected")
            raise UnauthorizedError(ERROR_MISSING_SIGNATURE)
        if not verify_signature(body, signature, self.secret):
            logger.warning(
                "SECURITY: payment webhook signature mismatch (signature=%s)",
                sanitize_string_for_logging(signature, 16),
            )
            raise UnauthorizedError(ERROR_INVALID_SIGNATURE)

    def parse(self, body: bytes) -> PaymentWebhookPayload:
        try:
            data = json.loads(body.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise InvalidRequestError("Could not parse webhook body") from e
        if not isinstance(data, dict):
            raise InvalidRequestError("Webhook body must be a JSON object")
        try:
            return PaymentWebhookPayload.model_validate(data)
        except ValidationError as e:
            raise InvalidRequestError(f"Invalid webhook payload: {e.error_count()} error(s)") from e

    async def handle(self, body: bytes, signature: Optional[str]) -> WebhookResult:
        """
        Verify, parse and apply one webhook delivery.

        Raises:
            UnauthorizedError: Bad signature (no state change)
            InvalidRequestError: Malformed body or amount mismatch
            NotFoundError: Unknown payment reference
        """
        self.verify(body, signature)
        payload = self.parse(body)
        target = WEBHOOK_TARGETS[payload.status]

        order = await self.store.get_by_payment_reference(payload.payment_reference)
        order_label = sanitize_id_for_logging(order.order_id)
        logger.info("Payment webhook for order %s: %s", order_label, payload.status.value)

        if payload.amount is not None and payload.amount != order.amount:
            logger.error(
                "SECURITY: webhook amount %s does not match order %s amount %s",
                payload.amount, order_label, order.amount,
            )
            raise InvalidRequestError("Amount does not match order")

        updated, applied = await self.order_service.apply_payment_outcome(order, target)
        if applied:
            return WebhookResult(order_id=order.order_id, status=updated.status, outcome=WebhookOutcome.APPLIED)

        if updated.status == target:
            logger.info("Duplicate webhook for order %s (%s)", order_label, target.value)
            return WebhookResult(order_id=order.order_id, status=updated.status, outcome=WebhookOutcome.DUPLICATE)

        if target == OrderStatus.PAID and updated.status in (OrderStatus.EXPIRED, OrderStatus.CANCELLED):
            logger.error(
                "Payment received for %s order %s, manual refund required",
                updated.status.value, order_label,
            )
        else:
            logger.warning(
                "Webhook conflict for order %s: reported '%s', order is '%s'",
                order_label, target.value, updated.status.value,
            )
        return WebhookResult(order_id=order.order_id, status=updated.status, outcome=WebhookOutcome.IGNORED)
