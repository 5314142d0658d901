"""Payment gateway and webhook module."""
from .gateway import (
    CheckoutSession,
    HttpPaymentGateway,
    MockPaymentGateway,
    PaymentGateway,
    PaymentOutcome,
    sign_payload,
    verify_signature,
)

__all__ = [
    "CheckoutSession",
    "HttpPaymentGateway",
    "MockPaymentGateway",
    "PaymentGateway",
    "PaymentOutcome",
    "sign_payload",
    "verify_signature",
]
