"""
Error taxonomy for the order core.

Message constants are centralized here to avoid string duplication.
Every error carries the HTTP status the API layer answers with.
"""

# Order errors
ERROR_ORDER_NOT_FOUND = "Order not found"
ERROR_ORDER_EXISTS = "Order already exists"
ERROR_ORDER_INVALID_STATUS = "Invalid order status"
ERROR_PAYMENT_REFERENCE_NOT_FOUND = "Payment reference not found"

# Request errors
ERROR_INVALID_REQUEST = "Invalid request"
ERROR_MISSING_FIELDS = "Missing fields"
ERROR_PRODUCT_NOT_FOUND = "Product not found"
ERROR_IDEMPOTENCY_KEY_REUSED = "Idempotency key already used for a different order"
ERROR_ORDER_STILL_CREATING = "Order is still being created"
ERROR_ORDER_CLOSED_DURING_CREATION = "Order was closed before checkout was ready"

# Auth errors
ERROR_UNAUTHORIZED = "Unauthorized"
ERROR_INVALID_SIGNATURE = "Invalid signature"
ERROR_MISSING_SIGNATURE = "Missing signature"

# Upstream errors
ERROR_GATEWAY_UNAVAILABLE = "Payment gateway unavailable, please try again"
ERROR_NOTIFICATION_FAILED = "Notification delivery failed"


class TopUpError(Exception):
    """Base class for all domain errors."""

    status_code: int = 500
    default_message: str = "Internal server error"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidRequestError(TopUpError):
    """Bad client input. Never retried."""

    status_code = 400
    default_message = ERROR_INVALID_REQUEST


class UnauthorizedError(TopUpError):
    """Signature or credential check failed."""

    status_code = 401
    default_message = ERROR_UNAUTHORIZED


class NotFoundError(TopUpError):
    """Unknown order id or payment reference."""

    status_code = 404
    default_message = ERROR_ORDER_NOT_FOUND


class ConflictError(TopUpError):
    """
    A status transition lost a race or targeted a stale status.

    Callers treat this as an idempotent no-op.
    """

    status_code = 409
    default_message = ERROR_ORDER_INVALID_STATUS

    def __init__(self, message: str | None = None, current_status: str | None = None):
        super().__init__(message)
        self.current_status = current_status


class IllegalTransitionError(ConflictError):
    """The requested edge does not exist in the order state machine."""


class DuplicateOrderError(TopUpError):
    """An order id was reused. Indicates an id generator bug."""

    status_code = 500
    default_message = ERROR_ORDER_EXISTS


class DuplicateIdempotencyKeyError(TopUpError):
    """Another order already holds this idempotency key."""

    status_code = 409
    default_message = ERROR_IDEMPOTENCY_KEY_REUSED


class GatewayError(TopUpError):
    """The payment provider failed. Retryable by the caller."""

    status_code = 502
    default_message = ERROR_GATEWAY_UNAVAILABLE

    def __init__(self, message: str | None = None, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable


class NotificationError(TopUpError):
    """A notification channel failed to deliver."""

    default_message = ERROR_NOTIFICATION_FAILED

    def __init__(self, message: str | None = None, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable


__all__ = [
    "TopUpError",
    "InvalidRequestError",
    "UnauthorizedError",
    "NotFoundError",
    "ConflictError",
    "IllegalTransitionError",
    "DuplicateOrderError",
    "DuplicateIdempotencyKeyError",
    "GatewayError",
    "NotificationError",
    "ERROR_ORDER_NOT_FOUND",
    "ERROR_ORDER_EXISTS",
    "ERROR_ORDER_INVALID_STATUS",
    "ERROR_PAYMENT_REFERENCE_NOT_FOUND",
    "ERROR_INVALID_REQUEST",
    "ERROR_MISSING_FIELDS",
    "ERROR_PRODUCT_NOT_FOUND",
    "ERROR_IDEMPOTENCY_KEY_REUSED",
    "ERROR_ORDER_STILL_CREATING",
    "ERROR_ORDER_CLOSED_DURING_CREATION",
    "ERROR_UNAUTHORIZED",
    "ERROR_INVALID_SIGNATURE",
    "ERROR_MISSING_SIGNATURE",
    "ERROR_GATEWAY_UNAVAILABLE",
    "ERROR_NOTIFICATION_FAILED",
]
