"""Order model, status enum and the transition graph."""
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class OrderStatus(str, Enum):
    """
    Order status lifecycle.

    Flow:
        pending -> awaiting_payment -> paid
                                    -> failed
                                    -> expired
                                    -> cancelled
        pending -> failed | expired | cancelled

    - pending: Stored, checkout session not opened yet
    - awaiting_payment: Checkout session opened, waiting for the gateway
    - paid: Gateway confirmed payment (final)
    - failed: Gateway session or payment failed (final)
    - cancelled: Cancelled by an administrator (final)
    - expired: No confirmation within the payment window (final)
    """
    PENDING = "pending"
    AWAITING_PAYMENT = "awaiting_payment"
    PAID = "paid"
    FAILED = "failed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


# Allowed edges of the state machine
TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({
        OrderStatus.AWAITING_PAYMENT,
        OrderStatus.FAILED,
        OrderStatus.EXPIRED,
        OrderStatus.CANCELLED,
    }),
    OrderStatus.AWAITING_PAYMENT: frozenset({
        OrderStatus.PAID,
        OrderStatus.FAILED,
        OrderStatus.EXPIRED,
        OrderStatus.CANCELLED,
    }),
    OrderStatus.PAID: frozenset(),
    OrderStatus.FAILED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.EXPIRED: frozenset(),
}

# Final statuses (no further transitions)
TERMINAL_STATES: frozenset[OrderStatus] = frozenset(
    status for status, targets in TRANSITIONS.items() if not targets
)

# Statuses the expiry sweep looks at
OPEN_STATES: frozenset[OrderStatus] = frozenset({
    OrderStatus.PENDING,
    OrderStatus.AWAITING_PAYMENT,
})

# Fields that never change after creation
IMMUTABLE_FIELDS: tuple[str, ...] = (
    "order_id",
    "product_id",
    "user_id",
    "amount",
    "created_at",
    "idempotency_key",
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    """Check whether `current -> target` is an edge of the state machine."""
    return target in TRANSITIONS.get(current, frozenset())


def is_terminal(status: OrderStatus) -> bool:
    return status in TERMINAL_STATES


class Order(BaseModel):
    """A single purchase intent for one product by one player."""
    order_id: str
    product_id: str
    user_id: str
    amount: int = Field(gt=0)  # smallest currency unit
    status: OrderStatus = OrderStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    payment_reference: Optional[str] = None
    pay_url: Optional[str] = None
    idempotency_key: Optional[str] = None  # client key from the create request
    notifications_sent: set[tuple[str, OrderStatus]] = Field(default_factory=set)

    model_config = ConfigDict(extra="ignore")

    @field_validator("user_id", "product_id", "order_id")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("must not be empty")
        return v

    @property
    def is_terminal(self) -> bool:
        return is_terminal(self.status)

    def was_notified(self, channel: str, status: OrderStatus) -> bool:
        return (channel, status) in self.notifications_sent


class Product(BaseModel):
    """Catalog entry."""
    id: str
    name: str
    price: int = Field(gt=0)  # smallest currency unit
    currency: str = "IDR"


class CreatedOrder(BaseModel):
    """Result of a successful order creation."""
    order_id: str
    pay_url: str


class SweepReport(BaseModel):
    """Counts from one expiry sweep."""
    checked: int = 0
    expired: int = 0
    reconciled: int = 0
    skipped: int = 0
