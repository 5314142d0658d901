"""
Order Store

Keyed storage for Order records. `compare_and_transition` is the only way an
order's status changes: it is an atomic check-and-set, so of several
concurrent transitions from the same expected status at most one succeeds.
"""
import asyncio
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable, Iterable, Optional

from topup.errors import (
    ConflictError,
    DuplicateIdempotencyKeyError,
    DuplicateOrderError,
    IllegalTransitionError,
    NotFoundError,
    ERROR_ORDER_NOT_FOUND,
    ERROR_PAYMENT_REFERENCE_NOT_FOUND,
)
from topup.logging import get_logger, sanitize_id_for_logging
from topup.orders.models import (
    IMMUTABLE_FIELDS,
    Order,
    OrderStatus,
    can_transition,
    utcnow,
)

logger = get_logger(__name__)

Mutator = Callable[[Order], None]


def check_transition(order: Order, expected: OrderStatus, new_status: OrderStatus) -> None:
    """Raise ConflictError unless `order` sits in `expected` and the edge exists."""
    if order.status != expected:
        raise ConflictError(
            f"Order {order.order_id} is '{order.status.value}', expected '{expected.value}'",
            current_status=order.status.value,
        )
    if not can_transition(expected, new_status):
        raise IllegalTransitionError(
            f"Cannot transition from '{expected.value}' to '{new_status.value}'",
            current_status=order.status.value,
        )


def apply_transition(order: Order, new_status: OrderStatus, mutator: Optional[Mutator]) -> Order:
    """Return a copy of `order` with the mutator applied and the new status stamped."""
    draft = order.model_copy(deep=True)
    if mutator is not None:
        mutator(draft)

    for field in IMMUTABLE_FIELDS:
        if getattr(draft, field) != getattr(order, field):
            raise ValueError(f"Order field '{field}' is immutable")

    draft.status = new_status
    draft.updated_at = utcnow()
    return draft


class OrderStore(ABC):
    """Abstract order storage."""

    @abstractmethod
    async def put(self, order: Order) -> None:
        """
        Store a new order.

        Raises:
            DuplicateOrderError: The order id exists
            DuplicateIdempotencyKeyError: Another order holds the idempotency key
        """

    @abstractmethod
    async def get(self, order_id: str) -> Order:
        """Return the order. Raises NotFoundError."""

    @abstractmethod
    async def get_by_payment_reference(self, reference: str) -> Order:
        """Return the order bound to a gateway reference. Raises NotFoundError."""

    @abstractmethod
    async def get_by_idempotency_key(self, key: str) -> Optional[Order]:
        """Return the order created with a client idempotency key, if any."""

    @abstractmethod
    async def compare_and_transition(
        self,
        order_id: str,
        expected_status: OrderStatus,
        new_status: OrderStatus,
        mutator: Optional[Mutator] = None,
    ) -> Order:
        """
        Atomically move an order from `expected_status` to `new_status`.

        Args:
            order_id: Order to transition
            expected_status: Status the caller observed
            new_status: Target status (must be an edge of the state machine)
            mutator: Optional callback applied to a copy of the order before saving

        Returns:
            The stored order after the transition

        Raises:
            NotFoundError: Unknown order
            ConflictError: Current status differs from `expected_status`
            IllegalTransitionError: The edge does not exist
        """

    @abstractmethod
    async def record_notification(self, order_id: str, channel: str, status: OrderStatus) -> bool:
        """Add `(channel, status)` to notifications_sent. False if already present."""

    @abstractmethod
    async def list_by_status(
        self,
        statuses: Iterable[OrderStatus],
        updated_before: Optional[datetime] = None,
    ) -> list[Order]:
        """Orders in any of `statuses`, optionally last updated before a cutoff."""

    @abstractmethod
    async def list_recent(self, limit: int = 10) -> list[Order]:
        """Most recently created orders, newest first."""


class InMemoryOrderStore(OrderStore):
    """
    Process-local store.

    Records live in dicts guarded by an asyncio lock. Nothing inside the lock
    awaits external I/O. Callers always receive copies.
    """

    def __init__(self) -> None:
        self._orders: dict[str, Order] = {}
        self._by_reference: dict[str, str] = {}  # payment_reference -> order_id
        self._by_idempotency_key: dict[str, str] = {}  # idempotency_key -> order_id
        self._lock = asyncio.Lock()

    async def put(self, order: Order) -> None:
        async with self._lock:
            if order.order_id in self._orders:
                raise DuplicateOrderError(f"Order {order.order_id} already exists")
            key = order.idempotency_key
            if key and key in self._by_idempotency_key:
                raise DuplicateIdempotencyKeyError()
            self._orders[order.order_id] = order.model_copy(deep=True)
            if order.payment_reference:
                self._by_reference[order.payment_reference] = order.order_id
            if key:
                self._by_idempotency_key[key] = order.order_id

    async def get(self, order_id: str) -> Order:
        async with self._lock:
            return self._load(order_id).model_copy(deep=True)

    async def get_by_payment_reference(self, reference: str) -> Order:
        async with self._lock:
            order_id = self._by_reference.get(reference)
            if order_id is None:
                raise NotFoundError(ERROR_PAYMENT_REFERENCE_NOT_FOUND)
            return self._load(order_id).model_copy(deep=True)

    async def get_by_idempotency_key(self, key: str) -> Optional[Order]:
        async with self._lock:
            order_id = self._by_idempotency_key.get(key)
            if order_id is None:
                return None
            return self._load(order_id).model_copy(deep=True)

    async def compare_and_transition(
        self,
        order_id: str,
        expected_status: OrderStatus,
        new_status: OrderStatus,
        mutator: Optional[Mutator] = None,
    ) -> Order:
        async with self._lock:
            stored = self._load(order_id)
            check_transition(stored, expected_status, new_status)
            updated = apply_transition(stored, new_status, mutator)

            reference = updated.payment_reference
            if reference and reference != stored.payment_reference:
                owner = self._by_reference.get(reference)
                if owner is not None and owner != order_id:
                    raise ConflictError(f"Payment reference already bound to {owner}")
                self._by_reference[reference] = order_id

            self._orders[order_id] = updated

        logger.info(
            "Order %s: %s -> %s",
            sanitize_id_for_logging(order_id),
            expected_status.value,
            new_status.value,
        )
        return updated.model_copy(deep=True)

    async def record_notification(self, order_id: str, channel: str, status: OrderStatus) -> bool:
        async with self._lock:
            stored = self._load(order_id)
            key = (channel, status)
            if key in stored.notifications_sent:
                return False
            stored.notifications_sent.add(key)
            return True

    async def list_by_status(
        self,
        statuses: Iterable[OrderStatus],
        updated_before: Optional[datetime] = None,
    ) -> list[Order]:
        wanted = set(statuses)
        async with self._lock:
            return [
                order.model_copy(deep=True)
                for order in self._orders.values()
                if order.status in wanted
                and (updated_before is None or order.updated_at < updated_before)
            ]

    async def list_recent(self, limit: int = 10) -> list[Order]:
        async with self._lock:
            newest = sorted(self._orders.values(), key=lambda o: o.created_at, reverse=True)
            return [order.model_copy(deep=True) for order in newest[:limit]]

    def _load(self, order_id: str) -> Order:
        order = self._orders.get(order_id)
        if order is None:
            raise NotFoundError(ERROR_ORDER_NOT_FOUND)
        return order
