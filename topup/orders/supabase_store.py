"""
Supabase Order Store

Tables:
    orders(id pk, product_id, user_id, amount, status, created_at, updated_at,
           payment_reference unique, pay_url, idempotency_key unique)
    order_notifications(order_id, channel, status, unique(order_id, channel, status))

Check-and-set is a conditional update filtered on the expected status: zero
affected rows means another writer got there first.
"""
from datetime import datetime
from typing import Any, Iterable, Optional

from postgrest.exceptions import APIError
from supabase._async.client import AsyncClient, create_client as acreate_client

from topup.errors import (
    ConflictError,
    DuplicateIdempotencyKeyError,
    DuplicateOrderError,
    NotFoundError,
    ERROR_ORDER_NOT_FOUND,
    ERROR_PAYMENT_REFERENCE_NOT_FOUND,
)
from topup.logging import get_logger, sanitize_id_for_logging
from topup.orders.models import Order, OrderStatus
from topup.orders.store import Mutator, OrderStore, apply_transition, check_transition

logger = get_logger(__name__)

ORDERS_TABLE = "orders"
NOTIFICATIONS_TABLE = "order_notifications"

# Postgres unique_violation
UNIQUE_VIOLATION = "23505"


def _is_unique_violation(error: APIError) -> bool:
    return str(getattr(error, "code", "")) == UNIQUE_VIOLATION


def _order_to_row(order: Order) -> dict[str, Any]:
    return {
        "id": order.order_id,
        "product_id": order.product_id,
        "user_id": order.user_id,
        "amount": order.amount,
        "status": order.status.value,
        "created_at": order.created_at.isoformat(),
        "updated_at": order.updated_at.isoformat(),
        "payment_reference": order.payment_reference,
        "pay_url": order.pay_url,
        "idempotency_key": order.idempotency_key,
    }


def _row_to_order(row: dict[str, Any], notifications: Iterable[dict[str, Any]] = ()) -> Order:
    return Order(
        order_id=row["id"],
        product_id=row["product_id"],
        user_id=row["user_id"],
        amount=row["amount"],
        status=row["status"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        payment_reference=row.get("payment_reference"),
        pay_url=row.get("pay_url"),
        idempotency_key=row.get("idempotency_key"),
        notifications_sent={
            (n["channel"], OrderStatus(n["status"])) for n in notifications
        },
    )


class SupabaseOrderStore(OrderStore):
    """Order store backed by Supabase (PostgREST)."""

    def __init__(self, client: AsyncClient):
        self.client = client

    @classmethod
    async def connect(cls, url: str, key: str) -> "SupabaseOrderStore":
        """Create the async Supabase client and wrap it."""
        if not url or not key:
            raise ValueError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
        client = await acreate_client(url, key)
        return cls(client)

    async def put(self, order: Order) -> None:
        try:
            await self.client.table(ORDERS_TABLE).insert(_order_to_row(order)).execute()
        except APIError as e:
            if not _is_unique_violation(e):
                raise
            if order.idempotency_key:
                holder = await self.get_by_idempotency_key(order.idempotency_key)
                if holder is not None and holder.order_id != order.order_id:
                    raise DuplicateIdempotencyKeyError() from e
            raise DuplicateOrderError(f"Order {order.order_id} already exists") from e

    async def get(self, order_id: str) -> Order:
        result = (
            await self.client.table(ORDERS_TABLE)
            .select("*")
            .eq("id", order_id)
            .limit(1)
            .execute()
        )
        if not result.data:
            raise NotFoundError(ERROR_ORDER_NOT_FOUND)
        return await self._with_notifications(result.data[0])

    async def get_by_payment_reference(self, reference: str) -> Order:
        result = (
            await self.client.table(ORDERS_TABLE)
            .select("*")
            .eq("payment_reference", reference)
            .limit(1)
            .execute()
        )
        if not result.data:
            raise NotFoundError(ERROR_PAYMENT_REFERENCE_NOT_FOUND)
        return await self._with_notifications(result.data[0])

    async def get_by_idempotency_key(self, key: str) -> Optional[Order]:
        result = (
            await self.client.table(ORDERS_TABLE)
            .select("*")
            .eq("idempotency_key", key)
            .limit(1)
            .execute()
        )
        if not result.data:
            return None
        return await self._with_notifications(result.data[0])

    async def compare_and_transition(
        self,
        order_id: str,
        expected_status: OrderStatus,
        new_status: OrderStatus,
        mutator: Optional[Mutator] = None,
    ) -> Order:
        current = await self.get(order_id)
        check_transition(current, expected_status, new_status)
        updated = apply_transition(current, new_status, mutator)

        changes = {
            "status": updated.status.value,
            "updated_at": updated.updated_at.isoformat(),
            "payment_reference": updated.payment_reference,
            "pay_url": updated.pay_url,
        }
        try:
            result = (
                await self.client.table(ORDERS_TABLE)
                .update(changes)
                .eq("id", order_id)
                .eq("status", expected_status.value)
                .execute()
            )
        except APIError as e:
            if _is_unique_violation(e):
                raise ConflictError("Payment reference already bound to another order") from e
            raise

        if not result.data:
            latest = await self.get(order_id)
            logger.info(
                "Order %s: lost transition race %s -> %s (now '%s')",
                sanitize_id_for_logging(order_id),
                expected_status.value,
                new_status.value,
                latest.status.value,
            )
            raise ConflictError(
                f"Order {order_id} is '{latest.status.value}', expected '{expected_status.value}'",
                current_status=latest.status.value,
            )

        logger.info(
            "Order %s: %s -> %s",
            sanitize_id_for_logging(order_id),
            expected_status.value,
            new_status.value,
        )
        return updated

    async def record_notification(self, order_id: str, channel: str, status: OrderStatus) -> bool:
        try:
            await self.client.table(NOTIFICATIONS_TABLE).insert({
                "order_id": order_id,
                "channel": channel,
                "status": status.value,
            }).execute()
        except APIError as e:
            if _is_unique_violation(e):
                return False
            raise
        return True

    async def list_by_status(
        self,
        statuses: Iterable[OrderStatus],
        updated_before: Optional[datetime] = None,
    ) -> list[Order]:
        """List orders by status. notifications_sent is left empty on list results."""
        query = (
            self.client.table(ORDERS_TABLE)
            .select("*")
            .in_("status", [s.value for s in statuses])
        )
        if updated_before is not None:
            query = query.lt("updated_at", updated_before.isoformat())
        result = await query.execute()
        return [_row_to_order(row) for row in result.data or []]

    async def list_recent(self, limit: int = 10) -> list[Order]:
        result = (
            await self.client.table(ORDERS_TABLE)
            .select("*")
            .order("created_at", desc=True)
            .limit(limit)
            .execute()
        )
        return [_row_to_order(row) for row in result.data or []]

    async def _with_notifications(self, row: dict[str, Any]) -> Order:
        notes = (
            await self.client.table(NOTIFICATIONS_TABLE)
            .select("channel,status")
            .eq("order_id", row["id"])
            .execute()
        )
        return _row_to_order(row, notes.data or [])
