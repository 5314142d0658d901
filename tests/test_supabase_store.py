"""Tests for the Supabase order store against a fake PostgREST client"""
from typing import Any, Callable, Dict, List, Optional

import pytest
from postgrest.exceptions import APIError

from topup.errors import (
    ConflictError,
    DuplicateIdempotencyKeyError,
    DuplicateOrderError,
    NotFoundError,
)
from topup.orders.models import Order, OrderStatus
from topup.orders.supabase_store import SupabaseOrderStore

UNIQUE_KEYS = {
    "orders": [("id",), ("payment_reference",), ("idempotency_key",)],
    "order_notifications": [("order_id", "channel", "status")],
}


class _Result:
    def __init__(self, data):
        self.data = data


class _FakeDB:
    def __init__(self):
        self.tables: Dict[str, List[Dict[str, Any]]] = {}
        self.updates: List = []
        # Runs once right before the next update executes
        self.before_update: Optional[Callable[[], None]] = None


class _FakeQuery:
    def __init__(self, db: _FakeDB, table: str):
        self.db = db
        self.table = table
        self._mode = "select"
        self._payload: Optional[Dict[str, Any]] = None
        self._filters: List[Callable[[Dict[str, Any]], bool]] = []
        self._order: Optional[tuple] = None
        self._limit: Optional[int] = None

    def select(self, *_):
        self._mode = "select"
        return self

    def insert(self, data: Dict[str, Any]):
        self._mode = "insert"
        self._payload = data
        return self

    def update(self, data: Dict[str, Any]):
        self._mode = "update"
        self._payload = data
        return self

    def eq(self, field: str, value):
        self._filters.append(lambda row: row.get(field) == value)
        return self

    def in_(self, field: str, values):
        self._filters.append(lambda row: row.get(field) in values)
        return self

    def lt(self, field: str, value):
        self._filters.append(lambda row: row.get(field) is not None and row.get(field) < value)
        return self

    def order(self, field: str, desc: bool = False):
        self._order = (field, desc)
        return self

    def limit(self, count: int):
        self._limit = count
        return self

    def _violates_unique(self, rows, payload) -> bool:
        for key in UNIQUE_KEYS.get(self.table, []):
            values = tuple(payload.get(k) for k in key)
            if any(v is None for v in values):
                continue
            if any(tuple(row.get(k) for k in key) == values for row in rows):
                return True
        return False

    async def execute(self):
        rows = self.db.tables.setdefault(self.table, [])

        if self._mode == "insert":
            if self._violates_unique(rows, self._payload):
                raise APIError({"message": "duplicate key value", "code": "23505", "hint": None, "details": None})
            rows.append(dict(self._payload))
            return _Result([dict(self._payload)])

        if self._mode == "update" and self.db.before_update is not None:
            hook, self.db.before_update = self.db.before_update, None
            hook()

        matched = [row for row in rows if all(f(row) for f in self._filters)]

        if self._mode == "update":
            for row in matched:
                row.update(self._payload)
            self.db.updates.append((self.table, dict(self._payload)))
            return _Result([dict(row) for row in matched])

        if self._order:
            field, desc = self._order
            matched = sorted(matched, key=lambda row: row.get(field), reverse=desc)
        if self._limit is not None:
            matched = matched[: self._limit]
        return _Result([dict(row) for row in matched])


class _FakeClient:
    def __init__(self, db: _FakeDB):
        self.db = db

    def table(self, name: str):
        assert name in UNIQUE_KEYS
        return _FakeQuery(self.db, name)


@pytest.fixture
def fake_db():
    return _FakeDB()


@pytest.fixture
def supabase_store(fake_db):
    return SupabaseOrderStore(_FakeClient(fake_db))


async def _to_awaiting(store: SupabaseOrderStore, order: Order, reference: str = "pay-1") -> Order:
    def bind(draft: Order) -> None:
        draft.payment_reference = reference
        draft.pay_url = "https://pay.test/" + reference

    await store.put(order)
    return await store.compare_and_transition(
        order.order_id, OrderStatus.PENDING, OrderStatus.AWAITING_PAYMENT, bind
    )


@pytest.mark.asyncio
async def test_put_and_get_round_trip(supabase_store, fake_db, sample_order):
    await supabase_store.put(sample_order)

    row = fake_db.tables["orders"][0]
    assert row["id"] == sample_order.order_id
    assert row["status"] == "pending"
    assert row["amount"] == 12000

    loaded = await supabase_store.get(sample_order.order_id)
    assert loaded.order_id == sample_order.order_id
    assert loaded.status == OrderStatus.PENDING
    assert loaded.created_at == sample_order.created_at


@pytest.mark.asyncio
async def test_duplicate_insert_maps_to_duplicate_order(supabase_store, sample_order):
    await supabase_store.put(sample_order)
    with pytest.raises(DuplicateOrderError):
        await supabase_store.put(sample_order)


@pytest.mark.asyncio
async def test_unknown_order(supabase_store):
    with pytest.raises(NotFoundError):
        await supabase_store.get("nope")
    with pytest.raises(NotFoundError):
        await supabase_store.get_by_payment_reference("nope")


@pytest.mark.asyncio
async def test_transition_is_conditional_on_expected_status(supabase_store, fake_db, sample_order):
    updated = await _to_awaiting(supabase_store, sample_order)

    assert updated.status == OrderStatus.AWAITING_PAYMENT
    assert fake_db.tables["orders"][0]["payment_reference"] == "pay-1"
    by_ref = await supabase_store.get_by_payment_reference("pay-1")
    assert by_ref.order_id == sample_order.order_id


@pytest.mark.asyncio
async def test_lost_race_raises_conflict(supabase_store, fake_db, sample_order):
    await _to_awaiting(supabase_store, sample_order)

    def concurrent_writer():
        fake_db.tables["orders"][0]["status"] = "failed"

    fake_db.before_update = concurrent_writer

    with pytest.raises(ConflictError) as exc_info:
        await supabase_store.compare_and_transition(
            sample_order.order_id, OrderStatus.AWAITING_PAYMENT, OrderStatus.PAID
        )
    assert exc_info.value.current_status == "failed"
    assert fake_db.tables["orders"][0]["status"] == "failed"


@pytest.mark.asyncio
async def test_stale_expected_status_conflicts_without_update(supabase_store, fake_db, sample_order):
    await supabase_store.put(sample_order)
    with pytest.raises(ConflictError):
        await supabase_store.compare_and_transition(
            sample_order.order_id, OrderStatus.AWAITING_PAYMENT, OrderStatus.PAID
        )
    assert fake_db.updates == []


@pytest.mark.asyncio
async def test_notifications_recorded_once(supabase_store, sample_order):
    await supabase_store.put(sample_order)

    first = await supabase_store.record_notification(sample_order.order_id, "telegram", OrderStatus.PENDING)
    second = await supabase_store.record_notification(sample_order.order_id, "telegram", OrderStatus.PENDING)

    assert (first, second) == (True, False)
    loaded = await supabase_store.get(sample_order.order_id)
    assert loaded.notifications_sent == {("telegram", OrderStatus.PENDING)}


@pytest.mark.asyncio
async def test_list_by_status(supabase_store, sample_order):
    await _to_awaiting(supabase_store, sample_order)
    other = sample_order.model_copy(update={"order_id": "ROBEKC-2"})
    await supabase_store.put(other)

    awaiting = await supabase_store.list_by_status([OrderStatus.AWAITING_PAYMENT])
    assert [o.order_id for o in awaiting] == [sample_order.order_id]

    recent = await supabase_store.list_recent(limit=5)
    assert {o.order_id for o in recent} == {sample_order.order_id, "ROBEKC-2"}


@pytest.mark.asyncio
async def test_idempotency_key_is_unique(supabase_store, fake_db, sample_order):
    keyed = sample_order.model_copy(update={"idempotency_key": "key-1"})
    await supabase_store.put(keyed)

    assert fake_db.tables["orders"][0]["idempotency_key"] == "key-1"
    found = await supabase_store.get_by_idempotency_key("key-1")
    assert found.order_id == sample_order.order_id
    assert found.idempotency_key == "key-1"
    assert await supabase_store.get_by_idempotency_key("key-2") is None

    with pytest.raises(DuplicateIdempotencyKeyError):
        await supabase_store.put(keyed.model_copy(update={"order_id": "ROBEKC-2"}))
    with pytest.raises(DuplicateOrderError):
        await supabase_store.put(keyed)
