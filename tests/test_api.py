"""Tests for the HTTP API"""
import httpx
import pytest
import pytest_asyncio
from conftest import ADMIN_KEY, CRON_SECRET, sign, webhook_body

from topup.app import create_app
from topup.orders.models import OrderStatus
from topup.payments.webhook import SIGNATURE_HEADER


@pytest_asyncio.fixture
async def client(services):
    transport = httpx.ASGITransport(app=create_app(services))
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


async def _create(client, product_id="p100", user_id="u1", **kwargs):
    return await client.post(
        "/api/create-order", json={"productId": product_id, "userId": user_id}, **kwargs
    )


class TestHealthAndCatalog:
    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/api/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    @pytest.mark.asyncio
    async def test_products(self, client):
        response = await client.get("/api/products")
        assert response.status_code == 200
        products = {p["id"]: p for p in response.json()}
        assert products["p100"]["price"] == 12000
        assert products["p300"]["name"] == "Voucher 50k"


class TestCreateOrder:
    @pytest.mark.asyncio
    async def test_create_order(self, client):
        response = await _create(client)

        assert response.status_code == 200
        data = response.json()
        assert data["orderId"] == "ROBEKC-1"
        assert data["payUrl"] == "https://example-payment-gateway/checkout?order=ROBEKC-1"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "payload",
        [{}, {"productId": "p100"}, {"userId": "u1"}, {"productId": "", "userId": "u1"}],
    )
    async def test_missing_fields(self, client, payload):
        response = await client.post("/api/create-order", json=payload)
        assert response.status_code == 400
        assert response.json() == {"error": "Missing fields"}

    @pytest.mark.asyncio
    async def test_unknown_product(self, client):
        response = await _create(client, product_id="p999")
        assert response.status_code == 400
        assert response.json() == {"error": "Product not found"}

    @pytest.mark.asyncio
    async def test_malformed_json(self, client):
        response = await client.post(
            "/api/create-order",
            content=b"{not json",
            headers={"Content-Type": "application/json"},
        )
        assert response.status_code == 400
        assert "error" in response.json()

    @pytest.mark.asyncio
    async def test_gateway_down(self, client, gateway, store):
        gateway.fail_next(times=3)

        response = await _create(client)

        assert response.status_code == 502
        assert "error" in response.json()
        assert (await store.get("ROBEKC-1")).status == OrderStatus.FAILED

    @pytest.mark.asyncio
    async def test_idempotency_header(self, client, gateway):
        headers = {"Idempotency-Key": "abc-123"}
        first = await _create(client, headers=headers)
        second = await _create(client, headers=headers)

        assert first.status_code == second.status_code == 200
        assert first.json() == second.json()
        assert gateway.calls == 1


class TestOrderLookup:
    @pytest.mark.asyncio
    async def test_get_order(self, client):
        created = (await _create(client, product_id="p200", user_id="player-7")).json()

        response = await client.get(f"/api/orders/{created['orderId']}")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "awaiting_payment"
        assert data["amount"] == 30000
        assert data["userId"] == "player-7"
        assert data["payUrl"] == created["payUrl"]

    @pytest.mark.asyncio
    async def test_unknown_order(self, client):
        response = await client.get("/api/orders/ROBEKC-404")
        assert response.status_code == 404
        assert response.json() == {"error": "Order not found"}


class TestPaymentWebhook:
    @pytest.mark.asyncio
    async def test_paid(self, client, store, dispatcher, channel):
        created = (await _create(client)).json()
        order = await store.get(created["orderId"])
        body = webhook_body(order.payment_reference, "paid", amount=12000)

        response = await client.post(
            "/api/payment-webhook", content=body, headers={SIGNATURE_HEADER: sign(body)}
        )

        assert response.status_code == 200
        assert response.json() == {
            "ok": True,
            "orderId": order.order_id,
            "status": "paid",
            "outcome": "applied",
        }
        await dispatcher.drain()
        assert channel.count(order.order_id, OrderStatus.PAID) == 1

    @pytest.mark.asyncio
    async def test_duplicate_is_200(self, client, store):
        created = (await _create(client)).json()
        order = await store.get(created["orderId"])
        body = webhook_body(order.payment_reference, "paid")
        headers = {SIGNATURE_HEADER: sign(body)}

        await client.post("/api/payment-webhook", content=body, headers=headers)
        response = await client.post("/api/payment-webhook", content=body, headers=headers)

        assert response.status_code == 200
        assert response.json()["outcome"] == "duplicate"

    @pytest.mark.asyncio
    async def test_invalid_signature(self, client, store):
        created = (await _create(client)).json()
        order = await store.get(created["orderId"])
        body = webhook_body(order.payment_reference, "paid")

        response = await client.post(
            "/api/payment-webhook", content=body, headers={SIGNATURE_HEADER: "0" * 64}
        )

        assert response.status_code == 401
        assert (await store.get(order.order_id)).status == OrderStatus.AWAITING_PAYMENT

    @pytest.mark.asyncio
    async def test_missing_signature(self, client):
        response = await client.post("/api/payment-webhook", content=webhook_body("x", "paid"))
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_unknown_reference(self, client):
        body = webhook_body("mock_missing", "paid")
        response = await client.post(
            "/api/payment-webhook", content=body, headers={SIGNATURE_HEADER: sign(body)}
        )
        assert response.status_code == 404


class TestNotify:
    @pytest.mark.asyncio
    async def test_unknown_order(self, client):
        response = await client.post("/api/notify", json={"orderId": "ROBEKC-404"})
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_missing_order_id(self, client):
        response = await client.post("/api/notify", json={})
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_notify_current_status_once(self, client, store, order_service, channel):
        created = (await _create(client)).json()
        order = await store.get(created["orderId"])
        await order_service.apply_payment_outcome(order, OrderStatus.PAID)
        await order_service.dispatcher.drain()

        response = await client.post("/api/notify", json={"orderId": order.order_id})

        assert response.status_code == 200
        assert response.json() == {
            "result": "ok",
            "status": "paid",
            "channels": {"recording": "skipped"},
        }
        assert channel.count(order.order_id, OrderStatus.PAID) == 1


class TestAdmin:
    @pytest.mark.asyncio
    async def test_cancel_requires_key(self, client):
        created = (await _create(client)).json()
        response = await client.post(f"/api/admin/orders/{created['orderId']}/cancel")
        assert response.status_code == 401

        response = await client.post(
            f"/api/admin/orders/{created['orderId']}/cancel", headers={"X-Admin-Key": "wrong"}
        )
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_cancel(self, client):
        created = (await _create(client)).json()
        response = await client.post(
            f"/api/admin/orders/{created['orderId']}/cancel", headers={"X-Admin-Key": ADMIN_KEY}
        )
        assert response.status_code == 200
        assert response.json() == {"orderId": created["orderId"], "status": "cancelled"}


class TestCron:
    @pytest.mark.asyncio
    async def test_requires_secret(self, client):
        response = await client.get("/api/cron/expire-orders")
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_expire_orders(self, client):
        response = await client.get(
            "/api/cron/expire-orders", headers={"Authorization": f"Bearer {CRON_SECRET}"}
        )
        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["tasks"] == {"checked": 0, "expired": 0, "reconciled": 0, "skipped": 0}


@pytest.mark.asyncio
async def test_telegram_webhook_without_bot(client):
    response = await client.post("/webhook/telegram", json={"update_id": 1})
    assert response.status_code == 200
    assert response.json() == {"ok": False, "error": "Bot not configured"}


@pytest.mark.asyncio
async def test_create_order_cancelled_during_checkout(client, gateway, order_service, monkeypatch):
    original = gateway.create_checkout_session

    async def cancelled_meanwhile(order_id, amount, description=""):
        session = await original(order_id, amount, description)
        await order_service.cancel_order(order_id)
        return session

    monkeypatch.setattr(gateway, "create_checkout_session", cancelled_meanwhile)
    headers = {"Idempotency-Key": "abc-123"}

    response = await _create(client, headers=headers)
    assert response.status_code == 409
    assert response.json() == {"error": "Order was closed before checkout was ready"}

    replay = await _create(client, headers=headers)
    assert replay.status_code == 409
    assert replay.json() == response.json()
