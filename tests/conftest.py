"""Pytest configuration and fixtures"""
import json
import os
from typing import Optional

import pytest
import pytest_asyncio

# Set test environment variables
os.environ.setdefault("PAYMENT_SECRET", "test_payment_secret")
os.environ.setdefault("ADMIN_API_KEY", "test_admin_key")
os.environ.setdefault("CRON_SECRET", "test_cron_secret")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from topup.config import Settings  # noqa: E402
from topup.errors import NotificationError  # noqa: E402
from topup.notifications.channels import NotificationChannel  # noqa: E402
from topup.orders.ids import SequentialOrderIdGenerator  # noqa: E402
from topup.orders.models import Order, OrderStatus  # noqa: E402
from topup.orders.store import InMemoryOrderStore  # noqa: E402
from topup.payments.gateway import MockPaymentGateway, sign_payload  # noqa: E402
from topup.services import build_services  # noqa: E402

WEBHOOK_SECRET = "test-webhook-secret"
ADMIN_KEY = "test_admin_key"
CRON_SECRET = "test_cron_secret"
ADMIN_CHAT_ID = 987654321


class RecordingChannel(NotificationChannel):
    """Channel that remembers deliveries and can fail on demand."""

    def __init__(self, name: str = "recording", failures: Optional[list] = None):
        self.name = name
        self.sent: list[tuple[str, OrderStatus, str]] = []
        self.attempts = 0
        self._failures = list(failures or [])

    def fail_next(self, *errors: NotificationError) -> None:
        self._failures.extend(errors)

    async def send(self, order: Order, text: str) -> None:
        self.attempts += 1
        if self._failures:
            raise self._failures.pop(0)
        self.sent.append((order.order_id, order.status, text))

    def count(self, order_id: str, status: OrderStatus) -> int:
        return sum(1 for oid, st, _ in self.sent if oid == order_id and st == status)


def webhook_body(reference: str, status: str, amount: Optional[int] = None) -> bytes:
    payload = {"paymentReference": reference, "status": status}
    if amount is not None:
        payload["amount"] = amount
    return json.dumps(payload).encode("utf-8")


def sign(body: bytes) -> str:
    return sign_payload(body, WEBHOOK_SECRET)


@pytest.fixture
def settings():
    """Settings with no background sweeps and no backoff sleeps"""
    return Settings(
        payment_secret=WEBHOOK_SECRET,
        admin_api_key=ADMIN_KEY,
        cron_secret=CRON_SECRET,
        admin_chat_id=ADMIN_CHAT_ID,
        expiry_sweep_interval_seconds=0,
        awaiting_payment_timeout_minutes=15,
        gateway_max_attempts=3,
        gateway_backoff_seconds=0,
        notify_max_attempts=5,
        notify_backoff_seconds=0,
    )


@pytest.fixture
def store():
    return InMemoryOrderStore()


@pytest.fixture
def gateway():
    return MockPaymentGateway()


@pytest.fixture
def channel():
    return RecordingChannel()


@pytest_asyncio.fixture
async def services(settings, store, gateway, channel):
    """Fully wired services with in-memory store and mock gateway"""
    services = await build_services(
        settings,
        store=store,
        gateway=gateway,
        channels=[channel],
        id_generator=SequentialOrderIdGenerator(prefix="ROBEKC-"),
    )
    yield services
    await services.aclose()


@pytest.fixture
def order_service(services):
    return services.order_service


@pytest.fixture
def dispatcher(services):
    return services.dispatcher


@pytest.fixture
def webhook_handler(services):
    return services.webhook_handler


@pytest.fixture
def sample_order():
    """Pending order for product p100"""
    return Order(
        order_id="ROBEKC-sample",
        product_id="p100",
        user_id="u1",
        amount=12000,
    )
