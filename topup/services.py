"""
Service wiring.

Builds the object graph once per application and hands it to the FastAPI app
and the Telegram dispatcher. Nothing here is a module-level singleton: tests
build their own graph with fakes.
"""
from dataclasses import dataclass
from datetime import timedelta
from typing import Iterable, Optional

from aiogram import Bot, Dispatcher
from aiogram.client.default import DefaultBotProperties
from aiogram.enums import ParseMode

from topup.catalog import Catalog, StaticCatalog
from topup.config import (
    Settings,
    is_telegram_configured,
    validate_gateway_config,
    validate_store_config,
)
from topup.logging import get_logger
from topup.notifications.channels import LogChannel, NotificationChannel, TelegramChannel
from topup.notifications.dispatcher import NotificationDispatcher
from topup.orders.ids import OrderIdGenerator, UuidOrderIdGenerator
from topup.orders.service import OrderService
from topup.orders.store import InMemoryOrderStore, OrderStore
from topup.orders.sweeper import ExpirySweeper
from topup.payments.gateway import HttpPaymentGateway, MockPaymentGateway, PaymentGateway
from topup.payments.webhook import PaymentWebhookHandler

logger = get_logger(__name__)


@dataclass
class Services:
    """Everything the routers and bot handlers need."""
    settings: Settings
    store: OrderStore
    catalog: Catalog
    gateway: PaymentGateway
    dispatcher: NotificationDispatcher
    order_service: OrderService
    webhook_handler: PaymentWebhookHandler
    sweeper: ExpirySweeper
    bot: Optional[Bot] = None
    bot_dispatcher: Optional[Dispatcher] = None

    async def aclose(self) -> None:
        """Stop background work and close network clients."""
        await self.sweeper.stop()
        await self.dispatcher.drain()
        await self.gateway.aclose()
        if self.bot is not None:
            await self.bot.session.close()


async def create_store(settings: Settings) -> OrderStore:
    backend = validate_store_config(settings)
    if backend == "supabase":
        from topup.orders.supabase_store import SupabaseOrderStore

        return await SupabaseOrderStore.connect(
            settings.supabase_url, settings.supabase_service_role_key
        )
    logger.warning("Using in-memory order store: orders are lost on restart")
    return InMemoryOrderStore()


def create_gateway(settings: Settings) -> PaymentGateway:
    mode = validate_gateway_config(settings)
    if mode == "http":
        return HttpPaymentGateway(
            base_url=settings.payment_gateway_url,
            api_key=settings.payment_gateway_api_key,
            webapp_url=settings.webapp_url,
        )
    return MockPaymentGateway(checkout_url=settings.payment_checkout_url)


def create_bot(settings: Settings) -> Optional[Bot]:
    if not settings.telegram_bot_token:
        return None
    return Bot(
        token=settings.telegram_bot_token,
        default=DefaultBotProperties(parse_mode=ParseMode.HTML),
    )


async def build_services(
    settings: Settings,
    store: Optional[OrderStore] = None,
    gateway: Optional[PaymentGateway] = None,
    channels: Optional[Iterable[NotificationChannel]] = None,
    catalog: Optional[Catalog] = None,
    id_generator: Optional[OrderIdGenerator] = None,
    bot: Optional[Bot] = None,
) -> Services:
    """
    Build the service graph.

    Any collaborator passed in replaces the one derived from settings.
    """
    store = store or await create_store(settings)
    gateway = gateway or create_gateway(settings)
    catalog = catalog or StaticCatalog()
    id_generator = id_generator or UuidOrderIdGenerator(prefix=settings.order_id_prefix)
    bot = bot or create_bot(settings)

    if channels is None:
        if bot is not None and is_telegram_configured(settings):
            channels = [TelegramChannel(bot, settings.admin_chat_id)]
        else:
            logger.warning("Telegram not configured, notifications go to the log")
            channels = [LogChannel()]

    dispatcher = NotificationDispatcher(
        store=store,
        channels=channels,
        catalog=catalog,
        max_attempts=settings.notify_max_attempts,
        backoff_seconds=settings.notify_backoff_seconds,
        backoff_max_seconds=settings.notify_backoff_max_seconds,
    )
    order_service = OrderService(
        store=store,
        catalog=catalog,
        gateway=gateway,
        dispatcher=dispatcher,
        id_generator=id_generator,
        awaiting_payment_timeout=timedelta(minutes=settings.awaiting_payment_timeout_minutes),
        gateway_max_attempts=settings.gateway_max_attempts,
        gateway_backoff_seconds=settings.gateway_backoff_seconds,
        reconcile_before_expiry=settings.reconcile_before_expiry,
    )
    webhook_handler = PaymentWebhookHandler(
        store=store,
        order_service=order_service,
        secret=settings.payment_secret,
    )
    sweeper = ExpirySweeper(order_service, settings.expiry_sweep_interval_seconds)

    services = Services(
        settings=settings,
        store=store,
        catalog=catalog,
        gateway=gateway,
        dispatcher=dispatcher,
        order_service=order_service,
        webhook_handler=webhook_handler,
        sweeper=sweeper,
        bot=bot,
    )
    if bot is not None:
        from topup.bot import create_dispatcher

        services.bot_dispatcher = create_dispatcher(services)
    return services
