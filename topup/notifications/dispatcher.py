"""
Notification Dispatcher

Delivers order-state notifications to every configured channel, at most once
per (order, channel, status):

1. claim the (order, channel, status) key in-process so concurrent dispatches
   of the same event cannot both deliver;
2. re-read the order and skip if the pair is already in notifications_sent;
3. deliver outside any lock, retrying transient failures with exponential
   backoff;
4. record the pair in the store only after the channel confirms.

A failing channel never affects the other channels or the order status.
"""
import asyncio
import logging
from enum import Enum
from typing import Iterable, Optional

from pydantic import BaseModel
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from topup.catalog import Catalog
from topup.errors import NotificationError, NotFoundError
from topup.logging import get_logger, sanitize_id_for_logging
from topup.notifications.channels import NotificationChannel
from topup.notifications.messages import build_status_message
from topup.orders.models import Order, OrderStatus
from topup.orders.store import OrderStore

logger = get_logger(__name__)


class ChannelResult(str, Enum):
    SENT = "sent"
    SKIPPED = "skipped"  # already delivered or in flight elsewhere
    FAILED = "failed"


class DispatchResult(BaseModel):
    order_id: str
    status: OrderStatus
    channels: dict[str, ChannelResult] = {}

    @property
    def ok(self) -> bool:
        return all(result != ChannelResult.FAILED for result in self.channels.values())


def _is_transient(error: BaseException) -> bool:
    return isinstance(error, NotificationError) and error.retryable


class NotificationDispatcher:
    """Fans order status changes out to notification channels."""

    def __init__(
        self,
        store: OrderStore,
        channels: Iterable[NotificationChannel],
        catalog: Optional[Catalog] = None,
        max_attempts: int = 5,
        backoff_seconds: float = 0.5,
        backoff_max_seconds: float = 8.0,
    ):
        self.store = store
        self.channels = list(channels)
        self.catalog = catalog
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.backoff_max_seconds = backoff_max_seconds

        self._in_flight: set[tuple[str, str, OrderStatus]] = set()
        self._lock = asyncio.Lock()
        self._tasks: set[asyncio.Task] = set()

    # ==================== PUBLIC API ====================

    async def dispatch(self, order_id: str, status: OrderStatus) -> DispatchResult:
        """
        Deliver the notification for `(order_id, status)` to every channel.

        Raises:
            NotFoundError: Unknown order
        """
        order = await self.store.get(order_id)
        if order.status != status:
            logger.warning(
                "Order %s is '%s', not notifying about '%s'",
                sanitize_id_for_logging(order_id),
                order.status.value,
                status.value,
            )
            return DispatchResult(
                order_id=order_id,
                status=status,
                channels={channel.name: ChannelResult.SKIPPED for channel in self.channels},
            )

        product = self.catalog.get_product(order.product_id) if self.catalog else None
        text = build_status_message(order, status, product)

        outcomes = await asyncio.gather(
            *(self._dispatch_channel(order, status, channel, text) for channel in self.channels)
        )
        return DispatchResult(
            order_id=order_id,
            status=status,
            channels={channel.name: outcome for channel, outcome in zip(self.channels, outcomes)},
        )

    def enqueue(self, order_id: str, status: OrderStatus) -> asyncio.Task:
        """Schedule `dispatch` in the background."""
        task = asyncio.create_task(self._dispatch_in_background(order_id, status))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for every queued dispatch to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ==================== INTERNALS ====================

    async def _dispatch_in_background(self, order_id: str, status: OrderStatus) -> None:
        try:
            result = await self.dispatch(order_id, status)
        except NotFoundError:
            logger.error("Notification for unknown order %s dropped", sanitize_id_for_logging(order_id))
            return
        except Exception:
            logger.exception("Notification dispatch crashed for order %s", sanitize_id_for_logging(order_id))
            return
        if not result.ok:
            logger.warning(
                "Notification for order %s (%s) not delivered everywhere: %s",
                sanitize_id_for_logging(order_id),
                status.value,
                {name: outcome.value for name, outcome in result.channels.items()},
            )

    async def _dispatch_channel(
        self,
        order: Order,
        status: OrderStatus,
        channel: NotificationChannel,
        text: str,
    ) -> ChannelResult:
        key = (order.order_id, channel.name, status)
        async with self._lock:
            if order.was_notified(channel.name, status) or key in self._in_flight:
                return ChannelResult.SKIPPED
            self._in_flight.add(key)

        try:
            # A dispatch that finished before our claim has already recorded its delivery
            fresh = await self.store.get(order.order_id)
            if fresh.was_notified(channel.name, status):
                return ChannelResult.SKIPPED

            try:
                await self._send_with_retry(channel, fresh, text)
            except NotificationError as e:
                logger.error(
                    "Channel %s failed for order %s (%s): %s",
                    channel.name,
                    sanitize_id_for_logging(order.order_id),
                    status.value,
                    e.message,
                )
                return ChannelResult.FAILED
            except Exception:
                logger.exception(
                    "Channel %s crashed for order %s",
                    channel.name,
                    sanitize_id_for_logging(order.order_id),
                )
                return ChannelResult.FAILED

            recorded = await self.store.record_notification(order.order_id, channel.name, status)
            if not recorded:
                logger.warning(
                    "Notification %s/%s for order %s was recorded concurrently",
                    channel.name,
                    status.value,
                    sanitize_id_for_logging(order.order_id),
                )
            logger.info(
                "Notified %s about order %s (%s)",
                channel.name,
                sanitize_id_for_logging(order.order_id),
                status.value,
            )
            return ChannelResult.SENT
        finally:
            async with self._lock:
                self._in_flight.discard(key)

    async def _send_with_retry(self, channel: NotificationChannel, order: Order, text: str) -> None:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_seconds, max=self.backoff_max_seconds),
            retry=retry_if_exception(_is_transient),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                await channel.send(order, text)
