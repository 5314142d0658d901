"""
Notification Channels

A channel delivers one message. It raises NotificationError on failure,
with `retryable` telling the dispatcher whether another attempt can help.
"""
from abc import ABC, abstractmethod

from aiogram import Bot
from aiogram.exceptions import (
    TelegramAPIError,
    TelegramNetworkError,
    TelegramRetryAfter,
    TelegramServerError,
)

from topup.errors import NotificationError
from topup.logging import get_logger, sanitize_id_for_logging
from topup.orders.models import Order

logger = get_logger(__name__)

# Telegram message length limit
MAX_MESSAGE_LENGTH = 4096


def _truncate_message(text: str, max_length: int = MAX_MESSAGE_LENGTH) -> str:
    """Truncate message to Telegram's limit."""
    if len(text) <= max_length:
        return text
    logger.warning("Truncating message from %s to %s characters", len(text), max_length - 3)
    return text[:max_length - 3] + "..."


class NotificationChannel(ABC):
    """Delivery target for order notifications."""

    name: str = "channel"

    @abstractmethod
    async def send(self, order: Order, text: str) -> None:
        """Deliver `text` about `order`. Raises NotificationError."""


class TelegramChannel(NotificationChannel):
    """Sends notifications to the admin chat through the Telegram Bot API."""

    name = "telegram"

    def __init__(self, bot: Bot, chat_id: int):
        self.bot = bot
        self.chat_id = chat_id

    async def send(self, order: Order, text: str) -> None:
        try:
            await self.bot.send_message(chat_id=self.chat_id, text=_truncate_message(text))
        except TelegramRetryAfter as e:
            raise NotificationError(f"Telegram flood control, retry after {e.retry_after}s") from e
        except (TelegramNetworkError, TelegramServerError) as e:
            raise NotificationError(f"Telegram unavailable: {e}") from e
        except TelegramAPIError as e:
            # Bad request, forbidden, chat not found: retrying will not help
            raise NotificationError(f"Telegram rejected message: {e}", retryable=False) from e

        logger.debug("Telegram notification sent for order %s", sanitize_id_for_logging(order.order_id))


class LogChannel(NotificationChannel):
    """Writes notifications to the application log. Used when Telegram is not configured."""

    name = "log"

    async def send(self, order: Order, text: str) -> None:
        logger.info(
            "Notification for order %s: %s",
            sanitize_id_for_logging(order.order_id),
            text.replace("\n", " | "),
        )
