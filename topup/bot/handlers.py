"""Command handlers: /start, /orders, /order <id>"""
import html
from typing import TYPE_CHECKING

from aiogram import Router
from aiogram.filters import Command, CommandObject, CommandStart
from aiogram.types import Message

from topup.catalog import format_rp
from topup.errors import NotFoundError
from topup.logging import get_logger
from topup.notifications.messages import build_status_message

if TYPE_CHECKING:
    from topup.services import Services

logger = get_logger(__name__)

RECENT_ORDERS_LIMIT = 10
ACCESS_DENIED = "⛔ Access denied"


def _is_admin(message: Message, services: "Services") -> bool:
    admin_chat_id = services.settings.admin_chat_id
    return admin_chat_id is not None and message.chat.id == admin_chat_id


async def cmd_start(message: Message, services: "Services"):
    """Greet the user and list products"""
    lines = [
        "👋 <b>ROBEKC GAMES Top Up</b>",
        "Choose a product, enter your Player ID / UID and pay.",
        "",
    ]
    lines += [
        f"• {product.name}: Rp {format_rp(product.price)}"
        for product in services.catalog.list_products()
    ]
    await message.answer("\n".join(lines))


async def cmd_orders(message: Message, services: "Services"):
    """Admin: show the latest orders"""
    if not _is_admin(message, services):
        logger.warning("Non-admin chat %s requested /orders", message.chat.id)
        await message.answer(ACCESS_DENIED)
        return

    orders = await services.store.list_recent(RECENT_ORDERS_LIMIT)
    if not orders:
        await message.answer("No orders yet.")
        return

    lines = ["<b>Latest orders</b>", ""]
    for order in orders:
        lines.append(
            f"<code>{html.escape(order.order_id)}</code> · {html.escape(order.product_id)} · "
            f"Rp {format_rp(order.amount)} · {order.status.value}"
        )
    await message.answer("\n".join(lines))


async def cmd_order(message: Message, command: CommandObject, services: "Services"):
    """Admin: show one order"""
    if not _is_admin(message, services):
        await message.answer(ACCESS_DENIED)
        return

    order_id = (command.args or "").strip()
    if not order_id:
        await message.answer("Usage: /order &lt;order_id&gt;")
        return

    try:
        order = await services.store.get(order_id)
    except NotFoundError:
        await message.answer("Order not found")
        return

    product = services.catalog.get_product(order.product_id)
    await message.answer(build_status_message(order, order.status, product))


def create_router() -> Router:
    """Build a fresh router; aiogram routers attach to a single dispatcher."""
    router = Router(name="topup")
    router.message.register(cmd_start, CommandStart())
    router.message.register(cmd_orders, Command("orders"))
    router.message.register(cmd_order, Command("order"))
    return router
