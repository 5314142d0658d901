"""
Notification texts.

Messages use Telegram HTML markup. Player-supplied values are escaped before
they are interpolated.
"""
import html
from typing import Optional

from topup.catalog import format_rp
from topup.orders.models import Order, OrderStatus, Product

STATUS_TITLES: dict[OrderStatus, str] = {
    OrderStatus.PENDING: "🆕 <b>Order created</b>",
    OrderStatus.AWAITING_PAYMENT: "⏳ <b>Awaiting payment</b>",
    OrderStatus.PAID: "✅ <b>Payment received</b>",
    OrderStatus.FAILED: "❌ <b>Payment failed</b>",
    OrderStatus.CANCELLED: "🚫 <b>Order cancelled</b>",
    OrderStatus.EXPIRED: "⌛ <b>Order expired</b>",
}


def build_status_message(order: Order, status: OrderStatus, product: Optional[Product] = None) -> str:
    """Build the admin-facing message for an order status change."""
    product_label = product.name if product else order.product_id
    lines = [
        STATUS_TITLES.get(status, f"<b>{html.escape(status.value)}</b>"),
        "",
        f"Order ID: <code>{html.escape(order.order_id)}</code>",
        f"Product: {html.escape(product_label)}",
        f"Player ID: <code>{html.escape(order.user_id)}</code>",
        f"Amount: Rp {format_rp(order.amount)}",
    ]
    if status == OrderStatus.PAID:
        lines.append("")
        lines.append("Top up the player account now.")
    return "\n".join(lines)
