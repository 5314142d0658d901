"""Order lifecycle module."""
from .models import (
    CreatedOrder,
    Order,
    OrderStatus,
    Product,
    SweepReport,
    TERMINAL_STATES,
    TRANSITIONS,
)
from .store import InMemoryOrderStore, OrderStore

__all__ = [
    "CreatedOrder",
    "Order",
    "OrderStatus",
    "Product",
    "SweepReport",
    "TERMINAL_STATES",
    "TRANSITIONS",
    "InMemoryOrderStore",
    "OrderStore",
]
