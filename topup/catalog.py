"""Product catalog."""
from typing import Iterable, Optional, Protocol

from topup.orders.models import Product


# Storefront products; prices in Rupiah
DEFAULT_PRODUCTS: tuple[Product, ...] = (
    Product(id="p100", name="Diamond 50", price=12000),
    Product(id="p200", name="Diamond 120", price=30000),
    Product(id="p300", name="Voucher 50k", price=50000),
)


class Catalog(Protocol):
    """Read-only product lookup."""

    def get_product(self, product_id: str) -> Optional[Product]: ...

    def list_products(self) -> list[Product]: ...


class StaticCatalog:
    """Catalog backed by a fixed product list."""

    def __init__(self, products: Iterable[Product] = DEFAULT_PRODUCTS):
        self._products = {p.id: p for p in products}

    def get_product(self, product_id: str) -> Optional[Product]:
        product = self._products.get(product_id)
        # Hand out copies so callers cannot edit prices in place
        return product.model_copy() if product else None

    def list_products(self) -> list[Product]:
        return [p.model_copy() for p in self._products.values()]


def format_rp(amount: int) -> str:
    """Format an amount with dot thousands separators: 12000 -> '12.000'."""
    return f"{amount:,}".replace(",", ".")
