"""
catalog.py — Catalog Gateway

Stock and price lookups for the order workflow, backed by the `products` table.

Responsibilities:
    • Read-only availability checks used while validating a cart
    • Atomic conditional stock adjustments used at commit time and for compensation

`adjust_stock` is a single conditional UPDATE (`stock + delta >= 0`), so two
orders racing for the last units cannot both succeed; the loser receives
`InsufficientStock` and the caller is expected to compensate.
"""

from typing import Iterable, Tuple

import sqlalchemy as sa
from sqlalchemy.orm import sessionmaker

from .db import Product
from .errors import InsufficientStock, ProductNotFound
from .logging_config import get_logger
from .models import StockInfo

log = get_logger(__name__)

# (name, price, stock) seeded into an empty catalog when SEED_DEMO_CATALOG is set.
DEMO_PRODUCTS = (
    ("Catan", 29990, 10),
    ("Xbox Series X Controller", 59990, 25),
    ("HyperX Cloud II Headset", 79990, 15),
    ("PlayStation 5", 549990, 5),
)


class CatalogGateway:
    """
    SQLAlchemy implementation of the catalog collaborator.

    Each call runs in its own session and transaction.
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def check_availability(self, product_id: int, quantity: int) -> StockInfo:
        """
        Reports whether a product currently holds `quantity` units. Read-only.

        Args:
            product_id (int): Catalog product id.
            quantity (int): Requested quantity.

        Returns:
            StockInfo: Availability, current stock, unit price and name.

        Raises:
            ProductNotFound: If the product does not exist.
        """
        with self.session_factory() as session:
            product = session.get(Product, product_id)
            if product is None:
                raise ProductNotFound(product_id)
            return StockInfo(
                product_id=product.id,
                available=product.stock >= quantity,
                current_stock=product.stock,
                unit_price=product.price,
                name=product.name,
            )

    def adjust_stock(self, product_id: int, delta: int) -> int:
        """
        Atomically adds `delta` to a product's stock.

        Args:
            product_id (int): Catalog product id.
            delta (int): Positive to restock, negative to consume.

        Returns:
            int: The stock after the adjustment.

        Raises:
            InsufficientStock: If the adjustment would leave the stock negative.
            ProductNotFound: If the product does not exist.
        """
        with self.session_factory() as session:
            with session.begin():
                result = session.execute(
                    sa.update(Product)
                    .where(Product.id == product_id, Product.stock + delta >= 0)
                    .values(stock=Product.stock + delta)
                )
                stock = session.execute(
                    sa.select(Product.stock).where(Product.id == product_id)
                ).scalar_one_or_none()

        if stock is None:
            raise ProductNotFound(product_id)
        if (result.rowcount or 0) == 0:
            log.warning(f"Stock adjustment refused | product_id={product_id} delta={delta} stock={stock}")
            raise InsufficientStock(product_id, requested=-delta, available=stock)

        log.info(f"Stock adjusted | product_id={product_id} delta={delta} new_stock={stock}")
        return stock

    def add_product(self, name: str, price: int, stock: int) -> int:
        """Inserts a product and returns its id."""
        with self.session_factory() as session:
            with session.begin():
                product = Product(name=name, price=price, stock=stock)
                session.add(product)
                session.flush()
                return product.id

    def get_stock(self, product_id: int) -> int:
        return self.check_availability(product_id, 0).current_stock

    def seed_demo_catalog(self, products: Iterable[Tuple[str, int, int]] = DEMO_PRODUCTS) -> int:
        """
        Seeds products into an empty catalog.

        Returns:
            int: Number of products inserted (0 if the catalog already had data).
        """
        products = tuple(products)
        with self.session_factory() as session:
            with session.begin():
                count = session.execute(sa.select(sa.func.count(Product.id))).scalar_one()
                if count:
                    return 0
                session.add_all([Product(name=name, price=price, stock=stock) for name, price, stock in products])
        log.info("Demo catalog seeded.")
        return len(products)
