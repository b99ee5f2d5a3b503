"""Inventory ledger: product stock reservation and restoration."""
import logging
from typing import Dict, Iterable, List

from opentelemetry import trace
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from cache import CacheKeys, CacheService
from errors import NotFoundError, ValidationError
from models import Product

logger = logging.getLogger(__name__)


def insufficient_stock_error(product: Product, requested: int) -> ValidationError:
    return ValidationError(
        f'Insufficient stock for product "{product.name}". '
        f"Available: {product.stock}, requested: {requested}"
    )


class InventoryService:
    """
    Stock mutations for order settlement.

    Every decrement is a conditional UPDATE, so concurrent orders for the same
    product can never drive stock below zero. Methods flush through the given
    session but never commit; the calling order operation owns the transaction.
    """

    def __init__(self, cache: CacheService):
        self.cache = cache
        self.tracer = trace.get_tracer(__name__)

    @staticmethod
    def check_available(product: Product, quantity: int) -> None:
        """
        Raises:
            ValidationError: If the product has fewer than quantity units
        """
        if product.stock < quantity:
            raise insufficient_stock_error(product, quantity)

    def decrement(self, db: Session, lines: Dict[int, int]) -> List[Product]:
        """
        Take stock for every line.

        Args:
            db: Database session
            lines: product_id -> quantity

        Returns:
            Products whose stock reached exactly zero

        Raises:
            ValidationError: If any product lacks the requested quantity
        """
        # Fixed lock order across transactions
        for product_id in sorted(lines):
            quantity = lines[product_id]
            with self.tracer.start_as_current_span("db.query.decrement_stock") as span:
                span.set_attribute("db.operation", "UPDATE")
                span.set_attribute("db.table", "products")
                span.set_attribute("product.id", product_id)

                result = db.execute(
                    update(Product)
                    .where(Product.id == product_id, Product.stock >= quantity)
                    .values(stock=Product.stock - quantity)
                    .execution_options(synchronize_session=False)
                )
                span.set_attribute("db.rows_affected", result.rowcount)

            if result.rowcount != 1:
                product = self._fresh_product(db, product_id)
                if product is None:
                    raise NotFoundError(f"Product with ID {product_id}")
                raise insufficient_stock_error(product, quantity)

        products = self._fresh_products(db, lines)
        exhausted = [product for product in products if product.stock == 0]
        if exhausted:
            logger.info("Products ran out of stock", extra={
                "product_ids": [product.id for product in exhausted],
            })
        return exhausted

    def restore(self, db: Session, lines: Dict[int, int]) -> None:
        """Give back stock taken for the given lines."""
        for product_id in sorted(lines):
            with self.tracer.start_as_current_span("db.query.restore_stock") as span:
                span.set_attribute("db.operation", "UPDATE")
                span.set_attribute("db.table", "products")
                span.set_attribute("product.id", product_id)

                db.execute(
                    update(Product)
                    .where(Product.id == product_id)
                    .values(stock=Product.stock + lines[product_id])
                    .execution_options(synchronize_session=False)
                )
        self._fresh_products(db, lines)

    async def invalidate(self, product_ids: Iterable[int]) -> None:
        keys = [CacheKeys.product(product_id) for product_id in set(product_ids)]
        await self.cache.delete(*keys, CacheKeys.all_products())

    @staticmethod
    def _fresh_product(db: Session, product_id: int):
        return db.execute(
            select(Product).where(Product.id == product_id).execution_options(populate_existing=True)
        ).scalar_one_or_none()

    @staticmethod
    def _fresh_products(db: Session, product_ids: Iterable[int]) -> List[Product]:
        return list(db.execute(
            select(Product)
            .where(Product.id.in_(list(product_ids)))
            .execution_options(populate_existing=True)
        ).scalars())
