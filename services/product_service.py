"""Product catalog service."""
import logging
from typing import List

from opentelemetry import trace
from sqlalchemy.orm import Session

from cache import CacheKeys, CacheService, CacheTTL
from errors import ConflictError, NotFoundError
from models import OrderItem, Product
from schemas import ProductCreate, ProductResponse, ProductUpdate

logger = logging.getLogger(__name__)


class ProductService:
    """Product CRUD with cache-aside reads."""

    def __init__(self, cache: CacheService):
        self.cache = cache
        self.tracer = trace.get_tracer(__name__)

    async def list_products(self, db: Session) -> List[ProductResponse]:
        cache_key = CacheKeys.all_products()
        cached = await self.cache.get(cache_key)
        if cached is not None:
            return [ProductResponse.model_validate(product) for product in cached]

        with self.tracer.start_as_current_span("db.query.list_products") as db_span:
            db_span.set_attribute("db.operation", "SELECT")
            db_span.set_attribute("db.table", "products")
            products = db.query(Product).order_by(Product.id).all()
            db_span.set_attribute("db.rows_returned", len(products))

        result = [ProductResponse.model_validate(product) for product in products]
        await self.cache.set(cache_key, [p.model_dump(mode="json") for p in result], CacheTTL.PRODUCTS_LIST)
        return result

    async def get_product(self, db: Session, product_id: int) -> ProductResponse:
        """
        Raises:
            NotFoundError: If the product does not exist
        """
        cache_key = CacheKeys.product(product_id)
        cached = await self.cache.get(cache_key)
        if cached is not None:
            return ProductResponse.model_validate(cached)

        result = ProductResponse.model_validate(self._get(db, product_id))
        await self.cache.set(cache_key, result.model_dump(mode="json"), CacheTTL.PRODUCT)
        return result

    async def create_product(self, db: Session, payload: ProductCreate) -> Product:
        product = Product(**payload.model_dump())
        db.add(product)
        db.commit()

        await self.cache.delete(CacheKeys.all_products())
        logger.info("Product created", extra={"product_id": product.id, "product_name": product.name})
        return product

    async def update_product(self, db: Session, product_id: int, payload: ProductUpdate) -> Product:
        product = self._get(db, product_id)
        for field, value in payload.model_dump(exclude_unset=True).items():
            setattr(product, field, value)
        db.commit()

        await self._invalidate(product_id)
        logger.info("Product updated", extra={"product_id": product_id})
        return product

    async def delete_product(self, db: Session, product_id: int) -> None:
        """
        Raises:
            NotFoundError: If the product does not exist
            ConflictError: If any order line references the product
        """
        product = self._get(db, product_id)
        if db.query(OrderItem.id).filter(OrderItem.product_id == product_id).first() is not None:
            raise ConflictError("Product is referenced by existing orders and cannot be deleted")

        db.delete(product)
        db.commit()

        await self._invalidate(product_id)
        logger.info("Product deleted", extra={"product_id": product_id})

    def _get(self, db: Session, product_id: int) -> Product:
        with self.tracer.start_as_current_span("db.query.get_product") as db_span:
            db_span.set_attribute("db.operation", "SELECT")
            db_span.set_attribute("db.table", "products")
            db_span.set_attribute("product.id", product_id)

            product = db.get(Product, product_id)
            db_span.set_attribute("db.rows_returned", 0 if product is None else 1)

        if product is None:
            raise NotFoundError("Product")
        return product

    async def _invalidate(self, product_id: int) -> None:
        await self.cache.delete(CacheKeys.product(product_id), CacheKeys.all_products())
