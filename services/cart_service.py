"""Cart management service."""
import logging
from decimal import Decimal
from typing import Any, Dict

from opentelemetry import trace
from sqlalchemy import select
from sqlalchemy.orm import Session

from errors import NotFoundError, ValidationError
from models import Product, utcnow
from monitoring import cart_additions_counter
from schemas import Cart, CartLine, CartSummary, CartSummaryItem
from services.cart_repository import CartRepository
from services.order_service import OrderService

logger = logging.getLogger(__name__)


class CartService:
    """Service for managing shopping carts."""

    def __init__(self, carts: CartRepository, order_service: OrderService):
        """
        Initialize cart service.

        Args:
            carts: Redis cart storage
            order_service: Order service used by checkout
        """
        self.carts = carts
        self.order_service = order_service
        self.tracer = trace.get_tracer(__name__)

    async def get_cart(self, user_id: int) -> Cart:
        """The user's cart, or an empty unsaved one."""
        cart = await self.carts.get(user_id)
        if cart is None:
            cart = Cart(user_id=user_id, items=[], updated_at=utcnow())
        return cart

    async def get_cart_summary(self, db: Session, user_id: int) -> CartSummary:
        """
        Cart lines priced at current product prices.

        Lines whose product no longer exists are left out.
        """
        cart = await self.get_cart(user_id)
        product_ids = [line.product_id for line in cart.items]

        with self.tracer.start_as_current_span("db.query.get_products") as db_span:
            db_span.set_attribute("db.operation", "SELECT")
            db_span.set_attribute("db.table", "products")

            products = {
                product.id: product
                for product in db.execute(select(Product).where(Product.id.in_(product_ids))).scalars()
            }
            db_span.set_attribute("db.rows_returned", len(products))

        items = []
        total = Decimal("0.00")
        for line in cart.items:
            product = products.get(line.product_id)
            if product is None:
                continue
            subtotal = Decimal(product.price) * line.quantity
            total += subtotal
            items.append(CartSummaryItem(
                product_id=product.id,
                product_name=product.name,
                product_price=product.price,
                quantity=line.quantity,
                subtotal=subtotal,
            ))

        return CartSummary(
            user_id=user_id,
            items=items,
            total=total,
            item_count=sum(item.quantity for item in items),
            updated_at=cart.updated_at,
        )

    async def add_item(self, db: Session, user_id: int, product_id: int, quantity: int) -> Cart:
        """
        Add quantity of a product, merging with an existing line.

        Raises:
            ValidationError: If quantity is not positive or the merged quantity exceeds stock
            NotFoundError: If the product does not exist
        """
        span = trace.get_current_span()
        span.set_attribute("product.id", product_id)
        span.set_attribute("quantity", quantity)

        if quantity <= 0:
            raise ValidationError("Quantity must be greater than 0")

        product = self._get_product(db, product_id)
        cart = await self.get_cart(user_id)

        line = next((line for line in cart.items if line.product_id == product_id), None)
        merged = quantity + (line.quantity if line else 0)
        if merged > product.stock:
            raise ValidationError(
                f'Insufficient stock for product "{product.name}". '
                f"Available: {product.stock}, requested: {merged}"
            )

        if line:
            line.quantity = merged
        else:
            cart.items.append(CartLine(product_id=product_id, quantity=quantity, added_at=utcnow()))
        cart = await self.carts.save(cart)

        cart_additions_counter.add(1, {"product_id": str(product_id)})
        logger.info("Added product to cart", extra={
            "user_id": user_id,
            "product_id": product_id,
            "product_name": product.name,
            "quantity": quantity,
        })
        return cart

    async def update_item_quantity(self, db: Session, user_id: int, product_id: int, quantity: int) -> Cart:
        """
        Set a line's quantity.

        Raises:
            NotFoundError: If the product is not in the cart
            ValidationError: If quantity is not positive or exceeds stock
        """
        if quantity <= 0:
            raise ValidationError("Quantity must be greater than 0")

        cart = await self.get_cart(user_id)
        line = next((line for line in cart.items if line.product_id == product_id), None)
        if line is None:
            raise NotFoundError("Product in cart")

        product = self._get_product(db, product_id)
        if quantity > product.stock:
            raise ValidationError(
                f'Insufficient stock for product "{product.name}". '
                f"Available: {product.stock}, requested: {quantity}"
            )

        line.quantity = quantity
        return await self.carts.save(cart)

    async def remove_item(self, user_id: int, product_id: int) -> Cart:
        """
        Raises:
            NotFoundError: If the product is not in the cart
        """
        cart = await self.get_cart(user_id)
        remaining = [line for line in cart.items if line.product_id != product_id]
        if len(remaining) == len(cart.items):
            raise NotFoundError("Product in cart")

        cart.items = remaining
        if not remaining:
            await self.carts.delete(user_id)
            return cart
        return await self.carts.save(cart)

    async def clear_cart(self, user_id: int) -> None:
        await self.carts.delete(user_id)
        logger.info("Cart cleared", extra={"user_id": user_id})

    async def checkout(self, db: Session, user_id: int, has_trusted_payment: bool = False) -> Dict[str, Any]:
        """
        Turn the cart into an order and delete the cart.

        The cart is kept if order creation fails.

        Raises:
            ValidationError: If the cart is empty, plus anything create_order raises
        """
        cart = await self.carts.get(user_id)
        if cart is None or not cart.items:
            raise ValidationError("Cart is empty")

        result = await self.order_service.create_order(
            db,
            user_id,
            [{"product_id": line.product_id, "quantity": line.quantity} for line in cart.items],
            has_trusted_payment,
        )

        await self.carts.delete(user_id)
        logger.info("Checkout completed", extra={
            "user_id": user_id,
            "order_id": result["order"].id,
            "requires_verification": result["requires_verification"],
        })
        return result

    def _get_product(self, db: Session, product_id: int) -> Product:
        with self.tracer.start_as_current_span("db.query.get_product") as db_span:
            db_span.set_attribute("db.operation", "SELECT")
            db_span.set_attribute("db.table", "products")
            db_span.set_attribute("product.id", product_id)

            product = db.get(Product, product_id)
            db_span.set_attribute("db.rows_returned", 0 if product is None else 1)

        if product is None:
            raise NotFoundError("Product")
        return product
