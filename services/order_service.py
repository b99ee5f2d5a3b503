"""Order lifecycle: creation, payment verification, cancellation and admin edits."""
import logging
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

import redis
from opentelemetry import trace
from sqlalchemy import select, update
from sqlalchemy.orm import Session, selectinload

from auth import (
    PURPOSE_ORDER_VERIFICATION,
    PURPOSE_TRUSTED_PAYMENT,
    TokenExpiredError,
    create_token,
    decode_token,
    decode_unverified,
)
from cache import CacheKeys, CacheService, CacheTTL
from config import APP_URL, MAX_PENDING_ORDERS, TRUSTED_PAYMENT_EXPIRES_DAYS
from errors import AuthenticationError, InternalError, NotFoundError, ValidationError
from invoice import generate_invoice, invoice_filename
from mailer import order_completed_email, order_verification_email
from models import Order, OrderItem, OrderStatus, Product, User, utcnow
from monitoring import (
    order_total_histogram,
    orders_cancelled_counter,
    orders_completed_counter,
    orders_created_counter,
)
from queues.cart_cleanup import CartCleanupQueue
from queues.email_queue import EmailQueue
from queues.order_expiration import EXPIRATION_WINDOW, OrderExpirationScheduler
from schemas import OrderResponse
from services.inventory_service import InventoryService
from services.user_service import UserService

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")

CANCELLED_ORDER_MESSAGE = (
    "Order has been cancelled. Orders are cancelled automatically when payment is not "
    "verified within {minutes} minutes or the balance is insufficient, or when cancelled on request."
)


class OrderService:
    """
    Service for managing orders.

    Pending orders hold no stock or balance. Both are taken when payment is
    confirmed: at creation for trusted payments, at email verification otherwise.
    Every status transition is a conditional UPDATE on status = 'pending', so
    racing completions and cancellations settle an order exactly once.
    """

    def __init__(
        self,
        inventory: InventoryService,
        users: UserService,
        cache: CacheService,
        expiration_scheduler: OrderExpirationScheduler,
        cart_cleanup_queue: CartCleanupQueue,
        email_queue: EmailQueue,
        expiry_window: timedelta = EXPIRATION_WINDOW,
        max_pending_orders: int = MAX_PENDING_ORDERS,
    ):
        """
        Initialize order service.

        Args:
            inventory: Stock ledger
            users: User service, owner of the balance ledger
            cache: Cache port for order lists
            expiration_scheduler: Schedules expiration checks for pending orders
            cart_cleanup_queue: Queue for sold-out cart cleanup
            email_queue: Queue for verification and invoice emails
            expiry_window: How long a pending order waits for verification
            max_pending_orders: Pending orders a user may hold outside the trusted path
        """
        self.inventory = inventory
        self.users = users
        self.cache = cache
        self.expiration_scheduler = expiration_scheduler
        self.cart_cleanup_queue = cart_cleanup_queue
        self.email_queue = email_queue
        self.expiry_window = expiry_window
        self.max_pending_orders = max_pending_orders
        self.tracer = trace.get_tracer(__name__)

    @property
    def expiry_minutes(self) -> int:
        return int(self.expiry_window.total_seconds() // 60)

    # Creation

    async def create_order(
        self,
        db: Session,
        user_id: int,
        items: List[Dict[str, int]],
        has_trusted_payment: bool = False,
    ) -> Dict[str, Any]:
        """
        Create an order for the given lines.

        Args:
            db: Database session
            user_id: Buyer
            items: Dicts with product_id and quantity
            has_trusted_payment: Settle immediately instead of waiting for email verification

        Returns:
            Dict with order, requires_verification and, for pending orders, message

        Raises:
            ValidationError: Empty order, bad quantity, pending cap, stock or balance shortfall
            NotFoundError: If the user or any product does not exist
        """
        span = trace.get_current_span()
        span.set_attribute("user.id", user_id)
        span.set_attribute("order.trusted_payment", has_trusted_payment)

        lines = merge_lines(items)

        if not has_trusted_payment:
            pending = self._count_pending(db, user_id)
            if pending >= self.max_pending_orders:
                raise ValidationError(
                    f"You have reached the limit of {self.max_pending_orders} pending orders. "
                    "Verify or cancel an existing order before creating a new one."
                )

        user = self.users.get_user(db, user_id)
        products = self._load_products(db, lines)
        order_items, total = self._price_lines(products, lines)

        if Decimal(user.balance) < total:
            raise ValidationError(
                f"Insufficient balance. Required: ${total}, Available: ${Decimal(user.balance).quantize(CENT)}"
            )

        if has_trusted_payment:
            return await self._create_settled_order(db, user, order_items, lines, total)
        return await self._create_pending_order(db, user, order_items, total)

    async def _create_settled_order(
        self,
        db: Session,
        user: User,
        order_items: List[OrderItem],
        lines: Dict[int, int],
        total: Decimal,
    ) -> Dict[str, Any]:
        try:
            with self.tracer.start_as_current_span("db.transaction.create_order") as db_span:
                db_span.set_attribute("db.operation", "INSERT")
                db_span.set_attribute("db.table", "orders")
                db_span.set_attribute("user.id", user.id)
                db_span.set_attribute("order.total", float(total))

                self.users.deduct_balance(db, user.id, total)
                exhausted = self.inventory.decrement(db, lines)

                order = Order(
                    user_id=user.id,
                    total=total,
                    status=OrderStatus.COMPLETED,
                    created_at=utcnow(),
                    items=order_items,
                )
                db.add(order)
                db.commit()
                db_span.set_attribute("order.id", order.id)
        except Exception:
            db.rollback()
            raise

        orders_created_counter.add(1, {"path": "trusted"})
        orders_completed_counter.add(1, {"path": "trusted"})
        order_total_histogram.record(float(total), {"status": OrderStatus.COMPLETED.value})
        logger.info("Order created with trusted payment", extra={
            "order_id": order.id,
            "user_id": user.id,
            "total": str(total),
        })

        await self._after_settlement(db, order, lines, exhausted)
        return {"order": order, "requires_verification": False}

    async def _create_pending_order(
        self,
        db: Session,
        user: User,
        order_items: List[OrderItem],
        total: Decimal,
    ) -> Dict[str, Any]:
        try:
            with self.tracer.start_as_current_span("db.transaction.create_order") as db_span:
                db_span.set_attribute("db.operation", "INSERT")
                db_span.set_attribute("db.table", "orders")
                db_span.set_attribute("user.id", user.id)
                db_span.set_attribute("order.total", float(total))

                order = Order(
                    user_id=user.id,
                    total=total,
                    status=OrderStatus.PENDING,
                    created_at=utcnow(),
                    items=order_items,
                )
                db.add(order)
                db.commit()
                db_span.set_attribute("order.id", order.id)
        except Exception:
            db.rollback()
            raise

        await self._invalidate_user_orders(user.id)

        token = create_token(
            {"order_id": order.id, "user_id": user.id},
            PURPOSE_ORDER_VERIFICATION,
            self.expiry_window,
        )

        try:
            await self.expiration_scheduler.schedule_order_expiration(order.id, user.id, order.created_at)
        except redis.RedisError as e:
            await self._abandon_pending_order(db, order, "scheduling_failed", e)
            raise

        verification_link = f"{APP_URL}/auth/verify-order?token={token}"
        email = order_verification_email(
            user.name,
            order.id,
            order.total,
            [
                {"name": item.product.name, "quantity": item.quantity, "unit_price": item.unit_price}
                for item in order.items
            ],
            verification_link,
            f"{verification_link}&remember=true",
            self.expiry_minutes,
        )
        try:
            await self.email_queue.queue_email(
                user.email, email["subject"], email["html"], email["text"], urgent=True
            )
        except redis.RedisError as e:
            await self._abandon_pending_order(db, order, "notification_failed", e)
            raise

        orders_created_counter.add(1, {"path": "verification"})
        order_total_histogram.record(float(total), {"status": OrderStatus.PENDING.value})
        logger.info("Order created, awaiting payment verification", extra={
            "order_id": order.id,
            "user_id": user.id,
            "total": str(total),
        })

        return {
            "order": order,
            "requires_verification": True,
            "message": f"Order created. Check your email to verify the payment within {self.expiry_minutes} minutes.",
        }

    async def _abandon_pending_order(self, db: Session, order: Order, reason: str, error: Exception) -> None:
        """Cancel a just-created pending order whose expiration job or verification email could not be queued."""
        logger.error("Failed to set up pending order, cancelling it", extra={
            "order_id": order.id,
            "reason": reason,
            "error": str(error),
        })
        if self._transition(db, order.id, OrderStatus.CANCELLED):
            db.commit()
            orders_cancelled_counter.add(1, {"reason": reason})
        db.refresh(order)

        try:
            await self.expiration_scheduler.cancel_order_expiration_job(order.id)
        except redis.RedisError as e:
            logger.error("Failed to remove expiration job", extra={"order_id": order.id, "error": str(e)})
        await self._invalidate_user_orders(order.user_id)

    # Payment verification

    async def verify_order_token(self, db: Session, token: str, remember: bool = False) -> Dict[str, Any]:
        """
        Complete the order named by an emailed verification token.

        An expired token cancels its order.

        Raises:
            AuthenticationError: If the token is invalid or expired
        """
        try:
            claims = decode_token(token, PURPOSE_ORDER_VERIFICATION)
        except TokenExpiredError:
            # Signature was valid, only the expiry failed
            order_id = decode_unverified(token).get("order_id")
            if order_id is not None:
                await self.cancel_order(db, order_id)
            raise AuthenticationError("Verification link expired. Order has been cancelled.")
        except AuthenticationError:
            raise AuthenticationError("Invalid verification token")

        result = await self.complete_order_payment(db, claims["order_id"], claims["user_id"])

        if remember:
            result["trusted_payment_token"] = create_token(
                {"user_id": claims["user_id"]},
                PURPOSE_TRUSTED_PAYMENT,
                timedelta(days=TRUSTED_PAYMENT_EXPIRES_DAYS),
            )
        return result

    @staticmethod
    def is_trusted_payment(token: Optional[str], user_id: int) -> bool:
        """Whether token is a valid trusted-payment token for this user."""
        if not token:
            return False
        try:
            claims = decode_token(token, PURPOSE_TRUSTED_PAYMENT)
        except AuthenticationError:
            return False
        return claims.get("user_id") == user_id

    async def complete_order_payment(self, db: Session, order_id: int, user_id: int) -> Dict[str, Any]:
        """
        Settle a pending order: take balance and stock, then mark it completed.

        A shortfall of either cancels the order before the error is raised.

        Returns:
            Dict with message, order and already_completed

        Raises:
            NotFoundError: If the order does not exist
            ValidationError: Wrong user, cancelled order, stock or balance shortfall
        """
        order = self.get_order_by_id(db, order_id)
        if order.user_id != user_id:
            raise ValidationError("Order does not belong to this user")

        if order.status == OrderStatus.COMPLETED:
            return {"message": "Order already verified", "order": order, "already_completed": True}
        if order.status == OrderStatus.CANCELLED:
            raise ValidationError(CANCELLED_ORDER_MESSAGE.format(minutes=self.expiry_minutes))

        lines = lines_of(order)
        try:
            with self.tracer.start_as_current_span("db.transaction.complete_order") as db_span:
                db_span.set_attribute("db.operation", "UPDATE")
                db_span.set_attribute("db.table", "orders")
                db_span.set_attribute("order.id", order_id)

                self.users.deduct_balance(db, user_id, order.total)
                exhausted = self.inventory.decrement(db, lines)
                # Stock is flushed before the status flips
                db.flush()
                completed = self._transition(db, order_id, OrderStatus.COMPLETED)
                if completed:
                    db.commit()
                else:
                    db.rollback()
        except ValidationError as e:
            db.rollback()
            await self._cancel_after_failed_settlement(db, order, str(e))
            raise
        except Exception:
            db.rollback()
            raise

        db.refresh(order)
        if not completed:
            # Another request settled or cancelled the order first
            if order.status == OrderStatus.COMPLETED:
                return {"message": "Order already verified", "order": order, "already_completed": True}
            raise ValidationError(CANCELLED_ORDER_MESSAGE.format(minutes=self.expiry_minutes))

        await self.expiration_scheduler.cancel_order_expiration_job(order_id)

        orders_completed_counter.add(1, {"path": "verification"})
        logger.info("Order payment verified", extra={
            "order_id": order_id,
            "user_id": user_id,
            "total": str(order.total),
        })

        await self._after_settlement(db, order, lines, exhausted)
        return {"message": "Payment verified successfully", "order": order, "already_completed": False}

    async def _cancel_after_failed_settlement(self, db: Session, order: Order, reason: str) -> None:
        if self._transition(db, order.id, OrderStatus.CANCELLED):
            db.commit()
            orders_cancelled_counter.add(1, {"reason": "settlement_failed"})
            logger.warning("Order cancelled at verification", extra={"order_id": order.id, "reason": reason})
        else:
            db.rollback()
        db.refresh(order)
        await self.expiration_scheduler.cancel_order_expiration_job(order.id)
        await self._invalidate_user_orders(order.user_id)

    async def _after_settlement(
        self,
        db: Session,
        order: Order,
        lines: Dict[int, int],
        exhausted: List[Product],
    ) -> None:
        """Cache invalidation, sold-out cleanup and the invoice email. None of it can fail the order."""
        await self.inventory.invalidate(lines)
        await self.users.invalidate(order.user_id)
        await self._invalidate_user_orders(order.user_id)
        await self._queue_cart_cleanup(exhausted, order.id)
        await self._send_invoice(db, order)

    async def _queue_cart_cleanup(self, exhausted: List[Product], order_id: int) -> None:
        if not exhausted:
            return
        try:
            await self.cart_cleanup_queue.queue_cart_cleanup(
                [{"product_id": product.id, "product_name": product.name} for product in exhausted],
                order_id,
            )
        except redis.RedisError as e:
            logger.error("Failed to queue cart cleanup", extra={"order_id": order_id, "error": str(e)})

    async def _send_invoice(self, db: Session, order: Order) -> None:
        try:
            user = self.users.get_user(db, order.user_id)
            db.refresh(user)
            email = order_completed_email(
                user.name,
                order.id,
                order.created_at.strftime("%Y-%m-%d %H:%M UTC"),
                order.total,
                user.balance,
            )
            try:
                attachments = [{
                    "filename": invoice_filename(order.id),
                    "content": generate_invoice(order, user),
                    "content_type": "application/pdf",
                }]
            except InternalError:
                # The email still goes out, without the PDF
                attachments = None
            await self.email_queue.queue_email(
                user.email, email["subject"], email["html"], email["text"], attachments
            )
        except Exception as e:
            logger.error("Failed to queue invoice email", extra={"order_id": order.id, "error": str(e)})

    # Cancellation

    async def cancel_order(self, db: Session, order_id: int) -> bool:
        """
        Cancel an unverified order once its verification window has passed.

        Returns:
            True if this call cancelled the order
        """
        order = db.get(Order, order_id, populate_existing=True)
        if order is None or order.status != OrderStatus.PENDING:
            return False

        elapsed = utcnow() - order.created_at
        if elapsed < self.expiry_window:
            logger.info("Order has not expired yet, not cancelling", extra={
                "order_id": order_id,
                "elapsed_seconds": int(elapsed.total_seconds()),
            })
            return False

        if not self._transition(db, order_id, OrderStatus.CANCELLED):
            db.rollback()
            return False
        db.commit()
        db.refresh(order)

        orders_cancelled_counter.add(1, {"reason": "expired"})
        await self._invalidate_user_orders(order.user_id)
        logger.info("Order cancelled after verification window expired", extra={"order_id": order_id})
        return True

    async def cancel_order_by_user(self, db: Session, order_id: int, user_id: int) -> Dict[str, Any]:
        """
        Raises:
            NotFoundError: If the order does not exist or belongs to someone else
            ValidationError: If the order is no longer pending
        """
        order = db.get(Order, order_id, populate_existing=True)
        if order is None or order.user_id != user_id:
            raise NotFoundError("Order")
        if order.status != OrderStatus.PENDING:
            raise ValidationError(f"This order cannot be cancelled. Current status: {order.status.value}")

        await self.expiration_scheduler.cancel_order_expiration_job(order_id)

        if not self._transition(db, order_id, OrderStatus.CANCELLED):
            db.rollback()
            db.refresh(order)
            raise ValidationError(f"This order cannot be cancelled. Current status: {order.status.value}")
        db.commit()
        db.refresh(order)

        orders_cancelled_counter.add(1, {"reason": "user"})
        await self._invalidate_user_orders(user_id)
        logger.info("Order cancelled by user", extra={"order_id": order_id, "user_id": user_id})
        return {"message": "Order cancelled successfully", "order": order}

    async def cancel_all_expired_orders(self, db: Session) -> int:
        """
        Cancel every pending order older than the verification window.

        Catches up on expiration checks lost while the service was down.

        Returns:
            Number of orders cancelled
        """
        cutoff = utcnow() - self.expiry_window
        rows = db.execute(
            select(Order.id, Order.user_id).where(
                Order.status == OrderStatus.PENDING,
                Order.created_at <= cutoff,
            )
        ).all()
        if not rows:
            return 0

        order_ids = [order_id for order_id, _ in rows]
        result = db.execute(
            update(Order)
            .where(Order.id.in_(order_ids), Order.status == OrderStatus.PENDING)
            .values(status=OrderStatus.CANCELLED, cancelled_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        db.commit()
        cancelled = result.rowcount

        for order_id, user_id in rows:
            await self.expiration_scheduler.cancel_order_expiration_job(order_id)
            await self._invalidate_user_orders(user_id)

        orders_cancelled_counter.add(cancelled, {"reason": "expired"})
        logger.info("Cancelled expired orders", extra={"count": cancelled})
        return cancelled

    # Admin operations

    async def update_order(
        self,
        db: Session,
        order_id: int,
        status: Optional[OrderStatus] = None,
        items: Optional[List[Dict[str, int]]] = None,
    ) -> Order:
        """
        Admin edit of an order's lines and/or status.

        Replacing the lines of a completed order gives back the old stock and
        takes the new; pending and cancelled orders hold no stock, so their
        new lines are only checked against what is available. Status is set
        as given, without transition rules.
        Forcing a non-completed order to completed this way takes no stock,
        so a later delete of that order restores stock that was never taken.

        Raises:
            NotFoundError: If the order or a product does not exist
            ValidationError: If a new line exceeds available stock
        """
        order = self.get_order_by_id(db, order_id)
        previous_status = order.status
        holds_stock = previous_status == OrderStatus.COMPLETED
        old_lines = lines_of(order)
        new_lines: Dict[int, int] = {}
        exhausted: List[Product] = []

        try:
            with self.tracer.start_as_current_span("db.transaction.update_order") as db_span:
                db_span.set_attribute("db.operation", "UPDATE")
                db_span.set_attribute("db.table", "orders")
                db_span.set_attribute("order.id", order_id)

                if items is not None:
                    new_lines = merge_lines(items)
                    if holds_stock:
                        self.inventory.restore(db, old_lines)

                    order.items.clear()
                    db.flush()

                    products = self._load_products(db, new_lines)
                    new_items, total = self._price_lines(products, new_lines)
                    if holds_stock:
                        exhausted = self.inventory.decrement(db, new_lines)

                    order.items.extend(new_items)
                    order.total = total

                if status is not None and status != previous_status:
                    order.status = status
                    order.cancelled_at = utcnow() if status == OrderStatus.CANCELLED else None

                db.commit()
        except Exception:
            db.rollback()
            raise

        db.refresh(order)
        if previous_status == OrderStatus.PENDING and order.status != OrderStatus.PENDING:
            await self.expiration_scheduler.cancel_order_expiration_job(order_id)
        if holds_stock and items is not None:
            await self.inventory.invalidate(set(old_lines) | set(new_lines))
            await self._queue_cart_cleanup(exhausted, order_id)
        await self._invalidate_user_orders(order.user_id)

        logger.info("Order updated", extra={
            "order_id": order_id,
            "status": order.status.value,
            "items_replaced": items is not None,
        })
        return order

    async def delete_order(self, db: Session, order_id: int) -> Dict[str, Any]:
        """
        Permanently delete an order, giving back its stock if it was completed.

        An order set to completed by an admin override never took stock, yet
        deleting it still gives stock back.

        Raises:
            NotFoundError: If the order does not exist
        """
        order = self.get_order_by_id(db, order_id)
        status = order.status
        user_id = order.user_id
        lines = lines_of(order)

        try:
            with self.tracer.start_as_current_span("db.transaction.delete_order") as db_span:
                db_span.set_attribute("db.operation", "DELETE")
                db_span.set_attribute("db.table", "orders")
                db_span.set_attribute("order.id", order_id)

                if status == OrderStatus.COMPLETED:
                    self.inventory.restore(db, lines)
                db.delete(order)
                db.commit()
        except Exception:
            db.rollback()
            raise

        if status == OrderStatus.PENDING:
            await self.expiration_scheduler.cancel_order_expiration_job(order_id)
        if status == OrderStatus.COMPLETED:
            await self.inventory.invalidate(lines)
        await self._invalidate_user_orders(user_id)

        logger.info("Order deleted", extra={"order_id": order_id, "status": status.value})
        message = "Order deleted successfully"
        if status == OrderStatus.COMPLETED:
            message += " and stock restored"
        return {"ok": True, "message": message}

    # Queries

    def get_order_by_id(self, db: Session, order_id: int) -> Order:
        """
        Raises:
            NotFoundError: If the order does not exist
        """
        with self.tracer.start_as_current_span("db.query.get_order") as db_span:
            db_span.set_attribute("db.operation", "SELECT")
            db_span.set_attribute("db.table", "orders")
            db_span.set_attribute("order.id", order_id)

            order = db.execute(
                select(Order)
                .where(Order.id == order_id)
                .options(selectinload(Order.items).selectinload(OrderItem.product))
                .execution_options(populate_existing=True)
            ).scalar_one_or_none()

            db_span.set_attribute("db.rows_returned", 0 if order is None else 1)

        if order is None:
            raise NotFoundError("Order")
        return order

    def list_all_orders(
        self,
        db: Session,
        user_id: Optional[int] = None,
        status: Optional[OrderStatus] = None,
        min_total: Optional[Decimal] = None,
        max_total: Optional[Decimal] = None,
    ) -> List[Order]:
        query = select(Order).options(selectinload(Order.items).selectinload(OrderItem.product))
        if user_id is not None:
            query = query.where(Order.user_id == user_id)
        if status is not None:
            query = query.where(Order.status == status)
        if min_total is not None:
            query = query.where(Order.total >= min_total)
        if max_total is not None:
            query = query.where(Order.total <= max_total)

        with self.tracer.start_as_current_span("db.query.list_orders") as db_span:
            db_span.set_attribute("db.operation", "SELECT")
            db_span.set_attribute("db.table", "orders")
            orders = list(db.execute(query.order_by(Order.created_at.desc(), Order.id.desc())).scalars())
            db_span.set_attribute("db.rows_returned", len(orders))
        return orders

    async def get_user_orders(self, db: Session, user_id: int) -> List[OrderResponse]:
        """A user's orders, newest first, read through the cache."""
        cache_key = CacheKeys.user_orders(user_id)
        cached = await self.cache.get(cache_key)
        if cached is not None:
            return [OrderResponse.model_validate(order) for order in cached]

        orders = [OrderResponse.from_order(order) for order in self.list_all_orders(db, user_id=user_id)]
        await self.cache.set(cache_key, [order.model_dump(mode="json") for order in orders], CacheTTL.ORDERS_LIST)
        return orders

    # Helpers

    def _transition(self, db: Session, order_id: int, to_status: OrderStatus) -> bool:
        """Move a pending order to to_status; False if it was no longer pending."""
        values: Dict[str, Any] = {"status": to_status}
        if to_status == OrderStatus.CANCELLED:
            values["cancelled_at"] = utcnow()

        result = db.execute(
            update(Order)
            .where(Order.id == order_id, Order.status == OrderStatus.PENDING)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def _count_pending(self, db: Session, user_id: int) -> int:
        return db.query(Order).filter(
            Order.user_id == user_id,
            Order.status == OrderStatus.PENDING,
        ).count()

    def _load_products(self, db: Session, product_ids: Iterable[int]) -> Dict[int, Product]:
        """
        Fresh read of every product in one query.

        Raises:
            NotFoundError: For the first id with no product
        """
        product_ids = list(product_ids)
        with self.tracer.start_as_current_span("db.query.get_products") as db_span:
            db_span.set_attribute("db.operation", "SELECT")
            db_span.set_attribute("db.table", "products")

            products = {
                product.id: product
                for product in db.execute(
                    select(Product)
                    .where(Product.id.in_(product_ids))
                    .execution_options(populate_existing=True)
                ).scalars()
            }
            db_span.set_attribute("db.rows_returned", len(products))

        for product_id in product_ids:
            if product_id not in products:
                raise NotFoundError(f"Product with ID {product_id}")
        return products

    def _price_lines(self, products: Dict[int, Product], lines: Dict[int, int]):
        """Check stock and snapshot prices; returns (order items, total)."""
        order_items = []
        total = Decimal("0.00")
        for product_id, quantity in lines.items():
            product = products[product_id]
            self.inventory.check_available(product, quantity)
            unit_price = Decimal(product.price).quantize(CENT)
            order_items.append(OrderItem(product=product, quantity=quantity, unit_price=unit_price))
            total += unit_price * quantity
        return order_items, total.quantize(CENT)

    async def _invalidate_user_orders(self, user_id: Optional[int]) -> None:
        if user_id is not None:
            await self.cache.delete(CacheKeys.user_orders(user_id))


def merge_lines(items: List[Dict[str, int]]) -> Dict[int, int]:
    """
    Collapse order lines into product_id -> quantity, preserving first-seen order.

    Raises:
        ValidationError: If there are no lines or a quantity is not positive
    """
    if not items:
        raise ValidationError("Order must contain at least one item")

    lines: Dict[int, int] = {}
    for item in items:
        quantity = int(item["quantity"])
        if quantity <= 0:
            raise ValidationError("Quantity must be greater than 0")
        lines[item["product_id"]] = lines.get(item["product_id"], 0) + quantity
    return lines


def lines_of(order: Order) -> Dict[int, int]:
    lines: Dict[int, int] = {}
    for item in order.items:
        lines[item.product_id] = lines.get(item.product_id, 0) + item.quantity
    return lines
