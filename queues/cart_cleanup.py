"""Removes sold-out products from every cart and tells the affected users."""
import logging
import uuid
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional

import redis
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import APP_URL
from mailer import products_out_of_stock_email
from models import Product, User
from monitoring import cart_cleanup_removals_counter
from queues.email_queue import EmailQueue
from queues.job_queue import Job, JobQueue
from services.cart_repository import CartRepository

logger = logging.getLogger(__name__)

CART_CLEANUP_QUEUE = "cart-cleanup"
CLEANUP_PRIORITY = 1


class CartCleanupQueue:
    """Producer side of the cart cleanup queue."""

    def __init__(self, queue: JobQueue):
        self.queue = queue

    async def queue_cart_cleanup(
        self,
        products: List[Dict[str, Any]],
        order_id: Optional[int] = None,
    ) -> Optional[str]:
        """
        Queue a cleanup for products that just reached zero stock.

        Args:
            products: Dicts with product_id and product_name
            order_id: Order whose settlement exhausted the stock

        Returns:
            Job id, or None when there was nothing to clean up
        """
        if not products:
            return None

        job_id = str(uuid.uuid4())
        await self.queue.enqueue(
            "cleanup-out-of-stock",
            {"job_id": job_id, "products": products, "order_id": order_id},
            job_id=job_id,
            priority=CLEANUP_PRIORITY,
        )
        logger.info("Cart cleanup queued", extra={
            "job_id": job_id,
            "order_id": order_id,
            "product_ids": [p["product_id"] for p in products],
        })
        return job_id


class CartCleanupProcessor:
    """
    Worker handler for cart cleanup jobs.

    Stock is re-read first: a product restocked since the job was queued is
    left in carts.
    """

    def __init__(
        self,
        carts: CartRepository,
        session_factory: Callable[[], Session],
        email_queue: EmailQueue,
        products_url: str = f"{APP_URL}/products",
    ):
        self.carts = carts
        self.session_factory = session_factory
        self.email_queue = email_queue
        self.products_url = products_url

    async def __call__(self, job: Job) -> Dict[str, Any]:
        candidates = job.data["products"]
        order_id = job.data.get("order_id")

        db = self.session_factory()
        try:
            sold_out = self._still_sold_out(db, candidates)
            if not sold_out:
                logger.info("No products still out of stock, nothing to clean up", extra={"job_id": job.id})
                return {
                    "job_id": job.id,
                    "affected_users": 0,
                    "products_processed": 0,
                    "products": [],
                    "order_id": order_id,
                }

            removals = await self._strip_carts(sold_out)
            for user_id, removed in removals.items():
                await self._notify(db, user_id, removed)
        finally:
            db.close()

        logger.info("Cart cleanup completed", extra={
            "job_id": job.id,
            "order_id": order_id,
            "affected_users": len(removals),
        })
        return {
            "job_id": job.id,
            "affected_users": len(removals),
            "products_processed": len(sold_out),
            "products": list(sold_out.values()),
            "order_id": order_id,
        }

    @staticmethod
    def _still_sold_out(db: Session, candidates: List[Dict[str, Any]]) -> Dict[int, str]:
        """Map product id -> name for candidates whose stock is still zero."""
        names = {c["product_id"]: c["product_name"] for c in candidates}
        rows = db.execute(select(Product.id, Product.stock).where(Product.id.in_(list(names)))).all()

        sold_out = {}
        for product_id, stock in rows:
            if stock == 0:
                sold_out[product_id] = names[product_id]
            else:
                logger.info("Product was restocked, skipping", extra={"product_id": product_id, "stock": stock})
        return sold_out

    async def _strip_carts(self, sold_out: Dict[int, str]) -> Dict[int, List[Dict[str, Any]]]:
        removals: Dict[int, List[Dict[str, Any]]] = defaultdict(list)

        async for cart in self.carts.scan_carts():
            kept = []
            for line in cart.items:
                if line.product_id in sold_out:
                    removals[cart.user_id].append({
                        "product_id": line.product_id,
                        "product_name": sold_out[line.product_id],
                        "quantity": line.quantity,
                    })
                else:
                    kept.append(line)

            if len(kept) == len(cart.items):
                continue

            if kept:
                cart.items = kept
                await self.carts.save(cart)
            else:
                await self.carts.delete(cart.user_id)

            cart_cleanup_removals_counter.add(len(removals[cart.user_id]))
            logger.info("Removed sold-out products from cart", extra={
                "user_id": cart.user_id,
                "removed": len(removals[cart.user_id]),
                "cart_deleted": not kept,
            })

        return removals

    async def _notify(self, db: Session, user_id: int, removed: List[Dict[str, Any]]) -> None:
        try:
            user = db.get(User, user_id)
        except SQLAlchemyError as e:
            logger.error("Failed to load user for cart cleanup notice", extra={"user_id": user_id, "error": str(e)})
            return

        if user is None or user.is_deleted:
            logger.warning("User not found, skipping cart cleanup notice", extra={"user_id": user_id})
            return

        email = products_out_of_stock_email(user.name, removed, self.products_url)
        try:
            await self.email_queue.queue_email(user.email, email["subject"], email["html"], email["text"])
        except redis.RedisError as e:
            logger.error("Failed to queue cart cleanup notice", extra={"user_id": user_id, "error": str(e)})
