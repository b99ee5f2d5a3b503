"""Delayed expiration checks for orders awaiting payment verification."""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict

import redis
from sqlalchemy.orm import Session

from config import ORDER_VERIFICATION_EXPIRY_MINUTES
from models import Order, OrderStatus, utcnow
from queues.job_queue import Job, JobHandler, JobQueue

logger = logging.getLogger(__name__)

ORDER_EXPIRATION_QUEUE = "order-expiration"
EXPIRATION_WINDOW = timedelta(minutes=ORDER_VERIFICATION_EXPIRY_MINUTES)


def expiration_job_id(order_id: int) -> str:
    return f"order-expiration-{order_id}"


class OrderExpirationScheduler:
    """Schedules and withdraws the one expiration check each pending order gets."""

    def __init__(self, queue: JobQueue, window: timedelta = EXPIRATION_WINDOW):
        self.queue = queue
        self.window = window

    async def schedule_order_expiration(self, order_id: int, user_id: int, created_at: datetime) -> str:
        """
        Schedule the expiration check to fire one window after the order was created.

        Re-scheduling an order whose check is still queued is a no-op.

        Raises:
            redis.RedisError: If the job could not be queued
        """
        fire_at = created_at.replace(tzinfo=timezone.utc) + self.window
        delay = max(fire_at.timestamp() - self.queue.clock(), 0.0)

        job_id = await self.queue.enqueue(
            "check-expiration",
            {"order_id": order_id, "user_id": user_id, "created_at": created_at.isoformat()},
            delay=delay,
            job_id=expiration_job_id(order_id),
        )
        logger.info("Scheduled order expiration check", extra={
            "order_id": order_id,
            "delay_seconds": round(delay, 1),
        })
        return job_id

    async def cancel_order_expiration_job(self, order_id: int) -> bool:
        """
        Withdraw the scheduled check if it has not started yet.

        A check that already fired, or is running, re-reads the order and
        finds it no longer pending, so failing to withdraw it is harmless.
        """
        try:
            removed = await self.queue.remove(expiration_job_id(order_id))
        except redis.RedisError as e:
            logger.error("Failed to cancel expiration job", extra={"order_id": order_id, "error": str(e)})
            return False

        if removed:
            logger.info("Cancelled expiration job", extra={"order_id": order_id})
        return removed


def make_expiration_handler(
    order_service,
    session_factory: Callable[[], Session],
    window: timedelta = EXPIRATION_WINDOW,
) -> JobHandler:
    """
    Build the worker handler for expiration checks.

    The handler trusts nothing about delivery timing: it re-reads the order and
    only cancels one that is still pending and at least one window old.
    Skips complete the job; only unexpected errors are retried.
    """

    async def check_expiration(job: Job) -> Dict[str, Any]:
        order_id = job.data["order_id"]
        logger.info("Processing order expiration check", extra={"order_id": order_id, "job_id": job.id})

        db = session_factory()
        try:
            order = db.get(Order, order_id, populate_existing=True)
            if order is None:
                logger.info("Order no longer exists, skipping cancellation", extra={"order_id": order_id})
                return {"skipped": True, "reason": "Order not found"}

            if order.status != OrderStatus.PENDING:
                logger.info("Order is no longer pending, skipping cancellation", extra={
                    "order_id": order_id,
                    "status": order.status.value,
                })
                return {"skipped": True, "reason": f"Order status is {order.status.value}"}

            elapsed = utcnow() - order.created_at
            minutes_passed = round(elapsed.total_seconds() / 60, 2)
            if elapsed < window:
                logger.info("Order has not expired yet, skipping cancellation", extra={
                    "order_id": order_id,
                    "minutes_passed": minutes_passed,
                })
                return {"skipped": True, "reason": "Order not expired yet"}

            cancelled = await order_service.cancel_order(db, order_id)
            return {"cancelled": cancelled, "order_id": order_id, "minutes_passed": minutes_passed}
        finally:
            db.close()

    return check_expiration
