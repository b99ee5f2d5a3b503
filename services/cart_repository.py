"""Redis storage for shopping carts."""
import logging
from typing import AsyncIterator, Optional

import redis.asyncio as aioredis
from opentelemetry import trace

from config import CART_TTL_SECONDS
from models import utcnow
from schemas import Cart

logger = logging.getLogger(__name__)

CART_KEY_PREFIX = "cart:"


def cart_key(user_id: int) -> str:
    return f"{CART_KEY_PREFIX}{user_id}"


class CartRepository:
    """
    Carts stored as JSON documents under cart:<user_id>.

    Redis is the only copy of a cart, so unlike the cache, errors propagate.
    """

    def __init__(self, redis_client: aioredis.Redis, ttl_seconds: int = CART_TTL_SECONDS):
        """
        Initialize cart repository.

        Args:
            redis_client: Async Redis client (decode_responses=True)
            ttl_seconds: Expiry refreshed on every write
        """
        self.redis = redis_client
        self.ttl_seconds = ttl_seconds
        self.tracer = trace.get_tracer(__name__)

    async def get(self, user_id: int) -> Optional[Cart]:
        key = cart_key(user_id)
        with self.tracer.start_as_current_span("cache.get") as span:
            span.set_attribute("cache.system", "redis")
            span.set_attribute("cache.operation", "GET")
            span.set_attribute("cache.key", key)

            raw = await self.redis.get(key)
            span.set_attribute("cache.hit", raw is not None)

        return Cart.model_validate_json(raw) if raw else None

    async def save(self, cart: Cart) -> Cart:
        """Persist the cart, stamping updated_at and refreshing its TTL."""
        cart.updated_at = utcnow()
        key = cart_key(cart.user_id)
        with self.tracer.start_as_current_span("cache.setex") as span:
            span.set_attribute("cache.system", "redis")
            span.set_attribute("cache.operation", "SETEX")
            span.set_attribute("cache.key", key)
            span.set_attribute("cache.ttl", self.ttl_seconds)

            await self.redis.setex(key, self.ttl_seconds, cart.model_dump_json())
        return cart

    async def delete(self, user_id: int) -> None:
        await self.redis.delete(cart_key(user_id))

    async def scan_carts(self) -> AsyncIterator[Cart]:
        """Iterate every stored cart; carts that expire mid-scan are skipped."""
        async for key in self.redis.scan_iter(match=f"{CART_KEY_PREFIX}*", count=100):
            raw = await self.redis.get(key)
            if raw is None:
                continue
            try:
                yield Cart.model_validate_json(raw)
            except ValueError as e:
                logger.warning("Skipping unreadable cart", extra={"key": key, "error": str(e)})
