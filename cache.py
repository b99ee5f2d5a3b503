"""Read-through cache helpers backed by Redis."""
import json
import logging
from typing import Any, Optional

import redis
import redis.asyncio as aioredis
from opentelemetry import trace

logger = logging.getLogger(__name__)


class CacheKeys:
    """Cache key builders for consistent key naming."""

    @staticmethod
    def user(user_id: int) -> str:
        return f"user:{user_id}"

    @staticmethod
    def product(product_id: int) -> str:
        return f"product:{product_id}"

    @staticmethod
    def all_products() -> str:
        return "products:all"

    @staticmethod
    def user_orders(user_id: int) -> str:
        return f"orders:user:{user_id}"


class CacheTTL:
    """Cache TTLs in seconds."""
    USER = 60 * 60
    PRODUCT = 5 * 60
    PRODUCTS_LIST = 5 * 60
    ORDER = 10 * 60
    ORDERS_LIST = 10 * 60


class CacheService:
    """
    Cache-aside port over Redis.

    Failures are logged and reported as misses so callers fall back to the
    database; a cache outage never fails a request.
    """

    def __init__(self, redis_client: aioredis.Redis):
        """
        Initialize cache service.

        Args:
            redis_client: Async Redis client
        """
        self.redis_client = redis_client
        self.tracer = trace.get_tracer(__name__)

    async def get(self, key: str) -> Optional[Any]:
        with self.tracer.start_as_current_span("cache.get") as span:
            span.set_attribute("cache.system", "redis")
            span.set_attribute("cache.key", key)
            try:
                cached = await self.redis_client.get(key)
            except redis.RedisError as e:
                logger.error("Cache GET error", extra={"key": key, "error": str(e)})
                return None
            span.set_attribute("cache.hit", cached is not None)
            if cached is None:
                return None
            return json.loads(cached)

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        try:
            await self.redis_client.setex(key, ttl_seconds, json.dumps(value, default=str))
            logger.debug("Cache SET", extra={"key": key, "ttl": ttl_seconds})
        except redis.RedisError as e:
            logger.error("Cache SET error", extra={"key": key, "error": str(e)})

    async def delete(self, *keys: str) -> None:
        if not keys:
            return
        try:
            await self.redis_client.delete(*keys)
            logger.debug("Cache DEL", extra={"keys": list(keys)})
        except redis.RedisError as e:
            logger.error("Cache DEL error", extra={"keys": list(keys), "error": str(e)})
