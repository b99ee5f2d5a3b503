"""Main application entry point."""
import logging
from contextlib import asynccontextmanager
from typing import Callable, List

import redis.asyncio as aioredis
import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.redis import RedisInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from sqlalchemy.orm import Session

from cache import CacheService
from config import API_VERSION, OTEL_ENABLED, REDIS_URL, WORKERS_ENABLED
from database import SessionLocal, engine, init_db
from errors import register_exception_handlers
from logging_config import setup_logging
from mailer import Mailer
from monitoring import init_metrics, init_tracing
from queues.cart_cleanup import CART_CLEANUP_QUEUE, CartCleanupProcessor, CartCleanupQueue
from queues.email_queue import EMAIL_QUEUE, EmailQueue, make_email_handler
from queues.job_queue import JobQueue, JobWorker
from queues.order_expiration import ORDER_EXPIRATION_QUEUE, OrderExpirationScheduler, make_expiration_handler
from routers import auth as auth_router
from routers import cart, orders, products, users
from services.auth_service import AuthService
from services.cart_repository import CartRepository
from services.cart_service import CartService
from services.inventory_service import InventoryService
from services.order_service import OrderService
from services.product_service import ProductService
from services.user_service import UserService

# Setup structured logging
setup_logging()
logger = logging.getLogger(__name__)


def build_services(
    state,
    redis_client: aioredis.Redis,
    mailer: Mailer,
    session_factory: Callable[[], Session] = SessionLocal,
) -> List[JobWorker]:
    """
    Construct the services and queues, attach them to app state and return the workers.

    Workers are returned unstarted.
    """
    cache = CacheService(redis_client)

    email_jobs = JobQueue(redis_client, EMAIL_QUEUE)
    expiration_jobs = JobQueue(redis_client, ORDER_EXPIRATION_QUEUE)
    cleanup_jobs = JobQueue(redis_client, CART_CLEANUP_QUEUE)

    email_queue = EmailQueue(email_jobs)
    carts = CartRepository(redis_client)

    user_service = UserService(cache, email_queue)
    order_service = OrderService(
        inventory=InventoryService(cache),
        users=user_service,
        cache=cache,
        expiration_scheduler=OrderExpirationScheduler(expiration_jobs),
        cart_cleanup_queue=CartCleanupQueue(cleanup_jobs),
        email_queue=email_queue,
    )

    state.redis_client = redis_client
    state.user_service = user_service
    state.auth_service = AuthService(user_service, email_queue)
    state.product_service = ProductService(cache)
    state.order_service = order_service
    state.cart_service = CartService(carts, order_service)

    return [
        JobWorker(email_jobs, make_email_handler(mailer)),
        JobWorker(expiration_jobs, make_expiration_handler(order_service, session_factory)),
        JobWorker(cleanup_jobs, CartCleanupProcessor(carts, session_factory, email_queue)),
    ]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Handles startup and shutdown events.
    """
    # Startup
    logger.info("Starting application...")

    if OTEL_ENABLED:
        init_tracing()
        init_metrics()
        RedisInstrumentor().instrument()

    # Initialize database
    init_db()

    redis_client = aioredis.from_url(REDIS_URL, decode_responses=True)
    workers = build_services(app.state, redis_client, Mailer())
    logger.info("Services initialized")

    # Catch up on expiration checks missed while the service was down
    db = SessionLocal()
    try:
        cancelled = await app.state.order_service.cancel_all_expired_orders(db)
    finally:
        db.close()
    logger.info("Startup expired-order sweep finished", extra={"cancelled": cancelled})

    if WORKERS_ENABLED:
        for worker in workers:
            worker.start()
    else:
        workers = []

    logger.info("Application startup complete")

    yield

    # Shutdown
    logger.info("Shutting down application...")
    for worker in workers:
        await worker.close()
    await redis_client.aclose()
    logger.info("Application shutdown complete")


# Create FastAPI app
app = FastAPI(
    title="Storefront Service",
    version=API_VERSION,
    lifespan=lifespan
)

register_exception_handlers(app)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Instrument FastAPI and SQLAlchemy
FastAPIInstrumentor.instrument_app(app)
SQLAlchemyInstrumentor().instrument(engine=engine)


# Health check endpoint
@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}


# Include routers
app.include_router(auth_router.router)
app.include_router(users.router)
app.include_router(products.router)
app.include_router(cart.router)
app.include_router(orders.router)


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
