"""Pytest fixtures for storefront tests."""

import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["WORKERS_ENABLED"] = "false"
os.environ["OTEL_ENABLED"] = "false"

import time
from datetime import timedelta
from decimal import Decimal
from types import SimpleNamespace

import fakeredis
import pytest
from sqlalchemy import update

from auth import hash_password
from database import SessionLocal, engine
from models import Base, Order, Product, User, UserRole


class FakeClock:
    """Epoch-seconds clock that only moves when told to."""

    def __init__(self):
        self.now = time.time()

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingMailer:
    """Mailer that keeps sent messages instead of talking to SMTP."""

    def __init__(self):
        self.sent = []
        self.fail_with = None

    async def send(self, to, subject, html, text, attachments=None):
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append({"to": to, "subject": subject, "html": html, "text": text, "attachments": attachments})


@pytest.fixture(autouse=True)
def tables():
    """Fresh schema per test."""
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture
async def redis_client():
    client = fakeredis.aioredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def app_services(redis_client, mailer, clock):
    """Services wired as in the application, with workers on a fake clock."""
    from main import build_services

    state = SimpleNamespace()
    workers = build_services(state, redis_client, mailer, SessionLocal)
    for worker in workers:
        worker.queue.clock = clock
    state.email_worker, state.expiration_worker, state.cleanup_worker = workers
    return state


@pytest.fixture
def make_user(db):
    def _make_user(email="buyer@example.com", balance="1000.00", role=UserRole.USER, name="Buyer"):
        user = User(
            name=name,
            email=email,
            password_hash=hash_password("password123"),
            balance=Decimal(balance),
            role=role,
            email_verified=True,
        )
        db.add(user)
        db.commit()
        return user

    return _make_user


@pytest.fixture
def make_product(db):
    def _make_product(name="Widget", price="10.00", stock=10):
        product = Product(name=name, description=f"{name} description", price=Decimal(price), stock=stock)
        db.add(product)
        db.commit()
        return product

    return _make_product


@pytest.fixture
def backdate_order(db):
    """Move an order's created_at into the past."""

    def _backdate(order_id, minutes=6):
        order = db.get(Order, order_id)
        db.execute(
            update(Order)
            .where(Order.id == order_id)
            .values(created_at=order.created_at - timedelta(minutes=minutes))
        )
        db.commit()

    return _backdate


def stock_of(db, product_id):
    return db.get(Product, product_id, populate_existing=True).stock


def balance_of(db, user_id):
    return db.get(User, user_id, populate_existing=True).balance
