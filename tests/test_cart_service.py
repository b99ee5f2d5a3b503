"""Tests for carts and checkout."""

from decimal import Decimal

import pytest
import redis

from conftest import stock_of
from errors import NotFoundError, ValidationError
from models import Order, OrderStatus
from services.cart_repository import cart_key


@pytest.fixture
def carts(app_services):
    return app_services.cart_service


class TestCartItems:
    async def test_add_creates_cart_with_ttl(self, db, carts, make_user, make_product, redis_client):
        user = make_user()
        product = make_product(stock=5)

        cart = await carts.add_item(db, user.id, product.id, 2)

        assert [(line.product_id, line.quantity) for line in cart.items] == [(product.id, 2)]
        ttl = await redis_client.ttl(cart_key(user.id))
        assert 0 < ttl <= 7 * 24 * 60 * 60

    async def test_adding_same_product_merges(self, db, carts, make_user, make_product):
        user = make_user()
        product = make_product(stock=5)

        await carts.add_item(db, user.id, product.id, 2)
        cart = await carts.add_item(db, user.id, product.id, 3)

        assert [(line.product_id, line.quantity) for line in cart.items] == [(product.id, 5)]

    async def test_merged_quantity_limited_by_stock(self, db, carts, make_user, make_product):
        user = make_user()
        product = make_product(stock=4)
        await carts.add_item(db, user.id, product.id, 3)

        with pytest.raises(ValidationError, match="requested: 5"):
            await carts.add_item(db, user.id, product.id, 2)

    async def test_unknown_product(self, db, carts, make_user):
        user = make_user()
        with pytest.raises(NotFoundError):
            await carts.add_item(db, user.id, 999, 1)

    async def test_update_quantity(self, db, carts, make_user, make_product):
        user = make_user()
        product = make_product(stock=5)
        await carts.add_item(db, user.id, product.id, 1)

        cart = await carts.update_item_quantity(db, user.id, product.id, 4)

        assert cart.items[0].quantity == 4

    async def test_update_missing_line(self, db, carts, make_user, make_product):
        user = make_user()
        product = make_product()
        with pytest.raises(NotFoundError):
            await carts.update_item_quantity(db, user.id, product.id, 1)

    async def test_removing_last_line_deletes_cart(self, db, carts, make_user, make_product, redis_client):
        user = make_user()
        product = make_product()
        await carts.add_item(db, user.id, product.id, 1)

        await carts.remove_item(user.id, product.id)

        assert not await redis_client.exists(cart_key(user.id))

    async def test_summary_prices_lines(self, db, carts, make_user, make_product):
        user = make_user()
        first = make_product(name="First", price="2.50", stock=10)
        second = make_product(name="Second", price="10.00", stock=10)
        await carts.add_item(db, user.id, first.id, 4)
        await carts.add_item(db, user.id, second.id, 1)

        summary = await carts.get_cart_summary(db, user.id)

        assert summary.total == Decimal("20.00")
        assert summary.item_count == 5
        assert [item.subtotal for item in summary.items] == [Decimal("10.00"), Decimal("10.00")]


class TestCheckout:
    async def test_checkout_creates_pending_order_and_deletes_cart(
        self, db, carts, make_user, make_product, redis_client
    ):
        user = make_user()
        first = make_product(name="First", price="12.00", stock=10)
        second = make_product(name="Second", price="7.50", stock=10)
        await carts.add_item(db, user.id, first.id, 2)
        await carts.add_item(db, user.id, second.id, 1)

        result = await carts.checkout(db, user.id, has_trusted_payment=False)

        order = result["order"]
        assert result["requires_verification"] is True
        assert order.status == OrderStatus.PENDING
        assert order.total == Decimal("12.00") * 2 + Decimal("7.50")
        assert not await redis_client.exists(cart_key(user.id))
        assert stock_of(db, first.id) == 10

    async def test_trusted_checkout_completes_order(self, db, carts, make_user, make_product, redis_client):
        user = make_user()
        product = make_product(stock=10)
        await carts.add_item(db, user.id, product.id, 3)

        result = await carts.checkout(db, user.id, has_trusted_payment=True)

        assert result["order"].status == OrderStatus.COMPLETED
        assert stock_of(db, product.id) == 7
        assert not await redis_client.exists(cart_key(user.id))

    async def test_empty_cart(self, db, carts, make_user):
        user = make_user()
        with pytest.raises(ValidationError, match="Cart is empty"):
            await carts.checkout(db, user.id)

    async def test_failed_checkout_keeps_cart(self, db, carts, make_user, make_product, redis_client):
        user = make_user(balance="5.00")
        product = make_product(price="10.00")
        await carts.add_item(db, user.id, product.id, 1)

        with pytest.raises(ValidationError, match="Insufficient balance"):
            await carts.checkout(db, user.id)

        assert await redis_client.exists(cart_key(user.id))
        assert db.query(Order).count() == 0

    async def test_unsent_verification_email_leaves_no_pending_order(
        self, db, carts, make_user, make_product, redis_client, monkeypatch
    ):
        user = make_user()
        product = make_product()
        await carts.add_item(db, user.id, product.id, 1)

        async def broken_queue_email(*args, **kwargs):
            raise redis.ConnectionError("redis down")

        monkeypatch.setattr(carts.order_service.email_queue, "queue_email", broken_queue_email)

        with pytest.raises(redis.ConnectionError):
            await carts.checkout(db, user.id)

        statuses = [order.status for order in db.query(Order).populate_existing().all()]
        assert statuses == [OrderStatus.CANCELLED]
        assert await redis_client.exists(cart_key(user.id))
