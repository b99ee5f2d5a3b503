"""HTTP tests against the FastAPI app with Redis faked."""

import re
from contextlib import asynccontextmanager
from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import fakeredis
import pytest
from fastapi.testclient import TestClient

import main
from auth import PURPOSE_ORDER_VERIFICATION, create_token, create_trusted_device_token
from config import PENDING_AUTH_COOKIE, TRUSTED_DEVICE_COOKIE, TRUSTED_PAYMENT_COOKIE
from database import SessionLocal
from models import User, UserRole


@pytest.fixture
def client(monkeypatch, mailer):
    @asynccontextmanager
    async def lifespan(app):
        redis_client = fakeredis.aioredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)
        app.state.workers = main.build_services(app.state, redis_client, mailer)
        yield
        await redis_client.aclose()

    monkeypatch.setattr(main.app.router, "lifespan_context", lifespan)
    with TestClient(main.app) as test_client:
        yield test_client


def login(client, email, password="password123"):
    """Log in from a device the user already trusts, so no code is needed."""
    with SessionLocal() as session:
        user = session.query(User).filter(User.email == email).one()
        client.cookies.set(TRUSTED_DEVICE_COOKIE, create_trusted_device_token(user))
    response = client.post("/auth/login", json={"email": email, "password": password})
    assert response.status_code == 200
    assert response.json()["requires_code"] is False
    return {"Authorization": f"Bearer {response.json()['access_token']}"}


def deliver_email(client):
    email_worker = main.app.state.workers[0]
    client.portal.call(email_worker.process_due)


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}


class TestAuthApi:
    def test_register_verify_email_then_log_in_with_code(self, client, mailer):
        response = client.post(
            "/auth/register",
            json={"name": "Ann", "email": "ann@example.com", "password": "password123"},
        )
        assert response.status_code == 201
        assert response.json()["email_verified"] is False

        credentials = {"email": "ann@example.com", "password": "password123"}
        unverified = client.post("/auth/login", json=credentials)
        assert unverified.status_code == 401
        assert unverified.json()["message"] == "Email not verified"

        deliver_email(client)
        link = re.search(r'href="([^"]+)"', mailer.sent[0]["html"]).group(1)
        verified = client.get("/auth/verify-email", params=parse_qs(urlparse(link).query))
        assert verified.status_code == 200

        first_step = client.post("/auth/login", json=credentials)
        assert first_step.json()["requires_code"] is True
        assert first_step.json()["access_token"] is None
        assert PENDING_AUTH_COOKIE in client.cookies

        deliver_email(client)
        code = re.search(r"\b(\d{6})\b", mailer.sent[-1]["text"]).group(1)
        second_step = client.post("/auth/login/verify", json={"code": code, "remember_device": True})
        assert second_step.status_code == 200
        assert TRUSTED_DEVICE_COOKIE in client.cookies

        tokens = second_step.json()
        me = client.get("/users/me", headers={"Authorization": f"Bearer {tokens['access_token']}"})
        assert me.json()["name"] == "Ann"
        assert me.json()["email_verified"] is True

        refreshed = client.post("/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert refreshed.status_code == 200
        assert refreshed.json()["token_type"] == "bearer"

        again = client.post("/auth/login", json=credentials)
        assert again.json()["requires_code"] is False

    def test_code_step_without_pending_login(self, client):
        response = client.post("/auth/login/verify", json={"code": "123456"})

        assert response.status_code == 401
        assert response.json()["message"] == "Login session expired, please log in again"

    def test_bad_credentials_error_body(self, client, make_user):
        make_user(email="ann@example.com")

        response = client.post("/auth/login", json={"email": "ann@example.com", "password": "wrong"})

        assert response.status_code == 401
        body = response.json()
        assert body["type"] == "AUTHENTICATION_ERROR"
        assert body["message"] == "Invalid email or password"
        assert "timestamp" in body

    def test_missing_token(self, client):
        response = client.get("/orders/me")

        assert response.status_code == 401
        assert response.json()["message"] == "Missing authorization header"


class TestProductsApi:
    def test_list_and_missing(self, client, make_product):
        make_product(name="Lamp")

        listing = client.get("/products")
        missing = client.get("/products/999")

        assert [p["name"] for p in listing.json()] == ["Lamp"]
        assert missing.status_code == 404
        assert missing.json()["type"] == "NOT_FOUND"

    def test_create_requires_admin(self, client, make_user):
        make_user(email="ann@example.com")
        headers = login(client, "ann@example.com")

        response = client.post(
            "/products",
            json={"name": "Lamp", "description": "", "price": "5.00", "stock": 1},
            headers=headers,
        )

        assert response.status_code == 403
        assert response.json()["type"] == "AUTHORIZATION_ERROR"


class TestOrderFlow:
    def test_verify_with_remember_then_trusted_checkout(self, client, make_user, make_product):
        user = make_user(email="ann@example.com")
        product = make_product(price="10.00", stock=5)
        headers = login(client, "ann@example.com")

        created = client.post("/orders", json={"items": [{"product_id": product.id, "quantity": 2}]}, headers=headers)
        assert created.status_code == 201
        assert created.json()["requires_verification"] is True
        order_id = created.json()["order"]["id"]

        token = create_token({"order_id": order_id, "user_id": user.id}, PURPOSE_ORDER_VERIFICATION, timedelta(minutes=5))
        verified = client.get("/auth/verify-order", params={"token": token, "remember": "true"})
        assert verified.status_code == 200
        assert verified.json()["order"]["status"] == "completed"
        assert TRUSTED_PAYMENT_COOKIE in client.cookies

        client.post("/cart/items", json={"product_id": product.id, "quantity": 1}, headers=headers)
        checkout = client.post("/cart/checkout", headers=headers)
        assert checkout.status_code == 201
        assert checkout.json()["requires_verification"] is False
        assert checkout.json()["order"]["status"] == "completed"

        remaining = client.get(f"/products/{product.id}").json()["stock"]
        assert remaining == 2

    def test_invalid_verification_token(self, client):
        response = client.get("/auth/verify-order", params={"token": "garbage"})

        assert response.status_code == 401
        assert response.json()["message"] == "Invalid verification token"

    def test_user_cancels_pending_order(self, client, make_user, make_product):
        make_user(email="ann@example.com")
        product = make_product()
        headers = login(client, "ann@example.com")
        order_id = client.post(
            "/orders", json={"items": [{"product_id": product.id, "quantity": 1}]}, headers=headers
        ).json()["order"]["id"]

        first = client.post(f"/orders/{order_id}/cancel", headers=headers)
        second = client.post(f"/orders/{order_id}/cancel", headers=headers)

        assert first.status_code == 200
        assert first.json()["order"]["status"] == "cancelled"
        assert second.status_code == 400
        assert second.json()["message"] == "This order cannot be cancelled. Current status: cancelled"

    def test_other_users_order_is_hidden(self, client, make_user, make_product):
        make_user(email="ann@example.com")
        make_user(email="bob@example.com")
        product = make_product()
        order_id = client.post(
            "/orders",
            json={"items": [{"product_id": product.id, "quantity": 1}]},
            headers=login(client, "ann@example.com"),
        ).json()["order"]["id"]

        response = client.get(f"/orders/{order_id}", headers=login(client, "bob@example.com"))

        assert response.status_code == 404

    def test_admin_lists_orders(self, client, make_user, make_product):
        make_user(email="ann@example.com")
        make_user(email="admin@example.com", role=UserRole.ADMIN)
        product = make_product()
        client.post(
            "/orders",
            json={"items": [{"product_id": product.id, "quantity": 1}]},
            headers=login(client, "ann@example.com"),
        )

        user_view = client.get("/orders", headers=login(client, "ann@example.com"))
        admin_view = client.get("/orders", params={"status": "pending"}, headers=login(client, "admin@example.com"))

        assert user_view.status_code == 403
        assert len(admin_view.json()) == 1
