"""Tests for tokens, passwords, sign-in and the user account service."""

import re
from datetime import timedelta
from decimal import Decimal
from urllib.parse import parse_qs, urlparse

import pytest
import redis

from auth import (
    PURPOSE_ACCESS,
    PURPOSE_EMAIL_VERIFICATION,
    PURPOSE_LOGIN_CODE,
    PURPOSE_ORDER_VERIFICATION,
    PURPOSE_REFRESH,
    PURPOSE_TRUSTED_PAYMENT,
    PURPOSE_UNSUBSCRIBE,
    TokenExpiredError,
    create_refresh_token,
    create_token,
    create_trusted_device_token,
    decode_token,
    decode_unverified,
    hash_password,
    verify_password,
)
from conftest import balance_of
from errors import AuthenticationError, ConflictError, NotFoundError, ValidationError
from models import User
from schemas import UserCreate


class TestPasswords:
    def test_hash_round_trip(self):
        password_hash = hash_password("correct horse")

        assert verify_password("correct horse", password_hash)
        assert not verify_password("wrong horse", password_hash)

    def test_hashes_are_salted(self):
        assert hash_password("same") != hash_password("same")


class TestTokens:
    def test_claims_survive_decode(self):
        token = create_token({"order_id": 3, "user_id": 9}, PURPOSE_ORDER_VERIFICATION, timedelta(minutes=5))

        claims = decode_token(token, PURPOSE_ORDER_VERIFICATION)

        assert claims["order_id"] == 3
        assert claims["user_id"] == 9

    def test_wrong_purpose_rejected(self):
        token = create_token({"user_id": 9}, PURPOSE_TRUSTED_PAYMENT, timedelta(days=1))

        with pytest.raises(AuthenticationError, match="purpose"):
            decode_token(token, PURPOSE_ORDER_VERIFICATION)

    def test_expired_token(self):
        token = create_token({"order_id": 3}, PURPOSE_ORDER_VERIFICATION, timedelta(seconds=-1))

        with pytest.raises(TokenExpiredError):
            decode_token(token, PURPOSE_ORDER_VERIFICATION)
        assert decode_unverified(token)["order_id"] == 3

    def test_tampered_token(self):
        token = create_token({"order_id": 3}, PURPOSE_ORDER_VERIFICATION, timedelta(minutes=5))

        with pytest.raises(AuthenticationError) as exc_info:
            decode_token(token[:-2] + "xx", PURPOSE_ORDER_VERIFICATION)
        assert not isinstance(exc_info.value, TokenExpiredError)

    def test_garbage_is_unreadable(self):
        assert decode_unverified("not-a-token") == {}


class TestUserService:
    async def test_register_lowercases_email(self, db, app_services):
        user = await app_services.user_service.register(
            db, UserCreate(name="Ann", email="Ann@Example.com", password="password123")
        )

        assert user.email == "ann@example.com"
        assert user.balance == Decimal("0")

    async def test_duplicate_email(self, db, app_services, make_user):
        make_user(email="ann@example.com")

        with pytest.raises(ConflictError):
            await app_services.user_service.register(
                db, UserCreate(name="Ann", email="ANN@example.com", password="password123")
            )

    def test_authenticate(self, db, app_services, make_user):
        user = make_user(email="ann@example.com")
        users = app_services.user_service

        assert users.authenticate(db, "ANN@example.com", "password123").id == user.id
        with pytest.raises(AuthenticationError, match="Invalid email or password"):
            users.authenticate(db, "ann@example.com", "nope")

    def test_deduct_never_goes_negative(self, db, app_services, make_user):
        user = make_user(balance="10.00")

        with pytest.raises(ValidationError, match=r"Required: \$10.01, Available: \$10.00"):
            app_services.user_service.deduct_balance(db, user.id, Decimal("10.01"))
        db.rollback()

        app_services.user_service.deduct_balance(db, user.id, Decimal("10.00"))
        db.commit()
        assert balance_of(db, user.id) == Decimal("0")

    async def test_add_balance_notifies(self, db, app_services, make_user, mailer):
        user = make_user(balance="1.00")

        updated = await app_services.user_service.add_balance(db, user.id, Decimal("4.50"))
        await app_services.email_worker.process_due()

        assert updated.balance == Decimal("5.50")
        assert [m["subject"] for m in mailer.sent] == ["Your balance was updated"]
        assert "/users/unsubscribe?token=" in mailer.sent[0]["html"]

    async def test_unsubscribe_stops_notices(self, db, app_services, make_user, mailer):
        user = make_user()
        token = create_token(
            {"user_id": user.id, "email": user.email}, PURPOSE_UNSUBSCRIBE, timedelta(days=1)
        )

        await app_services.user_service.unsubscribe(db, token)
        await app_services.user_service.add_balance(db, user.id, Decimal("1.00"))
        await app_services.email_worker.process_due()

        assert mailer.sent == []

    async def test_unsubscribe_token_for_other_email(self, db, app_services, make_user):
        user = make_user()
        token = create_token(
            {"user_id": user.id, "email": "someone@else.com"}, PURPOSE_UNSUBSCRIBE, timedelta(days=1)
        )

        with pytest.raises(AuthenticationError):
            await app_services.user_service.unsubscribe(db, token)

    async def test_soft_deleted_user_is_gone(self, db, app_services, make_user):
        user = make_user()

        await app_services.user_service.soft_delete(db, user.id)

        with pytest.raises(NotFoundError):
            app_services.user_service.get_user(db, user.id)
        with pytest.raises(AuthenticationError):
            app_services.user_service.authenticate(db, user.email, "password123")


@pytest.fixture
def auth_service(app_services):
    return app_services.auth_service


async def delivered(app_services, mailer):
    await app_services.email_worker.process_due()
    return mailer.sent


def link_token(message):
    link = re.search(r'href="([^"]+)"', message["html"]).group(1)
    return parse_qs(urlparse(link).query)["token"][0]


def login_code(message):
    return re.search(r"\b(\d{6})\b", message["text"]).group(1)


class TestEmailVerification:
    async def test_register_sends_verification_link(self, db, auth_service, app_services, mailer):
        user = await auth_service.register(
            db, UserCreate(name="Ann", email="ann@example.com", password="password123")
        )

        sent = await delivered(app_services, mailer)

        assert user.email_verified is False
        assert [(m["to"], m["subject"]) for m in sent] == [("ann@example.com", "Verify your email")]
        assert "/auth/verify-email?token=" in sent[0]["html"]

    async def test_link_marks_email_verified(self, db, auth_service, app_services, mailer):
        user = await auth_service.register(
            db, UserCreate(name="Ann", email="ann@example.com", password="password123")
        )
        token = link_token((await delivered(app_services, mailer))[0])

        await auth_service.verify_email(db, token)

        assert db.get(User, user.id, populate_existing=True).email_verified is True

    async def test_registration_survives_unqueued_link(self, db, auth_service, monkeypatch):
        async def broken_queue_email(*args, **kwargs):
            raise redis.ConnectionError("redis down")

        monkeypatch.setattr(auth_service.email_queue, "queue_email", broken_queue_email)

        user = await auth_service.register(
            db, UserCreate(name="Ann", email="ann@example.com", password="password123")
        )

        assert user.id is not None

    async def test_expired_link(self, db, auth_service, make_user):
        user = make_user()
        token = create_token(
            {"user_id": user.id, "email": user.email}, PURPOSE_EMAIL_VERIFICATION, timedelta(seconds=-1)
        )

        with pytest.raises(AuthenticationError, match="Verification link expired"):
            await auth_service.verify_email(db, token)

    async def test_link_for_old_address_is_rejected(self, db, auth_service, make_user):
        user = make_user()
        token = create_token(
            {"user_id": user.id, "email": "old@example.com"}, PURPOSE_EMAIL_VERIFICATION, timedelta(hours=1)
        )

        with pytest.raises(AuthenticationError, match="Invalid verification token"):
            await auth_service.verify_email(db, token)

    async def test_new_link_on_request(self, db, auth_service, app_services, make_user, mailer):
        user = make_user(email="ann@example.com")
        user.email_verified = False
        db.commit()

        await auth_service.request_email_verification(db, "ANN@example.com")

        assert [m["subject"] for m in await delivered(app_services, mailer)] == ["Verify your email"]

    async def test_request_for_unknown_or_verified_email(self, db, auth_service, make_user):
        make_user(email="ann@example.com")

        with pytest.raises(NotFoundError):
            await auth_service.request_email_verification(db, "nobody@example.com")
        with pytest.raises(ValidationError, match="already verified"):
            await auth_service.request_email_verification(db, "ann@example.com")


class TestLoginCode:
    async def test_code_is_emailed_then_exchanged_for_tokens(
        self, db, auth_service, app_services, make_user, mailer
    ):
        user = make_user(email="ann@example.com")

        pending = await auth_service.request_login_code(db, "ann@example.com", "password123")
        sent = await delivered(app_services, mailer)
        result = await auth_service.verify_login_code(db, pending["pending_token"], login_code(sent[0]))

        assert pending["requires_code"] is True
        assert sent[0]["subject"] == "Your login code"
        assert decode_token(result["access_token"], PURPOSE_ACCESS)["user_id"] == user.id
        assert decode_token(result["refresh_token"], PURPOSE_REFRESH)["user_id"] == user.id
        assert "trusted_device_token" not in result

    async def test_pending_token_does_not_reveal_code(self, db, auth_service, app_services, make_user, mailer):
        make_user(email="ann@example.com")

        pending = await auth_service.request_login_code(db, "ann@example.com", "password123")
        code = login_code((await delivered(app_services, mailer))[0])

        claims = decode_token(pending["pending_token"], PURPOSE_LOGIN_CODE)
        assert code not in claims["code"]

    async def test_wrong_code(self, db, auth_service, app_services, make_user, mailer):
        make_user(email="ann@example.com")
        pending = await auth_service.request_login_code(db, "ann@example.com", "password123")
        code = login_code((await delivered(app_services, mailer))[0])
        wrong = "100000" if code != "100000" else "100001"

        with pytest.raises(AuthenticationError, match="Invalid code"):
            await auth_service.verify_login_code(db, pending["pending_token"], wrong)

    async def test_expired_code(self, db, auth_service, make_user):
        user = make_user()
        token = create_token({"user_id": user.id, "code": "x"}, PURPOSE_LOGIN_CODE, timedelta(seconds=-1))

        with pytest.raises(AuthenticationError, match="Code expired"):
            await auth_service.verify_login_code(db, token, "123456")

    async def test_unverified_email_cannot_log_in(self, db, auth_service, make_user):
        user = make_user(email="ann@example.com")
        user.email_verified = False
        db.commit()

        with pytest.raises(AuthenticationError, match="Email not verified"):
            await auth_service.request_login_code(db, "ann@example.com", "password123")

    async def test_remembered_device_skips_code(self, db, auth_service, app_services, make_user, mailer):
        make_user(email="ann@example.com")
        pending = await auth_service.request_login_code(db, "ann@example.com", "password123")
        code = login_code((await delivered(app_services, mailer))[0])
        first = await auth_service.verify_login_code(db, pending["pending_token"], code, remember_device=True)

        second = await auth_service.request_login_code(
            db, "ann@example.com", "password123", first["trusted_device_token"]
        )

        assert second["requires_code"] is False
        assert second["access_token"]
        assert len(await delivered(app_services, mailer)) == 1

    async def test_other_users_device_token_still_requires_code(self, db, auth_service, make_user):
        ann = make_user(email="ann@example.com")
        make_user(email="bob@example.com")

        result = await auth_service.request_login_code(
            db, "bob@example.com", "password123", create_trusted_device_token(ann)
        )

        assert result["requires_code"] is True


class TestRefresh:
    def test_rotates_token_pair(self, db, auth_service, make_user):
        user = make_user()
        refresh_token = create_refresh_token(user)

        result = auth_service.refresh(db, refresh_token)

        assert decode_token(result["access_token"], PURPOSE_ACCESS)["user_id"] == user.id
        assert result["refresh_token"] != refresh_token

    def test_expired_refresh_token(self, db, auth_service, make_user):
        user = make_user()
        token = create_token({"user_id": user.id}, PURPOSE_REFRESH, timedelta(seconds=-1))

        with pytest.raises(AuthenticationError, match="Refresh token expired"):
            auth_service.refresh(db, token)

    def test_access_token_is_not_a_refresh_token(self, db, auth_service, make_user):
        user = make_user()
        access = create_token({"user_id": user.id}, PURPOSE_ACCESS, timedelta(minutes=5))

        with pytest.raises(AuthenticationError, match="Invalid refresh token"):
            auth_service.refresh(db, access)

    async def test_deleted_user_cannot_refresh(self, db, auth_service, app_services, make_user):
        user = make_user()
        token = create_refresh_token(user)
        await app_services.user_service.soft_delete(db, user.id)

        with pytest.raises(AuthenticationError, match="User no longer exists"):
            auth_service.refresh(db, token)
