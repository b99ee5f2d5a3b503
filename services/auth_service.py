"""Sign-in with emailed login codes, email verification and token refresh."""
import hashlib
import hmac
import logging
import secrets
from datetime import timedelta
from typing import Any, Dict, Optional

import redis
from opentelemetry import trace
from sqlalchemy.orm import Session

from auth import (
    PURPOSE_EMAIL_VERIFICATION,
    PURPOSE_LOGIN_CODE,
    PURPOSE_REFRESH,
    PURPOSE_TRUSTED_DEVICE,
    TokenExpiredError,
    create_access_token,
    create_refresh_token,
    create_token,
    create_trusted_device_token,
    decode_token,
)
from config import APP_URL, EMAIL_VERIFICATION_EXPIRY_HOURS, JWT_SECRET, LOGIN_CODE_EXPIRY_MINUTES
from errors import AuthenticationError, NotFoundError, ValidationError
from mailer import email_verification_email, login_code_email
from models import User
from monitoring import auth_failures_counter
from queues.email_queue import EmailQueue
from schemas import UserCreate
from services.user_service import UserService

logger = logging.getLogger(__name__)


def _code_digest(user_id: int, code: str) -> str:
    return hmac.new(JWT_SECRET.encode(), f"{user_id}:{code}".encode(), hashlib.sha256).hexdigest()


class AuthService:
    """
    Two-step sign-in.

    A correct password earns a short-lived pending token and a 6-digit code
    sent by email; the pair is exchanged for access and refresh tokens. A
    device that was remembered at that step skips the code until its
    trusted-device token expires. Only verified email addresses may sign in.
    """

    def __init__(self, users: UserService, email_queue: EmailQueue):
        self.users = users
        self.email_queue = email_queue
        self.code_expiry = timedelta(minutes=LOGIN_CODE_EXPIRY_MINUTES)
        self.tracer = trace.get_tracer(__name__)

    # Registration and email verification

    async def register(self, db: Session, payload: UserCreate) -> User:
        """
        Create the account and send the verification link.

        A failure to queue the link does not undo the registration; the
        user can ask for a new link.
        """
        user = await self.users.register(db, payload)
        try:
            await self._send_verification_email(user)
        except redis.RedisError as e:
            logger.error("Failed to queue verification email", extra={"user_id": user.id, "error": str(e)})
        return user

    async def request_email_verification(self, db: Session, email: str) -> None:
        """
        Raises:
            NotFoundError: If no active account uses this email
            ValidationError: If the email is already verified
        """
        user = self.users.find_by_email(db, email)
        if user is None:
            raise NotFoundError("User")
        if user.email_verified:
            raise ValidationError("Email already verified")
        await self._send_verification_email(user)

    async def verify_email(self, db: Session, token: str) -> User:
        """
        Mark the address in a verification link as verified.

        Raises:
            AuthenticationError: If the link expired, was tampered with or
                belongs to an address the account no longer has
        """
        try:
            claims = decode_token(token, PURPOSE_EMAIL_VERIFICATION)
        except TokenExpiredError:
            raise AuthenticationError("Verification link expired")
        except AuthenticationError:
            raise AuthenticationError("Invalid verification token")

        user = db.get(User, claims.get("user_id"))
        if user is None or user.is_deleted or user.email != claims.get("email"):
            raise AuthenticationError("Invalid verification token")

        if not user.email_verified:
            user.email_verified = True
            db.commit()
            await self.users.invalidate(user.id)
            logger.info("Email verified", extra={"user_id": user.id})
        return user

    async def _send_verification_email(self, user: User) -> None:
        token = create_token(
            {"user_id": user.id, "email": user.email},
            PURPOSE_EMAIL_VERIFICATION,
            timedelta(hours=EMAIL_VERIFICATION_EXPIRY_HOURS),
        )
        email = email_verification_email(
            user.name, f"{APP_URL}/auth/verify-email?token={token}", EMAIL_VERIFICATION_EXPIRY_HOURS
        )
        await self.email_queue.queue_email(user.email, email["subject"], email["html"], email["text"])

    # Sign-in

    async def request_login_code(
        self,
        db: Session,
        email: str,
        password: str,
        trusted_device_token: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        First sign-in step.

        Returns:
            Either the tokens (trusted device), or requires_code with the
            pending_token that must accompany the emailed code

        Raises:
            AuthenticationError: On bad credentials or an unverified email
        """
        with self.tracer.start_as_current_span("auth.request_login_code") as span:
            user = self.users.authenticate(db, email, password)
            span.set_attribute("user.id", user.id)

            if not user.email_verified:
                raise AuthenticationError("Email not verified")

            if trusted_device_token and self.is_trusted_device(trusted_device_token, user):
                span.set_attribute("auth.trusted_device", True)
                logger.info("Login from trusted device", extra={"user_id": user.id})
                return {"requires_code": False, **self._issue_tokens(user)}

            code = f"{secrets.randbelow(900000) + 100000}"
            pending_token = create_token(
                {"user_id": user.id, "code": _code_digest(user.id, code)},
                PURPOSE_LOGIN_CODE,
                self.code_expiry,
            )
            message = login_code_email(user.name, code, LOGIN_CODE_EXPIRY_MINUTES)
            await self.email_queue.queue_email(
                user.email, message["subject"], message["html"], message["text"], urgent=True
            )
            logger.info("Login code sent", extra={"user_id": user.id})
            return {"requires_code": True, "pending_token": pending_token}

    async def verify_login_code(
        self,
        db: Session,
        pending_token: str,
        code: str,
        remember_device: bool = False,
    ) -> Dict[str, Any]:
        """
        Second sign-in step: exchange the emailed code for tokens.

        With remember_device the result also carries trusted_device_token.

        Raises:
            AuthenticationError: If the code is wrong or expired, or the pending token is invalid
        """
        try:
            claims = decode_token(pending_token, PURPOSE_LOGIN_CODE)
        except TokenExpiredError:
            auth_failures_counter.add(1, {"reason": "login_code_expired"})
            raise AuthenticationError("Code expired")
        except AuthenticationError:
            auth_failures_counter.add(1, {"reason": "invalid_pending_token"})
            raise AuthenticationError("Invalid token")

        user_id = claims.get("user_id")
        if not hmac.compare_digest(_code_digest(user_id, code), str(claims.get("code", ""))):
            auth_failures_counter.add(1, {"reason": "invalid_login_code"})
            logger.warning("Invalid login code", extra={"user_id": user_id})
            raise AuthenticationError("Invalid code")

        user = self._active_user(db, user_id)
        result = self._issue_tokens(user)
        if remember_device:
            result["trusted_device_token"] = create_trusted_device_token(user)
        logger.info("User logged in successfully", extra={"user_id": user.id, "remember_device": remember_device})
        return result

    def refresh(self, db: Session, refresh_token: str) -> Dict[str, str]:
        """
        Rotate a refresh token into a new access and refresh token pair.

        Raises:
            AuthenticationError: If the refresh token expired or is invalid
        """
        try:
            claims = decode_token(refresh_token, PURPOSE_REFRESH)
        except TokenExpiredError:
            raise AuthenticationError("Refresh token expired")
        except AuthenticationError:
            auth_failures_counter.add(1, {"reason": "invalid_refresh_token"})
            raise AuthenticationError("Invalid refresh token")

        return self._issue_tokens(self._active_user(db, claims.get("user_id")))

    @staticmethod
    def is_trusted_device(token: str, user: User) -> bool:
        try:
            claims = decode_token(token, PURPOSE_TRUSTED_DEVICE)
        except AuthenticationError:
            return False
        return claims.get("user_id") == user.id and claims.get("email") == user.email

    @staticmethod
    def _active_user(db: Session, user_id) -> User:
        user = db.get(User, user_id) if user_id is not None else None
        if user is None or user.is_deleted:
            raise AuthenticationError("User no longer exists")
        return user

    @staticmethod
    def _issue_tokens(user: User) -> Dict[str, str]:
        return {
            "access_token": create_access_token(user),
            "refresh_token": create_refresh_token(user),
        }
