"""Authentication utilities: signed purpose-scoped tokens and request auth."""
import hashlib
import hmac
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt
from fastapi import Depends, Header
from sqlalchemy.orm import Session

from config import (
    ACCESS_TOKEN_EXPIRES_MINUTES,
    JWT_ALGORITHM,
    JWT_SECRET,
    REFRESH_TOKEN_EXPIRES_DAYS,
    TRUSTED_DEVICE_EXPIRES_DAYS,
)
from database import get_db
from errors import AuthenticationError, AuthorizationError
from models import User, UserRole
from monitoring import auth_failures_counter

logger = logging.getLogger(__name__)

PURPOSE_ACCESS = "access"
PURPOSE_ORDER_VERIFICATION = "order-verification"
PURPOSE_TRUSTED_PAYMENT = "trusted-payment"
PURPOSE_UNSUBSCRIBE = "unsubscribe-notification"
PURPOSE_REFRESH = "refresh"
PURPOSE_EMAIL_VERIFICATION = "email-verification"
PURPOSE_LOGIN_CODE = "login-code"
PURPOSE_TRUSTED_DEVICE = "trusted-device"

_PBKDF2_ITERATIONS = 240_000


class TokenExpiredError(AuthenticationError):
    """Raised when a token's signature is valid but it has expired."""

    def __init__(self, message: str = "Token expired"):
        super().__init__(message)


def hash_password(password: str) -> str:
    salt = secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), _PBKDF2_ITERATIONS)
    return f"{salt}${digest.hex()}"


def verify_password(password: str, password_hash: str) -> bool:
    salt, _, expected = password_hash.partition("$")
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), _PBKDF2_ITERATIONS)
    return hmac.compare_digest(digest.hex(), expected)


def create_token(claims: Dict[str, Any], purpose: str, expires_in: timedelta) -> str:
    """
    Sign a token bound to a purpose.

    Args:
        claims: Claims to embed (e.g. user_id, order_id)
        purpose: Token purpose, checked again on decode
        expires_in: Lifetime of the token

    Returns:
        Encoded JWT
    """
    now = datetime.now(timezone.utc)
    payload = {**claims, "purpose": purpose, "iat": now, "exp": now + expires_in}
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_token(token: str, purpose: str) -> Dict[str, Any]:
    """
    Verify a token's signature, expiry and purpose.

    Raises:
        TokenExpiredError: If the token has expired
        AuthenticationError: If the token is malformed, forged or has another purpose
    """
    try:
        claims = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise TokenExpiredError()
    except jwt.InvalidTokenError:
        raise AuthenticationError("Invalid token")

    if claims.get("purpose") != purpose:
        raise AuthenticationError("Invalid token purpose")
    return claims


def decode_unverified(token: str) -> Dict[str, Any]:
    """Read claims without checking signature or expiry. Never trust the result for authorization."""
    try:
        return jwt.decode(token, options={"verify_signature": False})
    except jwt.InvalidTokenError:
        return {}


def create_access_token(user: User) -> str:
    return create_token(
        {"user_id": user.id, "role": user.role.value},
        PURPOSE_ACCESS,
        timedelta(minutes=ACCESS_TOKEN_EXPIRES_MINUTES),
    )


def create_refresh_token(user: User) -> str:
    return create_token(
        {"user_id": user.id, "jti": secrets.token_hex(8)},
        PURPOSE_REFRESH,
        timedelta(days=REFRESH_TOKEN_EXPIRES_DAYS),
    )


def create_trusted_device_token(user: User) -> str:
    """Token that lets this device skip the emailed login code."""
    return create_token(
        {"user_id": user.id, "email": user.email},
        PURPOSE_TRUSTED_DEVICE,
        timedelta(days=TRUSTED_DEVICE_EXPIRES_DAYS),
    )


def get_current_user(
    authorization: Optional[str] = Header(None),
    db: Session = Depends(get_db),
) -> User:
    """
    Resolve the authenticated user from a Bearer access token.

    Raises:
        AuthenticationError: If the header is missing or the token is invalid
    """
    if authorization is None:
        auth_failures_counter.add(1, {"reason": "missing_header"})
        logger.warning("Authentication failed: Missing authorization header")
        raise AuthenticationError("Missing authorization header")

    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        auth_failures_counter.add(1, {"reason": "invalid_format"})
        logger.warning("Authentication failed: Invalid authorization header format")
        raise AuthenticationError("Invalid authorization header format")

    try:
        claims = decode_token(parts[1], PURPOSE_ACCESS)
    except AuthenticationError:
        auth_failures_counter.add(1, {"reason": "invalid_token"})
        raise

    user = db.get(User, claims.get("user_id"))
    if user is None or user.is_deleted:
        auth_failures_counter.add(1, {"reason": "unknown_user"})
        raise AuthenticationError("User no longer exists")
    return user


def require_admin(user: User = Depends(get_current_user)) -> User:
    if user.role != UserRole.ADMIN:
        raise AuthorizationError()
    return user
