"""User accounts and the balance ledger."""
import logging
from datetime import timedelta
from decimal import Decimal
from typing import Optional

from opentelemetry import trace
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from auth import (
    PURPOSE_UNSUBSCRIBE,
    create_token,
    decode_token,
    hash_password,
    verify_password,
)
from cache import CacheKeys, CacheService, CacheTTL
from config import APP_URL, UNSUBSCRIBE_TOKEN_EXPIRES_DAYS
from errors import AuthenticationError, ConflictError, NotFoundError, ValidationError
from mailer import balance_updated_email
from models import User
from queues.email_queue import EmailQueue
from schemas import UserCreate, UserResponse

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


class UserService:
    """Service for user accounts and balances."""

    def __init__(self, cache: CacheService, email_queue: EmailQueue):
        """
        Initialize user service.

        Args:
            cache: Cache port for user profiles
            email_queue: Queue for balance notifications
        """
        self.cache = cache
        self.email_queue = email_queue
        self.tracer = trace.get_tracer(__name__)

    async def register(self, db: Session, payload: UserCreate) -> User:
        """
        Create a user account.

        Raises:
            ConflictError: If the email is already registered
        """
        email = payload.email.lower()
        if db.query(User).filter(User.email == email).first() is not None:
            raise ConflictError("Email already registered")

        user = User(name=payload.name, email=email, password_hash=hash_password(payload.password))
        db.add(user)
        db.commit()
        logger.info("User registered", extra={"user_id": user.id})
        return user

    def find_by_email(self, db: Session, email: str) -> Optional[User]:
        return db.query(User).filter(User.email == email.lower(), User.is_deleted.is_(False)).first()

    def authenticate(self, db: Session, email: str, password: str) -> User:
        user = self.find_by_email(db, email)
        if user is None or not verify_password(password, user.password_hash):
            raise AuthenticationError("Invalid email or password")
        return user

    def get_user(self, db: Session, user_id: int) -> User:
        """
        Raises:
            NotFoundError: If the user does not exist or was deleted
        """
        user = db.get(User, user_id)
        if user is None or user.is_deleted:
            raise NotFoundError("User")
        return user

    async def get_user_profile(self, db: Session, user_id: int) -> UserResponse:
        """Cache-aside read of a user's public profile."""
        cache_key = CacheKeys.user(user_id)
        cached = await self.cache.get(cache_key)
        if cached is not None:
            return UserResponse.model_validate(cached)

        profile = UserResponse.model_validate(self.get_user(db, user_id))
        await self.cache.set(cache_key, profile.model_dump(mode="json"), CacheTTL.USER)
        return profile

    def deduct_balance(self, db: Session, user_id: int, amount: Decimal) -> None:
        """
        Take amount from the user's balance without letting it go negative.

        Does not commit; the caller owns the transaction.

        Raises:
            ValidationError: If the balance is lower than amount
            NotFoundError: If the user does not exist
        """
        amount = Decimal(amount).quantize(CENT)
        with self.tracer.start_as_current_span("db.query.deduct_balance") as span:
            span.set_attribute("db.operation", "UPDATE")
            span.set_attribute("db.table", "users")
            span.set_attribute("user.id", user_id)

            result = db.execute(
                update(User)
                .where(User.id == user_id, User.balance >= amount)
                .values(balance=User.balance - amount)
                .execution_options(synchronize_session=False)
            )
            span.set_attribute("db.rows_affected", result.rowcount)

        if result.rowcount != 1:
            user = self._fresh_user(db, user_id)
            if user is None:
                raise NotFoundError("User")
            raise ValidationError(
                f"Insufficient balance. Required: ${amount}, Available: ${Decimal(user.balance).quantize(CENT)}"
            )

    async def add_balance(self, db: Session, user_id: int, amount: Decimal) -> User:
        """
        Credit the user's balance and notify them if they opted in.

        Raises:
            ValidationError: If amount is not positive
            NotFoundError: If the user does not exist
        """
        amount = Decimal(amount).quantize(CENT)
        if amount <= 0:
            raise ValidationError("Amount must be greater than 0")

        self.get_user(db, user_id)
        try:
            db.execute(
                update(User)
                .where(User.id == user_id)
                .values(balance=User.balance + amount)
                .execution_options(synchronize_session=False)
            )
            db.commit()
        except Exception:
            db.rollback()
            raise

        user = self._fresh_user(db, user_id)
        await self.invalidate(user_id)
        logger.info("Balance added", extra={"user_id": user_id, "amount": str(amount)})

        if user.notify_balance_updates:
            token = create_token(
                {"user_id": user.id, "email": user.email},
                PURPOSE_UNSUBSCRIBE,
                timedelta(days=UNSUBSCRIBE_TOKEN_EXPIRES_DAYS),
            )
            email = balance_updated_email(
                user.name, amount, user.balance, f"{APP_URL}/users/unsubscribe?token={token}"
            )
            await self.email_queue.queue_email(user.email, email["subject"], email["html"], email["text"])

        return user

    async def unsubscribe(self, db: Session, token: str) -> User:
        """Turn off balance notifications using the link sent in those emails."""
        claims = decode_token(token, PURPOSE_UNSUBSCRIBE)
        user = self.get_user(db, claims["user_id"])
        if user.email != claims.get("email"):
            raise AuthenticationError("Invalid token")

        user.notify_balance_updates = False
        db.commit()
        await self.invalidate(user.id)
        return user

    async def soft_delete(self, db: Session, user_id: int) -> None:
        """Mark a user deleted; their orders are kept."""
        user = self.get_user(db, user_id)
        user.is_deleted = True
        db.commit()
        await self.invalidate(user_id)
        logger.info("User soft-deleted", extra={"user_id": user_id})

    async def invalidate(self, user_id: int) -> None:
        await self.cache.delete(CacheKeys.user(user_id))

    @staticmethod
    def _fresh_user(db: Session, user_id: int):
        return db.execute(
            select(User).where(User.id == user_id).execution_options(populate_existing=True)
        ).scalar_one_or_none()
