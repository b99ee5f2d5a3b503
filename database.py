"""Database connection and session management."""
from decimal import Decimal
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool
from typing import Generator
import logging

from config import DATABASE_URL, ADMIN_EMAIL, ADMIN_PASSWORD
from models import Base, Product, User, UserRole

logger = logging.getLogger(__name__)


def _engine_options(url: str) -> dict:
    if url.startswith("sqlite"):
        # Single shared connection so in-memory databases survive across threads
        return {"connect_args": {"check_same_thread": False}, "poolclass": StaticPool}
    return {
        "pool_size": 10,
        "max_overflow": 20,
        "pool_pre_ping": True,  # Verify connections before use
        "pool_recycle": 3600,  # Recycle connections after 1 hour
        "pool_timeout": 30,
    }


# Create engine with connection pool settings
engine = create_engine(DATABASE_URL, **_engine_options(DATABASE_URL))

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def get_db() -> Generator[Session, None, None]:
    """
    Dependency for getting database session.

    Yields:
        Database session
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def seed_database(db: Session) -> None:
    """Seed the admin account and a starter catalog when the tables are empty."""
    # auth imports get_db from this module
    from auth import hash_password

    if db.query(User).filter(User.email == ADMIN_EMAIL).first() is None:
        db.add(User(
            name="Administrator",
            email=ADMIN_EMAIL,
            password_hash=hash_password(ADMIN_PASSWORD),
            role=UserRole.ADMIN,
            email_verified=True,
        ))
        logger.info("Seeded admin account", extra={"email": ADMIN_EMAIL})

    if db.query(Product).count() == 0:
        products = [
            Product(name="Laptop", description="14 inch ultrabook", price=Decimal("999.99"), stock=50),
            Product(name="Smartphone", description="6.1 inch display", price=Decimal("599.99"), stock=100),
            Product(name="Headphones", description="Noise cancelling", price=Decimal("99.99"), stock=200),
            Product(name="Desk Chair", description="Ergonomic", price=Decimal("199.99"), stock=30),
            Product(name="Monitor", description="27 inch 4K", price=Decimal("299.99"), stock=75),
            Product(name="Keyboard", description="Mechanical", price=Decimal("79.99"), stock=150),
        ]
        db.add_all(products)
        logger.info("Seeded database with sample products")

    db.commit()


def init_db() -> None:
    """Initialize database tables and seed data."""
    Base.metadata.create_all(bind=engine)

    db = SessionLocal()
    try:
        seed_database(db)
    finally:
        db.close()
