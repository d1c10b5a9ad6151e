"""SQLAlchemy repository for catalog products and their stock.

This module provides database persistence for product stock using SQLAlchemy
and PostgreSQL. ``stock`` is nullable: NULL means the product is not
stock-controlled (unlimited). Stock never goes negative.

The decrement is the only way orders consume stock. It locks the product
row (``SELECT ... FOR UPDATE``), clamps at zero and writes in the same
transaction, so concurrent decrements for different orders cannot lose an
update.

Database connection parameters are read from ``DATABASE_URL``, falling back
to the DB_* variables.
"""

import os
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import create_engine, Integer, String, select
from sqlalchemy.orm import DeclarativeBase, mapped_column, Session

DB_HOST = os.getenv("DB_HOST", "catalog-db")
DB_PORT = os.getenv("DB_PORT", "5432")
DB_NAME = os.getenv("DB_NAME", "catalog")
DB_USER = os.getenv("DB_USER", "catalog_user")
DB_PASSWORD = os.getenv("DB_PASSWORD", "catalog-pass")

DATABASE_URL = os.getenv(
    "DATABASE_URL",
    f"postgresql+psycopg://{DB_USER}:{DB_PASSWORD}@{DB_HOST}:{DB_PORT}/{DB_NAME}",
)
engine = create_engine(DATABASE_URL, pool_pre_ping=True)


class Base(DeclarativeBase): pass


class Product(Base):
    """SQLAlchemy model representing a catalog product.

    Attributes:
        ref: Product reference (string, max 64 chars) used as primary key.
        title: Display title.
        stock: Available quantity, or NULL for unlimited.
    """
    __tablename__ = "products"
    ref = mapped_column(String(64), primary_key=True)
    title = mapped_column(String(200), nullable=False, default="")
    stock = mapped_column(Integer, nullable=True)


class AppliedDecrement(Base):
    """Decrement already applied under an ``Idempotency-Key``.

    A retried request with the same key gets the stored outcome back
    instead of taking stock a second time.
    """
    __tablename__ = "applied_decrements"
    key = mapped_column(String(200), primary_key=True)
    ref = mapped_column(String(64), nullable=False)
    quantity = mapped_column(Integer, nullable=False)
    previous = mapped_column(Integer, nullable=True)
    stock = mapped_column(Integer, nullable=True)


@dataclass(frozen=True)
class StockRow:
    ref: str
    title: str
    stock: Optional[int]
    previous: Optional[int] = None
    replayed: bool = False


def init_db() -> None:
    Base.metadata.create_all(engine)


@contextmanager
def get_session():
    """Context manager that yields a SQLAlchemy session.

    Yields:
        Session: Active SQLAlchemy session connected to the database.
    """
    with Session(engine) as s:
        yield s


def _row(p: Product, previous: Optional[int] = None) -> StockRow:
    return StockRow(ref=p.ref, title=p.title or "", stock=p.stock, previous=previous)


class CatalogRepo:
    """Repository class for catalog stock operations."""

    def get(self, ref: str) -> Optional[StockRow]:
        """Return the product's stock row, or None if it does not exist."""
        with get_session() as s:
            obj = s.get(Product, ref)
            return _row(obj) if obj else None

    def upsert(self, ref: str, stock: Optional[int], title: Optional[str] = None) -> StockRow:
        """Set absolute stock (None for unlimited), creating the product if needed.

        Raises:
            ValueError: If ``stock`` is negative.
        """
        if stock is not None and stock < 0:
            raise ValueError("NEGATIVE_STOCK")
        with get_session() as s:
            obj = s.get(Product, ref, with_for_update=True)
            if obj is None:
                obj = Product(ref=ref, title=title or "", stock=stock)
                s.add(obj)
            else:
                obj.stock = stock
                if title is not None:
                    obj.title = title
            s.commit()
            return _row(obj)

    def decrement(self, ref: str, quantity: int, key: Optional[str] = None) -> Optional[StockRow]:
        """Atomically subtract ``quantity`` from stock, clamping at zero.

        Unlimited (NULL) stock is left untouched. With a ``key`` the
        decrement is applied at most once: a replay returns the stored
        outcome. The key is checked while holding the product row lock, so
        two concurrent requests with the same key are serialized.

        Returns:
            StockRow | None: The row after the operation, with the value
            before it in ``previous``; None if the product does not exist.

        Raises:
            ValueError: 'IDEMPOTENCY_CONFLICT' if ``key`` was used for another
                product or quantity.
        """
        with get_session() as s:
            obj = s.execute(
                select(Product).where(Product.ref == ref).with_for_update()
            ).scalars().first()
            if obj is None:
                return None

            if key:
                done = s.get(AppliedDecrement, key)
                if done is not None:
                    if (done.ref, done.quantity) != (ref, quantity):
                        raise ValueError("IDEMPOTENCY_CONFLICT")
                    return StockRow(ref=ref, title=obj.title or "", stock=done.stock,
                                    previous=done.previous, replayed=True)

            previous = obj.stock
            if previous is not None:
                obj.stock = max(0, previous - quantity)
            if key:
                s.add(AppliedDecrement(key=key, ref=ref, quantity=quantity,
                                       previous=previous, stock=obj.stock))
            s.commit()
            return _row(obj, previous=previous)
