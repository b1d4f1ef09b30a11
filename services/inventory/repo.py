"""SQLAlchemy repository for product price and stock.

The ``products`` table is keyed by product id. Stock is only ever lowered
through ``InventoryRepo.decrement``, a single conditional ``UPDATE`` that
floors at zero, so concurrent decrements for the same product never lose
updates. Keyed decrements are recorded in ``stock_decrements`` so a
retried request is applied once.

The connection comes from ``DATABASE_URL`` when set, otherwise from the
``DB_*`` variables (PostgreSQL via psycopg).
"""

import os
from contextlib import contextmanager
from decimal import Decimal
from typing import Optional, Tuple

from sqlalchemy import Integer, Numeric, String, case, create_engine, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column

DB_HOST = os.getenv("DB_HOST", "inventory-db")
DB_PORT = os.getenv("DB_PORT", "5432")
DB_NAME = os.getenv("DB_NAME", "inventory")
DB_USER = os.getenv("DB_USER", "inventory_user")
DB_PASSWORD = os.getenv("DB_PASSWORD", "inventory-pass")

DATABASE_URL = os.getenv(
    "DATABASE_URL",
    f"postgresql+psycopg://{DB_USER}:{DB_PASSWORD}@{DB_HOST}:{DB_PORT}/{DB_NAME}",
)
_connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}
engine = create_engine(DATABASE_URL, pool_pre_ping=True, connect_args=_connect_args)


class Base(DeclarativeBase):
    pass


class Product(Base):
    """Live price and stock for one product.

    Attributes:
        id: Product id (same value the web project stores on order items).
        name: Display name.
        price: Undiscounted unit price.
        discount_percent: Whole-number discount, 0-100.
        stock: Units available, never negative.
    """

    __tablename__ = "products"
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0.00"))
    discount_percent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    stock: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class StockDecrement(Base):
    """A keyed decrement that has already been applied."""

    __tablename__ = "stock_decrements"
    key: Mapped[str] = mapped_column(String(128), primary_key=True)
    product_id: Mapped[str] = mapped_column(String(64), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)


def init_db() -> None:
    Base.metadata.create_all(engine)


@contextmanager
def get_session():
    with Session(engine) as s:
        yield s


def _as_dict(p: Product) -> dict:
    return {
        "id": p.id,
        "name": p.name,
        "price": p.price,
        "discount_percent": p.discount_percent,
        "stock": p.stock,
    }


class InventoryRepo:
    def get(self, product_id: str) -> Optional[dict]:
        """Return the product as a dict, or None when unknown."""
        with get_session() as s:
            obj = s.get(Product, product_id)
            return _as_dict(obj) if obj else None

    def upsert(self, product_id: str, name: str, price: Decimal, discount_percent: int, stock: int) -> dict:
        """Create or replace a product."""
        with get_session() as s:
            obj = s.get(Product, product_id) or Product(id=product_id)
            obj.name = name
            obj.price = price
            obj.discount_percent = discount_percent
            obj.stock = stock
            obj = s.merge(obj)
            s.commit()
            return _as_dict(obj)

    def decrement(self, product_id: str, quantity: int, key: Optional[str] = None) -> Optional[Tuple[int, bool]]:
        """Lower stock by ``quantity``, flooring at zero.

        With a ``key`` the decrement is recorded in ``stock_decrements`` in
        the same transaction, and a key that was already recorded leaves
        stock untouched.

        Args:
            product_id: Product to update.
            quantity: Units to remove (positive).
            key: Optional dedup key, e.g. ``<order id>:<product id>``.

        Returns:
            tuple[int, bool] | None: Stock after the call and whether this
            call applied the decrement, or None when the product does not
            exist.
        """
        with get_session() as s:
            if key is not None and s.get(StockDecrement, key) is not None:
                stock = s.execute(select(Product.stock).where(Product.id == product_id)).scalar_one_or_none()
                return None if stock is None else (stock, False)
            res = s.execute(
                update(Product)
                .where(Product.id == product_id)
                .values(stock=case((Product.stock > quantity, Product.stock - quantity), else_=0))
            )
            if res.rowcount == 0:
                s.rollback()
                return None
            if key is not None:
                s.add(StockDecrement(key=key, product_id=product_id, quantity=quantity))
                try:
                    s.flush()
                except IntegrityError:
                    # a concurrent call recorded the same key first
                    s.rollback()
                    stock = s.execute(select(Product.stock).where(Product.id == product_id)).scalar_one()
                    return stock, False
            stock = s.execute(select(Product.stock).where(Product.id == product_id)).scalar_one()
            s.commit()
            return stock, True
