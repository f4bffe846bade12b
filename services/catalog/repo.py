"""SQLAlchemy repository for products and their stock ledgers.

The catalog owns three tables:

- ``products``: name, gross price, picture, total ``stock`` and the
  ``version`` counter used for optimistic concurrency.
- ``reservations``: one row per (product, order) hold.
- ``sales``: append-only record of committed sales.

A product's ledger (stock, reservations, sales, version) is read and
written as a whole. ``LedgerRepo.save_ledger`` is a compare-and-save: it
locks the product row (``SELECT ... FOR UPDATE``), rejects the write when
the stored version differs from the expected one, validates the submitted
ledger and bumps the version.

Database connection parameters are read from ``CATALOG_DATABASE_URL`` (or
``DATABASE_URL``), or assembled from the ``DB_*`` variables.
"""

import os
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    create_engine,
    delete,
    select,
)
from sqlalchemy.orm import DeclarativeBase, Session, mapped_column

DB_HOST = os.getenv("DB_HOST", "catalog-db")
DB_PORT = os.getenv("DB_PORT", "5432")
DB_NAME = os.getenv("DB_NAME", "catalog")
DB_USER = os.getenv("DB_USER", "catalog_user")
DB_PASSWORD = os.getenv("DB_PASSWORD", "catalog-pass")

DATABASE_URL = (
    os.getenv("CATALOG_DATABASE_URL")
    or os.getenv("DATABASE_URL")
    or f"postgresql+psycopg://{DB_USER}:{DB_PASSWORD}@{DB_HOST}:{DB_PORT}/{DB_NAME}"
)
_connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}
engine = create_engine(DATABASE_URL, pool_pre_ping=True, connect_args=_connect_args)


class Base(DeclarativeBase):
    pass


class Product(Base):
    """A sellable product and the head of its stock ledger.

    Attributes:
        id: Catalog identifier.
        gross_price: Unit price, VAT included.
        stock: Units physically available; only decreases through sales.
        version: Incremented on every ledger or product write.
    """

    __tablename__ = "products"
    id = mapped_column(String(64), primary_key=True)
    name = mapped_column(String(200), nullable=False)
    gross_price = mapped_column(Numeric(14, 2), nullable=False)
    image_url = mapped_column(String(500), nullable=False, default="")
    stock = mapped_column(Integer, nullable=False, default=0)
    version = mapped_column(Integer, nullable=False, default=0)


class Reservation(Base):
    __tablename__ = "reservations"
    product_id = mapped_column(String(64), ForeignKey("products.id"), primary_key=True)
    order_id = mapped_column(String(64), primary_key=True)
    quantity = mapped_column(Integer, nullable=False)
    date = mapped_column(DateTime(timezone=True), nullable=False)


class Sale(Base):
    __tablename__ = "sales"
    id = mapped_column(Integer, primary_key=True, autoincrement=True)
    product_id = mapped_column(String(64), ForeignKey("products.id"), nullable=False, index=True)
    order_id = mapped_column(String(64), nullable=False)
    quantity = mapped_column(Integer, nullable=False)
    gross_price = mapped_column(Numeric(14, 2), nullable=False)
    date = mapped_column(DateTime(timezone=True), nullable=False)


class ProductNotFound(LookupError):
    pass


class VersionConflict(Exception):
    """The stored ledger version is not the one the writer read."""


class LedgerRejected(ValueError):
    """The submitted ledger breaks a stock invariant."""


def init_db() -> None:
    Base.metadata.create_all(engine)


@contextmanager
def get_session():
    """Yield a SQLAlchemy session bound to the configured engine."""
    with Session(engine) as s:
        yield s


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _ledger_dict(s: Session, p: Product) -> dict:
    reservations = s.execute(
        select(Reservation).where(Reservation.product_id == p.id)
    ).scalars().all()
    sales = s.execute(
        select(Sale).where(Sale.product_id == p.id).order_by(Sale.id)
    ).scalars().all()
    return {
        "product_id": p.id,
        "stock": p.stock,
        "reservations": {r.order_id: r.quantity for r in reservations},
        "sales": [
            {
                "order_id": x.order_id,
                "quantity": x.quantity,
                "gross_price": Decimal(x.gross_price),
                "date": x.date,
            }
            for x in sales
        ],
        "version": p.version,
    }


def _check_ledger(current: dict, new: dict) -> None:
    """Validate a submitted ledger against the stored one.

    Raises:
        LedgerRejected: When stock goes negative or up, a reservation is not
            positive, reservations exceed stock, or stored sales are altered.
    """
    stock = new["stock"]
    if stock < 0:
        raise LedgerRejected("NEGATIVE_STOCK")
    if stock > current["stock"]:
        raise LedgerRejected("STOCK_INCREASE")
    if any(q <= 0 for q in new["reservations"].values()):
        raise LedgerRejected("NON_POSITIVE_RESERVATION")
    if sum(new["reservations"].values()) > stock:
        raise LedgerRejected("NEGATIVE_AVAILABLE")
    old_sales = [(x["order_id"], x["quantity"]) for x in current["sales"]]
    new_sales = [(x["order_id"], x["quantity"]) for x in new["sales"]]
    if new_sales[: len(old_sales)] != old_sales:
        raise LedgerRejected("SALES_REWRITTEN")
    sold = sum(q for _, q in new_sales[len(old_sales):])
    if current["stock"] - stock != sold:
        raise LedgerRejected("STOCK_SALES_MISMATCH")


class LedgerRepo:
    """Repository for products and their stock ledgers."""

    def get_product(self, product_id: str) -> Optional[dict]:
        with get_session() as s:
            p = s.get(Product, product_id)
            if p is None:
                return None
            return {
                "id": p.id,
                "name": p.name,
                "gross_price": Decimal(p.gross_price),
                "image_url": p.image_url,
                "ledger": _ledger_dict(s, p),
            }

    def get_ledger(self, product_id: str) -> Optional[dict]:
        with get_session() as s:
            p = s.get(Product, product_id)
            return _ledger_dict(s, p) if p else None

    def save_ledger(self, product_id: str, expected_version: int, ledger: dict) -> int:
        """Compare-and-save the ledger of one product.

        Args:
            product_id: Product whose ledger is written.
            expected_version: Version the writer read.
            ledger: New ``stock``, ``reservations`` and ``sales``.

        Returns:
            int: The new version.

        Raises:
            ProductNotFound: If the product does not exist.
            VersionConflict: If the stored version moved on.
            LedgerRejected: If the new ledger breaks an invariant.
        """
        with get_session() as s:
            p = s.execute(
                select(Product).where(Product.id == product_id).with_for_update()
            ).scalars().first()
            if p is None:
                raise ProductNotFound(product_id)
            if p.version != expected_version:
                s.rollback()
                raise VersionConflict(f"{product_id}: expected {expected_version}, stored {p.version}")

            current = _ledger_dict(s, p)
            try:
                _check_ledger(current, ledger)
            except LedgerRejected:
                s.rollback()
                raise

            now = _now()
            s.execute(delete(Reservation).where(Reservation.product_id == product_id))
            for order_id, qty in ledger["reservations"].items():
                s.add(Reservation(product_id=product_id, order_id=order_id, quantity=qty, date=now))
            for x in ledger["sales"][len(current["sales"]):]:
                s.add(
                    Sale(
                        product_id=product_id,
                        order_id=x["order_id"],
                        quantity=x["quantity"],
                        gross_price=x["gross_price"],
                        date=x["date"],
                    )
                )
            p.stock = ledger["stock"]
            p.version = p.version + 1
            s.commit()
            return p.version

    def upsert_product(self, product_id: str, name: str, gross_price: Decimal, image_url: str, stock: int) -> dict:
        """Create or update a product (admin operation, may restock).

        Raises:
            LedgerRejected: If ``stock`` would drop below the reserved units.
        """
        with get_session() as s:
            p = s.execute(
                select(Product).where(Product.id == product_id).with_for_update()
            ).scalars().first()
            if p is None:
                p = Product(id=product_id, name=name, gross_price=gross_price, image_url=image_url, stock=stock, version=0)
                s.add(p)
            else:
                reserved = sum(_ledger_dict(s, p)["reservations"].values())
                if stock < reserved:
                    s.rollback()
                    raise LedgerRejected("STOCK_BELOW_RESERVED")
                p.name = name
                p.gross_price = gross_price
                p.image_url = image_url
                p.stock = stock
                p.version = p.version + 1
            s.commit()
        return self.get_product(product_id)
