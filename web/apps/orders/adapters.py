"""In-process adapters for the orders domain ports.

These adapters implement ``ProductCatalogPort``, ``PricingPort`` and
``OrderRepositoryPort`` without any network or database access. They are
used by unit tests and local development, and keep the same contracts as
the real collaborators: the catalog performs a compare-and-save on the
ledger version, and every object crossing the boundary is a copy so callers
cannot mutate stored state behind the adapter's back.
"""

import copy
import threading
import uuid
from decimal import Decimal
from typing import Optional

from .domain import (
    Address,
    OrderAggregate,
    OrderStatus,
    OrderRepositoryPort,
    PricingPort,
    Product,
    ProductCatalogPort,
    StockLedger,
    utcnow,
)
from .errors import LedgerVersionConflict, OrderNotFound, OrderStatusConflict, ProductNotFound


class InMemoryProductCatalog(ProductCatalogPort):
    """Thread-safe catalog keeping products and their ledgers in a dict.

    ``save_stock_ledger`` accepts a ledger only if its version matches the
    stored one, then stores a copy with the version incremented.
    """

    def __init__(self, products: list[Product] | None = None):
        self._lock = threading.Lock()
        self._products: dict[str, Product] = {}
        for p in products or []:
            self.add_product(p)

    def add_product(self, product: Product) -> None:
        with self._lock:
            self._products[product.product_id] = copy.deepcopy(product)

    @classmethod
    def from_rows(cls, rows: list[dict]) -> "InMemoryProductCatalog":
        """Build a catalog from plain dicts (``id, name, gross_price, stock``)."""
        products = []
        for r in rows:
            pid = str(r["id"])
            products.append(
                Product(
                    product_id=pid,
                    name=r.get("name", pid),
                    gross_price=Decimal(str(r.get("gross_price", "0"))),
                    image_url=r.get("image_url", ""),
                    ledger=StockLedger(product_id=pid, stock=int(r.get("stock", 0))),
                )
            )
        return cls(products)

    def get_product(self, product_id: str) -> Product:
        with self._lock:
            p = self._products.get(product_id)
            if p is None:
                raise ProductNotFound({"product_id": product_id})
            return copy.deepcopy(p)

    def get_stock_ledger(self, product_id: str) -> StockLedger:
        return self.get_product(product_id).ledger

    def save_stock_ledger(self, ledger: StockLedger) -> None:
        with self._lock:
            p = self._products.get(ledger.product_id)
            if p is None:
                raise ProductNotFound({"product_id": ledger.product_id})
            if p.ledger.version != ledger.version:
                raise LedgerVersionConflict(
                    f"{ledger.product_id}: expected {ledger.version}, stored {p.ledger.version}"
                )
            stored = ledger.clone()
            stored.version += 1
            p.ledger = stored
            ledger.version = stored.version


class StaticPricing(PricingPort):
    """Shipping prices from a fixed table keyed by address state.

    Lookup ignores case and surrounding spaces.
    """

    def __init__(self, prices: dict | None = None):
        self._prices = {k.strip().lower(): Decimal(str(v)) for k, v in (prices or {}).items()}

    def get_price_by_address(self, address: Address) -> Optional[Decimal]:
        return self._prices.get((address.state or "").strip().lower())


class InMemoryOrderRepository(OrderRepositoryPort):
    """Order repository backed by a dict, newest orders listed first."""

    def __init__(self):
        self._lock = threading.Lock()
        self._orders: dict[str, OrderAggregate] = {}

    def create(self, order: OrderAggregate) -> OrderAggregate:
        stored = copy.deepcopy(order)
        stored.id = str(uuid.uuid4())
        stored.created_at = stored.updated_at = utcnow()
        with self._lock:
            self._orders[stored.id] = stored
        return copy.deepcopy(stored)

    def get_by_id(self, order_id: str) -> Optional[OrderAggregate]:
        with self._lock:
            o = self._orders.get(str(order_id))
            return copy.deepcopy(o) if o else None

    def update_status(self, order_id: str, fields: dict, expected_status: Optional[OrderStatus] = None) -> None:
        with self._lock:
            o = self._orders.get(str(order_id))
            if o is None:
                raise OrderNotFound({"order_id": order_id})
            if expected_status is not None and o.status != OrderStatus(expected_status):
                raise OrderStatusConflict(
                    {"order_id": order_id, "expected": OrderStatus(expected_status).value, "current": o.status.value}
                )
            o.status = OrderStatus(fields["status"])
            o.updated_at = fields.get("updated_at") or utcnow()

    def list(self, page: int = 1, page_size: int = 20) -> tuple[list[OrderAggregate], int]:
        with self._lock:
            rows = sorted(self._orders.values(), key=lambda o: o.created_at, reverse=True)
        start = (max(page, 1) - 1) * page_size
        return [copy.deepcopy(o) for o in rows[start:start + page_size]], len(rows)
