"""Domain models and ports for orders and product stock ledgers.

This module contains the order aggregate with its status state machine,
the value objects it is composed of (client, address, line items), the
per-product stock ledger that tracks reservations and sales, and the
protocol definitions (ports) for the collaborators the workflow depends on:
the product catalog, the shipping pricing table and the order repository.

Nothing in here performs I/O. The workflow service in ``workflow.py``
orchestrates these objects through the ports.
"""

import copy
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Protocol, List, Optional

from .errors import (
    InsufficientStock,
    InvalidTransition,
    LedgerInvariantViolation,
    MalformedOrder,
    NoReservationToCommit,
)

CENT = Decimal("0.01")
EMAIL_RE = re.compile(r"^[a-zA-Z0-9_.+-]+@[a-zA-Z0-9-]+\.[a-zA-Z0-9-.]+$")
COUNTRY_RE = re.compile(r"^[a-zA-ZÀ-ÿ\s]{1,40}$")


def to_money(value) -> Decimal:
    """Round a monetary value to 2 decimals (half-up)."""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---- Enums ----
class OrderStatus(str, Enum):
    """Enumeration of the possible order statuses.

    ``INITIALIZED -> CONFIRMED -> PAID`` is the happy path; an order can be
    aborted from ``INITIALIZED`` or ``CONFIRMED``. ``PAID`` and ``ABORTED``
    are terminal."""

    INITIALIZED = "INITIALIZED"
    CONFIRMED = "CONFIRMED"
    ABORTED = "ABORTED"
    PAID = "PAID"

    def can_transition_to(self, target: "OrderStatus") -> bool:
        return target in _TRANSITIONS[self]

    @property
    def is_terminal(self) -> bool:
        return not _TRANSITIONS[self]


_TRANSITIONS = {
    OrderStatus.INITIALIZED: {OrderStatus.CONFIRMED, OrderStatus.ABORTED},
    OrderStatus.CONFIRMED: {OrderStatus.PAID, OrderStatus.ABORTED},
    OrderStatus.ABORTED: set(),
    OrderStatus.PAID: set(),
}


# ---- Value objects ----
@dataclass(frozen=True)
class Client:
    """Buyer data snapshotted into the order.

    Attributes:
        user_id: Identifier of the registered user placing the order.
        first_name: Buyer first name.
        last_name: Buyer last name.
        email: Contact email, validated against ``EMAIL_RE``.
        doc_type: Identity document type (e.g. RUT, DNI).
        document: Identity document number.
        telephone: Contact phone number.
    """

    user_id: str
    first_name: str
    last_name: str
    email: str
    doc_type: str = ""
    document: str = ""
    telephone: str = ""

    def validate(self) -> None:
        """Raise ``MalformedOrder`` when the email is missing or invalid."""
        if not self.email or not EMAIL_RE.match(self.email):
            raise MalformedOrder({"field": "client.email"}, "Field email has invalid format")

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "email": self.email,
            "doc_type": self.doc_type,
            "document": self.document,
            "telephone": self.telephone,
        }


@dataclass(frozen=True)
class Address:
    """Shipping address. ``state`` is the key used to look up prices."""

    country: str = ""
    state: str = ""
    city: str = ""
    neighborhood: str = ""
    street: str = ""
    department: str = ""

    def validate_full(self) -> None:
        """Require every field a courier needs to quote the delivery.

        Raises:
            MalformedOrder: Naming the first missing or invalid field.
        """
        if not self.country or not COUNTRY_RE.match(self.country):
            raise MalformedOrder({"field": "shipping_address.country"})
        for name in ("state", "city", "neighborhood"):
            if not getattr(self, name).strip():
                raise MalformedOrder({"field": f"shipping_address.{name}"})

    def to_dict(self) -> dict:
        return {
            "country": self.country,
            "state": self.state,
            "city": self.city,
            "neighborhood": self.neighborhood,
            "street": self.street,
            "department": self.department,
        }


@dataclass(frozen=True)
class OrderItem:
    """A single line item in an order.

    Attributes:
        product_id: Identifier of the product in the catalog.
        image_url: Product picture shown in the order summary.
        name: Product name at the time the order was initialized.
        gross_unit_price: Unit price (VAT included) at initialization.
        quantity: Number of units requested, strictly positive.
        amount: ``gross_unit_price * quantity``.

    The dataclass is frozen because name and price are snapshots: later
    catalog changes must not alter an existing order.
    """

    product_id: str
    image_url: str
    name: str
    gross_unit_price: Decimal
    quantity: int
    amount: Decimal

    def validate(self) -> None:
        if not self.product_id:
            raise MalformedOrder({"field": "product_id"})
        if not isinstance(self.quantity, int) or isinstance(self.quantity, bool) or self.quantity <= 0:
            raise MalformedOrder({"field": "quantity", "product_id": self.product_id})
        if self.amount < 0 or abs(self.amount - self.gross_unit_price * self.quantity) > CENT:
            raise MalformedOrder({"field": "amount", "product_id": self.product_id})

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "image_url": self.image_url,
            "name": self.name,
            "gross_unit_price": str(self.gross_unit_price),
            "quantity": self.quantity,
            "amount": str(self.amount),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "OrderItem":
        return cls(
            product_id=data["product_id"],
            image_url=data.get("image_url", ""),
            name=data.get("name", ""),
            gross_unit_price=Decimal(str(data["gross_unit_price"])),
            quantity=int(data["quantity"]),
            amount=Decimal(str(data["amount"])),
        )


@dataclass(frozen=True)
class DraftItem:
    """A raw line item as requested by the buyer, before pricing."""

    product_id: str
    quantity: int
    image_url: str = ""


@dataclass(frozen=True)
class OrderDraft:
    """Plain order shape handed to ``OrderWorkflowService.initialize``."""

    client: Client
    items: List[DraftItem]
    includes_shipping: bool = False
    shipping_address: Optional[Address] = None

    def validate(self) -> None:
        """Structural validation; runs before any collaborator is called."""
        if not self.items:
            raise MalformedOrder({"field": "order_items"}, "This order has no product items")
        self.client.validate()
        seen = set()
        for it in self.items:
            if it.product_id in seen:
                raise MalformedOrder({"field": "product_id", "product_id": it.product_id}, "Duplicated product in order")
            seen.add(it.product_id)
            if not it.product_id:
                raise MalformedOrder({"field": "product_id"})
            if not isinstance(it.quantity, int) or isinstance(it.quantity, bool) or it.quantity <= 0:
                raise MalformedOrder({"field": "quantity", "product_id": it.product_id})
        if self.includes_shipping:
            if self.shipping_address is None:
                raise MalformedOrder({"field": "shipping_address"})
            self.shipping_address.validate_full()


# ---- Aggregate root ----
@dataclass
class OrderAggregate:
    """Order entity root.

    Attributes:
        id: Persistent identifier, ``None`` until the repository assigns one.
        client: Buyer snapshot.
        order_items: Non-empty list of line items, in request order.
        includes_shipping: When false the order is picked up in store.
        shipping_address: Delivery address (validated when shipping).
        sub_total: Sum of item amounts, 2 decimals.
        shipping_price: Price quoted for the address, 0 without shipping.
        total: ``sub_total + shipping_price``, 2 decimals.
        status: Current ``OrderStatus``.
        created_at: Set by the repository on creation.
        updated_at: Refreshed on every status change.
    """

    id: Optional[str]
    client: Client
    order_items: List[OrderItem]
    includes_shipping: bool = False
    shipping_address: Optional[Address] = None
    sub_total: Decimal = Decimal("0.00")
    shipping_price: Decimal = Decimal("0.00")
    total: Decimal = Decimal("0.00")
    status: OrderStatus = OrderStatus.INITIALIZED
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def count(self) -> int:
        """Total number of units across all line items."""
        return sum(it.quantity for it in self.order_items)

    def check_invariants(self) -> None:
        """Validate items and totals.

        Raises:
            MalformedOrder: When the item list is empty, an item is invalid or
                the totals do not add up.
        """
        if not self.order_items:
            raise MalformedOrder({"field": "order_items"})
        for it in self.order_items:
            it.validate()
        if len({it.product_id for it in self.order_items}) != len(self.order_items):
            raise MalformedOrder({"field": "product_id"}, "Duplicated product in order")
        if self.sub_total != to_money(sum((it.amount for it in self.order_items), Decimal("0"))):
            raise MalformedOrder({"field": "sub_total"})
        if self.total != to_money(self.sub_total + self.shipping_price):
            raise MalformedOrder({"field": "total"})

    def ensure_can_transition(self, target: OrderStatus) -> None:
        if not self.status.can_transition_to(target):
            raise InvalidTransition(
                {"order_id": self.id, "from": self.status.value, "to": target.value}
            )

    def transition_to(self, target: OrderStatus, when: Optional[datetime] = None) -> None:
        """Move the order to ``target``, enforcing the transition table."""
        self.ensure_can_transition(target)
        self.status = target
        self.updated_at = when or utcnow()


# ---- Stock ledger ----
@dataclass(frozen=True)
class Sale:
    """A committed, permanent consumption of stock by a paid order."""

    order_id: str
    quantity: int
    gross_price: Decimal
    date: datetime

    def to_dict(self) -> dict:
        return {
            "order_id": self.order_id,
            "quantity": self.quantity,
            "gross_price": str(self.gross_price),
            "date": self.date.isoformat(),
        }


@dataclass
class StockLedger:
    """Reservation-bearing state of one product.

    ``stock`` only ever decreases (on sale commit); reservations reduce the
    available quantity without touching ``stock``. ``version`` is the
    optimistic-concurrency token checked by the catalog on save.
    """

    product_id: str
    stock: int
    reservations: dict = field(default_factory=dict)
    sales: List[Sale] = field(default_factory=list)
    version: int = 0

    @property
    def reserved(self) -> int:
        return sum(self.reservations.values())

    @property
    def available(self) -> int:
        return self.stock - self.reserved

    def reserved_for(self, order_id: str) -> int:
        return self.reservations.get(order_id, 0)

    def has_sale_for(self, order_id: str) -> bool:
        return any(s.order_id == order_id for s in self.sales)

    def reserve(self, order_id: str, quantity: int) -> None:
        """Hold ``quantity`` units for ``order_id``.

        A second reservation for the same order replaces the first one, so
        the order's own current hold counts as available.

        Raises:
            InsufficientStock: When ``quantity`` exceeds what is available.
        """
        if quantity <= 0:
            raise MalformedOrder({"product_id": self.product_id, "field": "quantity"})
        available = self.available + self.reserved_for(order_id)
        if quantity > available:
            raise InsufficientStock(
                {"product_id": self.product_id, "requested": quantity, "available": available}
            )
        self.reservations[order_id] = quantity

    def release(self, order_id: str) -> int:
        """Drop the hold of ``order_id``; returns the released quantity (0 if none)."""
        return self.reservations.pop(order_id, 0)

    def commit(self, order_id: str, gross_price: Decimal, when: Optional[datetime] = None) -> Sale:
        """Turn the reservation of ``order_id`` into a sale.

        Raises:
            NoReservationToCommit: When the order holds nothing on this product.
        """
        quantity = self.reservations.get(order_id)
        if not quantity:
            raise NoReservationToCommit({"product_id": self.product_id, "order_id": order_id})
        sale = Sale(order_id=order_id, quantity=quantity, gross_price=to_money(gross_price), date=when or utcnow())
        self.stock -= quantity
        del self.reservations[order_id]
        self.sales.append(sale)
        return sale

    def check_invariants(self) -> None:
        if self.stock < 0 or self.available < 0 or any(q <= 0 for q in self.reservations.values()):
            raise LedgerInvariantViolation(
                {"product_id": self.product_id, "stock": self.stock, "reserved": self.reserved}
            )

    def clone(self) -> "StockLedger":
        return copy.deepcopy(self)


@dataclass
class Product:
    """The slice of a catalog product the order workflow needs."""

    product_id: str
    name: str
    gross_price: Decimal
    image_url: str
    ledger: StockLedger


# ---- Ports (DIP) ----
class ProductCatalogPort(Protocol):
    """Port describing product and stock-ledger access.

    Implementations must treat ``save_stock_ledger`` as a compare-and-save
    on ``ledger.version``.
    """

    def get_product(self, product_id: str) -> Product:
        """Return the product with its current ledger.

        Raises:
            ProductNotFound: If the product does not exist.
            GatewayError: If the catalog cannot be reached.
        """
        raise NotImplementedError()

    def get_stock_ledger(self, product_id: str) -> StockLedger:
        """Return the latest ledger of ``product_id``.

        Raises:
            ProductNotFound: If the product does not exist.
            GatewayError: If the catalog cannot be reached.
        """
        raise NotImplementedError()

    def save_stock_ledger(self, ledger: StockLedger) -> None:
        """Persist ``ledger`` if the stored version still equals ``ledger.version``.

        On success ``ledger.version`` is advanced to the stored version.

        Raises:
            LedgerVersionConflict: If another writer saved first.
            GatewayError: If the catalog cannot be reached.
        """
        raise NotImplementedError()


class PricingPort(Protocol):
    """Port describing the shipping price lookup."""

    def get_price_by_address(self, address: Address) -> Optional[Decimal]:
        """Return the shipping price for ``address`` or ``None`` if unknown."""
        raise NotImplementedError()


class OrderRepositoryPort(Protocol):
    """Port describing order persistence."""

    def create(self, order: OrderAggregate) -> OrderAggregate:
        """Persist a new order and return it with ``id`` and timestamps set."""
        raise NotImplementedError()

    def get_by_id(self, order_id: str) -> Optional[OrderAggregate]:
        raise NotImplementedError()

    def update_status(self, order_id: str, fields: dict, expected_status: Optional[OrderStatus] = None) -> None:
        """Update ``status``/``updated_at`` of an order.

        When ``expected_status`` is given the write only happens if the stored
        status still equals it.

        Raises:
            OrderNotFound: If the order does not exist.
            OrderStatusConflict: If the stored status differs from ``expected_status``.
            GatewayError: If the write did not happen.
        """
        raise NotImplementedError()

    def list(self, page: int = 1, page_size: int = 20) -> tuple[list[OrderAggregate], int]:
        """Return one page of orders (newest first) and the total count."""
        raise NotImplementedError()
