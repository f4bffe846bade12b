"""Pydantic schemas for orders.

This module exposes the request/validation schemas used by the orders API,
the read schema returned by the views, and the stock-ledger wire schemas
exchanged with the catalog service by the HTTP adapter.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from .domain import (
    EMAIL_RE,
    Address,
    Client,
    DraftItem,
    OrderAggregate,
    OrderDraft,
    Product,
    Sale,
    StockLedger,
)


class ClientIn(BaseModel):
    """Buyer data as sent by the storefront.

    Attributes:
        user_id: Identifier of the registered user.
        email: Contact email; validated against a simple RFC-5322-like pattern.
    """

    user_id: str = ""
    first_name: str = ""
    last_name: str = ""
    email: str
    doc_type: str = ""
    document: str = ""
    telephone: str = ""

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        """Reject emails that do not look like ``name@domain.tld``.

        Raises:
            ValueError: When the value does not match the pattern.
        """
        v2 = v.strip()
        if not EMAIL_RE.match(v2):
            raise ValueError("Invalid email format")
        return v2


class AddressIn(BaseModel):
    country: str = ""
    state: str = ""
    city: str = ""
    neighborhood: str = ""
    street: str = ""
    department: str = ""

    def is_complete(self) -> bool:
        return all(getattr(self, f).strip() for f in ("country", "state", "city", "neighborhood"))


class OrderItemIn(BaseModel):
    """Input schema for a single order line item.

    Attributes:
        product_id: Catalog identifier of the product.
        quantity: Positive integer indicating units requested.
        image_url: Optional picture to show; defaults to the catalog one.
    """

    product_id: str = Field(min_length=1, max_length=64)
    quantity: int = Field(gt=0)
    image_url: str = ""


class InitializeOrderDTO(BaseModel):
    """Schema for initializing an order.

    Attributes:
        client: Buyer data.
        order_items: Non-empty list of `OrderItemIn` items.
        includes_shipping: When true, a complete ``shipping_address`` is
            required; otherwise the order is picked up in store.
        shipping_address: Delivery address.
    """

    client: ClientIn
    order_items: list[OrderItemIn] = Field(min_length=1)
    includes_shipping: bool = False
    shipping_address: Optional[AddressIn] = None

    @model_validator(mode="after")
    def validate_shipping(self) -> "InitializeOrderDTO":
        if self.includes_shipping and (self.shipping_address is None or not self.shipping_address.is_complete()):
            raise ValueError("Shipping requires country, state, city and neighborhood")
        ids = [i.product_id for i in self.order_items]
        if len(set(ids)) != len(ids):
            raise ValueError("Duplicated product in order")
        return self

    def to_draft(self) -> OrderDraft:
        """Map the validated payload onto the domain ``OrderDraft``."""
        address = Address(**self.shipping_address.model_dump()) if self.shipping_address else None
        return OrderDraft(
            client=Client(**self.client.model_dump()),
            items=[DraftItem(product_id=i.product_id, quantity=i.quantity, image_url=i.image_url) for i in self.order_items],
            includes_shipping=self.includes_shipping,
            shipping_address=address,
        )


class OrderItemOut(BaseModel):
    product_id: str
    image_url: str
    name: str
    gross_unit_price: Decimal
    quantity: int
    amount: Decimal


class OrderReadDTO(BaseModel):
    """Read model returned by the order endpoints."""

    id: str
    status: str
    client: dict
    order_items: list[OrderItemOut]
    count: int
    includes_shipping: bool
    shipping_address: Optional[dict] = None
    sub_total: Decimal
    shipping_price: Decimal
    total: Decimal
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_domain(cls, order: OrderAggregate) -> "OrderReadDTO":
        return cls(
            id=str(order.id),
            status=order.status.value,
            client=order.client.to_dict(),
            order_items=[OrderItemOut(**it.to_dict()) for it in order.order_items],
            count=order.count,
            includes_shipping=order.includes_shipping,
            shipping_address=order.shipping_address.to_dict() if order.shipping_address else None,
            sub_total=order.sub_total,
            shipping_price=order.shipping_price,
            total=order.total,
            created_at=order.created_at,
            updated_at=order.updated_at,
        )


# ---- Catalog wire schemas ----
class SaleWire(BaseModel):
    order_id: str
    quantity: int = Field(gt=0)
    gross_price: Decimal
    date: datetime


class LedgerWire(BaseModel):
    """Stock ledger as exchanged with the catalog service."""

    product_id: str
    stock: int = Field(ge=0)
    reservations: dict[str, int] = Field(default_factory=dict)
    sales: list[SaleWire] = Field(default_factory=list)
    version: int = 0

    def to_domain(self) -> StockLedger:
        return StockLedger(
            product_id=self.product_id,
            stock=self.stock,
            reservations=dict(self.reservations),
            sales=[Sale(order_id=s.order_id, quantity=s.quantity, gross_price=s.gross_price, date=s.date) for s in self.sales],
            version=self.version,
        )

    @classmethod
    def from_domain(cls, ledger: StockLedger) -> "LedgerWire":
        return cls(
            product_id=ledger.product_id,
            stock=ledger.stock,
            reservations=dict(ledger.reservations),
            sales=[SaleWire(order_id=s.order_id, quantity=s.quantity, gross_price=s.gross_price, date=s.date) for s in ledger.sales],
            version=ledger.version,
        )


class ProductWire(BaseModel):
    id: str
    name: str
    gross_price: Decimal
    image_url: str = ""
    ledger: LedgerWire

    def to_domain(self) -> Product:
        return Product(
            product_id=self.id,
            name=self.name,
            gross_price=self.gross_price,
            image_url=self.image_url,
            ledger=self.ledger.to_domain(),
        )
