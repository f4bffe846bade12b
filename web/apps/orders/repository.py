"""Repository layer for persisting orders.

This module contains the Django ORM implementation of
``OrderRepositoryPort``. It keeps a thin interface so the workflow is not
coupled to Django ORM details: rows go in and out as ``OrderAggregate``
instances, and database failures surface as ``GatewayError``.
"""

import uuid
from decimal import Decimal
from typing import Optional

from django.core.exceptions import ValidationError
from django.db import DatabaseError

from .domain import Address, Client, OrderAggregate, OrderItem, OrderStatus
from .errors import GatewayError, OrderNotFound, OrderStatusConflict
from .models import OrderModel


def _to_domain(obj: OrderModel) -> OrderAggregate:
    return OrderAggregate(
        id=str(obj.id),
        client=Client(**obj.client),
        order_items=[OrderItem.from_dict(d) for d in obj.order_items],
        includes_shipping=obj.includes_shipping,
        shipping_address=Address(**obj.shipping_address) if obj.shipping_address else None,
        sub_total=Decimal(obj.sub_total),
        shipping_price=Decimal(obj.shipping_price),
        total=Decimal(obj.total),
        status=OrderStatus(obj.status),
        created_at=obj.created_at,
        updated_at=obj.updated_at,
    )


def _valid_uuid(value) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


class DjangoOrderRepository:
    """Repository that persists ``OrderAggregate`` objects using Django ORM."""

    def create(self, order: OrderAggregate) -> OrderAggregate:
        """Persist a new order record.

        Args:
            order: Aggregate to persist; its ``id`` is ignored.

        Returns:
            The stored aggregate with ``id`` and timestamps assigned.

        Raises:
            GatewayError: If the database rejects the write.
        """
        try:
            obj = OrderModel.objects.create(
                status=order.status.value,
                client=order.client.to_dict(),
                order_items=[it.to_dict() for it in order.order_items],
                includes_shipping=order.includes_shipping,
                shipping_address=order.shipping_address.to_dict() if order.shipping_address else None,
                sub_total=order.sub_total,
                shipping_price=order.shipping_price,
                total=order.total,
            )
        except DatabaseError as e:
            raise GatewayError(f"orders db: {e}") from e
        return _to_domain(obj)

    def get_by_id(self, order_id: str) -> Optional[OrderAggregate]:
        if not _valid_uuid(order_id):
            return None
        try:
            obj = OrderModel.objects.filter(pk=order_id).first()
        except (DatabaseError, ValidationError) as e:
            raise GatewayError(f"orders db: {e}") from e
        return _to_domain(obj) if obj else None

    def update_status(self, order_id: str, fields: dict, expected_status: Optional[OrderStatus] = None) -> None:
        """Write the new status (and ``updated_at``) of one order.

        With ``expected_status`` the update is a compare-and-set: the row is
        only touched while its stored status still equals it.

        Raises:
            OrderNotFound: If no row matches ``order_id``.
            OrderStatusConflict: If the stored status is not ``expected_status``.
            GatewayError: If the database rejects the write.
        """
        status = fields["status"]
        values = {"status": status.value if isinstance(status, OrderStatus) else status}
        if fields.get("updated_at") is not None:
            values["updated_at"] = fields["updated_at"]
        qs = OrderModel.objects.filter(pk=order_id)
        if expected_status is not None:
            qs = qs.filter(status=OrderStatus(expected_status).value)
        try:
            n = qs.update(**values)
            if n == 0 and expected_status is not None:
                current = OrderModel.objects.filter(pk=order_id).values_list("status", flat=True).first()
        except DatabaseError as e:
            raise GatewayError(f"orders db: {e}") from e
        if n == 0:
            if expected_status is None or current is None:
                raise OrderNotFound({"order_id": order_id})
            raise OrderStatusConflict(
                {"order_id": order_id, "expected": OrderStatus(expected_status).value, "current": current}
            )

    def list(self, page: int = 1, page_size: int = 20) -> tuple[list[OrderAggregate], int]:
        """Return one page of orders, newest first, with the total count."""
        page = max(page, 1)
        try:
            qs = OrderModel.objects.all().order_by("-internal_id")
            total = qs.count()
            start = (page - 1) * page_size
            rows = [_to_domain(o) for o in qs[start:start + page_size]]
        except DatabaseError as e:
            raise GatewayError(f"orders db: {e}") from e
        return rows, total
