"""Order fulfillment workflow.

``OrderWorkflowService`` drives an order through its lifecycle and keeps
the stock ledgers of the referenced products consistent with it:

- ``initialize`` prices a draft and persists it as ``INITIALIZED`` (no hold).
- ``confirm`` reserves stock for every line item, then marks ``CONFIRMED``.
- ``abort`` releases the reservations, then marks ``ABORTED``.
- ``complete_payment`` turns reservations into sales, then marks ``PAID``.

There is no transaction spanning several ledgers and the order record.
Every ledger write is an optimistic compare-and-save against the version
that was read; a conflicting write re-reads the ledger and re-runs the
domain check, up to ``max_ledger_retries`` times. When ``confirm`` fails
part-way, the reservations it already applied are released before the
error propagates.

Status writes are compare-and-set on the status the order was read with,
so two transitions racing on the same order cannot move it out of a
terminal status.
"""

import logging
from typing import Callable

from .domain import (
    Address,
    OrderAggregate,
    OrderDraft,
    OrderItem,
    OrderStatus,
    ProductCatalogPort,
    PricingPort,
    OrderRepositoryPort,
    StockLedger,
    to_money,
    utcnow,
)
from .errors import (
    CompensationFailed,
    ConcurrentModification,
    LedgerVersionConflict,
    NoPricingForAddress,
    NoReservationToCommit,
    InvalidTransition,
    OrderNotFound,
    OrderStatusConflict,
    OutOfStock,
    InsufficientStock,
)

logger = logging.getLogger("orders.workflow")

DEFAULT_LEDGER_RETRIES = 5


class OrderWorkflowService:
    """Domain service orchestrating orders and product stock ledgers.

    The service holds no state of its own; it always re-reads the ledger
    before mutating it because other orders may have touched the same
    product in the meantime.
    """

    def __init__(
        self,
        catalog: ProductCatalogPort,
        pricing: PricingPort,
        orders: OrderRepositoryPort,
        max_ledger_retries: int = DEFAULT_LEDGER_RETRIES,
    ):
        """Initialize the service with required dependencies.

        Args:
            catalog: Port giving access to products and their stock ledgers.
            pricing: Port quoting a shipping price for an address.
            orders: Port persisting order aggregates.
            max_ledger_retries: Attempts per ledger write before giving up
                with ``ConcurrentModification``.
        """
        self.catalog = catalog
        self.pricing = pricing
        self.orders = orders
        self.max_ledger_retries = max(1, max_ledger_retries)

    # ---- initialize ----
    def initialize(self, draft: OrderDraft) -> OrderAggregate:
        """Price a draft order and persist it as ``INITIALIZED``.

        Stock is checked against the *total* stock of each product; nothing
        is reserved, so the result is a quote rather than a hold.

        Args:
            draft: Client, raw line items and shipping choice.

        Returns:
            The persisted order, with ``id`` assigned.

        Raises:
            MalformedOrder: If the draft is structurally invalid.
            ProductNotFound: If an item references an unknown product.
            OutOfStock: If an item asks for more than the product's stock.
            NoPricingForAddress: If shipping is requested to an unpriced address.
            GatewayError: If a collaborator is unavailable.
        """
        draft.validate()

        items: list[OrderItem] = []
        for it in draft.items:
            product = self.catalog.get_product(it.product_id)
            if it.quantity > product.ledger.stock:
                raise OutOfStock(
                    {"product_id": it.product_id, "requested": it.quantity, "stock": product.ledger.stock}
                )
            price = to_money(product.gross_price)
            items.append(
                OrderItem(
                    product_id=it.product_id,
                    image_url=it.image_url or product.image_url,
                    name=product.name,
                    gross_unit_price=price,
                    quantity=it.quantity,
                    amount=to_money(price * it.quantity),
                )
            )

        sub_total = to_money(sum((it.amount for it in items), to_money(0)))

        shipping_price = to_money(0)
        if draft.includes_shipping:
            shipping_price = self._shipping_price(draft.shipping_address)

        order = OrderAggregate(
            id=None,
            client=draft.client,
            order_items=items,
            includes_shipping=draft.includes_shipping,
            shipping_address=draft.shipping_address,
            sub_total=sub_total,
            shipping_price=shipping_price,
            total=to_money(sub_total + shipping_price),
            status=OrderStatus.INITIALIZED,
        )
        order.check_invariants()

        created = self.orders.create(order)
        logger.info(
            "order initialized",
            extra={"order_id": created.id, "total": str(created.total), "items": len(items)},
        )
        return created

    def _shipping_price(self, address: Address):
        price = self.pricing.get_price_by_address(address)
        if price is None:
            raise NoPricingForAddress({"state": address.state, "country": address.country})
        return to_money(price)

    # ---- confirm ----
    def confirm(self, order_id: str) -> OrderAggregate:
        """Reserve stock for every line item and mark the order ``CONFIRMED``.

        Any failure after the first reservation releases what this call has
        reserved so far, then re-raises.

        Raises:
            OrderNotFound: If the order does not exist.
            InvalidTransition: If the order is not ``INITIALIZED``, or another
                call moved it on before the status write.
            InsufficientStock: If an item exceeds the available stock.
            ConcurrentModification: If a ledger kept changing under us.
            GatewayError: If a collaborator is unavailable.
        """
        order = self._load(order_id)
        if order.status != OrderStatus.INITIALIZED:
            raise InvalidTransition(
                {"order_id": order_id, "from": order.status.value, "to": OrderStatus.CONFIRMED.value}
            )

        # Fail fast, before any mutation, on stock consumed since initialize.
        for it in order.order_items:
            ledger = self.catalog.get_stock_ledger(it.product_id)
            if it.quantity > ledger.available + ledger.reserved_for(order_id):
                raise InsufficientStock(
                    {"product_id": it.product_id, "requested": it.quantity, "available": ledger.available}
                )

        reserved: list[str] = []
        try:
            for it in order.order_items:
                self._mutate_ledger(it.product_id, lambda l, q=it.quantity: l.reserve(order_id, q))
                reserved.append(it.product_id)
            self._persist_status(order, OrderStatus.CONFIRMED)
        except OrderStatusConflict as exc:
            current = self._load(order_id).status
            # A concurrent confirm of the same order placed the same holds.
            if current != OrderStatus.CONFIRMED:
                logger.warning(
                    "order status moved during confirm, releasing reservations",
                    extra={"order_id": order_id, "status": current.value, "reserved": reserved},
                )
                self._compensate(order_id, reserved, exc)
            raise InvalidTransition(
                {"order_id": order_id, "from": current.value, "to": OrderStatus.CONFIRMED.value}
            ) from exc
        except Exception as exc:
            logger.warning(
                "confirm failed, releasing reservations",
                extra={"order_id": order_id, "error": str(exc), "reserved": reserved},
            )
            self._compensate(order_id, reserved, exc)
            raise

        logger.info("order confirmed", extra={"order_id": order_id})
        return order

    def _compensate(self, order_id: str, product_ids: list[str], cause: Exception) -> None:
        still_held = []
        for pid in reversed(product_ids):
            try:
                self._mutate_ledger(pid, lambda l: l.release(order_id))
            except Exception:
                logger.exception("compensation failed", extra={"order_id": order_id, "product_id": pid})
                still_held.append(pid)
        if still_held:
            raise CompensationFailed(order_id, still_held) from cause

    # ---- abort ----
    def abort(self, order_id: str) -> OrderAggregate:
        """Release the order's reservations and mark it ``ABORTED``.

        Releasing a reservation that no longer exists is a no-op, so aborting
        an already aborted order leaves every ledger as it was. An order with
        a recorded sale is being paid and cannot be aborted.

        The status write only succeeds if the order still has the status
        read at the start; otherwise the order is re-read and the decision
        is taken again, so an abort racing a payment never overwrites
        ``PAID``.

        Raises:
            OrderNotFound: If the order does not exist.
            InvalidTransition: If the order is ``PAID`` or has a recorded sale.
            ConcurrentModification: If the order status kept changing under us.
            GatewayError: If a collaborator is unavailable.
        """
        for attempt in range(1, self.max_ledger_retries + 1):
            order = self._load(order_id)
            if order.status == OrderStatus.PAID:
                raise InvalidTransition(
                    {"order_id": order_id, "from": order.status.value, "to": OrderStatus.ABORTED.value}
                )
            if order.status != OrderStatus.ABORTED:
                self._ensure_nothing_sold(order)

            for it in order.order_items:
                self._mutate_ledger(
                    it.product_id, lambda l: l.release(order_id), only_if=lambda l: order_id in l.reservations
                )

            if order.status == OrderStatus.ABORTED:
                logger.info("order already aborted", extra={"order_id": order_id})
                return order

            # A payment that committed before the release above shows up now.
            self._ensure_nothing_sold(order)
            try:
                self._persist_status(order, OrderStatus.ABORTED)
            except OrderStatusConflict:
                logger.info(
                    "order status moved during abort, re-reading",
                    extra={"order_id": order_id, "attempt": attempt},
                )
                continue
            logger.info("order aborted", extra={"order_id": order_id})
            return order
        raise ConcurrentModification({"order_id": order_id, "attempts": self.max_ledger_retries})

    def _ensure_nothing_sold(self, order: OrderAggregate) -> None:
        for it in order.order_items:
            if self.catalog.get_stock_ledger(it.product_id).has_sale_for(order.id):
                raise InvalidTransition(
                    {
                        "order_id": order.id,
                        "from": order.status.value,
                        "to": OrderStatus.ABORTED.value,
                        "sold": it.product_id,
                    }
                )

    # ---- complete payment ----
    def complete_payment(self, order_id: str) -> OrderAggregate:
        """Commit every reservation of the order as a sale and mark it ``PAID``.

        Ledgers are verified before anything is committed. An item whose
        reservation is gone but whose sale is already recorded (an earlier
        attempt stopped half-way) is skipped, so a confirmed order can be
        paid again after an interruption.

        Raises:
            OrderNotFound: If the order does not exist.
            NoReservationToCommit: If an item has neither a reservation nor,
                for a confirmed order, a recorded sale.
            InvalidTransition: If the order is not ``CONFIRMED``, or another call moved it
                to ``PAID`` or ``ABORTED`` while this one was committing.
            ConcurrentModification: If a ledger kept changing under us.
            GatewayError: If a collaborator is unavailable.
        """
        order = self._load(order_id)

        pending: list[OrderItem] = []
        for it in order.order_items:
            ledger = self.catalog.get_stock_ledger(it.product_id)
            if order_id in ledger.reservations:
                pending.append(it)
            elif order.status == OrderStatus.CONFIRMED and ledger.has_sale_for(order_id):
                logger.info(
                    "sale already committed, resuming",
                    extra={"order_id": order_id, "product_id": it.product_id},
                )
            else:
                raise NoReservationToCommit({"product_id": it.product_id, "order_id": order_id})

        order.ensure_can_transition(OrderStatus.PAID)

        now = utcnow()
        for it in pending:
            self._mutate_ledger(
                it.product_id,
                lambda l, price=it.gross_unit_price: l.commit(order_id, price, now),
                only_if=lambda l: not (order_id not in l.reservations and l.has_sale_for(order_id)),
            )

        try:
            self._persist_status(order, OrderStatus.PAID)
        except OrderStatusConflict:
            order = self._load(order_id)
            logger.info(
                "order status moved during payment",
                extra={"order_id": order_id, "status": order.status.value},
            )
            self._persist_status(order, OrderStatus.PAID)
        logger.info("order paid", extra={"order_id": order_id, "total": str(order.total)})
        return order

    # ---- helpers ----
    def get(self, order_id: str) -> OrderAggregate:
        return self._load(order_id)

    def _load(self, order_id: str) -> OrderAggregate:
        order = self.orders.get_by_id(order_id)
        if order is None:
            raise OrderNotFound({"order_id": order_id})
        return order

    def _persist_status(self, order: OrderAggregate, target: OrderStatus) -> None:
        """Write the new status first; only then reflect it in memory.

        The write is conditioned on the status ``order`` was read with and
        raises ``OrderStatusConflict`` when another call changed it since.
        """
        order.ensure_can_transition(target)
        now = utcnow()
        self.orders.update_status(order.id, {"status": target, "updated_at": now}, expected_status=order.status)
        order.transition_to(target, now)

    def _mutate_ledger(
        self,
        product_id: str,
        mutate: Callable[[StockLedger], object],
        only_if: Callable[[StockLedger], bool] | None = None,
    ) -> StockLedger:
        """Read-check-write one ledger with optimistic concurrency.

        ``mutate`` runs against a freshly read ledger on every attempt, so
        its domain checks always see the latest state.

        Raises:
            ConcurrentModification: When every attempt hit a version conflict.
        """
        for attempt in range(1, self.max_ledger_retries + 1):
            ledger = self.catalog.get_stock_ledger(product_id)
            if only_if is not None and not only_if(ledger):
                return ledger
            mutate(ledger)
            ledger.check_invariants()
            try:
                self.catalog.save_stock_ledger(ledger)
                return ledger
            except LedgerVersionConflict:
                logger.info(
                    "ledger version conflict, retrying",
                    extra={"product_id": product_id, "attempt": attempt},
                )
        raise ConcurrentModification({"product_id": product_id, "attempts": self.max_ledger_retries})
