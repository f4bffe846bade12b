"""Concurrent transitions never oversell a product or rewrite a final status.

Ledger writes are compare-and-save operations, so two orders racing for the
last units cannot both hold them: the loser re-reads the ledger, sees the
winner's reservation and fails with ``InsufficientStock``.

Order status writes are compare-and-set on the status that was read, so two
transitions racing on the same order leave its status in line with what the
ledger holds for it.
"""

import random
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from apps.orders.adapters import InMemoryOrderRepository, InMemoryProductCatalog, StaticPricing
from apps.orders.domain import Client, DraftItem, OrderDraft, OrderStatus
from apps.orders.errors import (
    ConcurrentModification,
    InsufficientStock,
    InvalidTransition,
    NoReservationToCommit,
)
from apps.orders.workflow import OrderWorkflowService

CLIENT = Client(user_id="u1", first_name="Ana", last_name="Rojas", email="ana@example.com")


class AuditedCatalog(InMemoryProductCatalog):
    """Records the available stock of every accepted ledger write."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.seen_available = []

    def save_stock_ledger(self, ledger):
        super().save_stock_ledger(ledger)
        self.seen_available.append(ledger.available)


def _service(stock=10, retries=5, orders=None):
    catalog = AuditedCatalog.from_rows([{"id": "P", "name": "Lamp", "gross_price": "20.00", "stock": stock}])
    orders = orders or InMemoryOrderRepository()
    return OrderWorkflowService(catalog, StaticPricing({}), orders, max_ledger_retries=retries), catalog


def _draft(qty):
    return OrderDraft(client=CLIENT, items=[DraftItem("P", qty)])


class InterleavingRepository(InMemoryOrderRepository):
    """Runs ``interleave`` once, right after the next order read."""

    interleave = None

    def get_by_id(self, order_id):
        order = super().get_by_id(order_id)
        hook, self.interleave = self.interleave, None
        if hook is not None:
            hook()
        return order


# held, sold
LEDGER_BY_STATUS = {
    OrderStatus.INITIALIZED: (False, False),
    OrderStatus.CONFIRMED: (True, False),
    OrderStatus.PAID: (False, True),
    OrderStatus.ABORTED: (False, False),
}


def _assert_statuses_match_ledger(service, catalog, order_ids):
    ledger = catalog.get_stock_ledger("P")
    for order_id in order_ids:
        status = service.get(order_id).status
        assert (order_id in ledger.reservations, ledger.has_sale_for(order_id)) == LEDGER_BY_STATUS[status], (
            order_id,
            status,
        )


def test_two_concurrent_confirms_exactly_one_wins():
    for _ in range(20):
        service, catalog = _service()
        a = service.initialize(_draft(6))
        b = service.initialize(_draft(6))
        barrier = threading.Barrier(2)
        outcomes = {}

        def confirm(order_id):
            barrier.wait()
            try:
                service.confirm(order_id)
                outcomes[order_id] = "ok"
            except InsufficientStock:
                outcomes[order_id] = "INSUFFICIENT_STOCK"

        threads = [threading.Thread(target=confirm, args=(oid,)) for oid in (a.id, b.id)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(outcomes.values()) == ["INSUFFICIENT_STOCK", "ok"]
        ledger = catalog.get_stock_ledger("P")
        assert ledger.available == 4
        assert len(ledger.reservations) == 1


@pytest.mark.parametrize("seed", [1, 2, 3])
def test_random_interleavings_never_oversell(seed):
    rnd = random.Random(seed)
    service, catalog = _service(stock=10, retries=50)
    orders = [service.initialize(_draft(rnd.randint(1, 4))) for _ in range(24)]
    plans = [(o.id, rnd.choice(["pay", "abort", "hold"])) for o in orders]

    def run(plan):
        order_id, then = plan
        try:
            service.confirm(order_id)
        except (InsufficientStock, ConcurrentModification):
            return "rejected"
        try:
            if then == "pay":
                service.complete_payment(order_id)
            elif then == "abort":
                service.abort(order_id)
        except (InvalidTransition, NoReservationToCommit, ConcurrentModification):
            pass
        return then

    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(run, plans))

    assert all(avail >= 0 for avail in catalog.seen_available)
    ledger = catalog.get_stock_ledger("P")
    sold = sum(s.quantity for s in ledger.sales)
    assert ledger.stock + sold == 10
    assert ledger.available >= 0
    _assert_statuses_match_ledger(service, catalog, [o.id for o in orders])


def test_abort_racing_a_payment_keeps_the_order_paid():
    orders = InterleavingRepository()
    service, catalog = _service(orders=orders)
    order = service.initialize(_draft(3))
    service.confirm(order.id)

    orders.interleave = lambda: service.complete_payment(order.id)
    with pytest.raises(InvalidTransition):
        service.abort(order.id)

    assert service.get(order.id).status == OrderStatus.PAID
    ledger = catalog.get_stock_ledger("P")
    assert ledger.stock == 7
    assert len(ledger.sales) == 1
    assert ledger.reservations == {}


def test_confirm_racing_an_abort_leaves_no_hold():
    orders = InterleavingRepository()
    service, catalog = _service(orders=orders)
    order = service.initialize(_draft(3))

    orders.interleave = lambda: service.abort(order.id)
    with pytest.raises(InvalidTransition):
        service.confirm(order.id)

    assert service.get(order.id).status == OrderStatus.ABORTED
    assert catalog.get_stock_ledger("P").reservations == {}
    assert catalog.get_stock_ledger("P").available == 10


def test_abort_racing_a_confirm_re_reads_and_releases():
    orders = InterleavingRepository()
    service, catalog = _service(orders=orders)
    order = service.initialize(_draft(3))

    orders.interleave = lambda: service.confirm(order.id)
    aborted = service.abort(order.id)

    assert aborted.status == OrderStatus.ABORTED
    assert service.get(order.id).status == OrderStatus.ABORTED
    assert catalog.get_stock_ledger("P").reservations == {}


def test_second_payment_racing_the_first_sells_once():
    orders = InterleavingRepository()
    service, catalog = _service(orders=orders)
    order = service.initialize(_draft(3))
    service.confirm(order.id)

    orders.interleave = lambda: service.complete_payment(order.id)
    with pytest.raises(InvalidTransition):
        service.complete_payment(order.id)

    assert service.get(order.id).status == OrderStatus.PAID
    ledger = catalog.get_stock_ledger("P")
    assert ledger.stock == 7
    assert len(ledger.sales) == 1


def test_two_confirms_of_the_same_order_keep_one_hold():
    orders = InterleavingRepository()
    service, catalog = _service(orders=orders)
    order = service.initialize(_draft(3))

    orders.interleave = lambda: service.confirm(order.id)
    with pytest.raises(InvalidTransition):
        service.confirm(order.id)

    assert service.get(order.id).status == OrderStatus.CONFIRMED
    assert catalog.get_stock_ledger("P").reservations == {order.id: 3}


@pytest.mark.parametrize("seed", [1, 2, 3])
def test_pay_and_abort_racing_on_each_order(seed):
    rnd = random.Random(seed)
    service, catalog = _service(stock=10, retries=50)
    orders = [service.initialize(_draft(1)) for _ in range(8)]
    for o in orders:
        service.confirm(o.id)
    calls = [(o.id, action) for o in orders for action in ("pay", "abort")]
    rnd.shuffle(calls)

    def run(call):
        order_id, action = call
        try:
            if action == "pay":
                service.complete_payment(order_id)
            else:
                service.abort(order_id)
        except (InvalidTransition, NoReservationToCommit):
            pass

    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(run, calls))

    assert {service.get(o.id).status for o in orders} <= {OrderStatus.PAID, OrderStatus.ABORTED}
    _assert_statuses_match_ledger(service, catalog, [o.id for o in orders])
    ledger = catalog.get_stock_ledger("P")
    assert ledger.stock + sum(s.quantity for s in ledger.sales) == 10
