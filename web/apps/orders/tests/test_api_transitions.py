"""API tests for the confirm, abort and pay endpoints.

Each test initializes an order through the API and then drives it through
the status machine, checking both the HTTP answer and the in-process stock
ledger behind it.
"""
import pytest

from apps.orders import providers
from apps.orders.errors import LedgerInvariantViolation
from apps.orders.models import OrderModel

CLIENT = {"user_id": "u1", "first_name": "Ana", "last_name": "Rojas", "email": "ana@example.com"}


def _create(client, product_id="P1", quantity=3):
    payload = {"client": CLIENT, "order_items": [{"product_id": product_id, "quantity": quantity}]}
    r = client.post("/api/orders/", data=payload, content_type="application/json")
    assert r.status_code == 201
    return r.json()["id"]


def _post(client, oid, action, **headers):
    return client.post(f"/api/orders/{oid}/{action}/", content_type="application/json", **headers)


def _ledger(product_id="P1"):
    return providers.get_workflow_service().catalog.get_stock_ledger(product_id)


@pytest.mark.django_db
def test_confirm_then_pay(client):
    oid = _create(client)

    r = _post(client, oid, "confirm")
    assert r.status_code == 200
    assert r.json() == {"id": oid, "status": "CONFIRMED"}
    assert _ledger().available == 7

    r = _post(client, oid, "pay")
    assert r.status_code == 200
    assert r.json()["status"] == "PAID"
    ledger = _ledger()
    assert ledger.stock == 7
    assert ledger.reservations == {}
    assert [(s.order_id, s.quantity, str(s.gross_price)) for s in ledger.sales] == [(oid, 3, "12.50")]
    assert OrderModel.objects.get(id=oid).status == "PAID"


@pytest.mark.django_db
def test_confirm_then_abort_releases_stock(client):
    oid = _create(client)
    _post(client, oid, "confirm")

    r = _post(client, oid, "abort")
    assert r.status_code == 200
    assert r.json()["status"] == "ABORTED"
    assert _ledger().available == 10

    # aborting again is harmless
    r = _post(client, oid, "abort")
    assert r.status_code == 200
    assert _ledger().available == 10


@pytest.mark.django_db
def test_confirm_insufficient_stock(client):
    first = _create(client, "P2", 2)
    second = _create(client, "P2", 2)
    assert _post(client, first, "confirm").status_code == 200

    r = _post(client, second, "confirm")
    assert r.status_code == 422
    assert r.json()["detail"] == "INSUFFICIENT_STOCK"
    assert OrderModel.objects.get(id=second).status == "INITIALIZED"


@pytest.mark.django_db
def test_pay_without_confirm(client):
    oid = _create(client)
    r = _post(client, oid, "pay")
    assert r.status_code == 422
    assert r.json()["detail"] == "NO_RESERVATION_TO_COMMIT"


@pytest.mark.django_db
def test_pay_twice_does_not_sell_twice(client):
    oid = _create(client)
    _post(client, oid, "confirm")
    assert _post(client, oid, "pay").status_code == 200

    r = _post(client, oid, "pay")
    assert r.status_code == 422
    assert r.json()["detail"] == "NO_RESERVATION_TO_COMMIT"
    assert _ledger().stock == 7


@pytest.mark.django_db
def test_abort_paid_order_is_conflict(client):
    oid = _create(client)
    _post(client, oid, "confirm")
    _post(client, oid, "pay")

    r = _post(client, oid, "abort")
    assert r.status_code == 409
    assert r.json()["detail"] == "INVALID_TRANSITION"


@pytest.mark.django_db
def test_confirm_twice_is_conflict(client):
    oid = _create(client)
    _post(client, oid, "confirm")
    r = _post(client, oid, "confirm")
    assert r.status_code == 409
    assert _ledger().reserved_for(oid) == 3


@pytest.mark.django_db
def test_transition_unknown_order(client):
    r = _post(client, "00000000-0000-0000-0000-000000000000", "confirm")
    assert r.status_code == 404
    assert r.json()["detail"] == "ORDER_NOT_FOUND"


@pytest.mark.django_db
def test_confirm_is_idempotent_with_key(client):
    oid = _create(client)

    r1 = _post(client, oid, "confirm", HTTP_IDEMPOTENCY_KEY="confirm-1")
    r2 = _post(client, oid, "confirm", HTTP_IDEMPOTENCY_KEY="confirm-1")

    assert r1.status_code == 200
    assert r2.status_code == 200
    assert r2["Idempotent-Replay"] == "true"
    assert r2.json() == r1.json()


@pytest.mark.django_db
def test_ledger_invariant_is_not_reported_as_upstream_failure(client, monkeypatch):
    oid = _create(client)

    class BrokenLedgerService:
        def confirm(self, order_id):
            raise LedgerInvariantViolation({"product_id": "P1", "stock": 10, "reserved": 11})

    monkeypatch.setattr("apps.orders.providers.get_workflow_service", lambda: BrokenLedgerService())

    r = _post(client, oid, "confirm")
    assert r.status_code == 500
    assert r.json()["detail"] == "LEDGER_INVARIANT"
