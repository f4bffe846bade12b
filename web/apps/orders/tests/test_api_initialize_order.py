"""API tests for the initialize-order endpoint.

These tests exercise ``POST /api/orders/`` for the main scenarios: pricing
with and without shipping, stock and pricing failures, and payload
validation errors. They rely on the in-process catalog seeded by the
``use_stubs_for_tests`` fixture.
"""
import pytest

from apps.orders.errors import GatewayError
from apps.orders.models import OrderModel

CREATE_URL = "/api/orders/"

CLIENT = {"user_id": "u1", "first_name": "Ana", "last_name": "Rojas", "email": "ana@example.com"}
ADDRESS = {"country": "Chile", "state": "Metropolitana", "city": "Santiago", "neighborhood": "Providencia"}


def _payload(items, **extra):
    body = {"client": CLIENT, "order_items": [{"product_id": p, "quantity": q} for p, q in items]}
    body.update(extra)
    return body


@pytest.mark.django_db
def test_initialize_order_without_shipping(client):
    r = client.post(CREATE_URL, data=_payload([("P1", 3)]), content_type="application/json")

    assert r.status_code == 201
    body = r.json()
    assert body["status"] == "INITIALIZED"
    assert body["sub_total"] == "37.50"
    assert body["shipping_price"] == "0.00"
    assert body["total"] == "37.50"
    assert body["count"] == 3
    assert body["order_items"][0]["name"] == "Coffee mug"
    assert body["order_items"][0]["image_url"] == "https://img.local/p1.png"

    row = OrderModel.objects.get(id=body["id"])
    assert row.status == "INITIALIZED"
    assert str(row.total) == "37.50"
    assert row.internal_id == 1


@pytest.mark.django_db
def test_initialize_order_with_shipping(client):
    payload = _payload([("P1", 1), ("P2", 2)], includes_shipping=True, shipping_address=ADDRESS)
    r = client.post(CREATE_URL, data=payload, content_type="application/json")

    assert r.status_code == 201
    body = r.json()
    assert body["sub_total"] == "72.50"
    assert body["shipping_price"] == "4.90"
    assert body["total"] == "77.40"
    assert body["shipping_address"]["state"] == "Metropolitana"


@pytest.mark.django_db
def test_initialize_order_out_of_stock(client):
    r = client.post(CREATE_URL, data=_payload([("P2", 15)]), content_type="application/json")
    assert r.status_code == 422
    assert r.json()["detail"] == "OUT_OF_STOCK"
    assert OrderModel.objects.count() == 0


@pytest.mark.django_db
def test_initialize_order_unknown_product(client):
    r = client.post(CREATE_URL, data=_payload([("NOPE", 1)]), content_type="application/json")
    assert r.status_code == 404
    assert r.json()["detail"] == "PRODUCT_NOT_FOUND"


@pytest.mark.django_db
def test_initialize_order_without_shipping_price(client):
    address = dict(ADDRESS, state="Aysen")
    payload = _payload([("P1", 1)], includes_shipping=True, shipping_address=address)
    r = client.post(CREATE_URL, data=payload, content_type="application/json")
    assert r.status_code == 422
    assert r.json()["detail"] == "NO_PRICING_FOR_ADDRESS"


@pytest.mark.django_db
@pytest.mark.parametrize(
    "payload",
    [
        {"client": CLIENT, "order_items": []},
        {"client": dict(CLIENT, email="nope"), "order_items": [{"product_id": "P1", "quantity": 1}]},
        {"client": CLIENT, "order_items": [{"product_id": "P1", "quantity": 0}]},
        {"client": CLIENT, "order_items": [{"product_id": "P1", "quantity": 1}, {"product_id": "P1", "quantity": 2}]},
        {"client": CLIENT, "order_items": [{"product_id": "P1", "quantity": 1}], "includes_shipping": True},
    ],
)
def test_initialize_order_validation_error(client, payload):
    r = client.post(CREATE_URL, data=payload, content_type="application/json")
    assert r.status_code == 400
    assert r.json()["detail"] == "MALFORMED_ORDER"
    assert OrderModel.objects.count() == 0


@pytest.mark.django_db
def test_initialize_order_upstream_unavailable(client, monkeypatch):
    class DownService:
        def initialize(self, draft):
            raise GatewayError("catalog down")

    # patch the *symbol* used by the view
    monkeypatch.setattr("apps.orders.providers.get_workflow_service", lambda: DownService(), raising=True)

    r = client.post(CREATE_URL, data=_payload([("P1", 1)]), content_type="application/json")
    assert r.status_code == 503
    assert r.json()["detail"] == "UPSTREAM_UNAVAILABLE"


@pytest.mark.django_db
def test_request_id_is_echoed(client):
    r = client.get("/api/orders/ping/", HTTP_X_REQUEST_ID="abc-123")
    assert r.status_code == 200
    assert r["X-Request-ID"] == "abc-123"
