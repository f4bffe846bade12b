# web/apps/orders/tests/test_http_adapters.py
from decimal import Decimal

import httpx
import pytest

from apps.orders.domain import Address, StockLedger
from apps.orders.errors import GatewayError, LedgerVersionConflict, ProductNotFound
from gateway.middleware import REQUEST_ID_CTX

PRODUCT = {
    "id": "P1",
    "name": "Coffee mug",
    "gross_price": "12.50",
    "image_url": "https://img.local/p1.png",
    "ledger": {
        "product_id": "P1",
        "stock": 10,
        "reservations": {"o1": 2},
        "sales": [{"order_id": "o0", "quantity": 1, "gross_price": "12.50", "date": "2026-01-05T10:00:00+00:00"}],
        "version": 4,
    },
}


class FakeResponse:
    def __init__(self, status_code, body=None):
        self.status_code = status_code
        self._body = body or {}

    def json(self):
        return self._body


@pytest.fixture
def calls(monkeypatch, settings):
    settings.HTTP_RETRY_MAX = 1
    settings.HTTP_RETRY_BACKOFF_BASE = 0.0
    monkeypatch.setattr("time.sleep", lambda *a, **k: None, raising=True)
    return []


def _patch(monkeypatch, calls, *responses):
    queue = list(responses)

    def fake_request(self, method, url, json=None, headers=None, **kwargs):
        calls.append({"method": method, "url": url, "json": json, "headers": headers})
        nxt = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(nxt, Exception):
            raise nxt
        return nxt

    monkeypatch.setattr(httpx.Client, "request", fake_request, raising=True)


def test_get_product_maps_wire_to_domain(monkeypatch, calls):
    _patch(monkeypatch, calls, FakeResponse(200, PRODUCT))
    from apps.orders.http_adapters import HttpProductCatalogClient

    p = HttpProductCatalogClient(base_url="http://catalog").get_product("P1")

    assert calls[0]["method"] == "GET"
    assert calls[0]["url"] == "http://catalog/products/P1"
    assert p.gross_price == Decimal("12.50")
    assert p.ledger.available == 8
    assert p.ledger.version == 4
    assert p.ledger.sales[0].order_id == "o0"


def test_get_product_404_is_product_not_found(monkeypatch, calls):
    _patch(monkeypatch, calls, FakeResponse(404, {"detail": "PRODUCT_NOT_FOUND"}))
    from apps.orders.http_adapters import HttpProductCatalogClient

    with pytest.raises(ProductNotFound):
        HttpProductCatalogClient(base_url="http://catalog").get_product("P9")
    assert len(calls) == 1


def test_save_ledger_sends_expected_version(monkeypatch, calls):
    _patch(monkeypatch, calls, FakeResponse(200, {"version": 5}))
    from apps.orders.http_adapters import HttpProductCatalogClient

    ledger = StockLedger("P1", stock=10, reservations={"o1": 2}, version=4)
    HttpProductCatalogClient(base_url="http://catalog").save_stock_ledger(ledger)

    sent = calls[0]
    assert sent["method"] == "PUT"
    assert sent["url"] == "http://catalog/products/P1/ledger"
    assert sent["json"]["expected_version"] == 4
    assert sent["json"]["ledger"]["reservations"] == {"o1": 2}
    assert ledger.version == 5


def test_save_ledger_409_is_version_conflict(monkeypatch, calls):
    _patch(monkeypatch, calls, FakeResponse(409, {"detail": "VERSION_CONFLICT"}))
    from apps.orders.http_adapters import HttpProductCatalogClient

    with pytest.raises(LedgerVersionConflict):
        HttpProductCatalogClient(base_url="http://catalog").save_stock_ledger(StockLedger("P1", stock=1))


def test_save_ledger_422_is_gateway_error(monkeypatch, calls):
    _patch(monkeypatch, calls, FakeResponse(422, {"detail": "LEDGER_INVARIANT"}))
    from apps.orders.http_adapters import HttpProductCatalogClient

    with pytest.raises(GatewayError) as e:
        HttpProductCatalogClient(base_url="http://catalog").save_stock_ledger(StockLedger("P1", stock=1))
    assert not isinstance(e.value, LedgerVersionConflict)


def test_pricing_quote(monkeypatch, calls):
    _patch(monkeypatch, calls, FakeResponse(200, {"price": "4.90", "money": "CLP"}))
    from apps.orders.http_adapters import HttpPricingClient

    price = HttpPricingClient(base_url="http://shipping").get_price_by_address(Address(state="Metropolitana"))

    assert price == Decimal("4.90")
    assert calls[0]["url"] == "http://shipping/prices/quote"
    assert calls[0]["json"]["state"] == "Metropolitana"


def test_pricing_404_means_no_price(monkeypatch, calls):
    _patch(monkeypatch, calls, FakeResponse(404, {"detail": "NO_PRICE"}))
    from apps.orders.http_adapters import HttpPricingClient

    assert HttpPricingClient(base_url="http://shipping").get_price_by_address(Address(state="Mars")) is None


def test_request_id_is_propagated(monkeypatch, calls):
    _patch(monkeypatch, calls, FakeResponse(200, {"price": "1.00", "money": "CLP"}))
    from apps.orders.http_adapters import HttpPricingClient

    token = REQUEST_ID_CTX.set("req-123")
    try:
        HttpPricingClient(base_url="http://shipping").get_price_by_address(Address(state="x"))
    finally:
        REQUEST_ID_CTX.reset(token)

    assert calls[0]["headers"]["X-Request-ID"] == "req-123"
    assert calls[0]["headers"]["X-Retry-Count"] == "0"
