"""API tests for the shipping price service."""

ADDRESS = {"country": "Chile", "state": "Metropolitana", "city": "Santiago", "neighborhood": "Providencia"}


def test_quote_unknown_state_is_404(client):
    r = client.post("/prices/quote", json=ADDRESS)
    assert r.status_code == 404
    assert r.json()["detail"] == "NO_PRICE"


def test_quote_after_upsert(client):
    r = client.put("/prices/Metropolitana", json={"price": "4.90", "money": "CLP", "description": "48h"})
    assert r.status_code == 200
    assert r.json()["location"] == "metropolitana"

    r = client.post("/prices/quote", json={**ADDRESS, "state": "  METROPOLITANA "})
    assert r.status_code == 200
    assert r.json()["price"] == "4.90"
    assert r.json()["money"] == "CLP"


def test_upsert_replaces_price(client):
    client.put("/prices/valparaiso", json={"price": "7.50"})
    client.put("/prices/Valparaiso", json={"price": "8.00"})
    r = client.post("/prices/quote", json={**ADDRESS, "state": "Valparaiso"})
    assert r.json()["price"] == "8.00"


def test_quote_requires_state(client):
    r = client.post("/prices/quote", json={**ADDRESS, "state": ""})
    assert r.status_code == 422
