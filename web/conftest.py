import pytest

SEED_PRODUCTS = [
    {"id": "P1", "name": "Coffee mug", "gross_price": "12.50", "image_url": "https://img.local/p1.png", "stock": 10},
    {"id": "P2", "name": "Tea pot", "gross_price": "30.00", "image_url": "https://img.local/p2.png", "stock": 3},
    {"id": "P3", "name": "Spoon", "gross_price": "1.99", "stock": 1},
]

SHIPPING_PRICES = {"Metropolitana": "4.90", "Valparaiso": "7.50"}


@pytest.fixture(autouse=True)
def use_stubs_for_tests(settings):
    from django.core.cache import cache

    from apps.orders import providers
    from apps.orders.http_adapters import _catalog_cb, _pricing_cb

    settings.USE_HTTP_ADAPTERS = False
    settings.SEED_PRODUCTS = SEED_PRODUCTS
    settings.SHIPPING_PRICES = SHIPPING_PRICES
    providers.reset_stubs()
    # throttling counters live in the local-memory cache
    cache.clear()
    _catalog_cb.on_success()
    _pricing_cb.on_success()
    yield
    providers.reset_stubs()
