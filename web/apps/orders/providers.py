"""Service provider helpers for wiring OrderWorkflowService with ports.

This module exposes a small factory function ``get_workflow_service`` that
returns a configured ``OrderWorkflowService``. When
``settings.USE_HTTP_ADAPTERS`` is truthy the catalog and pricing ports are
the HTTP clients; otherwise they are in-process adapters seeded from
``settings.SEED_PRODUCTS`` and ``settings.SHIPPING_PRICES``, suitable for
tests and local development. Orders are always persisted through the
Django ORM repository.

The in-process catalog is shared by every request of the process so stock
reserved by one request is seen by the next; ``reset_stubs`` rebuilds it.
"""

import threading

from django.conf import settings

from .adapters import InMemoryProductCatalog, StaticPricing
from .http_adapters import HttpPricingClient, HttpProductCatalogClient
from .repository import DjangoOrderRepository
from .workflow import DEFAULT_LEDGER_RETRIES, OrderWorkflowService

_lock = threading.Lock()
_catalog: InMemoryProductCatalog | None = None
_pricing: StaticPricing | None = None


def _stubs() -> tuple[InMemoryProductCatalog, StaticPricing]:
    global _catalog, _pricing
    with _lock:
        if _catalog is None:
            _catalog = InMemoryProductCatalog.from_rows(getattr(settings, "SEED_PRODUCTS", []))
        if _pricing is None:
            _pricing = StaticPricing(getattr(settings, "SHIPPING_PRICES", {}))
        return _catalog, _pricing


def reset_stubs() -> None:
    """Drop the in-process catalog and pricing so they are re-seeded."""
    global _catalog, _pricing
    with _lock:
        _catalog = None
        _pricing = None


def get_workflow_service() -> OrderWorkflowService:
    """Return a configured OrderWorkflowService instance.

    Returns:
        OrderWorkflowService: A service wired with HTTP or in-process ports.
    """
    retries = getattr(settings, "LEDGER_WRITE_MAX_RETRIES", DEFAULT_LEDGER_RETRIES)

    if getattr(settings, "USE_HTTP_ADAPTERS", True):
        return OrderWorkflowService(
            catalog=HttpProductCatalogClient(),
            pricing=HttpPricingClient(),
            orders=DjangoOrderRepository(),
            max_ledger_retries=retries,
        )

    catalog, pricing = _stubs()
    return OrderWorkflowService(
        catalog=catalog,
        pricing=pricing,
        orders=DjangoOrderRepository(),
        max_ledger_retries=retries,
    )
