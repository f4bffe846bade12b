"""HTTP adapter clients with retries, circuit breakers, and context headers.

This module implements concrete HTTP clients for the domain ports using
``httpx``. It adds:

- Request correlation: propagates ``X-Request-ID`` from a ContextVar set by
    the gateway middleware.
- Circuit breaker per downstream service (catalog, pricing) to avoid
    hammering unhealthy dependencies, with HALF_OPEN probing after a timeout.
- Simple retry policy with exponential backoff for transport errors and 5xx.
- Error translation: business answers (404, 409) become domain results or
    ``LedgerVersionConflict``; everything else surfaces as ``GatewayError``
    so the workflow never mistakes an outage for a domain decision.
"""

import os
import sys
import threading
import time
from decimal import Decimal
from typing import Optional

import httpx
from django.conf import settings
from django.utils.module_loading import import_string

from .domain import Address, PricingPort, Product, ProductCatalogPort, StockLedger
from .errors import GatewayError, LedgerVersionConflict, ProductNotFound
from .schemas import LedgerWire, ProductWire

REQUEST_ID_CTX = import_string("gateway.middleware.REQUEST_ID_CTX")


def _is_test_mode() -> bool:
    return (
        "pytest" in sys.modules
        or os.environ.get("PYTEST_CURRENT_TEST") is not None
        or os.environ.get("PYTEST_RUNNING") == "1"
    )

# ---------------- Circuit Breaker ---------------- #

class CircuitBreaker:
    """Minimal circuit breaker with CLOSED/OPEN/HALF_OPEN states.

    Transitions:
    - CLOSED → OPEN when failures reach ``fail_threshold``.
    - OPEN → HALF_OPEN after ``reset_timeout`` seconds.
    - HALF_OPEN → CLOSED on a successful probe; stays HALF_OPEN while a
      single probe is in flight; transitions back to OPEN on failure.

    This implementation is thread-safe via an internal lock.
    """

    def __init__(self, name: str, fail_threshold: int, reset_timeout: float):
        self.name = name
        self.fail_threshold = fail_threshold
        self.reset_timeout = reset_timeout
        self._lock = threading.RLock()
        self._failures = 0
        self._state = "CLOSED"  # CLOSED | OPEN | HALF_OPEN
        self._opened_at = 0.0
        self._half_open_probe_in_flight = False

    @property
    def state(self) -> str:
        """Current breaker state with time-based transition handling."""
        with self._lock:
            if self._state == "OPEN" and (time.monotonic() - self._opened_at) >= self.reset_timeout:
                self._state = "HALF_OPEN"
                self._half_open_probe_in_flight = False
            return self._state

    def before_call(self) -> str:
        """Check and update state before a protected call.

        Returns:
            str: The state at call time.

        Raises:
            GatewayError: If the circuit is OPEN or a HALF_OPEN probe is busy.
        """
        with self._lock:
            st = self.state
            if st == "OPEN":
                raise GatewayError(f"CIRCUIT_OPEN: {self.name}")
            if st == "HALF_OPEN":
                if self._half_open_probe_in_flight:
                    raise GatewayError(f"CIRCUIT_HALF_OPEN_BUSY: {self.name}")
                self._half_open_probe_in_flight = True
            return st

    def on_success(self):
        with self._lock:
            self._failures = 0
            self._state = "CLOSED"
            self._half_open_probe_in_flight = False

    def on_failure(self):
        with self._lock:
            self._failures += 1
            if self._failures >= self.fail_threshold and self._state != "OPEN":
                self._state = "OPEN"
                self._opened_at = time.monotonic()
                self._half_open_probe_in_flight = False

    def on_finish(self):
        with self._lock:
            if self._state == "HALF_OPEN":
                self._half_open_probe_in_flight = False


_catalog_cb = CircuitBreaker(
    "catalog",
    getattr(settings, "HTTP_CIRCUIT_FAIL_THRESHOLD", 5),
    getattr(settings, "HTTP_CIRCUIT_RESET_TIMEOUT", 30.0),
)
_pricing_cb = CircuitBreaker(
    "pricing",
    getattr(settings, "HTTP_CIRCUIT_FAIL_THRESHOLD", 5),
    getattr(settings, "HTTP_CIRCUIT_RESET_TIMEOUT", 30.0),
)


def circuit_states() -> dict:
    """Snapshot of every breaker state, for the health endpoint."""
    return {cb.name: cb.state for cb in (_catalog_cb, _pricing_cb)}


# ---------------- Helpers ---------------- #

def _request_headers(extra: Optional[dict] = None) -> dict:
    """Build base headers including X-Request-ID and any extras."""
    headers: dict[str, str] = {}
    rid = REQUEST_ID_CTX.get()
    if rid and rid != "-":
        headers["X-Request-ID"] = rid
    if extra:
        headers.update(extra)
    return headers


def _retry_policy():
    """Return retry configuration as (max_retries, backoff_base_seconds)."""
    max_retries = getattr(settings, "HTTP_RETRY_MAX", 3)
    backoff = getattr(settings, "HTTP_RETRY_BACKOFF_BASE", 0.15)
    if _is_test_mode():
        max_retries = max(max_retries, 1)
        backoff = 0.0
    return max_retries, backoff


def _should_retry(resp: Optional[httpx.Response], exc: Optional[Exception]) -> bool:
    """Retry only on transport exceptions or HTTP 5xx."""
    if exc is not None:
        return True
    return resp is not None and 500 <= resp.status_code < 600


def _send(
    cb: CircuitBreaker,
    method: str,
    url: str,
    timeout: float,
    business_statuses: tuple[int, ...],
    payload: Optional[dict] = None,
) -> httpx.Response:
    """Send one logical request with circuit breaker and retries.

    Responses with a 2xx status or one of ``business_statuses`` are returned
    to the caller and count as a healthy dependency. Transport errors and
    5xx are retried with exponential backoff.

    Raises:
        GatewayError: When the circuit is open, retries are exhausted, or the
            dependency answers with an unexpected status.
    """
    max_retries, backoff = _retry_policy()
    tries = 0

    state = cb.before_call()
    headers = _request_headers({"X-Circuit-State": state, "X-Retry-Count": "0"})

    try:
        with httpx.Client(timeout=timeout) as client:
            while True:
                resp = None
                exc = None
                try:
                    resp = client.request(method, url, json=payload, headers=headers)
                    if 200 <= resp.status_code < 300 or resp.status_code in business_statuses:
                        cb.on_success()
                        return resp
                    if not _should_retry(resp, None):
                        cb.on_failure()
                        raise GatewayError(f"UNEXPECTED_STATUS {resp.status_code}: {method} {url}")
                except httpx.RequestError as e:
                    exc = e

                tries += 1
                headers["X-Retry-Count"] = str(tries)

                if tries > max_retries:
                    cb.on_failure()
                    if exc is not None:
                        raise GatewayError(f"{cb.name}: {exc}") from exc
                    raise GatewayError(f"UPSTREAM_{resp.status_code}: {method} {url}")

                sleep_s = backoff * (2 ** (tries - 1))
                cap = getattr(settings, "HTTP_RETRY_MAX_SLEEP", 0.5)
                if sleep_s > 0:
                    time.sleep(min(sleep_s, cap))
    finally:
        cb.on_finish()


# ---------------- Catalog Adapter ---------------- #

class HttpProductCatalogClient(ProductCatalogPort):
    """HTTP client for the catalog service (products and stock ledgers)."""

    def __init__(self, base_url: str | None = None, timeout: float | None = None):
        self.base_url = (base_url or settings.CATALOG_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECS

    def get_product(self, product_id: str) -> Product:
        """Fetch a product with its ledger.

        Raises:
            ProductNotFound: On 404.
            GatewayError: On transport errors or unexpected statuses.
        """
        resp = _send(_catalog_cb, "GET", f"{self.base_url}/products/{product_id}", self.timeout, (404,))
        if resp.status_code == 404:
            raise ProductNotFound({"product_id": product_id})
        return ProductWire.model_validate(resp.json()).to_domain()

    def get_stock_ledger(self, product_id: str) -> StockLedger:
        resp = _send(_catalog_cb, "GET", f"{self.base_url}/products/{product_id}/ledger", self.timeout, (404,))
        if resp.status_code == 404:
            raise ProductNotFound({"product_id": product_id})
        return LedgerWire.model_validate(resp.json()).to_domain()

    def save_stock_ledger(self, ledger: StockLedger) -> None:
        """Compare-and-save the ledger on the catalog service.

        Maps 409 to ``LedgerVersionConflict`` and 422 (ledger rejected by the
        store's own invariant check) to ``GatewayError``.
        """
        payload = {
            "expected_version": ledger.version,
            "ledger": LedgerWire.from_domain(ledger).model_dump(mode="json"),
        }
        resp = _send(
            _catalog_cb,
            "PUT",
            f"{self.base_url}/products/{ledger.product_id}/ledger",
            self.timeout,
            (404, 409, 422),
            payload,
        )
        if resp.status_code == 404:
            raise ProductNotFound({"product_id": ledger.product_id})
        if resp.status_code == 409:
            raise LedgerVersionConflict(f"{ledger.product_id}: expected {ledger.version}")
        if resp.status_code == 422:
            raise GatewayError(f"LEDGER_REJECTED: {ledger.product_id}")
        ledger.version = int(resp.json()["version"])


# ---------------- Pricing Adapter ---------------- #

class HttpPricingClient(PricingPort):
    """HTTP client for the shipping price service."""

    def __init__(self, base_url: str | None = None, timeout: float | None = None):
        self.base_url = (base_url or settings.PRICING_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECS

    def get_price_by_address(self, address: Address) -> Optional[Decimal]:
        """Quote the shipping price for ``address``; ``None`` on 404."""
        resp = _send(
            _pricing_cb, "POST", f"{self.base_url}/prices/quote", self.timeout, (404,), address.to_dict()
        )
        if resp.status_code == 404:
            return None
        return Decimal(str(resp.json()["price"]))
