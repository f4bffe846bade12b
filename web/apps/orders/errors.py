"""Error taxonomy for the order workflow.

Domain errors derive from ``OrderWorkflowError`` (a ``ValueError``) and
carry a short, stable code: ``str(err)`` is always the code so callers can
keep comparing against plain strings. The views are the only place where a
code is translated into an HTTP status.

Infrastructure failures derive from ``GatewayError`` (a ``RuntimeError``)
and must never be read as a domain decision.
"""


class OrderWorkflowError(ValueError):
    """Base class for domain errors raised by the order workflow.

    Attributes:
        code: Stable error code exposed to the transport layer.
        data: Optional JSON-serializable details (product id, quantities).
    """

    code = "ORDER_WORKFLOW_ERROR"

    def __init__(self, data: dict | None = None, detail: str | None = None):
        super().__init__(self.code)
        self.data = data or {}
        self.detail = detail or self.code

    def to_dict(self) -> dict:
        body = {"detail": self.code}
        if self.data:
            body["data"] = self.data
        return body


class MalformedOrder(OrderWorkflowError):
    code = "MALFORMED_ORDER"


class OrderNotFound(OrderWorkflowError):
    code = "ORDER_NOT_FOUND"


class ProductNotFound(OrderWorkflowError):
    code = "PRODUCT_NOT_FOUND"


class OutOfStock(OrderWorkflowError):
    """Requested quantity exceeds the product's total stock (initialize)."""

    code = "OUT_OF_STOCK"


class InsufficientStock(OrderWorkflowError):
    """Requested quantity exceeds the product's available stock (confirm)."""

    code = "INSUFFICIENT_STOCK"


class NoReservationToCommit(OrderWorkflowError):
    code = "NO_RESERVATION_TO_COMMIT"


class InvalidTransition(OrderWorkflowError):
    code = "INVALID_TRANSITION"


class NoPricingForAddress(OrderWorkflowError):
    code = "NO_PRICING_FOR_ADDRESS"


class ConcurrentModification(OrderWorkflowError):
    """A ledger kept changing under us and the retry budget ran out."""

    code = "CONCURRENT_MODIFICATION"


class OrderStatusConflict(ConcurrentModification):
    """The order's status moved on between reading it and writing a new one."""


class LedgerInvariantViolation(OrderWorkflowError):
    """A ledger mutation would leave stock or holds negative."""

    code = "LEDGER_INVARIANT"


class IdempotencyConflict(OrderWorkflowError):
    """An ``Idempotency-Key`` was reused with a different request body."""

    code = "IDEMPOTENCY_CONFLICT"


# ---- Infrastructure ----
class GatewayError(RuntimeError):
    """A collaborator (database, catalog, pricing) could not be reached."""

    code = "UPSTREAM_UNAVAILABLE"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.code)


class LedgerVersionConflict(GatewayError):
    """Compare-and-save rejected: the stored ledger version moved on."""

    code = "VERSION_CONFLICT"


class CompensationFailed(GatewayError):
    """Rolling back reservations failed; ``product_ids`` are still held.

    Attributes:
        order_id: Order whose reservations could not be released.
        product_ids: Products that still carry a hold for the order.
    """

    code = "COMPENSATION_FAILED"

    def __init__(self, order_id: str, product_ids: list[str]):
        super().__init__(f"{self.code}: order={order_id} products={','.join(product_ids)}")
        self.order_id = order_id
        self.product_ids = product_ids
