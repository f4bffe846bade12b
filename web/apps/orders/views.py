"""HTTP views for the orders app.

This module contains DRF API views used by the orders service. Views are
kept intentionally small: they validate requests (via Pydantic), map to
domain drafts, delegate to the workflow service, and return an HTTP
response.

The views obtain a configured ``OrderWorkflowService`` from
``providers.get_workflow_service()``, which returns HTTP adapter-backed
ports (``HttpProductCatalogClient``, ``HttpPricingClient``) or in-process
adapters depending on runtime settings. This allows tests and local
development to swap implementations without changing view logic.

Error codes raised by the workflow are translated to HTTP statuses here and
nowhere else (see ``STATUS_BY_CODE``).

Idempotency: when an ``Idempotency-Key`` header is provided on a POST, the
first request is processed and its response stored. Retries with the same
key and payload replay the stored response with an ``Idempotent-Replay``
header. Reusing the key with a different payload returns HTTP 409.
"""

import logging

from pydantic import ValidationError
from rest_framework import status
from rest_framework.response import Response
from rest_framework.throttling import ScopedRateThrottle
from rest_framework.views import APIView

from . import providers
from .errors import GatewayError, IdempotencyConflict, OrderWorkflowError
from .idempotency import finalize, get_or_create_idempotent
from .schemas import InitializeOrderDTO, OrderReadDTO

logger = logging.getLogger("orders.api")

STATUS_BY_CODE = {
    "MALFORMED_ORDER": status.HTTP_400_BAD_REQUEST,
    "ORDER_NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "PRODUCT_NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "INVALID_TRANSITION": status.HTTP_409_CONFLICT,
    "CONCURRENT_MODIFICATION": status.HTTP_409_CONFLICT,
    "IDEMPOTENCY_CONFLICT": status.HTTP_409_CONFLICT,
    "OUT_OF_STOCK": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "INSUFFICIENT_STOCK": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "NO_PRICING_FOR_ADDRESS": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "NO_RESERVATION_TO_COMMIT": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "LEDGER_INVARIANT": status.HTTP_500_INTERNAL_SERVER_ERROR,
}

UPSTREAM_UNAVAILABLE = {"detail": "UPSTREAM_UNAVAILABLE"}


def error_response(exc: OrderWorkflowError) -> tuple[int, dict]:
    """Map a domain error to ``(http_status, body)``."""
    return STATUS_BY_CODE.get(exc.code, status.HTTP_400_BAD_REQUEST), exc.to_dict()


def _run(action, *args) -> tuple[int, dict]:
    """Run a workflow action and turn any failure into ``(status, body)``.

    ``action`` must return ``(status, body)`` on success.
    """
    try:
        return action(*args)
    except OrderWorkflowError as e:
        code, body = error_response(e)
        if code >= 500:
            logger.error("workflow invariant broken", extra={"error": e.code, "data": e.data})
        return code, body
    except GatewayError as e:
        logger.warning("upstream failure", extra={"error": str(e)})
        return status.HTTP_503_SERVICE_UNAVAILABLE, dict(UPSTREAM_UNAVAILABLE)
    except Exception:
        logger.exception("unexpected workflow failure")
        return status.HTTP_503_SERVICE_UNAVAILABLE, dict(UPSTREAM_UNAVAILABLE)


def _idempotent(request, action, *args) -> Response:
    """Run ``action`` honouring an optional ``Idempotency-Key`` header."""
    idem_key = request.headers.get("Idempotency-Key")
    if not idem_key:
        status_code, body = _run(action, *args)
        return Response(body, status=status_code)

    try:
        existing, rec = get_or_create_idempotent(idem_key, request.path, request.data)
    except IdempotencyConflict as e:
        return Response(e.to_dict(), status=status.HTTP_409_CONFLICT)

    if existing:
        if not rec.response_status:
            # First request with this key has not finished yet
            return Response({"detail": "IDEMPOTENCY_IN_PROGRESS"}, status=status.HTTP_409_CONFLICT)
        resp = Response(rec.response_body, status=rec.response_status)
        resp["Idempotent-Replay"] = "true"
        return resp

    status_code, body = _run(action, *args)
    finalize(rec, status_code, body, order_id=body.get("id") if status_code < 300 else None)
    return Response(body, status=status_code)


class OrdersPingView(APIView):
    """Simple health-check endpoint for the orders module.

    Returns a minimal JSON payload used by liveness/health checks and by
    automated smoke-tests.
    """

    def get(self, request):
        return Response({"ok": True})


class OrdersCollectionView(APIView):
    """List orders and initialize new ones.

    ``POST`` validates the payload with ``InitializeOrderDTO``, prices it
    through the workflow and returns the created order as ``INITIALIZED``.
    No stock is reserved at this point.
    """

    throttle_classes = [ScopedRateThrottle]

    def get_throttles(self):
        # DRF evaluates throttles in initial(), before get/post
        self.throttle_scope = "orders_list" if self.request.method == "GET" else "orders_create"
        return [throttle() for throttle in self.throttle_classes]

    def get(self, request):
        try:
            page = int(request.GET.get("page", 1))
            page_size = int(request.GET.get("page_size", 20))
        except ValueError:
            return Response({"detail": "INVALID_PAGINATION"}, status=status.HTTP_400_BAD_REQUEST)
        if page < 1 or not 1 <= page_size <= 100:
            return Response({"detail": "INVALID_PAGINATION"}, status=status.HTTP_400_BAD_REQUEST)

        service = providers.get_workflow_service()
        try:
            rows, total = service.orders.list(page=page, page_size=page_size)
        except GatewayError:
            return Response(UPSTREAM_UNAVAILABLE, status=status.HTTP_503_SERVICE_UNAVAILABLE)

        return Response(
            {
                "count": total,
                "page": page,
                "page_size": page_size,
                "results": [OrderReadDTO.from_domain(o).model_dump(mode="json") for o in rows],
            },
            status=200,
        )

    def post(self, request):
        """Initialize a new order.

        Returns:
            Response: One of the following responses.
            - 201 with the order read model when the order is initialized.
            - Replayed stored response when the same idempotency key and
              payload are retried.
            - 400 with {detail: "MALFORMED_ORDER"} for invalid payloads.
            - 404 with {detail: "PRODUCT_NOT_FOUND"} for unknown products.
            - 422 with {detail: "OUT_OF_STOCK" | "NO_PRICING_FOR_ADDRESS"}.
            - 503 with {detail: "UPSTREAM_UNAVAILABLE"} when a collaborator
              is unavailable.
        """
        try:
            dto = InitializeOrderDTO.model_validate(request.data)
        except ValidationError as e:
            return Response(
                {
                    "detail": "MALFORMED_ORDER",
                    "errors": e.errors(include_url=False, include_context=False, include_input=False),
                },
                status=status.HTTP_400_BAD_REQUEST,
            )

        def initialize(draft):
            order = providers.get_workflow_service().initialize(draft)
            return status.HTTP_201_CREATED, OrderReadDTO.from_domain(order).model_dump(mode="json")

        return _idempotent(request, initialize, dto.to_draft())


class RetrieveOrderView(APIView):
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "orders_detail"

    def get(self, request, oid):
        status_code, body = _run(
            lambda: (200, OrderReadDTO.from_domain(providers.get_workflow_service().get(str(oid))).model_dump(mode="json"))
        )
        return Response(body, status=status_code)


class OrderTransitionView(APIView):
    """Drive an order through ``confirm``, ``abort`` or ``pay``.

    The transition is chosen at URL configuration time through the
    ``transition`` init kwarg. Every transition answers 200 with
    ``{id, status}``.
    """

    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "orders_transition"
    transition = None

    _METHODS = {
        "confirm": "confirm",
        "abort": "abort",
        "pay": "complete_payment",
    }

    def post(self, request, oid):
        method_name = self._METHODS[self.transition]

        def apply(order_id):
            order = getattr(providers.get_workflow_service(), method_name)(order_id)
            return status.HTTP_200_OK, {"id": str(order.id), "status": order.status.value}

        return _idempotent(request, apply, str(oid))
