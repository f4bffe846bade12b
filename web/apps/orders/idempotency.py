"""Idempotency utilities for safely handling duplicate requests.

This module stores and retrieves idempotency keys to safely de-duplicate
POST requests on the orders API (initialize and the status transitions).
It supports creating an idempotent record, detecting conflicts when the
same key is used with a different payload, and finalizing a stored
response so subsequent retries can short-circuit.

The hashed payload includes the request path, so one key cannot be
replayed against a different endpoint.
"""

import hashlib
import json

from django.db import IntegrityError, transaction

from .errors import IdempotencyConflict
from .models import IdempotencyKey


def _hash(payload: dict) -> str:
    """Compute a stable SHA-256 hash for a JSON-serializable payload.

    The payload is serialized with sorted keys and compact separators to
    ensure a deterministic representation before hashing.
    """
    body = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


@transaction.atomic
def get_or_create_idempotent(key: str, path: str, payload: dict):
    """Get-or-create an idempotency record for the given key and request.

    Behavior:
        - First request with a new key: create a record and return (False, rec).
        - Later request with the same key and payload: lock the row and
          return (True, rec) so the caller can replay the stored response.
        - Later request with the same key but a different payload or path:
          raise ``IdempotencyConflict``.

    The create path runs in a nested savepoint so an IntegrityError only
    rolls back that block; the existing-record path takes a row lock
    (SELECT ... FOR UPDATE).

    Args:
        key: Client-provided idempotency key.
        path: Request path the key is bound to.
        payload: Request payload used to compute the request hash.

    Returns:
        tuple[bool, IdempotencyKey]: (existing, rec).

    Raises:
        IdempotencyConflict: If the key exists with a different request hash.
    """
    h = _hash({"path": path, "body": payload})

    try:
        with transaction.atomic():
            rec = IdempotencyKey.objects.create(
                key=key, request_hash=h, response_status=0, response_body={}
            )
            return False, rec
    except IntegrityError:
        rec = IdempotencyKey.objects.select_for_update().get(key=key)
        if rec.request_hash != h:
            raise IdempotencyConflict({"key": key})
        return True, rec


def finalize(rec: IdempotencyKey, status_code: int, body: dict, order_id=None):
    """Persist the final response for an idempotent request.

    Args:
        rec: The idempotency record to update.
        status_code: HTTP status code to store for the response.
        body: JSON-serializable response body to persist.
        order_id: Optional order identifier to link to the record.
    """
    rec.response_status = status_code
    rec.response_body = body
    if order_id is not None:
        rec.order_id = order_id
    rec.save(update_fields=["response_status", "response_body", "order_id"])
