"""Idempotency utilities for safely handling duplicate requests.

This module stores and retrieves idempotency keys to safely de-duplicate
client order submissions. Keys are scoped per user, so two shoppers
sending the same header value never see each other's responses. It
supports creating an idempotent record, detecting conflicts when the same
key is used with a different payload, finalizing a stored response so
subsequent retries can short-circuit, and releasing a record when the
first attempt failed for reasons a retry could fix.
"""

import hashlib
import json

from django.db import IntegrityError, transaction

from .exceptions import IdempotencyConflictError
from .models import IdempotencyKey

IN_PROGRESS = 0


def _hash(payload) -> str:
    """Compute a stable SHA-256 hash for a JSON-serializable payload.

    The payload is serialized with sorted keys and compact separators to
    ensure a deterministic representation before hashing.
    """
    body = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


def scoped_key(user_id: int, key: str) -> str:
    return f"{user_id}:{key}"


@transaction.atomic
def get_or_create_idempotent(user_id: int, key: str, payload):
    """Get-or-create an idempotency record for the given key and payload.

    Behavior:
        - First request with a new key: create a record and return (False, rec).
        - Subsequent request with same key and same payload: lock and return
          (True, rec) for reuse.
        - Subsequent request with same key but different payload: raise
          ``IdempotencyConflictError``.

    The create path runs in a nested savepoint so an IntegrityError only
    rolls back that block. The existing-record path takes a row lock.

    Returns:
        tuple[bool, IdempotencyKey]: ``(existing, rec)``.
    """
    h = _hash(payload)
    full_key = scoped_key(user_id, key)

    try:
        with transaction.atomic():
            rec = IdempotencyKey.objects.create(
                key=full_key, request_hash=h, response_status=IN_PROGRESS, response_body={}
            )
            return False, rec
    except IntegrityError:
        rec = IdempotencyKey.objects.select_for_update().get(key=full_key)
        if rec.request_hash != h:
            raise IdempotencyConflictError("Idempotency-Key was already used with a different payload")
        return True, rec


def finalize(rec: IdempotencyKey, status_code: int, body: dict, order_id=None):
    """Persist the final response for an idempotent request.

    Args:
        rec: The idempotency record to update.
        status_code: HTTP status code to store for the response.
        body: JSON-serializable response body to persist.
        order_id: Optional order identifier to link to the idempotency record.
    """
    rec.response_status = status_code
    rec.response_body = body
    if order_id is not None:
        rec.order_id = order_id
    rec.save(update_fields=["response_status", "response_body", "order_id"])


def release(rec: IdempotencyKey):
    """Forget a key whose first attempt failed upstream, so it can be retried."""
    IdempotencyKey.objects.filter(key=rec.key, response_status=IN_PROGRESS).delete()
