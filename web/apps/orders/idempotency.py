"""Idempotency-Key support for admin mutations.

A retried admin cancellation must not restore stock twice. The first request
carrying a key creates a record; when it finishes its response is stored.
A retry with the same key and the same request replays the stored response;
the same key with a different request is a conflict.
"""

import hashlib
import json

from django.db import IntegrityError, transaction

from .errors import ConflictError
from .models import IdempotencyKey


def request_hash(scope: str, payload: dict) -> str:
    """SHA-256 over the scope (e.g. ``"cancel-items:ORD-1"``) and the JSON body."""
    body = json.dumps({"scope": scope, "payload": payload}, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


@transaction.atomic
def get_or_create_idempotent(key: str, scope: str, payload: dict):
    """Reserve ``key`` for this request or find the earlier one.

    Returns:
        tuple[bool, IdempotencyKey]: ``(existing, rec)``. ``existing`` is True
        when a record for the key already existed.

    Raises:
        ConflictError: ``IDEMPOTENCY_CONFLICT`` when the key was used for a
            different request.
    """
    h = request_hash(scope, payload)
    try:
        with transaction.atomic():
            rec = IdempotencyKey.objects.create(key=key, request_hash=h, response_status=0, response_body={})
            return False, rec
    except IntegrityError:
        rec = IdempotencyKey.objects.select_for_update().get(key=key)
        if rec.request_hash != h:
            raise ConflictError("Idempotency key reused with a different request", code="IDEMPOTENCY_CONFLICT")
        return True, rec


def finalize(rec: IdempotencyKey, status_code: int, body: dict, order_id=None):
    rec.response_status = status_code
    rec.response_body = body
    rec.order_id = order_id
    rec.save(update_fields=["response_status", "response_body", "order"])


def discard(rec: IdempotencyKey):
    """Forget a key whose request failed before producing a storable response."""
    IdempotencyKey.objects.filter(pk=rec.pk, response_status=0).delete()
