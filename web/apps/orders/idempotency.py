"""Idempotency-Key support for order creation.

Checkout clients retry ``POST /api/orders/`` on timeouts. Sending the same
``Idempotency-Key`` lets the retry get the original response back instead
of a second pending order with a different external reference.

The request is identified by a hash of the *validated* order payload, so
cosmetic differences the DTO normalizes away (email case, currency case)
are not reported as conflicts.
"""

import hashlib
import json

from django.db import transaction, IntegrityError

from .models import IdempotencyKey


MAX_KEY_LEN = 200
IN_FLIGHT = 0  # response_status of a claimed key whose response is not stored yet


def request_hash(payload: dict) -> str:
    """Stable SHA-256 of a JSON-serializable payload (sorted keys, compact)."""
    body = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


def normalize_key(raw) -> str:
    """Return the stripped key.

    Raises:
        ValueError: 'INVALID_IDEMPOTENCY_KEY' when empty or too long.
    """
    key = (raw or "").strip()
    if not key or len(key) > MAX_KEY_LEN:
        raise ValueError("INVALID_IDEMPOTENCY_KEY")
    return key


@transaction.atomic
def get_or_create_idempotent(key: str, payload: dict):
    """Claim ``key`` for ``payload`` or find the earlier claim.

    Returns:
        tuple[bool, IdempotencyKey]: ``(False, rec)`` when the key is new and
        the caller must process the request and ``finalize`` it;
        ``(True, rec)`` when the same payload was already submitted.

    Raises:
        ValueError: 'IDEMPOTENCY_CONFLICT' when the key was used for a
            different payload.
    """
    h = request_hash(payload)
    try:
        # savepoint: a duplicate key only rolls back this block
        with transaction.atomic():
            return False, IdempotencyKey.objects.create(
                key=key, request_hash=h, response_status=IN_FLIGHT, response_body={}
            )
    except IntegrityError:
        rec = IdempotencyKey.objects.select_for_update().get(key=key)
    if rec.request_hash != h:
        raise ValueError("IDEMPOTENCY_CONFLICT")
    return True, rec


def stored_response(rec: IdempotencyKey):
    """Return ``(status_code, body)`` to replay for a known key.

    Raises:
        ValueError: 'IDEMPOTENCY_IN_PROGRESS' while the first request has not
            stored its response yet.
    """
    if rec.response_status == IN_FLIGHT:
        raise ValueError("IDEMPOTENCY_IN_PROGRESS")
    return rec.response_status, rec.response_body


def release(rec: IdempotencyKey) -> None:
    """Drop a claim whose request failed, so a retry is processed afresh."""
    IdempotencyKey.objects.filter(pk=rec.pk, response_status=IN_FLIGHT).delete()


def finalize(rec: IdempotencyKey, status_code: int, body: dict, order_id=None):
    """Store the response of the first request so retries can replay it."""
    rec.response_status = status_code
    rec.response_body = body
    if order_id is not None:
        rec.order_id = order_id
    rec.save(update_fields=["response_status", "response_body", "order"])
