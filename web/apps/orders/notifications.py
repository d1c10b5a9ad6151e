"""Parsing and verification of payment gateway webhook deliveries.

The gateway posts notifications in a few shapes: the event kind and the
resource id may come in the query string (``?type=payment&data.id=123``,
``?topic=merchant_order&id=456``) or in the JSON body
(``{"type": "payment", "data": {"id": "123"}}``, ``{"action":
"payment.updated", ...}``). ``parse_notification`` folds all of them into a
``NotificationEvent``.
"""

import hashlib
import hmac
from dataclasses import dataclass
from typing import Optional


PAYMENT = "payment"
MERCHANT_ORDER = "merchant_order"

_QUERY_KIND_KEYS = ("type", "topic", "action")
_QUERY_ID_KEYS = ("data.id", "id", "data[id]", "payment_id", "collection_id")


@dataclass(frozen=True)
class NotificationEvent:
    """A webhook delivery reduced to what reconciliation needs.

    Attributes:
        kind: Raw event kind as sent by the gateway, or None.
        resource_id: Payment or merchant order identifier, or None.
    """

    kind: Optional[str]
    resource_id: Optional[str]

    @property
    def resource_type(self) -> Optional[str]:
        """Classify the event: ``payment``, ``merchant_order`` or None.

        A missing kind is treated as a payment notification.
        """
        kind = (self.kind or "").lower()
        if not kind or PAYMENT in kind:
            return PAYMENT
        if MERCHANT_ORDER in kind:
            return MERCHANT_ORDER
        return None


def _first(values) -> Optional[str]:
    for v in values:
        if v is None:
            continue
        s = str(v).strip()
        if s:
            return s
    return None


def parse_notification(query, body) -> NotificationEvent:
    """Extract the event kind and resource id from a webhook delivery.

    Query string values win over body values.

    Args:
        query: Mapping of query parameters (e.g. ``request.GET``).
        body: Decoded JSON body, or None when absent or not an object.
    """
    query = query or {}
    body = body if isinstance(body, dict) else {}
    data = body.get("data") if isinstance(body.get("data"), dict) else {}

    kind = _first([query.get(k) for k in _QUERY_KIND_KEYS] + [body.get(k) for k in _QUERY_KIND_KEYS])
    resource_id = _first([query.get(k) for k in _QUERY_ID_KEYS] + [data.get("id"), body.get("id")])
    return NotificationEvent(kind=kind, resource_id=resource_id)


def _signature_parts(header: str) -> dict:
    parts = {}
    for chunk in (header or "").split(","):
        key, sep, value = chunk.partition("=")
        if sep:
            parts[key.strip()] = value.strip()
    return parts


def verify_signature(secret: str, signature_header: str, request_id: str, data_id: Optional[str]) -> bool:
    """Verify the gateway's ``x-signature`` header.

    The header looks like ``ts=1704908010,v1=<hex>``; ``v1`` is an
    HMAC-SHA256 of the manifest ``id:<data.id>;request-id:<x-request-id>;ts:<ts>;``
    keyed with the webhook secret. Manifest parts whose value is missing are
    left out.

    Returns:
        bool: True when the signature matches.
    """
    parts = _signature_parts(signature_header)
    ts, v1 = parts.get("ts"), parts.get("v1")
    if not ts or not v1:
        return False

    manifest = ""
    if data_id:
        # alphanumeric ids are signed lowercased
        manifest += f"id:{data_id.lower()};"
    if request_id:
        manifest += f"request-id:{request_id};"
    manifest += f"ts:{ts};"

    expected = hmac.new(secret.encode("utf-8"), manifest.encode("utf-8"), hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, v1)
