"""HTTP adapter clients with retries, circuit breakers, and context headers.

This module implements concrete HTTP clients for the domain ports using
``httpx``:

- ``HttpCatalogClient`` talks to the catalog service, whose decrement
  endpoint is atomic and clamps at zero.
- ``MercadoPagoClient`` talks to the payment gateway (payments, merchant
  orders, checkout preferences).
- ``HttpConfirmationNotifier`` posts the order confirmation to the mailer.

It adds:

- Request correlation: propagates ``X-Request-ID`` from a ContextVar set by
    the gateway middleware.
- Circuit breaker per downstream service (catalog, gateway) to avoid
    hammering unhealthy dependencies, with HALF_OPEN probing after a timeout.
- Simple retry policy with exponential backoff for transport errors and 5xx;
    a request that must not be applied twice is retried only on connect errors.
- 404 on a lookup is a business outcome (``None``), not a failure.
"""

import time
import threading
from typing import Optional

import httpx
from django.conf import settings
from django.utils.module_loading import import_string

from .domain import (
    CatalogPort,
    MerchantOrder,
    MerchantOrderPayment,
    NotifierPort,
    Order,
    PaymentFacts,
    PaymentGatewayPort,
    Preference,
    ProductStock,
)
from .schemas import GatewayPaymentIn, MerchantOrderIn, CatalogProductIn

REQUEST_ID_CTX = import_string("gateway.middleware.REQUEST_ID_CTX")


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
            RuntimeError: If the circuit is OPEN or a HALF_OPEN probe is busy.
        """
        with self._lock:
            st = self.state
            if st == "OPEN":
                raise RuntimeError("CIRCUIT_OPEN")
            if st == "HALF_OPEN":
                if self._half_open_probe_in_flight:
                    raise RuntimeError("CIRCUIT_HALF_OPEN_BUSY")
                self._half_open_probe_in_flight = True
            return st

    def on_success(self):
        """Record a successful call and close/reset the breaker."""
        with self._lock:
            self._failures = 0
            self._state = "CLOSED"
            self._half_open_probe_in_flight = False

    def on_failure(self):
        """Record a failed call and open the breaker if threshold exceeded."""
        with self._lock:
            self._failures += 1
            if self._failures >= self.fail_threshold and self._state != "OPEN":
                self._state = "OPEN"
                self._opened_at = time.monotonic()
                self._half_open_probe_in_flight = False

    def on_finish(self):
        """Release any HALF_OPEN probe flag after a call finishes."""
        with self._lock:
            if self._state == "HALF_OPEN":
                self._half_open_probe_in_flight = False


# Per-service instances
_catalog_cb = CircuitBreaker(
    "catalog",
    getattr(settings, "HTTP_CIRCUIT_FAIL_THRESHOLD", 5),
    getattr(settings, "HTTP_CIRCUIT_RESET_TIMEOUT", 30.0),
)
_gateway_cb = CircuitBreaker(
    "gateway",
    getattr(settings, "HTTP_CIRCUIT_FAIL_THRESHOLD", 5),
    getattr(settings, "HTTP_CIRCUIT_RESET_TIMEOUT", 30.0),
)

BREAKERS = (_catalog_cb, _gateway_cb)


# ---------------- Helpers ---------------- #

def _request_headers(extra: Optional[dict] = None) -> dict:
    """Build base headers including X-Request-ID and any extras.

    Args:
        extra: Optional dict of additional headers to include.

    Returns:
        dict: Final headers dictionary for the outgoing request.
    """
    headers: dict[str, str] = {}
    rid = REQUEST_ID_CTX.get()
    if rid and rid != "-":
        headers["X-Request-ID"] = rid
    if extra:
        headers.update(extra)
    return headers


def _retry_policy():
    """Return retry configuration as (max_retries, backoff_base_seconds)."""
    return (
        getattr(settings, "HTTP_RETRY_MAX", 3),
        getattr(settings, "HTTP_RETRY_BACKOFF_BASE", 0.15),
    )


def _should_retry(resp: Optional[httpx.Response], exc: Optional[Exception],
                  idempotent: bool = True) -> bool:
    """Retry on transport exceptions or HTTP 5xx.

    A request that is not safe to repeat is retried only when it never
    reached the server (connection refused or connect timeout). A read
    timeout or a 5xx may come after the server already applied it.
    """
    if exc is not None:
        return idempotent or isinstance(exc, (httpx.ConnectError, httpx.ConnectTimeout))
    if resp is not None and 500 <= resp.status_code < 600:
        return idempotent
    return False


def _send(cb: CircuitBreaker, method: str, url: str, *, timeout: float,
          headers: Optional[dict] = None, json=None, missing_ok: bool = False,
          idempotent: bool = True):
    """Send a request through ``cb`` with retries on transport errors and 5xx.

    Args:
        cb: Circuit breaker of the downstream service.
        method: ``get``, ``post`` or ``put``.
        url: Absolute URL.
        timeout: Per-request timeout in seconds.
        headers: Extra headers (auth, content type).
        json: Optional JSON body.
        missing_ok: When True a 404 returns None instead of raising.
        idempotent: False for requests that must not be applied twice; see
            ``_should_retry``.

    Returns:
        httpx.Response | None: The 2xx response, or None for a tolerated 404.

    Raises:
        RuntimeError: If the circuit is open.
        httpx.RequestError: For network/transport errors after retries.
        httpx.HTTPStatusError: For non-retriable non-2xx responses.
    """
    max_retries, backoff = _retry_policy()
    tries = 0

    state = cb.before_call()
    hdrs = _request_headers({**(headers or {}), "X-Circuit-State": state, "X-Retry-Count": "0"})
    kwargs = {"headers": hdrs}
    if json is not None:
        kwargs["json"] = json

    try:
        with httpx.Client(timeout=timeout) as client:
            call = getattr(client, method)
            while True:
                resp = None
                exc = None
                try:
                    resp = call(url, **kwargs)
                    if 200 <= resp.status_code < 300:
                        cb.on_success()
                        return resp
                    if resp.status_code == 404 and missing_ok:
                        cb.on_success()  # business outcome, not a circuit failure
                        return None
                    if not _should_retry(resp, None):
                        cb.on_success()  # the service answered; the request was bad
                        resp.raise_for_status()
                except httpx.RequestError as e:
                    exc = e

                tries += 1
                hdrs["X-Retry-Count"] = str(tries)

                if tries >= max_retries or not _should_retry(resp, exc, idempotent):
                    cb.on_failure()
                    if exc:
                        raise exc
                    resp.raise_for_status()

                sleep_s = backoff * (2 ** (tries - 1))  # exponential backoff
                cap = getattr(settings, "HTTP_RETRY_MAX_SLEEP", 0.5)
                time.sleep(min(sleep_s, cap))
    finally:
        cb.on_finish()


# ---------------- Catalog Adapter ---------------- #

class HttpCatalogClient(CatalogPort):
    """HTTP client for the catalog service with retry and circuit breaker."""

    def __init__(self, base_url: str | None = None, timeout: float | None = None):
        self.base_url = (base_url or settings.CATALOG_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECS

    def get_stock(self, product_ref: str) -> Optional[ProductStock]:
        """Fetch the stock record of a product.

        Returns:
            ProductStock | None: None when the catalog answers 404.
        """
        resp = _send(_catalog_cb, "get", f"{self.base_url}/products/{product_ref}",
                     timeout=self.timeout, missing_ok=True)
        if resp is None:
            return None
        p = CatalogProductIn.model_validate(resp.json())
        return ProductStock(product_ref=p.ref, stock=p.stock, title=p.title or "")

    def decrement(self, product_ref: str, quantity: int,
                  idempotency_key: Optional[str] = None) -> Optional[ProductStock]:
        """Ask the catalog to decrement stock atomically (clamped at zero).

        With ``idempotency_key`` the catalog applies the decrement once, so
        the request is retried like a read. Without one it is retried only
        when the connection was never established.

        Returns:
            ProductStock | None: The record after the decrement, None on 404.
        """
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else None
        resp = _send(_catalog_cb, "post", f"{self.base_url}/products/{product_ref}/decrement",
                     timeout=self.timeout, headers=headers, json={"quantity": quantity},
                     missing_ok=True, idempotent=bool(idempotency_key))
        if resp is None:
            return None
        p = CatalogProductIn.model_validate(resp.json())
        return ProductStock(product_ref=p.ref, stock=p.stock, title=p.title or "")


# ---------------- Payment Gateway Adapter ---------------- #

def _cents_to_amount(cents: int) -> float:
    return round(cents / 100, 2)


class MercadoPagoClient(PaymentGatewayPort):
    """HTTP client for the Mercado Pago REST API (Checkout Pro)."""

    def __init__(self, base_url: str | None = None, access_token: str | None = None,
                 timeout: float | None = None):
        self.base_url = (base_url or settings.MP_API_BASE_URL).rstrip("/")
        self.access_token = access_token or settings.MP_ACCESS_TOKEN
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECS

    def _auth(self) -> dict:
        if not self.access_token:
            raise RuntimeError("MP_ACCESS_TOKEN_MISSING")
        return {"Authorization": f"Bearer {self.access_token}"}

    def fetch_payment(self, payment_id: str) -> Optional[PaymentFacts]:
        """Fetch a payment and reduce it to canonical facts.

        The correlation key is the payment's ``external_reference``, falling
        back to one stored in the preference metadata.
        """
        resp = _send(_gateway_cb, "get", f"{self.base_url}/v1/payments/{payment_id}",
                     timeout=self.timeout, headers=self._auth(), missing_ok=True)
        if resp is None:
            return None
        p = GatewayPaymentIn.model_validate(resp.json())
        return PaymentFacts(
            payment_id=str(p.id) if p.id is not None else str(payment_id),
            status=p.status,
            status_detail=p.status_detail,
            external_reference=p.correlation_reference(),
            merchant_order_id=p.merchant_order_id(),
        )

    def fetch_merchant_order(self, merchant_order_id: str) -> Optional[MerchantOrder]:
        resp = _send(_gateway_cb, "get", f"{self.base_url}/merchant_orders/{merchant_order_id}",
                     timeout=self.timeout, headers=self._auth(), missing_ok=True)
        if resp is None:
            return None
        mo = MerchantOrderIn.model_validate(resp.json())
        return MerchantOrder(
            merchant_order_id=str(mo.id) if mo.id is not None else str(merchant_order_id),
            payments=[
                MerchantOrderPayment(payment_id=str(p.id) if p.id is not None else None, status=p.status)
                for p in mo.payments
            ],
        )

    def create_preference(self, order: Order) -> Preference:
        """Register a payable intent charging the order total as one line."""
        site = settings.SITE_URL.rstrip("/")
        order_id = str(order.id)
        title = f"Pedido {order.order_number}" if order.order_number else "Compra"
        metadata = {
            "order_id": order_id,
            "order_number": order.order_number,
            "mp_external_reference": order.external_reference,
            "shipping_method": order.shipping_method,
            "pickup_point": order.pickup_point,
            "total": str(order.total_cents),
        }
        body = {
            "items": [{
                "title": title,
                "quantity": 1,
                "unit_price": _cents_to_amount(order.total_cents),
                "currency_id": order.currency,
            }],
            "external_reference": order.external_reference,
            "notification_url": f"{site}/api/payments/webhook/",
            "back_urls": {
                outcome: f"{site}/gracias?status={outcome}&orderId={order_id}"
                for outcome in ("success", "failure", "pending")
            },
            "auto_return": "approved",
            "metadata": {k: v for k, v in metadata.items() if v not in (None, "")},
        }
        resp = _send(_gateway_cb, "post", f"{self.base_url}/checkout/preferences",
                     timeout=self.timeout, headers=self._auth(), json=body)
        data = resp.json()
        return Preference(
            preference_id=str(data.get("id")),
            init_point=data.get("init_point"),
            sandbox_init_point=data.get("sandbox_init_point"),
        )


# ---------------- Confirmation Notifier ---------------- #

class HttpConfirmationNotifier(NotifierPort):
    """Posts the order summary to the confirmation mailer. Single attempt."""

    def __init__(self, url: str | None = None, timeout: float | None = None):
        self.url = url or settings.CONFIRMATION_EMAIL_URL
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECS

    def send_order_confirmation(self, order: Order) -> None:
        """Send the confirmation.

        Raises:
            httpx.HTTPError: When the mailer is unreachable or answers non-2xx.
        """
        payload = {
            "email": order.email,
            "name": order.name,
            "order_number": order.order_number,
            "total_cents": order.total_cents,
            "currency": order.currency,
            "items": [it.as_dict() for it in order.items],
            "phone": order.phone,
            "shipping_address": order.shipping_address,
        }
        with httpx.Client(timeout=self.timeout) as client:
            resp = client.post(self.url, json=payload, headers=_request_headers())
            resp.raise_for_status()
