"""Order reconciliation against asynchronous payment notifications.

``OrderReconciler.handle_notification`` is the webhook's business logic. It
resolves a notification to canonical payment facts, finds the order by its
external reference and applies the payment outcome to it:

- ``pending`` orders move to ``paid``, ``failed`` or ``cancelled``; every
  other status is kept, so a stale notification never downgrades a paid
  order.
- The latest payment facts are always written onto the order.
- On the first ``pending → paid`` edge, stock is validated again, then
  decremented exactly once (``stock_adjusted`` latch) and a confirmation is
  sent. A shortfall fails the order instead.

Deliveries are at-least-once and unordered. Two guards protect the stock
decrement: the early ``paid`` + ``stock_adjusted`` short-circuit, and the
latch re-read right before decrementing. The status change itself is a
conditional update, so only one concurrent delivery wins the paid edge.

Every failure is logged and absorbed: the result is always a success
towards the gateway, whose redelivery cannot repair a downstream outage.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from .domain import (
    Order,
    OrderStatus,
    OrderStorePort,
    PaymentGatewayPort,
    NotifierPort,
    StockValidator,
    PaymentFacts,
    next_payment_status,
    status_for_payment,
)
from .notifications import NotificationEvent, PAYMENT, MERCHANT_ORDER


logger = logging.getLogger("orders.reconciler")


@dataclass
class ReconcileResult:
    """What a notification did. Rendered as the webhook response body.

    ``action`` is one of ``skipped``, ``idempotent``, ``reconciled`` or
    ``out_of_stock``; ``reason`` says why a delivery was skipped.
    """

    action: str
    reason: Optional[str] = None
    external_reference: Optional[str] = None
    payment_id: Optional[str] = None
    order_status: Optional[str] = None
    became_paid: bool = False
    stock_adjusted: bool = False
    problems: List[dict] = field(default_factory=list)

    def as_dict(self) -> dict:
        body = {"ok": True, "action": self.action}
        for key in ("reason", "external_reference", "payment_id", "order_status"):
            value = getattr(self, key)
            if value is not None:
                body[key] = value
        if self.action == "reconciled":
            body["became_paid"] = self.became_paid
            body["stock_adjusted"] = self.stock_adjusted
        if self.problems:
            body["problems"] = self.problems
        return body


def _skip(reason: str, **kw) -> ReconcileResult:
    return ReconcileResult(action="skipped", reason=reason, **kw)


class OrderReconciler:
    """Applies payment notifications to orders, idempotently."""

    def __init__(
        self,
        orders: OrderStorePort,
        gateway: PaymentGatewayPort,
        validator: StockValidator,
        notifier: NotifierPort,
    ):
        self.orders = orders
        self.gateway = gateway
        self.validator = validator
        self.notifier = notifier

    # -- payment resolution -------------------------------------------------

    def _resolve_payment_id(self, event: NotificationEvent):
        """Return ``(payment_id, skip_reason)`` for an event."""
        kind = event.resource_type
        if kind == PAYMENT:
            return event.resource_id, None
        if kind != MERCHANT_ORDER:
            return None, "unsupported_topic"

        try:
            merchant_order = self.gateway.fetch_merchant_order(event.resource_id)
        except Exception:
            logger.exception("merchant order fetch failed", extra={"merchant_order_id": event.resource_id})
            return None, "gateway_error"
        if merchant_order is None:
            logger.warning("merchant order not found", extra={"merchant_order_id": event.resource_id})
            return None, "merchant_order_not_found"

        payment_id = merchant_order.best_payment_id()
        if payment_id is None:
            return None, "no_payment_yet"
        return payment_id, None

    # -- entry point --------------------------------------------------------

    def handle_notification(self, event: NotificationEvent) -> ReconcileResult:
        """Reconcile one webhook delivery. Never raises."""
        try:
            return self._handle(event)
        except Exception:
            logger.exception("reconciliation aborted", extra={"event_kind": event.kind, "resource_id": event.resource_id})
            return _skip("internal_error")

    def _handle(self, event: NotificationEvent) -> ReconcileResult:
        if not event.resource_id:
            logger.info("notification ignored: no identifier", extra={"event_kind": event.kind})
            return _skip("missing_identifier")

        payment_id, reason = self._resolve_payment_id(event)
        if payment_id is None:
            logger.info("notification ignored", extra={"event_kind": event.kind, "resource_id": event.resource_id, "reason": reason})
            return _skip(reason)

        try:
            facts = self.gateway.fetch_payment(payment_id)
        except Exception:
            logger.exception("payment fetch failed", extra={"payment_id": payment_id})
            return _skip("gateway_error", payment_id=payment_id)
        if facts is None:
            logger.warning("payment not found on gateway", extra={"payment_id": payment_id})
            return _skip("payment_not_found", payment_id=payment_id)

        ref = facts.external_reference
        if not ref:
            logger.warning("payment without external reference", extra={"payment_id": payment_id, "payment_status": facts.status})
            return _skip("missing_external_reference", payment_id=payment_id)

        try:
            order = self.orders.find_by_external_reference(ref)
        except Exception:
            logger.exception("order lookup failed", extra={"external_reference": ref})
            return _skip("order_store_error", external_reference=ref, payment_id=payment_id)
        if order is None:
            logger.warning("order not found for external reference", extra={"external_reference": ref, "payment_id": payment_id})
            return _skip("order_not_found", external_reference=ref, payment_id=payment_id)

        # Guard 1: confirmation already fully applied.
        if order.status == OrderStatus.PAID and order.stock_adjusted:
            logger.info("duplicate notification for settled order", extra={"external_reference": ref, "payment_id": payment_id})
            return ReconcileResult(
                action="idempotent",
                external_reference=ref,
                payment_id=payment_id,
                order_status=order.status.value,
            )

        return self._apply(order, facts)

    # -- state transition ---------------------------------------------------

    def _apply(self, order: Order, facts: PaymentFacts) -> ReconcileResult:
        ref = order.external_reference
        prev = order.status
        target = status_for_payment(facts.status)
        nxt = next_payment_status(prev, target)

        fields = {
            "payment_id": facts.payment_id,
            "payment_status": facts.status,
            "payment_status_detail": facts.status_detail,
            "payment_external_reference": ref,
            "merchant_order_id": facts.merchant_order_id,
        }
        if target != nxt and target != prev:
            log = logger.error if target == OrderStatus.PAID else logger.warning
            log("payment outcome ignored for order status",
                extra={"external_reference": ref, "payment_id": facts.payment_id,
                       "order_status": prev.value, "outcome_status": target.value})

        result = ReconcileResult(
            action="reconciled",
            external_reference=ref,
            payment_id=facts.payment_id,
            order_status=prev.value,
        )
        try:
            if nxt != prev:
                won = self.orders.update(order.id, {**fields, "status": nxt}, expected_status=prev)
                if not won:
                    # A concurrent delivery moved the order first; keep its status.
                    logger.info("status transition lost to concurrent delivery",
                                extra={"external_reference": ref, "payment_id": facts.payment_id})
                    self.orders.update(order.id, fields)
                    return result
                logger.info("order status changed",
                            extra={"external_reference": ref, "from_status": prev.value, "to_status": nxt.value})
                result.order_status = nxt.value
                order.status = nxt
            else:
                self.orders.update(order.id, fields)
        except Exception:
            logger.exception("order update failed", extra={"external_reference": ref, "payment_id": facts.payment_id})
            return _skip("order_store_error", external_reference=ref, payment_id=facts.payment_id)

        if prev != OrderStatus.PAID and nxt == OrderStatus.PAID:
            result.became_paid = True
            return self._confirm_paid(order, result)
        return result

    def _confirm_paid(self, order: Order, result: ReconcileResult) -> ReconcileResult:
        ref = order.external_reference

        try:
            check = self.validator.validate(order.items)
        except Exception:
            logger.exception("stock validation failed; stock not adjusted", extra={"external_reference": ref})
            return result

        if not check.ok:
            problems = [p.as_dict() for p in check.problems]
            logger.error("paid order out of stock",
                         extra={"external_reference": ref, "problems": problems})
            reason = "OUT_OF_STOCK: " + ", ".join(
                f"{p.product_ref} requested {p.requested} available {p.available}" for p in check.problems
            )
            try:
                failed = self.orders.update(
                    order.id,
                    {"status": OrderStatus.FAILED, "stock_adjusted": False, "failure_reason": reason},
                    expected_status=OrderStatus.PAID,
                )
                if not failed:
                    current = self.orders.get(order.id)
                    now = current.status.value if current else None
                    logger.error("paid order short of stock changed status before it could be failed",
                                 extra={"external_reference": ref, "order_status": now, "problems": problems})
                    result.order_status = now
                    result.problems = problems
                    return result
            except Exception:
                logger.exception("could not mark order failed", extra={"external_reference": ref})
                return result
            result.action = "out_of_stock"
            result.became_paid = False
            result.order_status = OrderStatus.FAILED.value
            result.problems = problems
            return result

        try:
            # Guard 2: re-read the latch right before touching stock.
            fresh = self.orders.find_by_external_reference(ref)
            if fresh is not None and fresh.stock_adjusted:
                logger.info("stock already adjusted; skipping decrement", extra={"external_reference": ref})
            else:
                self.validator.decrement(order.items, reference=ref)
                self.orders.update(order.id, {"stock_adjusted": True})
                result.stock_adjusted = True
                logger.info("stock adjusted for paid order", extra={"external_reference": ref})
        except Exception:
            logger.exception("stock adjustment failed", extra={"external_reference": ref})

        self._notify(order)
        return result

    def _notify(self, order: Order) -> None:
        if not order.email:
            logger.warning("paid order has no email; confirmation not sent",
                           extra={"external_reference": order.external_reference})
            return
        try:
            self.notifier.send_order_confirmation(order)
            logger.info("confirmation sent", extra={"external_reference": order.external_reference})
        except Exception:
            logger.exception("confirmation failed", extra={"external_reference": order.external_reference})
