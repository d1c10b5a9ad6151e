"""Reconciler tests: payment notifications applied to orders.

Everything runs against the in-memory fakes from ``conftest``; the catalog
starts with X=5, Y=2 and an UNLIMITED product.
"""

import threading

import pytest

from apps.orders.domain import MerchantOrder, MerchantOrderPayment, OrderStatus
from apps.orders.notifications import NotificationEvent
from .factories import make_order, payment


def _payment_event(payment_id):
    return NotificationEvent(kind="payment", resource_id=payment_id)


def _seed(order_store, gateway, items=(("X", 2),), status="approved", payment_id="P1", **kw):
    order = order_store.create(make_order(items=items, **kw))
    gateway.add_payment(payment(payment_id, order.external_reference, status=status))
    return order


def test_approved_payment_marks_paid_and_decrements_once(reconciler, order_store, gateway, catalog, notifier):
    order = _seed(order_store, gateway)

    result = reconciler.handle_notification(_payment_event("P1"))

    assert result.action == "reconciled"
    assert result.became_paid and result.stock_adjusted
    saved = order_store.get(order.id)
    assert saved.status == OrderStatus.PAID
    assert saved.stock_adjusted is True
    assert saved.payment_id == "P1"
    assert saved.payment_status == "approved"
    assert saved.payment_status_detail == "accredited"
    assert catalog.stock_of("X") == 3
    assert [o.external_reference for o in notifier.sent] == [order.external_reference]


def test_duplicate_delivery_is_idempotent(reconciler, order_store, gateway, catalog, notifier):
    _seed(order_store, gateway)

    reconciler.handle_notification(_payment_event("P1"))
    again = reconciler.handle_notification(_payment_event("P1"))

    assert again.action == "idempotent"
    assert again.as_dict() == {
        "ok": True,
        "action": "idempotent",
        "external_reference": again.external_reference,
        "payment_id": "P1",
        "order_status": "paid",
    }
    assert catalog.stock_of("X") == 3
    assert catalog.decrements == [("X", 2)]
    assert len(notifier.sent) == 1


def test_paid_without_latch_is_not_decremented_by_redelivery(reconciler, order_store, gateway, catalog):
    """A paid order whose stock step never completed is left for an operator."""
    order = _seed(order_store, gateway)
    order_store.update(order.id, {"status": OrderStatus.PAID})

    result = reconciler.handle_notification(_payment_event("P1"))

    assert result.action == "reconciled"
    assert result.became_paid is False
    assert catalog.decrements == []


def test_latch_reread_skips_decrement_when_already_adjusted(reconciler, order_store, gateway, catalog, monkeypatch):
    order = _seed(order_store, gateway)
    real_find = order_store.find_by_external_reference
    calls = []

    def find(ref):
        calls.append(ref)
        found = real_find(ref)
        if len(calls) == 2:
            # another delivery finished the stock step in between
            found.stock_adjusted = True
        return found

    monkeypatch.setattr(order_store, "find_by_external_reference", find)
    result = reconciler.handle_notification(_payment_event("P1"))

    assert result.became_paid is True
    assert result.stock_adjusted is False
    assert catalog.decrements == []
    assert order_store.get(order.id).status == OrderStatus.PAID


def test_shortfall_at_confirmation_fails_order(reconciler, order_store, gateway, catalog, notifier):
    order = _seed(order_store, gateway, items=(("Y", 10),))

    result = reconciler.handle_notification(_payment_event("P1"))

    assert result.action == "out_of_stock"
    assert result.became_paid is False
    assert result.problems == [{"product_ref": "Y", "title": "", "requested": 10, "available": 2}]
    saved = order_store.get(order.id)
    assert saved.status == OrderStatus.FAILED
    assert saved.stock_adjusted is False
    assert saved.failure_reason.startswith("OUT_OF_STOCK")
    assert catalog.stock_of("Y") == 2
    assert notifier.sent == []


def test_shortfall_on_order_that_moved_on_is_not_reported_failed(reconciler, order_store, gateway, catalog, notifier,
                                                                  monkeypatch):
    order = _seed(order_store, gateway, items=(("Y", 10),))
    real_update = order_store.update

    def operator_ships_first(order_id, fields, expected_status=None):
        if fields.get("status") == OrderStatus.FAILED:
            real_update(order_id, {"status": OrderStatus.SHIPPED})
        return real_update(order_id, fields, expected_status)

    monkeypatch.setattr(order_store, "update", operator_ships_first)
    result = reconciler.handle_notification(_payment_event("P1"))

    assert result.action == "reconciled"
    assert result.order_status == "shipped"
    assert result.problems[0]["product_ref"] == "Y"
    saved = order_store.get(order.id)
    assert saved.status == OrderStatus.SHIPPED
    assert saved.failure_reason is None
    assert catalog.decrements == []
    assert notifier.sent == []


def test_unknown_reference_changes_nothing(reconciler, order_store, gateway, catalog):
    gateway.add_payment(payment("P9", "no-such-order"))

    result = reconciler.handle_notification(_payment_event("P9"))

    assert result.as_dict()["reason"] == "order_not_found"
    assert order_store.updates == []
    assert catalog.decrements == []


def test_stale_rejection_does_not_downgrade_paid(reconciler, order_store, gateway, catalog):
    order = _seed(order_store, gateway)
    reconciler.handle_notification(_payment_event("P1"))
    gateway.add_payment(payment("P2", order.external_reference, status="rejected"))

    result = reconciler.handle_notification(_payment_event("P2"))

    assert result.action == "idempotent"
    assert order_store.get(order.id).status == OrderStatus.PAID
    assert catalog.stock_of("X") == 3


@pytest.mark.parametrize("outcome,expected", [
    ("rejected", OrderStatus.FAILED),
    ("cancelled", OrderStatus.CANCELLED),
    ("in_process", OrderStatus.PENDING),
])
def test_non_approved_outcomes(reconciler, order_store, gateway, catalog, notifier, outcome, expected):
    order = _seed(order_store, gateway, status=outcome)

    result = reconciler.handle_notification(_payment_event("P1"))

    saved = order_store.get(order.id)
    assert result.action == "reconciled"
    assert saved.status == expected
    assert saved.payment_status == outcome
    assert catalog.decrements == []
    assert notifier.sent == []


def test_approved_after_failure_records_facts_only(reconciler, order_store, gateway, catalog):
    order = _seed(order_store, gateway)
    order_store.update(order.id, {"status": OrderStatus.FAILED})

    reconciler.handle_notification(_payment_event("P1"))

    saved = order_store.get(order.id)
    assert saved.status == OrderStatus.FAILED
    assert saved.payment_status == "approved"
    assert catalog.decrements == []


def test_unlimited_stock_is_never_decremented(reconciler, order_store, gateway, catalog):
    order = _seed(order_store, gateway, items=(("UNLIMITED", 50),))

    result = reconciler.handle_notification(_payment_event("P1"))

    assert result.stock_adjusted is True
    assert order_store.get(order.id).stock_adjusted is True
    assert catalog.stock_of("UNLIMITED") is None


def test_merchant_order_resolves_approved_payment(reconciler, order_store, gateway, catalog):
    order = order_store.create(make_order())
    gateway.add_payment(payment("P1", order.external_reference, status="rejected"))
    gateway.add_payment(payment("P2", order.external_reference, merchant_order_id="M1"))
    gateway.add_merchant_order(MerchantOrder("M1", [
        MerchantOrderPayment("P1", "rejected"),
        MerchantOrderPayment("P2", "approved"),
    ]))

    result = reconciler.handle_notification(NotificationEvent(kind="merchant_order", resource_id="M1"))

    assert result.payment_id == "P2"
    saved = order_store.get(order.id)
    assert saved.status == OrderStatus.PAID
    assert saved.merchant_order_id == "M1"


def test_merchant_order_without_payments(reconciler, gateway):
    gateway.add_merchant_order(MerchantOrder("M2", []))
    result = reconciler.handle_notification(NotificationEvent(kind="topic_merchant_order_wh", resource_id="M2"))
    assert (result.action, result.reason) == ("skipped", "no_payment_yet")


@pytest.mark.parametrize("event,reason", [
    (NotificationEvent(kind="payment", resource_id=None), "missing_identifier"),
    (NotificationEvent(kind="subscription_preapproval", resource_id="1"), "unsupported_topic"),
    (NotificationEvent(kind="merchant_order", resource_id="nope"), "merchant_order_not_found"),
    (NotificationEvent(kind="payment", resource_id="nope"), "payment_not_found"),
])
def test_skip_reasons(reconciler, event, reason):
    result = reconciler.handle_notification(event)
    assert result.as_dict() == {"ok": True, "action": "skipped", "reason": reason, **(
        {"payment_id": "nope"} if reason == "payment_not_found" else {}
    )}


def test_payment_without_reference_is_skipped(reconciler, gateway, order_store):
    gateway.add_payment(payment("P1", None))
    result = reconciler.handle_notification(_payment_event("P1"))
    assert result.reason == "missing_external_reference"
    assert order_store.updates == []


# ---- fail-open ----

def test_gateway_failure_is_absorbed(reconciler, gateway, monkeypatch):
    def boom(_):
        raise RuntimeError("gateway down")

    monkeypatch.setattr(gateway, "fetch_payment", boom)
    result = reconciler.handle_notification(_payment_event("P1"))
    assert (result.action, result.reason) == ("skipped", "gateway_error")


def test_order_store_failure_is_absorbed(reconciler, order_store, gateway, monkeypatch):
    _seed(order_store, gateway)

    def boom(_):
        raise RuntimeError("db down")

    monkeypatch.setattr(order_store, "find_by_external_reference", boom)
    result = reconciler.handle_notification(_payment_event("P1"))
    assert result.reason == "order_store_error"


def test_catalog_outage_leaves_order_paid_unadjusted(reconciler, order_store, gateway, catalog, monkeypatch):
    order = _seed(order_store, gateway)

    def boom(_):
        raise RuntimeError("catalog down")

    monkeypatch.setattr(catalog, "get_stock", boom)
    result = reconciler.handle_notification(_payment_event("P1"))

    saved = order_store.get(order.id)
    assert result.action == "reconciled"
    assert saved.status == OrderStatus.PAID
    assert saved.stock_adjusted is False


def test_notifier_failure_does_not_undo_confirmation(reconciler, order_store, gateway, catalog, notifier, monkeypatch):
    order = _seed(order_store, gateway)

    def boom(_):
        raise RuntimeError("mailer down")

    monkeypatch.setattr(notifier, "send_order_confirmation", boom)
    result = reconciler.handle_notification(_payment_event("P1"))

    assert result.stock_adjusted is True
    assert order_store.get(order.id).stock_adjusted is True
    assert catalog.stock_of("X") == 3


def test_order_without_email_skips_confirmation(reconciler, order_store, gateway, notifier):
    _seed(order_store, gateway, email=None)
    result = reconciler.handle_notification(_payment_event("P1"))
    assert result.stock_adjusted is True
    assert notifier.sent == []


def test_unexpected_error_becomes_internal_error(reconciler, order_store, gateway, monkeypatch):
    _seed(order_store, gateway)

    def boom(*a, **kw):
        raise KeyError("bug")

    monkeypatch.setattr(reconciler, "_apply", boom)
    result = reconciler.handle_notification(_payment_event("P1"))
    assert result.as_dict() == {"ok": True, "action": "skipped", "reason": "internal_error"}


# ---- concurrency ----

def test_lost_status_race_writes_facts_without_decrement(reconciler, order_store, gateway, catalog, monkeypatch):
    order = _seed(order_store, gateway)
    real_update = order_store.update

    def racing_update(order_id, fields, expected_status=None):
        if expected_status == OrderStatus.PENDING:
            # a concurrent delivery got there first
            real_update(order_id, {"status": OrderStatus.PAID})
        return real_update(order_id, fields, expected_status)

    monkeypatch.setattr(order_store, "update", racing_update)
    result = reconciler.handle_notification(_payment_event("P1"))

    assert result.action == "reconciled"
    assert result.became_paid is False
    assert catalog.decrements == []
    assert order_store.get(order.id).payment_id == "P1"


def test_concurrent_duplicate_deliveries_decrement_once(reconciler, order_store, gateway, catalog, notifier):
    order = _seed(order_store, gateway)
    barrier = threading.Barrier(8)
    results = []

    def deliver():
        barrier.wait()
        results.append(reconciler.handle_notification(_payment_event("P1")))

    threads = [threading.Thread(target=deliver) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(results) == 8
    assert sum(1 for r in results if r.became_paid) == 1
    assert catalog.stock_of("X") == 3
    assert catalog.decrements == [("X", 2)]
    assert len(notifier.sent) == 1
    assert order_store.get(order.id).stock_adjusted is True
