import pytest

from apps.orders.domain import OrderStatus
from apps.orders.repository import OrmOrderStore
from .factories import make_order


@pytest.mark.django_db
def test_create_assigns_order_number(settings):
    settings.ORDER_NUMBER_PREFIX = "TAL"
    store = OrmOrderStore()
    first = store.create(make_order())
    second = store.create(make_order())
    assert (first.order_number, second.order_number) == ("TAL-0001", "TAL-0002")
    assert store.find_by_external_reference(first.external_reference).id == first.id


@pytest.mark.django_db
def test_conditional_update_applies_once():
    store = OrmOrderStore()
    order = store.create(make_order())

    assert store.update(order.id, {"status": OrderStatus.PAID}, expected_status=OrderStatus.PENDING) is True
    assert store.update(order.id, {"status": OrderStatus.PAID}, expected_status=OrderStatus.PENDING) is False
    assert store.get(order.id).status == OrderStatus.PAID


@pytest.mark.django_db
def test_unconditional_update_writes_payment_facts():
    store = OrmOrderStore()
    order = store.create(make_order())
    assert store.update(order.id, {"payment_id": "P1", "payment_status": "in_process"})
    saved = store.get(order.id)
    assert (saved.payment_id, saved.payment_status, saved.status) == ("P1", "in_process", OrderStatus.PENDING)


@pytest.mark.django_db
def test_update_rejects_immutable_fields():
    store = OrmOrderStore()
    order = store.create(make_order())
    with pytest.raises(ValueError):
        store.update(order.id, {"external_reference": "changed-ref"})


@pytest.mark.django_db
def test_get_tolerates_malformed_ids():
    store = OrmOrderStore()
    assert store.get("not-a-uuid") is None
    assert store.get_by_number("ORD-0001") is None
