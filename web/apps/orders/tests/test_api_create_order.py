"""API tests for the create-order endpoint.

These tests exercise the orders HTTP API for the main scenarios: successful
creation of a pending order, correlation key handling, and payload
validation errors. Orders are persisted through the ORM store.
"""
import copy

import pytest

from apps.orders.models import OrderModel
from .factories import CHECKOUT_PAYLOAD


CREATE_URL = "/api/orders/"


def _payload(**overrides):
    body = copy.deepcopy(CHECKOUT_PAYLOAD)
    body.update(overrides)
    return body


@pytest.mark.django_db
def test_create_order_returns_pending_order(client):
    """Returns 201 with the order number and a generated correlation key."""
    r = client.post(CREATE_URL, data=_payload(), content_type="application/json")
    assert r.status_code == 201
    body = r.json()
    assert body["status"] == "pending"
    assert body["order_number"] == "ORD-0001"
    assert len(body["external_reference"]) == 32

    row = OrderModel.objects.get(id=body["id"])
    assert row.email == "buyer@example.com"
    assert row.stock_adjusted is False
    assert row.items == [{"product_ref": "X", "quantity": 2, "unit_price_cents": 1000, "title": "Alfajor"}]
    assert row.shipping_address["text"] == "Av. Corrientes 1234, CABA, Buenos Aires (1043)"


@pytest.mark.django_db
def test_create_order_keeps_client_reference(client):
    r = client.post(CREATE_URL, data=_payload(external_reference="client-ref-0001"), content_type="application/json")
    assert r.status_code == 201
    assert r.json()["external_reference"] == "client-ref-0001"


@pytest.mark.django_db
def test_create_order_duplicate_reference_conflicts(client):
    """Returns 409 when the correlation key is already taken."""
    payload = _payload(external_reference="client-ref-0002")
    assert client.post(CREATE_URL, data=payload, content_type="application/json").status_code == 201
    r = client.post(CREATE_URL, data=payload, content_type="application/json")
    assert r.status_code == 409
    assert r.json()["detail"] == "DUPLICATE_EXTERNAL_REFERENCE"
    assert OrderModel.objects.count() == 1


@pytest.mark.django_db
def test_create_order_numbers_are_sequential(client):
    numbers = [
        client.post(CREATE_URL, data=_payload(), content_type="application/json").json()["order_number"]
        for _ in range(3)
    ]
    assert numbers == ["ORD-0001", "ORD-0002", "ORD-0003"]


@pytest.mark.django_db
def test_create_pickup_order(client):
    payload = _payload(shipping_method="pickup", pickup_point="Local Palermo")
    payload.pop("shipping_address")
    r = client.post(CREATE_URL, data=payload, content_type="application/json")
    assert r.status_code == 201
    row = OrderModel.objects.get(id=r.json()["id"])
    assert row.pickup_point == "Local Palermo"
    assert row.shipping_address is None


@pytest.mark.django_db
@pytest.mark.parametrize("overrides", [
    {"items": []},
    {"items": [{"product_ref": "bad ref!", "quantity": 1}]},
    {"items": [{"product_ref": "X", "quantity": 0}]},
    {"total_cents": 0},
    {"currency": "EU"},
    {"currency": "JPY"},
    {"email": "not-an-email"},
    {"shipping_address": None},
    {"shipping_method": "pickup"},
    {"external_reference": "short"},
])
def test_create_order_validation_error(client, overrides):
    """Returns 400 when the payload fails DTO validation."""
    r = client.post(CREATE_URL, data=_payload(**overrides), content_type="application/json")
    assert r.status_code == 400
    assert OrderModel.objects.count() == 0
