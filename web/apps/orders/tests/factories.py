"""Builders shared by the orders tests."""

import uuid

from apps.orders.domain import Order, OrderItem, PaymentFacts


def make_order(items=(("X", 2),), ref=None, **kw) -> Order:
    return Order(
        id=None,
        external_reference=ref or uuid.uuid4().hex,
        items=[OrderItem(p, q, 1000) for p, q in items],
        total_cents=kw.pop("total_cents", 2000),
        email=kw.pop("email", "buyer@example.com"),
        name=kw.pop("name", "Ana Buyer"),
        **kw,
    )


def payment(payment_id: str, ref, status="approved", **kw) -> PaymentFacts:
    return PaymentFacts(
        payment_id=payment_id,
        status=status,
        status_detail=kw.pop("status_detail", "accredited" if status == "approved" else None),
        external_reference=ref,
        **kw,
    )


CHECKOUT_PAYLOAD = {
    "items": [{"product_ref": "X", "quantity": 2, "unit_price_cents": 1000, "title": "Alfajor"}],
    "total_cents": 2000,
    "currency": "ARS",
    "email": "Buyer@Example.com",
    "name": "Ana Buyer",
    "phone": "+54 11 5555 0000",
    "shipping_method": "delivery",
    "shipping_address": {
        "street": "Av. Corrientes",
        "number": "1234",
        "city": "CABA",
        "province": "Buenos Aires",
        "postal_code": "1043",
    },
}
