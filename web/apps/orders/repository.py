"""Repository layer for persisting orders.

``OrmOrderStore`` implements ``OrderStorePort`` on the Django ORM. It maps
between ``OrderModel`` rows and domain ``Order`` objects so the domain
layer is not coupled to Django ORM details.

Status changes guarded by ``expected_status`` are a single
``UPDATE ... WHERE id = %s AND status = %s``: two deliveries racing for the
same transition cannot both win it.
"""

from typing import Optional

from django.core.exceptions import ValidationError
from django.conf import settings
from django.db import transaction

from .models import OrderModel
from .domain import Order, OrderItem, OrderStatus, OrderStorePort


_UPDATABLE = {
    "status",
    "stock_adjusted",
    "payment_id",
    "payment_status",
    "payment_status_detail",
    "payment_external_reference",
    "merchant_order_id",
    "failure_reason",
}


def to_domain(obj: OrderModel) -> Order:
    return Order(
        id=obj.id,
        external_reference=obj.external_reference,
        items=[OrderItem.from_dict(i) for i in (obj.items or [])],
        status=OrderStatus(obj.status),
        total_cents=obj.total_cents,
        currency=obj.currency,
        order_number=obj.order_number,
        email=obj.email or None,
        name=obj.name or None,
        phone=obj.phone or None,
        shipping_method=obj.shipping_method,
        shipping_address=obj.shipping_address,
        pickup_point=obj.pickup_point,
        stock_adjusted=obj.stock_adjusted,
        payment_id=obj.payment_id,
        payment_status=obj.payment_status,
        payment_status_detail=obj.payment_status_detail,
        payment_external_reference=obj.payment_external_reference,
        merchant_order_id=obj.merchant_order_id,
        failure_reason=obj.failure_reason,
    )


def _column(value):
    return value.value if isinstance(value, OrderStatus) else value


class OrmOrderStore(OrderStorePort):
    """Order store backed by the ``orders`` table."""

    def create(self, order: Order) -> Order:
        """Persist a new order and assign its order number.

        Returns:
            Order: The domain order with ``id`` and ``order_number`` set.
        """
        prefix = getattr(settings, "ORDER_NUMBER_PREFIX", "ORD")
        with transaction.atomic():
            obj = OrderModel.objects.create(
                external_reference=order.external_reference,
                status=_column(order.status),
                total_cents=order.total_cents,
                currency=order.currency,
                items=[it.as_dict() for it in order.items],
                email=order.email or "",
                name=order.name or "",
                phone=order.phone or "",
                shipping_method=order.shipping_method,
                shipping_address=order.shipping_address,
                pickup_point=order.pickup_point,
                stock_adjusted=order.stock_adjusted,
            )
            obj.order_number = f"{prefix}-{obj.internal_id:04d}"
            obj.save(update_fields=["order_number"])
        return to_domain(obj)

    def get(self, order_id) -> Optional[Order]:
        try:
            return to_domain(OrderModel.objects.get(id=order_id))
        except (OrderModel.DoesNotExist, ValidationError, ValueError):
            return None

    def get_by_number(self, order_number: str) -> Optional[Order]:
        obj = OrderModel.objects.filter(order_number__iexact=order_number).first()
        return to_domain(obj) if obj else None

    def find_by_external_reference(self, external_reference: str) -> Optional[Order]:
        obj = OrderModel.objects.filter(external_reference=external_reference).first()
        return to_domain(obj) if obj else None

    def update(self, order_id, fields: dict, expected_status: Optional[OrderStatus] = None) -> bool:
        """Apply a partial update, optionally conditioned on the current status.

        Raises:
            ValueError: If ``fields`` names a column that is not updatable.
        """
        unknown = set(fields) - _UPDATABLE
        if unknown:
            raise ValueError(f"NOT_UPDATABLE: {sorted(unknown)}")

        qs = OrderModel.objects.filter(id=order_id)
        if expected_status is not None:
            qs = qs.filter(status=_column(expected_status))
        values = {k: _column(v) for k, v in fields.items()}
        return qs.update(**values) == 1
