"""In-process adapters for the orders domain ports.

These implement the ports without any network calls. They are intended for
unit tests and local development, where deterministic behavior is useful
and external services are not required. Each one guards its state with a
lock so concurrent deliveries in tests see the same atomicity the real
stores provide.
"""

import copy
import threading
import uuid
from dataclasses import replace
from typing import Dict, List, Optional

from .domain import (
    CatalogPort,
    MerchantOrder,
    NotifierPort,
    Order,
    OrderStatus,
    OrderStorePort,
    PaymentFacts,
    PaymentGatewayPort,
    Preference,
    ProductStock,
)


class InMemoryOrderStore(OrderStorePort):
    """Dictionary-backed order store with compare-and-set updates."""

    def __init__(self, orders: Optional[List[Order]] = None):
        self._lock = threading.RLock()
        self._orders: Dict[uuid.UUID, Order] = {}
        self.updates: List[dict] = []
        for o in orders or []:
            self.create(o)

    def create(self, order: Order) -> Order:
        with self._lock:
            if order.id is None:
                order.id = uuid.uuid4()
            if any(o.external_reference == order.external_reference for o in self._orders.values()):
                raise ValueError("DUPLICATE_EXTERNAL_REFERENCE")
            if order.order_number is None:
                order.order_number = f"ORD-{len(self._orders) + 1:04d}"
            self._orders[order.id] = copy.deepcopy(order)
            return copy.deepcopy(order)

    def get(self, order_id) -> Optional[Order]:
        with self._lock:
            o = self._orders.get(order_id)
            return copy.deepcopy(o) if o else None

    def get_by_number(self, order_number: str) -> Optional[Order]:
        with self._lock:
            for o in self._orders.values():
                if (o.order_number or "").lower() == order_number.lower():
                    return copy.deepcopy(o)
            return None

    def find_by_external_reference(self, external_reference: str) -> Optional[Order]:
        with self._lock:
            for o in self._orders.values():
                if o.external_reference == external_reference:
                    return copy.deepcopy(o)
            return None

    def update(self, order_id, fields: dict, expected_status: Optional[OrderStatus] = None) -> bool:
        with self._lock:
            o = self._orders.get(order_id)
            if o is None:
                return False
            if expected_status is not None and o.status != expected_status:
                return False
            for key, value in fields.items():
                setattr(o, key, value)
            self.updates.append(dict(fields))
            return True


class InMemoryCatalog(CatalogPort):
    """Catalog stub holding ``{product_ref: stock}``; None means unlimited."""

    def __init__(self, stock: Optional[Dict[str, Optional[int]]] = None):
        self._lock = threading.RLock()
        self._stock: Dict[str, Optional[int]] = dict(stock or {})
        self.decrements: List[tuple] = []
        self._applied: Dict[str, ProductStock] = {}

    def stock_of(self, product_ref: str) -> Optional[int]:
        with self._lock:
            return self._stock[product_ref]

    def set_stock(self, product_ref: str, stock: Optional[int]) -> None:
        with self._lock:
            self._stock[product_ref] = stock

    def get_stock(self, product_ref: str) -> Optional[ProductStock]:
        with self._lock:
            if product_ref not in self._stock:
                return None
            return ProductStock(product_ref=product_ref, stock=self._stock[product_ref])

    def decrement(self, product_ref: str, quantity: int,
                  idempotency_key: Optional[str] = None) -> Optional[ProductStock]:
        with self._lock:
            if product_ref not in self._stock:
                return None
            if idempotency_key and idempotency_key in self._applied:
                return self._applied[idempotency_key]
            current = self._stock[product_ref]
            if current is not None:
                self._stock[product_ref] = max(0, current - quantity)
                self.decrements.append((product_ref, quantity))
            after = ProductStock(product_ref=product_ref, stock=self._stock[product_ref])
            if idempotency_key:
                self._applied[idempotency_key] = after
            return after


class GatewayStub(PaymentGatewayPort):
    """Payment gateway stub serving registered payments and merchant orders."""

    def __init__(self):
        self.payments: Dict[str, PaymentFacts] = {}
        self.merchant_orders: Dict[str, MerchantOrder] = {}
        self.preferences: List[Order] = []

    def add_payment(self, facts: PaymentFacts) -> PaymentFacts:
        self.payments[facts.payment_id] = facts
        return facts

    def add_merchant_order(self, merchant_order: MerchantOrder) -> MerchantOrder:
        self.merchant_orders[merchant_order.merchant_order_id] = merchant_order
        return merchant_order

    def fetch_payment(self, payment_id: str) -> Optional[PaymentFacts]:
        return self.payments.get(str(payment_id))

    def fetch_merchant_order(self, merchant_order_id: str) -> Optional[MerchantOrder]:
        return self.merchant_orders.get(str(merchant_order_id))

    def create_preference(self, order: Order) -> Preference:
        """Approve any order with a positive total; returns a random id."""
        if order.total_cents <= 0:
            raise ValueError("INVALID_TOTAL")
        self.preferences.append(replace(order))
        pid = uuid.uuid4().hex
        return Preference(
            preference_id=pid,
            init_point=f"https://gateway.invalid/checkout?pref_id={pid}",
            sandbox_init_point=f"https://sandbox.gateway.invalid/checkout?pref_id={pid}",
        )


class NotifierStub(NotifierPort):
    """Records confirmations instead of sending them."""

    def __init__(self):
        self.sent: List[Order] = []

    def send_order_confirmation(self, order: Order) -> None:
        self.sent.append(order)
