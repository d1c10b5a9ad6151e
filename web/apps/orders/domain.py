"""Domain models, ports and services for checkout orders.

This module contains the dataclasses used as DTOs for orders, stock and
payment facts, protocol definitions (ports) for the external collaborators
(order store, catalog, payment gateway, confirmation notifier), the order
status graph, and the domain services that do not own any I/O themselves:
the stock validator and the checkout service.

The asynchronous side of the checkout (payment notifications) lives in
``reconciler.py``.
"""

from dataclasses import dataclass, field
from typing import Protocol, List, Optional
from enum import Enum
import logging
import uuid


logger = logging.getLogger("orders.domain")


# ---- Enums ----
class OrderStatus(str, Enum):
    """Enumeration of the possible order statuses.

    ``pending`` is the only status the payment path moves out of
    automatically. ``shipped`` and ``delivered`` are operator driven."""

    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    CANCELLED = "cancelled"
    SHIPPED = "shipped"
    DELIVERED = "delivered"


# Transitions applied by the reconciler when a payment outcome arrives.
PAYMENT_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.PAID, OrderStatus.FAILED, OrderStatus.CANCELLED},
}

# Transitions an operator may request manually.
OPERATOR_TRANSITIONS = {
    OrderStatus.PAID: {OrderStatus.SHIPPED},
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED},
}

_OUTCOME_TO_STATUS = {
    "approved": OrderStatus.PAID,
    "rejected": OrderStatus.FAILED,
    "cancelled": OrderStatus.CANCELLED,
}


def status_for_payment(payment_status: Optional[str]) -> OrderStatus:
    """Map a gateway payment status onto the order status it implies.

    Anything that is not a final outcome (in_process, authorized, unknown
    values, None) maps to ``pending``.
    """
    return _OUTCOME_TO_STATUS.get((payment_status or "").strip().lower(), OrderStatus.PENDING)


def next_payment_status(current: OrderStatus, target: OrderStatus) -> OrderStatus:
    """Return the status an order should end in for a payment outcome.

    Only ``pending`` orders move. A paid order is never downgraded, and
    failed/cancelled orders stay terminal for the payment path.
    """
    if target in PAYMENT_TRANSITIONS.get(current, ()):
        return target
    return current


# ---- Entities / DTOs ----
@dataclass(frozen=True)
class OrderItem:
    """A single line item in an order.

    Attributes:
        product_ref: Catalog reference of the product.
        quantity: Number of units requested.
        unit_price_cents: Unit price in minor units at checkout time.
        title: Product title snapshot, used in notifications and stock
            problem reports.
    """

    product_ref: str
    quantity: int
    unit_price_cents: int = 0
    title: str = ""

    def as_dict(self) -> dict:
        return {
            "product_ref": self.product_ref,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "title": self.title,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "OrderItem":
        return cls(
            product_ref=str(data.get("product_ref") or "").strip(),
            quantity=int(data.get("quantity") or 0),
            unit_price_cents=int(data.get("unit_price_cents") or 0),
            title=str(data.get("title") or ""),
        )


@dataclass
class Order:
    """Container for order data.

    Attributes:
        id: Store-assigned identifier, or None if not yet saved.
        external_reference: Client-generated correlation key shared with the
            payment gateway. Unique and immutable.
        items: Line items, in checkout order.
        status: Current OrderStatus.
        total_cents: Order total in integer minor units.
        currency: ISO currency code.
        stock_adjusted: Whether inventory was already decremented for this
            order. Flips to True at most once.
        payment_*: Last payment facts fetched from the gateway.
        failure_reason: Why the order was failed by the system, if it was.
    """

    id: Optional[uuid.UUID]
    external_reference: str
    items: List[OrderItem]
    status: OrderStatus = OrderStatus.PENDING
    total_cents: int = 0
    currency: str = "ARS"
    order_number: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None
    phone: Optional[str] = None
    shipping_method: str = "delivery"
    shipping_address: Optional[dict] = None
    pickup_point: Optional[str] = None
    stock_adjusted: bool = False
    payment_id: Optional[str] = None
    payment_status: Optional[str] = None
    payment_status_detail: Optional[str] = None
    payment_external_reference: Optional[str] = None
    merchant_order_id: Optional[str] = None
    failure_reason: Optional[str] = None


@dataclass(frozen=True)
class ProductStock:
    """Stock record of a catalog product. ``stock=None`` means unlimited."""

    product_ref: str
    stock: Optional[int]
    title: str = ""


@dataclass(frozen=True)
class StockProblem:
    product_ref: str
    requested: int
    available: int
    title: str = ""

    def as_dict(self) -> dict:
        return {
            "product_ref": self.product_ref,
            "title": self.title,
            "requested": self.requested,
            "available": self.available,
        }


@dataclass
class StockCheck:
    """Outcome of a stock validation pass."""

    problems: List[StockProblem] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.problems


@dataclass(frozen=True)
class PaymentFacts:
    """Canonical payment facts fetched from the gateway.

    Attributes:
        payment_id: Gateway payment identifier.
        status: Gateway outcome (approved, rejected, cancelled, pending...).
        status_detail: Gateway status detail, free text.
        external_reference: Correlation key, or None when the gateway has
            neither the caller-supplied reference nor one in metadata.
        merchant_order_id: Intermediate order the payment belongs to.
    """

    payment_id: str
    status: Optional[str]
    status_detail: Optional[str] = None
    external_reference: Optional[str] = None
    merchant_order_id: Optional[str] = None


@dataclass(frozen=True)
class MerchantOrderPayment:
    payment_id: Optional[str]
    status: Optional[str] = None


@dataclass(frozen=True)
class MerchantOrder:
    merchant_order_id: str
    payments: List[MerchantOrderPayment] = field(default_factory=list)

    def best_payment_id(self) -> Optional[str]:
        """Pick the payment to reconcile: approved first, else any with an id.

        Returns None when the merchant order carries no payment yet; the
        real payment arrives in a later notification.
        """
        with_id = [p for p in self.payments if p.payment_id]
        approved = [p for p in with_id if (p.status or "").lower() == "approved"]
        chosen = (approved or with_id or [None])[0]
        return chosen.payment_id if chosen else None


@dataclass(frozen=True)
class Preference:
    """Payment intent created on the gateway for an order."""

    preference_id: str
    init_point: Optional[str] = None
    sandbox_init_point: Optional[str] = None


# ---- Errors ----
class OutOfStock(ValueError):
    """Raised by the pre-flight check when an order cannot be fulfilled."""

    def __init__(self, problems: List[StockProblem]):
        super().__init__("OUT_OF_STOCK")
        self.problems = problems


# ---- Ports (DIP) ----
class OrderStorePort(Protocol):
    """Port describing the authoritative order store."""

    def create(self, order: Order) -> Order:
        """Persist a new order and return it with store-assigned fields."""
        raise NotImplementedError()

    def get(self, order_id) -> Optional[Order]:
        raise NotImplementedError()

    def find_by_external_reference(self, external_reference: str) -> Optional[Order]:
        """Return the order correlated with ``external_reference`` or None."""
        raise NotImplementedError()

    def update(self, order_id, fields: dict, expected_status: Optional[OrderStatus] = None) -> bool:
        """Apply a partial update to an order.

        Args:
            order_id: Store identifier of the order.
            fields: Mapping of Order attribute names to new values.
            expected_status: When given, the update is applied only if the
                order's current status still equals it (compare-and-set).

        Returns:
            True if the update was applied, False if the order is missing or
            its status no longer matches ``expected_status``.
        """
        raise NotImplementedError()


class CatalogPort(Protocol):
    """Port describing the catalog (inventory) store."""

    def get_stock(self, product_ref: str) -> Optional[ProductStock]:
        """Return the product's stock record, or None if it does not exist."""
        raise NotImplementedError()

    def decrement(self, product_ref: str, quantity: int,
                  idempotency_key: Optional[str] = None) -> Optional[ProductStock]:
        """Atomically decrement stock by ``quantity``, clamping at zero.

        Products with unlimited (null) stock are left untouched. Returns the
        record after the operation, or None if the product does not exist.
        A repeated ``idempotency_key`` returns the first outcome without
        taking stock again.
        """
        raise NotImplementedError()


class PaymentGatewayPort(Protocol):
    """Port describing the payment gateway operations used by checkout."""

    def fetch_payment(self, payment_id: str) -> Optional[PaymentFacts]:
        raise NotImplementedError()

    def fetch_merchant_order(self, merchant_order_id: str) -> Optional[MerchantOrder]:
        raise NotImplementedError()

    def create_preference(self, order: Order) -> Preference:
        raise NotImplementedError()


class NotifierPort(Protocol):
    """Port for the fire-and-forget order confirmation notification."""

    def send_order_confirmation(self, order: Order) -> None:
        raise NotImplementedError()


# ---- Domain services ----
def _aggregate(items: List[OrderItem]) -> dict:
    """Sum requested quantities per product, keeping first-seen order.

    Lines without a product reference or with a non-positive quantity are
    ignored.
    """
    need: dict = {}
    for it in items:
        ref = (it.product_ref or "").strip()
        if not ref or it.quantity <= 0:
            continue
        qty, title = need.get(ref, (0, it.title))
        need[ref] = (qty + it.quantity, title or it.title)
    return need


class StockValidator:
    """Checks and commits stock for a set of order lines against the catalog.

    ``validate`` and ``decrement`` are two separate round trips to the
    catalog; ``decrement`` never reuses values read by ``validate``.
    """

    def __init__(self, catalog: CatalogPort):
        self.catalog = catalog

    def validate(self, items: List[OrderItem]) -> StockCheck:
        """Report every product whose finite stock is below the requested total.

        Missing products count as ``available=0``; unlimited stock always
        passes.
        """
        check = StockCheck()
        for ref, (requested, title) in _aggregate(items).items():
            product = self.catalog.get_stock(ref)
            if product is None:
                check.problems.append(StockProblem(ref, requested, 0, title))
                continue
            if product.stock is None:
                continue
            if product.stock < requested:
                check.problems.append(
                    StockProblem(ref, requested, product.stock, product.title or title)
                )
        return check

    def decrement(self, items: List[OrderItem], reference: Optional[str] = None) -> List[ProductStock]:
        """Decrement stock once per distinct product.

        With ``reference`` (the order's external reference) each call carries
        the key ``"<reference>:<product_ref>"``, so a retried request is not
        applied twice by the catalog.

        Returns the catalog records after the decrement for the products
        that exist.
        """
        updated = []
        for ref, (requested, _title) in _aggregate(items).items():
            key = f"{reference}:{ref}" if reference else None
            after = self.catalog.decrement(ref, requested, idempotency_key=key)
            if after is None:
                logger.warning("stock decrement skipped: product not found",
                               extra={"product_ref": ref, "quantity": requested})
                continue
            logger.info("stock decremented",
                        extra={"product_ref": ref, "quantity": requested, "stock": after.stock})
            updated.append(after)
        return updated


class CheckoutService:
    """Domain service for the synchronous side of checkout.

    It creates pending orders, runs the pre-flight stock check before a
    payment preference is created, and applies operator status changes. It
    does not handle HTTP concerns.
    """

    def __init__(self, orders: OrderStorePort, validator: StockValidator, gateway: PaymentGatewayPort):
        self.orders = orders
        self.validator = validator
        self.gateway = gateway

    def create_order(self, order: Order) -> Order:
        """Persist a new pending order.

        Raises:
            ValueError: 'EMPTY_ORDER' if the order has no items.
        """
        if not order.items:
            raise ValueError("EMPTY_ORDER")
        order.status = OrderStatus.PENDING
        order.stock_adjusted = False
        if not order.external_reference:
            order.external_reference = uuid.uuid4().hex
        return self.orders.create(order)

    def create_preference(self, order: Order) -> Preference:
        """Create a gateway preference for a pending order.

        Raises:
            ValueError: 'ORDER_NOT_PENDING' when the order already left
                pending, 'EMPTY_ORDER' when it has no items.
            OutOfStock: When the pre-flight stock check finds shortfalls.
        """
        if order.status != OrderStatus.PENDING:
            raise ValueError("ORDER_NOT_PENDING")
        if not order.items:
            raise ValueError("EMPTY_ORDER")

        check = self.validator.validate(order.items)
        if not check.ok:
            raise OutOfStock(check.problems)

        return self.gateway.create_preference(order)

    def advance_status(self, order: Order, next_status: OrderStatus) -> Order:
        """Apply an operator transition (paid → shipped → delivered).

        Raises:
            ValueError: 'INVALID_TRANSITION' if the graph does not allow the
                move or the order changed concurrently.
        """
        if next_status not in OPERATOR_TRANSITIONS.get(order.status, ()):
            raise ValueError("INVALID_TRANSITION")
        if not self.orders.update(order.id, {"status": next_status}, expected_status=order.status):
            raise ValueError("INVALID_TRANSITION")
        order.status = next_status
        return order
