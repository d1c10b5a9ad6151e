"""Service provider helpers for wiring the checkout services with ports.

``get_checkout_service`` and ``get_reconciler`` return services wired with
the ORM order store plus either the HTTP adapter clients (when
settings.USE_HTTP_ADAPTERS is truthy) or the in-process stubs, which are
suitable for local development without a catalog service or gateway
credentials.
"""

from django.conf import settings

from .adapters import GatewayStub, InMemoryCatalog, NotifierStub
from .domain import CheckoutService, StockValidator
from .http_adapters import HttpCatalogClient, HttpConfirmationNotifier, MercadoPagoClient
from .reconciler import OrderReconciler
from .repository import OrmOrderStore


# Shared stub instances so a local checkout and its webhook see the same state.
_stub_catalog = InMemoryCatalog()
_stub_gateway = GatewayStub()
_stub_notifier = NotifierStub()


def _ports():
    if getattr(settings, "USE_HTTP_ADAPTERS", True):
        return HttpCatalogClient(), MercadoPagoClient(), HttpConfirmationNotifier()
    return _stub_catalog, _stub_gateway, _stub_notifier


def get_order_store() -> OrmOrderStore:
    return OrmOrderStore()


def get_checkout_service() -> CheckoutService:
    """Return a CheckoutService for order creation and preferences."""
    catalog, gateway, _ = _ports()
    return CheckoutService(
        orders=get_order_store(),
        validator=StockValidator(catalog),
        gateway=gateway,
    )


def get_reconciler() -> OrderReconciler:
    """Return the OrderReconciler used by the payment webhook."""
    catalog, gateway, notifier = _ports()
    return OrderReconciler(
        orders=get_order_store(),
        gateway=gateway,
        validator=StockValidator(catalog),
        notifier=notifier,
    )
