import pytest


@pytest.fixture(autouse=True)
def use_stubs_for_tests(settings):
    from apps.orders.http_adapters import BREAKERS

    settings.USE_HTTP_ADAPTERS = False
    settings.HTTP_RETRY_BACKOFF_BASE = 0.0
    settings.MP_WEBHOOK_SECRET = ""
    for cb in BREAKERS:
        cb.on_success()


@pytest.fixture()
def catalog():
    from apps.orders.adapters import InMemoryCatalog
    return InMemoryCatalog({"X": 5, "Y": 2, "UNLIMITED": None})


@pytest.fixture()
def gateway():
    from apps.orders.adapters import GatewayStub
    return GatewayStub()


@pytest.fixture()
def notifier():
    from apps.orders.adapters import NotifierStub
    return NotifierStub()


@pytest.fixture()
def order_store():
    from apps.orders.adapters import InMemoryOrderStore
    return InMemoryOrderStore()


@pytest.fixture()
def reconciler(order_store, gateway, catalog, notifier):
    from apps.orders.domain import StockValidator
    from apps.orders.reconciler import OrderReconciler
    return OrderReconciler(order_store, gateway, StockValidator(catalog), notifier)


@pytest.fixture()
def wire_stubs(monkeypatch, catalog, gateway, notifier):
    """Point the providers' stub ports at this test's fakes (ORM order store)."""
    from apps.orders import providers
    monkeypatch.setattr(providers, "_stub_catalog", catalog)
    monkeypatch.setattr(providers, "_stub_gateway", gateway)
    monkeypatch.setattr(providers, "_stub_notifier", notifier)
    return catalog, gateway, notifier
