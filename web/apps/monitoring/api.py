from django.http import JsonResponse
from django.db import connection

from apps.orders.http_adapters import BREAKERS


def health_view(_request):
    """Report DB reachability and the state of each downstream circuit.

    Open circuits are reported but do not fail the probe: the webhook keeps
    answering 200 while a downstream is unhealthy.
    """
    db_ok = False
    try:
        with connection.cursor() as cur:
            cur.execute("SELECT 1;")
        db_ok = True
    except Exception:
        db_ok = False

    circuits = {cb.name: cb.state for cb in BREAKERS}
    code = 200 if db_ok else 503
    return JsonResponse(
        {"ok": db_ok, "components": {"db": {"ok": db_ok}, "circuits": circuits}},
        status=code,
    )


def live_view(_request):
    """Liveness probe: the process answers, nothing else is checked."""
    return JsonResponse({"ok": True})
