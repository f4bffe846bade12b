from django.conf import settings
from django.db import DatabaseError, connection
from django.http import JsonResponse

from apps.orders.http_adapters import circuit_states


def health_view(_request):
    """Report database reachability and the state of each circuit breaker.

    Answers 503 when the database is down. Open circuits are reported but
    only matter when the HTTP adapters are in use.
    """
    db_ok = False
    try:
        with connection.cursor() as cur:
            cur.execute("SELECT 1;")
        db_ok = True
    except DatabaseError:
        db_ok = False

    circuits = circuit_states()
    use_http = getattr(settings, "USE_HTTP_ADAPTERS", True)
    upstream_ok = not use_http or all(st != "OPEN" for st in circuits.values())

    ok = db_ok and upstream_ok
    code = 200 if db_ok else 503
    return JsonResponse(
        {
            "ok": ok,
            "components": {
                "db": {"ok": db_ok},
                "circuits": {name: {"state": st} for name, st in circuits.items()},
            },
        },
        status=code,
    )


def live_view(_request):
    """Liveness probe: the process is up, no dependency is checked."""
    return JsonResponse({"ok": True})
