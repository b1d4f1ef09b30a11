import logging

from django.db import DatabaseError, connection
from django.http import JsonResponse

from apps.orders.http_adapters import circuit_states

logger = logging.getLogger(__name__)


def health_view(_request):
    """Database reachability plus the state of every outbound circuit breaker.

    Only the database decides the status code; an open circuit degrades
    checkout but does not make this instance unhealthy.
    """
    db_ok = False
    try:
        with connection.cursor() as cur:
            cur.execute("SELECT 1;")
        db_ok = True
    except DatabaseError:
        logger.exception("health check: database unreachable")

    circuits = circuit_states()
    code = 200 if db_ok else 503
    return JsonResponse(
        {
            "ok": db_ok,
            "components": {
                "db": {"ok": db_ok},
                **{f"{name}_circuit": {"state": state} for name, state in circuits.items()},
            },
        },
        status=code,
    )
