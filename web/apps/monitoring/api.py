"""Liveness/readiness endpoint.

Reports database connectivity and the payment gateway circuit state. The
service is healthy (200) when the database answers; an open gateway circuit
is reported but does not fail the check, since cancellations and webhooks
keep working without the intention API.
"""

import logging

from django.db import DatabaseError, connection
from django.http import JsonResponse

from apps.payments.gateway import gateway_circuit

logger = logging.getLogger(__name__)


def health_view(_request):
    try:
        with connection.cursor() as cur:
            cur.execute("SELECT 1")
        db_ok = True
    except DatabaseError:
        logger.exception("health check: database unreachable")
        db_ok = False

    circuit = gateway_circuit.state
    return JsonResponse(
        {
            "ok": db_ok,
            "components": {
                "db": {"ok": db_ok},
                "payment_gateway": {"ok": circuit != "OPEN", "circuit": circuit},
            },
        },
        status=200 if db_ok else 503,
    )
