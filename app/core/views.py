"""
Core views providing infrastructure endpoints.
"""

import logging

from django.core.cache import cache
from django.db import connection
from django.http import JsonResponse

logger = logging.getLogger(__name__)


def health_check(request):
    """
    Health check endpoint for Docker, Kubernetes probes and load balancers.

    The database is required. Redis backs the escrow worker locks, so
    losing it leaves the API serving reads but stalls settlement; it is
    reported as "degraded" rather than failing the probe.

    HTTP Status Codes:
        200: Database reachable (status "healthy" or "degraded")
        503: Database unreachable

    Example Response:
        {
            "status": "healthy",
            "database": "connected",
            "cache": "connected"
        }
    """
    health_status = {
        "status": "healthy",
        "database": "unknown",
        "cache": "unknown",
    }
    is_healthy = True

    try:
        with connection.cursor() as cursor:
            cursor.execute("SELECT 1")
            cursor.fetchone()
        health_status["database"] = "connected"
    except Exception:
        logger.exception("Health check: database unreachable")
        health_status["database"] = "disconnected"
        health_status["status"] = "unhealthy"
        is_healthy = False

    try:
        cache.set("health_check", "ok", timeout=1)
        connected = cache.get("health_check") == "ok"
    except Exception:
        logger.warning("Health check: cache unreachable", exc_info=True)
        connected = False

    health_status["cache"] = "connected" if connected else "disconnected"
    if is_healthy and not connected:
        health_status["status"] = "degraded"

    return JsonResponse(health_status, status=200 if is_healthy else 503)
