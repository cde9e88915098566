"""
Core views providing infrastructure endpoints.

Not part of the escrow domain, but needed by the deployment: orchestrators
poll /health/ before routing traffic to an instance.
"""

import logging

from django.db import DatabaseError, connection
from django.http import JsonResponse
from django_redis import get_redis_connection
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


def _database_status() -> str:
    try:
        with connection.cursor() as cursor:
            cursor.execute("SELECT 1")
            cursor.fetchone()
    except DatabaseError:
        logger.exception("Health check: database unreachable")
        return "disconnected"
    return "connected"


def _redis_status() -> str:
    try:
        get_redis_connection("default").ping()
    except (RedisError, NotImplementedError):
        logger.warning("Health check: redis unreachable", exc_info=True)
        return "disconnected"
    return "connected"


def health_check(request):
    """
    Health check endpoint for monitoring and orchestration.

    The database is required. Redis backs the distributed locks that
    serialise payment verification, refunds and payouts, so an instance
    without it reports "degraded": reads still work, money-moving writes
    will fail fast with a lock error.

    Returns:
        JsonResponse with status and component health:
        - status: "healthy", "degraded" or "unhealthy"
        - database: "connected" or "disconnected"
        - redis: "connected" or "disconnected"

    HTTP Status Codes:
        200: Database reachable (healthy or degraded)
        503: Database unreachable
    """
    health_status = {
        "status": "healthy",
        "database": _database_status(),
        "redis": _redis_status(),
    }

    if health_status["database"] != "connected":
        health_status["status"] = "unhealthy"
    elif health_status["redis"] != "connected":
        health_status["status"] = "degraded"

    status_code = 503 if health_status["status"] == "unhealthy" else 200
    return JsonResponse(health_status, status=status_code)
