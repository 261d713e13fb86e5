"""Health and readiness endpoints.

  /health (liveness + dependency status):
    Always 200.  ``status`` says "degraded" when Redis is configured but
    not answering, which means rate limits and lockouts are currently
    failing open.  Returning 503 would get the container restarted,
    which does nothing for a Redis outage.

  /ready (readiness):
    Always 200.  Redis is not a readiness dependency: the service is
    designed to keep serving without it.
"""

from __future__ import annotations

from fastapi import APIRouter, Response
from redis.exceptions import RedisError

from abuse_guard.api.ratelimit import _rate_limiter
from abuse_guard.db.redis import redis_pool

router = APIRouter(tags=["health"])


@router.get("/health")
async def health() -> dict:
    checks: dict[str, str] = {}
    overall = "ok"

    if redis_pool is not None:
        try:
            await redis_pool.ping()  # type: ignore[misc]
            checks["redis"] = "ok"
        except (RedisError, OSError):
            checks["redis"] = "degraded"
            overall = "degraded"
    else:
        checks["redis"] = "not_configured"

    return {
        "status": overall,
        "checks": checks,
        "rate_limiter": type(_rate_limiter).__name__,
    }


@router.get("/ready")
async def ready() -> Response:
    return Response(status_code=200)
