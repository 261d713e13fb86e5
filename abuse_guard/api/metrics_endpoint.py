"""Prometheus metrics endpoint.

Besides the HTTP metrics, this is where operators see the limiter's
own health, e.g.:

  rate_limit_decisions_total{scope="login",result="denied"} 17.0
  rate_limit_store_errors_total{component="token_bucket",kind="store_unavailable"} 3.0

SECURITY NOTE: restrict access to /metrics in production (internal port
or scraper allow-list).  The scope labels reveal which endpoints are
being attacked.
"""

from __future__ import annotations

from fastapi import APIRouter
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

router = APIRouter(tags=["observability"])


@router.get("/metrics", include_in_schema=False)
async def metrics() -> Response:
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST,
    )
