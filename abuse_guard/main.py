from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from abuse_guard.api.health import router as health_router
from abuse_guard.api.login import router as login_router
from abuse_guard.api.metrics_endpoint import router as metrics_router
from abuse_guard.api.ratelimit import install_rate_limit_handler
from abuse_guard.api.signup import router as signup_router
from abuse_guard.api.tasks import router as tasks_router
from abuse_guard.core.config import SETTINGS
from abuse_guard.core.logging import setup_logging
from abuse_guard.db.redis import lifespan_redis
from abuse_guard.middleware.metrics import MetricsMiddleware
from abuse_guard.middleware.request_context import RequestContextMiddleware

# Configure logging before anything else runs.
setup_logging(SETTINGS.log_level, json_format=SETTINGS.log_json)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    async with lifespan_redis():
        yield


app = FastAPI(
    title="abuse-guard",
    lifespan=lifespan,
    docs_url="/docs" if SETTINGS.is_dev else None,
    redoc_url="/redoc" if SETTINGS.is_dev else None,
)

install_rate_limit_handler(app)

# Middleware execution order: last-added runs first (outermost layer).
# RequestContext (outermost) → Metrics → route handler
app.add_middleware(MetricsMiddleware)
app.add_middleware(RequestContextMiddleware)

app.include_router(metrics_router)
app.include_router(health_router)
app.include_router(login_router)
app.include_router(signup_router)
app.include_router(tasks_router)

logger.info(
    "abuse-guard started  env=%s log_level=%s port=%d redis=%s rate_limits=%s",
    SETTINGS.app_env,
    SETTINGS.log_level,
    SETTINGS.port,
    "on" if SETTINGS.redis_url else "off",
    "on" if SETTINGS.rate_limit_enabled else "off",
)
