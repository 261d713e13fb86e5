"""Redis connection management.

Redis is the shared counter store for every server process: token
buckets and failed-login counters live there and nowhere else.  When
REDIS_URL is configured we create one connection pool per process; when
it is not (local dev, tests) the services fall back to in-process
implementations and no Redis server is needed.  REDIS_ADDR (+
REDIS_PASSWORD) is accepted in place of a URL; see core.config.

TIMEOUTS
---------
A rate-limit check sits in front of real work, so it must never hang.
Both the connect and the read timeout are set from
REDIS_TIMEOUT_SECONDS, and the services additionally bound each call
with asyncio.wait_for.  A timeout is just another store error: the
request is allowed and the failure is logged.

The pool is a BlockingConnectionPool (REDIS_MAX_CONNECTIONS per
process).  Once every connection is busy, further callers queue for one;
only a caller still waiting after REDIS_TIMEOUT_SECONDS fails open.

NEVER FATAL
------------
An unreachable or misconfigured Redis must not stop the server from
starting.  A bad URL is logged and treated as "not configured"; a failed
ping at startup is logged and the app keeps going (every check will then
fail open until Redis comes back).
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import asynccontextmanager, contextmanager

import redis.asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from abuse_guard.core.config import SETTINGS
from abuse_guard.services.errors import StoreProtocolError, StoreUnavailable

logger = logging.getLogger(__name__)


def create_redis_client(
    url: str, *, timeout: float, max_connections: int = 20
) -> aioredis.Redis:  # type: ignore[type-arg]
    # A full pool makes callers wait up to ``timeout`` for a connection
    # instead of raising MaxConnectionsError.
    pool = aioredis.BlockingConnectionPool.from_url(
        url,
        max_connections=max_connections,
        timeout=timeout,
        decode_responses=True,
        socket_timeout=timeout,
        socket_connect_timeout=timeout,
    )
    return aioredis.Redis.from_pool(pool)


@contextmanager
def translate_redis_errors(operation: str) -> Iterator[None]:
    """Re-raise client exceptions as the subsystem's StoreError types."""
    try:
        yield
    except (RedisConnectionError, RedisTimeoutError, TimeoutError, OSError) as exc:
        raise StoreUnavailable(f"{operation}: {exc!r}") from exc
    except RedisError as exc:
        raise StoreProtocolError(f"{operation}: {exc!r}") from exc


# ---------------------------------------------------------------------------
# Conditional Redis client (None when REDIS_URL is not set)
# ---------------------------------------------------------------------------

redis_pool: aioredis.Redis | None = None  # type: ignore[type-arg]

if SETTINGS.redis_url:
    try:
        redis_pool = create_redis_client(
            SETTINGS.redis_url,
            timeout=SETTINGS.redis_timeout_seconds,
            max_connections=SETTINGS.redis_max_connections,
        )
    except ValueError:
        logger.error(
            "Invalid REDIS_URL, falling back to in-process limiter state",
            exc_info=True,
        )


@asynccontextmanager
async def lifespan_redis():
    """Startup/shutdown hook: verify connectivity, close the pool on exit."""
    if redis_pool is None:
        logger.info("No REDIS_URL configured; rate limits use in-process state")
        yield
        return

    try:
        await redis_pool.ping()  # type: ignore[misc]  # redis stubs mistype async ping as bool
        kwargs = redis_pool.connection_pool.connection_kwargs
        logger.info("Redis connected: %s:%s", kwargs.get("host"), kwargs.get("port"))
    except (RedisError, OSError):
        # Keep serving: every check fails open until Redis is reachable.
        logger.exception("Redis connection failed on startup; limits fail open")

    yield

    await redis_pool.aclose()
    logger.info("Redis connection pool closed")
