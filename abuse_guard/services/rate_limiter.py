"""Distributed rate limiting using the Token Bucket algorithm.

THE MODEL
----------
Each partition key (an IP, a user, an email) owns a bucket holding at
most ``capacity`` tokens.  Tokens flow back in continuously at
``refill_rate`` tokens per second.  A request costs ``requested`` tokens
and is allowed only if that many are present.

We store exactly two numbers per bucket: ``tokens`` and ``last_refill``.
There is no background ticker.  Refill is computed lazily whenever the
bucket is evaluated:

    elapsed = max(0, now - last_refill)
    tokens  = min(capacity, tokens + elapsed * refill_rate)

so an idle key costs nothing until it is touched again, and an idle key
that is never touched again simply expires (Redis TTL).  Expiry means
"forgotten", which is the same as "full", so dropping a bucket is always
safe as long as the TTL is at least ``capacity / refill_rate``.

DENIALS DO NOT CONSUME
-----------------------
A denied request writes back the refilled token count and the new
timestamp, but never subtracts.  Hammering a full bucket therefore does
not push the recovery time further out.

ATOMICITY
----------
Evaluation is read-modify-write.  Two concurrent callers that both read
"1 token left" would both be allowed.  The Redis backend runs the whole
evaluation as one Lua script (Redis executes scripts atomically); the
in-process backend holds a lock for the same critical section.  The Redis
backend takes no application-side lock.

FAILURE
--------
Backends raise StoreError when the store cannot answer.  ``evaluate()``
is the boundary that turns that into an allowed-but-degraded result, so
nothing above this module ever has to handle a limiter exception.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from abuse_guard.core.metrics import RATE_LIMIT_STORE_ERRORS
from abuse_guard.db.redis import translate_redis_errors
from abuse_guard.services.errors import ConfigurationError, StoreError, StoreProtocolError

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RateLimitPolicy:
    """Tunable parameters for one rate-limited endpoint.

    capacity:     Maximum tokens in the bucket (burst size).
    refill_rate:  Tokens added per second (sustained rate).
    ttl_seconds:  How long an untouched bucket survives in the store.
    requested:    Tokens one request costs.

    Example: capacity=10, refill_rate=1.0 means "10 requests burst,
    then 1 per second sustained".
    """

    capacity: int = 60
    refill_rate: float = 1.0
    ttl_seconds: int = 60
    requested: int = 1

    def __post_init__(self) -> None:
        if self.capacity <= 0:
            raise ConfigurationError(f"capacity must be positive (got {self.capacity})")
        if self.refill_rate <= 0:
            raise ConfigurationError(
                f"refill_rate must be positive (got {self.refill_rate})"
            )
        if self.ttl_seconds <= 0:
            raise ConfigurationError(
                f"ttl_seconds must be positive (got {self.ttl_seconds})"
            )
        if self.requested <= 0:
            raise ConfigurationError(
                f"requested must be positive (got {self.requested})"
            )
        if self.requested > self.capacity:
            raise ConfigurationError(
                f"requested ({self.requested}) exceeds capacity ({self.capacity}); "
                "no request could ever be allowed"
            )
        if self.ttl_seconds < self.seconds_to_full:
            logger.warning(
                "Bucket TTL %ds is shorter than the %.0fs refill time; "
                "idle buckets will reset by expiry",
                self.ttl_seconds,
                self.seconds_to_full,
            )

    @property
    def seconds_to_full(self) -> float:
        return self.capacity / self.refill_rate


@dataclass(frozen=True, slots=True)
class RateLimitResult:
    """The outcome of a rate limit check.

    allowed:   True if the request may proceed.
    degraded:  True if the store failed and the request was allowed anyway.
    error:     StoreError kind when degraded, else None.
    """

    allowed: bool
    degraded: bool = False
    error: str | None = None


def refill(
    tokens: float,
    last_refill: float,
    now: float,
    capacity: float,
    refill_rate: float,
) -> float:
    """Tokens available at ``now``.  A clock that went backwards adds nothing."""
    elapsed = max(0.0, now - last_refill)
    return min(float(capacity), tokens + elapsed * refill_rate)


@runtime_checkable
class TokenBucketLimiter(Protocol):
    """Protocol for token bucket backends.

    Same pattern as the other store-backed services: Protocol interface,
    in-process implementation for dev/tests, Redis for production.
    """

    async def allow(
        self,
        key: str,
        now: float,
        capacity: int,
        refill_rate: float,
        requested: int,
        ttl_seconds: int,
    ) -> bool: ...


async def evaluate(
    limiter: TokenBucketLimiter,
    key: str,
    policy: RateLimitPolicy,
    *,
    now: float,
) -> RateLimitResult:
    """Run one check, converting store failures into a fail-open result."""
    try:
        allowed = await limiter.allow(
            key,
            now,
            policy.capacity,
            policy.refill_rate,
            policy.requested,
            policy.ttl_seconds,
        )
    except StoreError as exc:
        RATE_LIMIT_STORE_ERRORS.labels(component="token_bucket", kind=exc.kind).inc()
        logger.warning(
            "Rate limit store error, allowing request key=%s error=%s",
            key,
            exc,
            extra={"rate_limit_error": exc.kind},
        )
        return RateLimitResult(allowed=True, degraded=True, error=exc.kind)
    return RateLimitResult(allowed=allowed)


class InMemoryTokenBucket:
    """Process-local token bucket for single-process dev/test.

    LIMITATION FOR PRODUCTION:
    Each process has its own dict, so N instances behind a load balancer
    hand out N times the configured burst.  Use Redis in production.

    Records carry their own expiry (``now + ttl``) mirroring the Redis
    TTL; expired records read as absent, and every ``_SWEEP_EVERY``
    evaluations the whole map is swept so idle keys don't accumulate.
    """

    _SWEEP_EVERY = 1024

    def __init__(self) -> None:
        # key -> (tokens, last_refill, expires_at)
        self._buckets: dict[str, tuple[float, float, float]] = {}
        self._lock = threading.Lock()
        self._evaluations = 0

    async def allow(
        self,
        key: str,
        now: float,
        capacity: int,
        refill_rate: float,
        requested: int,
        ttl_seconds: int,
    ) -> bool:
        with self._lock:
            self._evaluations += 1
            if self._evaluations % self._SWEEP_EVERY == 0:
                self._sweep(now)

            record = self._buckets.get(key)
            if record is None or record[2] <= now:
                tokens, last_refill = float(capacity), now
            else:
                tokens, last_refill, _ = record

            tokens = refill(tokens, last_refill, now, capacity, refill_rate)
            allowed = tokens >= requested
            if allowed:
                tokens -= requested
            self._buckets[key] = (tokens, now, now + ttl_seconds)
            return allowed

    def _sweep(self, now: float) -> None:
        expired = [k for k, (_, _, expires_at) in self._buckets.items() if expires_at <= now]
        for k in expired:
            del self._buckets[k]


class RedisTokenBucket:
    """Redis-backed token bucket, shared across all API instances.

    WHY A LUA SCRIPT:
    Redis runs a script to completion before serving any other command,
    so the read, the refill math, and the write happen as one step.  No
    other caller on any instance can observe the bucket half-updated.
    It is also exactly one network round trip per check.
    """

    # KEYS[1] = bucket key
    # ARGV = now, refill_rate, capacity, requested, ttl
    # Returns 1 (allowed) or 0 (denied)
    _LUA_SCRIPT = """
    local key = KEYS[1]
    local now = tonumber(ARGV[1])
    local refill_rate = tonumber(ARGV[2])
    local capacity = tonumber(ARGV[3])
    local requested = tonumber(ARGV[4])
    local ttl = tonumber(ARGV[5])

    local bucket = redis.call('HMGET', key, 'tokens', 'last_refill')
    local tokens = tonumber(bucket[1])
    local last_refill = tonumber(bucket[2])
    if tokens == nil or last_refill == nil then
        tokens = capacity
        last_refill = now
    end

    local elapsed = math.max(0, now - last_refill)
    tokens = math.min(capacity, tokens + elapsed * refill_rate)

    local allowed = 0
    if tokens >= requested then
        tokens = tokens - requested
        allowed = 1
    end

    redis.call('HSET', key, 'tokens', tokens, 'last_refill', now)
    redis.call('EXPIRE', key, ttl)
    return allowed
    """

    def __init__(self, redis_client, *, timeout: float = 2.0) -> None:
        self._redis = redis_client
        self._timeout = timeout
        self._script = None

    def _get_script(self):
        if self._script is None:
            # register_script uses EVALSHA and reloads on NOSCRIPT itself
            self._script = self._redis.register_script(self._LUA_SCRIPT)
        return self._script

    async def allow(
        self,
        key: str,
        now: float,
        capacity: int,
        refill_rate: float,
        requested: int,
        ttl_seconds: int,
    ) -> bool:
        script = self._get_script()
        with translate_redis_errors("token bucket eval"):
            result = await asyncio.wait_for(
                script(
                    keys=[key],
                    args=[now, refill_rate, capacity, requested, int(ttl_seconds)],
                ),
                timeout=self._timeout,
            )
        if isinstance(result, bool) or result not in (0, 1):
            raise StoreProtocolError(f"unexpected token bucket reply: {result!r}")
        return result == 1


class AllowAllTokenBucket:
    """Limiting switched off (RATE_LIMIT_ENABLED=false): every call passes."""

    async def allow(
        self,
        key: str,
        now: float,
        capacity: int,
        refill_rate: float,
        requested: int,
        ttl_seconds: int,
    ) -> bool:
        return True


def build_token_bucket(
    redis_client, *, enabled: bool = True, timeout: float = 2.0
) -> TokenBucketLimiter:
    if not enabled:
        logger.warning("Rate limiting disabled by configuration")
        return AllowAllTokenBucket()
    if redis_client is not None:
        return RedisTokenBucket(redis_client, timeout=timeout)
    return InMemoryTokenBucket()
