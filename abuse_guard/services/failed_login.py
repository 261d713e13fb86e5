"""Per-account failed-login lockout.

WHY NOT JUST THE RATE LIMITER
------------------------------
The login endpoint is already rate limited per IP.  That stops one
machine from guessing quickly, but a credential-stuffing botnet rotates
thousands of addresses against ONE account.  This tracker counts
failures per claimed account instead, regardless of where they come
from.

THE STATE MACHINE
------------------
  absent ──fail──▶ counting (1 .. threshold-1) ──fail──▶ blocked (≥ threshold)
     ▲                                                         │
     └──── clear() on success, or the window TTL runs out ─────┘

"Blocked" is never stored.  It is read as ``count >= threshold`` at check
time, so changing LOGIN_LOCKOUT_THRESHOLD applies immediately.

The window starts at the FIRST failure and is not extended by later
ones: after ``window_seconds`` the record disappears and counting starts
over.  A successful login deletes the record outright (not set to zero),
so the next failure opens a fresh window.

FAIL OPEN
----------
The lockout is defense in depth; the password check is the real guard.
If Redis is unavailable, increment() returns 0, is_blocked() returns
False and clear() does nothing.  Errors are logged and counted, never
raised.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections.abc import Callable
from typing import Protocol, runtime_checkable

from abuse_guard.core.config import SETTINGS
from abuse_guard.core.metrics import RATE_LIMIT_STORE_ERRORS
from abuse_guard.db.redis import redis_pool, translate_redis_errors
from abuse_guard.services.errors import ConfigurationError, StoreError, StoreProtocolError
from abuse_guard.services.key_strategy import normalize_account

logger = logging.getLogger(__name__)

_PREFIX = "rl:fail:email:"


def _validate_positive(name: str, value: int) -> None:
    if value <= 0:
        raise ConfigurationError(f"{name} must be positive (got {value})")


@runtime_checkable
class FailedLoginTracker(Protocol):
    async def increment(self, account: str, window_seconds: int) -> int:
        """Record one failure; returns the count inside the current window."""
        ...

    async def is_blocked(self, account: str, threshold: int) -> bool:
        """True once the window holds ``threshold`` or more failures."""
        ...

    async def clear(self, account: str) -> None:
        """Forget all failures for the account."""
        ...


class InMemoryFailedLoginTracker:
    """In-process tracker for tests and local dev (no Redis needed).

    Per-process only: a lockout on one instance is invisible to another.
    Expired records read as absent, and every ``_SWEEP_EVERY`` increments
    the map is swept so one-off accounts don't accumulate.
    """

    _SWEEP_EVERY = 1024

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        # account -> (count, expires_at)
        self._counts: dict[str, tuple[int, float]] = {}
        self._lock = threading.Lock()
        self._clock = clock
        self._increments = 0

    async def increment(self, account: str, window_seconds: int) -> int:
        _validate_positive("window_seconds", window_seconds)
        account = normalize_account(account)
        if not account:
            return 0
        with self._lock:
            now = self._clock()
            self._increments += 1
            if self._increments % self._SWEEP_EVERY == 0:
                self._sweep(now)
            count, expires_at = self._current(account, now)
            if count == 0:
                expires_at = now + window_seconds
            count += 1
            self._counts[account] = (count, expires_at)
            return count

    async def is_blocked(self, account: str, threshold: int) -> bool:
        _validate_positive("threshold", threshold)
        account = normalize_account(account)
        if not account:
            return False
        with self._lock:
            count, _ = self._current(account, self._clock())
            return count >= threshold

    async def clear(self, account: str) -> None:
        account = normalize_account(account)
        with self._lock:
            self._counts.pop(account, None)

    def _current(self, account: str, now: float) -> tuple[int, float]:
        record = self._counts.get(account)
        if record is None:
            return 0, 0.0
        if record[1] <= now:
            # Mimic Redis TTL behavior: expired entries read as absent
            del self._counts[account]
            return 0, 0.0
        return record

    def _sweep(self, now: float) -> None:
        expired = [a for a, (_, expires_at) in self._counts.items() if expires_at <= now]
        for a in expired:
            del self._counts[a]


class RedisFailedLoginTracker:
    """Redis-backed tracker, shared across all API instances.

    INCR + EXPIRE NX in one MULTI:
    INCR is atomic on its own, so concurrent failures never lose a count.
    ``EXPIRE ... NX`` only sets a TTL on a key that has none, which makes
    "set the window on the first failure" hold even when two first
    failures race.  Both commands travel in one round trip.  (NX needs
    Redis 7+.)
    """

    def __init__(self, redis_client, *, timeout: float = 2.0) -> None:
        self._redis = redis_client
        self._timeout = timeout

    async def increment(self, account: str, window_seconds: int) -> int:
        _validate_positive("window_seconds", window_seconds)
        key = _key(account)
        if key is None:
            return 0
        try:
            with translate_redis_errors("failed login incr"):
                async with self._redis.pipeline(transaction=True) as pipe:
                    pipe.incr(key)
                    pipe.expire(key, window_seconds, nx=True)
                    count, _ = await asyncio.wait_for(pipe.execute(), self._timeout)
            return _as_count(count)
        except StoreError as exc:
            _record_failure("increment", account, exc)
            return 0

    async def is_blocked(self, account: str, threshold: int) -> bool:
        _validate_positive("threshold", threshold)
        key = _key(account)
        if key is None:
            return False
        try:
            with translate_redis_errors("failed login get"):
                raw = await asyncio.wait_for(self._redis.get(key), self._timeout)
            if raw is None:
                return False
            return _as_count(raw) >= threshold
        except StoreError as exc:
            _record_failure("is_blocked", account, exc)
            return False

    async def clear(self, account: str) -> None:
        key = _key(account)
        if key is None:
            return
        try:
            with translate_redis_errors("failed login clear"):
                await asyncio.wait_for(self._redis.delete(key), self._timeout)
        except StoreError as exc:
            _record_failure("clear", account, exc)


def _key(account: str) -> str | None:
    account = normalize_account(account)
    if not account:
        return None
    return f"{_PREFIX}{account}"


def _as_count(raw) -> int:
    try:
        count = int(raw)
    except (TypeError, ValueError):
        raise StoreProtocolError(f"failed-login counter is not an integer: {raw!r}") from None
    if count < 0:
        raise StoreProtocolError(f"failed-login counter is negative: {count}")
    return count


def _record_failure(operation: str, account: str, exc: StoreError) -> None:
    RATE_LIMIT_STORE_ERRORS.labels(component="failed_login", kind=exc.kind).inc()
    logger.warning(
        "Failed-login store error, ignoring op=%s account=%s error=%s",
        operation,
        normalize_account(account),
        exc,
        extra={"rate_limit_error": exc.kind},
    )


# ---------------------------------------------------------------------------
# Module-level singleton, conditional on Redis availability
# ---------------------------------------------------------------------------

if redis_pool is not None:
    failed_login_tracker: FailedLoginTracker = RedisFailedLoginTracker(
        redis_pool, timeout=SETTINGS.redis_timeout_seconds
    )
else:
    failed_login_tracker = InMemoryFailedLoginTracker()
