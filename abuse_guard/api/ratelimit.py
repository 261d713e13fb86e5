"""Rate limiting for routes: a FastAPI dependency and a handler wrapper.

TWO WAYS TO APPLY THE SAME CHECK
---------------------------------
A ``RateLimit`` object does one thing: decide whether THIS request may
go through, and if not, produce the denial response.  It can be attached
two ways:

  1. As a route dependency (most routes):

        _login_limit = require_rate_limit(
            RateLimitPolicy(capacity=10, refill_rate=1.0, ttl_seconds=60),
            BY_IP,
            scope="login",
        )

        @router.post("/api/login", dependencies=[Depends(_login_limit.dependency)])

  2. As a decorator around a plain ``async (Request) -> Response``
     handler, which is the shape Starlette routes use:

        @rate_limit(policy, BY_IP, scope="signup")
        async def api_signup(request: Request) -> Response: ...

Neither is middleware: only the routes that opt in make a Redis round
trip, each with its own capacity/rate/TTL.

WHO OWNS THE DENIAL RESPONSE
-----------------------------
Not this module.  A JSON API wants a plain 429 with Retry-After; an htmx
form cannot render non-2xx responses and wants a 200 with a message it
swaps into the page.  Callers pass a ``denial_responder`` and get full
control.  ``too_many_requests`` is only the default.

STORE KEYS
-----------
    rl:tb:<scope>:<strategy>:<value>      e.g. rl:tb:login:ip:ip:203.0.113.9

``scope`` names the limiter instance, so the login and signup limits
never drain each other's buckets even though both key by IP.

FAIL OPEN
----------
If Redis is down the request goes through.  The failure is still
visible: a WARNING log, a metric, and an ``X-RateLimit-Error`` header on
the response.
"""

from __future__ import annotations

import functools
import inspect
import logging
import math
import time
from collections.abc import Awaitable, Callable

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response

from abuse_guard.api.dependencies import session_identity
from abuse_guard.core.config import SETTINGS
from abuse_guard.core.metrics import RATE_LIMIT_DECISIONS
from abuse_guard.db.redis import redis_pool
from abuse_guard.services.errors import ConfigurationError
from abuse_guard.services.key_strategy import (
    KeyStrategy,
    by_account_field,
    by_client_address,
    by_identity,
)
from abuse_guard.services.rate_limiter import (
    RateLimitPolicy,
    TokenBucketLimiter,
    build_token_bucket,
    evaluate,
)

logger = logging.getLogger(__name__)

_NAMESPACE = "rl:tb"
ERROR_HEADER = "X-RateLimit-Error"

Handler = Callable[[Request], Awaitable[Response]]
DenialResponder = Callable[[Request, RateLimitPolicy], "Response | Awaitable[Response]"]

# ---------------------------------------------------------------------------
# Module-level singleton, same conditional pattern as the lockout tracker
# ---------------------------------------------------------------------------

_rate_limiter: TokenBucketLimiter = build_token_bucket(
    redis_pool,
    enabled=SETTINGS.rate_limit_enabled,
    timeout=SETTINGS.redis_timeout_seconds,
)

BY_IP = by_client_address(trust_forwarded_for=SETTINGS.trust_forwarded_for)
BY_USER = by_identity(session_identity, fallback=BY_IP)
BY_EMAIL = by_account_field("email")


def too_many_requests(request: Request, policy: RateLimitPolicy) -> Response:
    """Default denial: 429 with a Retry-After upper bound."""
    retry_after = math.ceil(policy.requested / policy.refill_rate)
    return JSONResponse(
        {"detail": "Too many requests"},
        status_code=429,
        headers={"Retry-After": str(retry_after)},
    )


class RateLimitDenied(Exception):
    """Raised by the dependency path; carries the responder's response."""

    def __init__(self, response: Response) -> None:
        super().__init__("rate limit exceeded")
        self.response = response


class RateLimit:
    def __init__(
        self,
        limiter: TokenBucketLimiter,
        policy: RateLimitPolicy,
        key_strategy: KeyStrategy,
        *,
        scope: str,
        denial_responder: DenialResponder = too_many_requests,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not scope or ":" in scope:
            raise ConfigurationError(
                f"scope must be a non-empty name without ':' (got {scope!r})"
            )
        self._limiter = limiter
        self._policy = policy
        self._strategy = key_strategy
        self._scope = scope
        self._denial_responder = denial_responder
        self._clock = clock

    @property
    def policy(self) -> RateLimitPolicy:
        return self._policy

    def bucket_key(self, value: str) -> str:
        return f"{_NAMESPACE}:{self._scope}:{self._strategy.name}:{value}"

    async def check(self, request: Request) -> Response | None:
        """Return the denial response, or None if the request may proceed."""
        value = await self._strategy(request)
        if not value:
            RATE_LIMIT_DECISIONS.labels(scope=self._scope, result="skipped").inc()
            return None

        key = self.bucket_key(value)
        result = await evaluate(self._limiter, key, self._policy, now=self._clock())

        if result.degraded:
            RATE_LIMIT_DECISIONS.labels(scope=self._scope, result="degraded").inc()
            request.state.rate_limit_error = result.error
            return None
        if result.allowed:
            RATE_LIMIT_DECISIONS.labels(scope=self._scope, result="allowed").inc()
            return None

        RATE_LIMIT_DECISIONS.labels(scope=self._scope, result="denied").inc()
        logger.warning(
            "Rate limit exceeded scope=%s key=%s",
            self._scope,
            key,
            extra={"rate_limit_scope": self._scope},
        )
        response = self._denial_responder(request, self._policy)
        if inspect.isawaitable(response):
            response = await response
        return response

    async def dependency(self, request: Request) -> None:
        """FastAPI dependency form of :meth:`check`."""
        denied = await self.check(request)
        if denied is not None:
            raise RateLimitDenied(denied)

    def wrap(self, handler: Handler) -> Handler:
        """Handler-wrapping form of :meth:`check`."""

        @functools.wraps(handler)
        async def _limited(request: Request) -> Response:
            denied = await self.check(request)
            if denied is not None:
                return denied
            response = await handler(request)
            apply_error_header(request, response)
            return response

        return _limited


def apply_error_header(request: Request, response: Response) -> None:
    """Copy a fail-open marker left by :meth:`RateLimit.check` onto the response."""
    error = getattr(request.state, "rate_limit_error", None)
    if error and ERROR_HEADER not in response.headers:
        response.headers[ERROR_HEADER] = error


def require_rate_limit(
    policy: RateLimitPolicy,
    key_strategy: KeyStrategy,
    *,
    scope: str,
    denial_responder: DenialResponder = too_many_requests,
) -> RateLimit:
    """Build a RateLimit on the process-wide limiter.

    Attach with ``Depends(limit.dependency)`` or wrap handlers with ``limit.wrap``.
    """
    return RateLimit(
        _rate_limiter,
        policy,
        key_strategy,
        scope=scope,
        denial_responder=denial_responder,
    )


def rate_limit(
    policy: RateLimitPolicy,
    key_strategy: KeyStrategy,
    *,
    scope: str,
    denial_responder: DenialResponder = too_many_requests,
) -> Callable[[Handler], Handler]:
    """Decorator form: ``(Handler) -> Handler``."""
    return require_rate_limit(
        policy, key_strategy, scope=scope, denial_responder=denial_responder
    ).wrap


async def _rate_limit_denied_handler(request: Request, exc: Exception) -> Response:
    assert isinstance(exc, RateLimitDenied)
    return exc.response


def install_rate_limit_handler(app: FastAPI) -> None:
    app.add_exception_handler(RateLimitDenied, _rate_limit_denied_handler)
