"""Application metrics (Prometheus client library).

All metrics live in this one inventory; the modules that own a behavior
import the metric and increment it at the point of action.

Fail-open means a dead Redis never shows up as errors to users, so
``rate_limit_store_errors_total`` is the signal to alert on:

    rate(rate_limit_store_errors_total[5m]) > 0

means limits are currently NOT being enforced on some instance.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

# ---------------------------------------------------------------------------
# HTTP metrics (populated by the MetricsMiddleware)
# ---------------------------------------------------------------------------

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests by method, endpoint, and status code",
    ["method", "endpoint", "status_code"],
)

REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    # One Redis round trip per check should land well under 50ms.
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
)

ACTIVE_REQUESTS = Gauge(
    "http_active_requests",
    "Number of HTTP requests currently being processed",
)

# ---------------------------------------------------------------------------
# Abuse-prevention metrics
# ---------------------------------------------------------------------------

RATE_LIMIT_DECISIONS = Counter(
    "rate_limit_decisions_total",
    "Token bucket outcomes per limiter scope",
    ["scope", "result"],  # allowed | denied | degraded | skipped
)

RATE_LIMIT_STORE_ERRORS = Counter(
    "rate_limit_store_errors_total",
    "Shared store failures that caused a fail-open decision",
    ["component", "kind"],  # component: token_bucket | failed_login
)

LOGIN_FAILURES = Counter(
    "login_failures_total",
    "Failed credential verifications",
)

LOGIN_LOCKOUTS = Counter(
    "login_lockouts_total",
    "Login attempts rejected because the account is locked out",
)
