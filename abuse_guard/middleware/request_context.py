"""Request context middleware: request id, timing, and fail-open marker.

Every request gets an id (echoed from X-Request-ID or generated) stored in
a ContextVar, so any log line emitted while handling it carries the id,
including the limiter's "store error, allowing request" warnings.

On the way out, if a rate-limit check had to fail open during this
request, the X-RateLimit-Error header is added to the response.  Routes
using the dependency form of RateLimit can't set headers themselves when
the endpoint returns its own Response object, so this is the one place
that always sees the final response.
"""

from __future__ import annotations

import logging
import time
import uuid
from contextvars import ContextVar

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from abuse_guard.api.ratelimit import apply_error_header

logger = logging.getLogger(__name__)

request_id_var: ContextVar[str] = ContextVar("request_id", default="-")


class _RequestContextFilter(logging.Filter):
    """Logging filter that stamps the current request id on every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_var.get("-")  # type: ignore[attr-defined]
        return True


# Install on the root logger so ALL loggers inherit it; guard against reloads.
root_logger = logging.getLogger()
if not any(isinstance(f, _RequestContextFilter) for f in root_logger.filters):
    root_logger.addFilter(_RequestContextFilter())


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        req_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request_id_var.set(req_id)

        start = time.monotonic()
        response = await call_next(request)
        duration_ms = round((time.monotonic() - start) * 1000, 1)

        apply_error_header(request, response)

        logger.info(
            "%s %s → %d (%.1fms)",
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
            extra={
                "request_id": req_id,
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "duration_ms": duration_ms,
                "rate_limit_error": getattr(request.state, "rate_limit_error", None),
            },
        )

        response.headers["X-Request-ID"] = req_id
        return response
