"""Error taxonomy for the abuse-prevention subsystem.

Only two kinds of failure exist from the caller's point of view:

  - ConfigurationError: a limiter or tracker was wired with nonsense
    values (capacity=0, negative rate).  Raised at construction time so
    the process fails before serving a single request.

  - StoreError: the shared store could not answer.  Never escapes the
    service layer: evaluate() and the tracker convert it to a fail-open
    result.  The two subclasses exist so logs and metrics can tell
    "Redis is down" apart from "Redis answered something we can't parse".
"""

from __future__ import annotations


class ConfigurationError(ValueError):
    pass


class StoreError(Exception):
    """Base class for shared-store failures."""

    kind = "store_error"


class StoreUnavailable(StoreError):
    """Connection refused, reset, or timed out."""

    kind = "store_unavailable"


class StoreProtocolError(StoreError):
    """The store replied, but not with what the operation expects."""

    kind = "store_protocol_error"
