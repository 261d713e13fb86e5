"""Key strategies: WHO is being rate limited.

A strategy maps an inbound request to a partition value.  Every value is
tagged with its source ("ip:", "user:", "email:") so different kinds of
identity can never collide inside one namespace.  An empty string means
"nothing to key on" and the limiter skips the request entirely.

  by_client_address: anonymous endpoints (signup, login).

  by_identity: authenticated endpoints.  Per-user limits are fairer than
    per-IP when many users share one corporate NAT address.  Anonymous
    callers fall back to their address.

  by_account_field: the account a caller CLAIMS on a login/signup form.
    Works before authentication succeeds, so it slows down one attacker
    spraying many IPs at one account.

TRUSTING X-Forwarded-For
-------------------------
The header is set by whoever sent the request.  It is only meaningful
when a reverse proxy we control overwrites it.  If the service is
reachable directly, a client can put any address there and get a fresh
bucket per request.  Deployments without such a proxy must run with
TRUST_FORWARDED_FOR=false.
"""

from __future__ import annotations

import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from starlette.requests import Request

IdentityResolver = Callable[[Request], "str | None"]


def normalize_account(value: str) -> str:
    return value.strip().casefold()


@dataclass(frozen=True, slots=True)
class KeyStrategy:
    """A named request → partition-value function.

    ``name`` becomes part of the store key, so two strategies never share
    buckets even when their values happen to match.
    """

    name: str
    derive: Callable[[Request], Awaitable[str]]

    async def __call__(self, request: Request) -> str:
        return await self.derive(request)


def client_address(request: Request, *, trust_forwarded_for: bool = True) -> str:
    if trust_forwarded_for:
        forwarded = request.headers.get("x-forwarded-for", "")
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return request.client.host if request.client else "unknown"


def by_client_address(*, trust_forwarded_for: bool = True) -> KeyStrategy:
    async def _derive(request: Request) -> str:
        return "ip:" + client_address(request, trust_forwarded_for=trust_forwarded_for)

    return KeyStrategy(name="ip", derive=_derive)


def by_identity(resolve_identity: IdentityResolver, *, fallback: KeyStrategy) -> KeyStrategy:
    async def _derive(request: Request) -> str:
        identity = resolve_identity(request)
        if not identity:
            return await fallback(request)
        return "user:" + normalize_account(identity)

    return KeyStrategy(name="user", derive=_derive)


def by_account_field(field: str = "email") -> KeyStrategy:
    """Key on a submitted form or JSON field, case-folded.

    Starlette caches the parsed body on the request, so the endpoint can
    still read the same form afterwards.
    """

    async def _derive(request: Request) -> str:
        value = await _submitted_field(request, field)
        if not value:
            return ""
        return f"{field}:" + normalize_account(value)

    return KeyStrategy(name=field, derive=_derive)


async def _submitted_field(request: Request, field: str) -> str:
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            payload = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            return ""
        value = payload.get(field) if isinstance(payload, dict) else None
    elif content_type.startswith(
        ("application/x-www-form-urlencoded", "multipart/form-data")
    ):
        form = await request.form()
        value = form.get(field)
    else:
        return ""
    return value.strip() if isinstance(value, str) else ""
