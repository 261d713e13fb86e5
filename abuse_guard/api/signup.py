"""Signup endpoint: a plain Starlette-style handler wrapped by two limits.

Account creation is expensive (argon2 hash) and a favourite target for
spam bots, so it gets the strictest budget in the service:

  - per client address: 5 burst, one every 20s, bucket kept 15 min
  - per submitted email: 3 burst, one every 5 min, bucket kept 1 h

The email limit applies before any account exists, which is exactly
when identity-based keying can't help.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Request
from fastapi.responses import HTMLResponse, Response

from abuse_guard.api.ratelimit import BY_EMAIL, BY_IP, rate_limit
from abuse_guard.services import users
from abuse_guard.services.rate_limiter import RateLimitPolicy

logger = logging.getLogger(__name__)

router = APIRouter(tags=["signup"])

_MIN_PASSWORD_LENGTH = 8


def signup_message(message: str) -> HTMLResponse:
    return HTMLResponse(
        message,
        status_code=200,
        headers={"HX-Retarget": "#signup-message", "HX-Reswap": "innerHTML"},
    )


def _signup_denied(request: Request, policy: RateLimitPolicy) -> HTMLResponse:
    return signup_message("Too many requests")


@router.post("/api/signup", response_class=HTMLResponse, response_model=None)
@rate_limit(
    RateLimitPolicy(capacity=5, refill_rate=0.05, ttl_seconds=900),
    BY_IP,
    scope="signup",
    denial_responder=_signup_denied,
)
@rate_limit(
    RateLimitPolicy(capacity=3, refill_rate=1 / 300, ttl_seconds=3600),
    BY_EMAIL,
    scope="signup",
    denial_responder=_signup_denied,
)
async def api_signup(request: Request) -> Response:
    form = await request.form()
    email = str(form.get("email", "")).strip()
    password = str(form.get("password", ""))

    if not email or "@" not in email:
        return signup_message("A valid email is required.")
    if len(password) < _MIN_PASSWORD_LENGTH:
        return signup_message(
            f"Password must be at least {_MIN_PASSWORD_LENGTH} characters."
        )
    if users.user_repo.get_by_email(email) is not None:
        return signup_message("An account with that email already exists.")

    user = users.User.new(email=email, password_hash=users.hash_password(password))
    users.user_repo.add(user)
    logger.info("Signup succeeded  user_id=%s email=%s", user.id, user.email)
    return signup_message("Account created. You can now log in.")
