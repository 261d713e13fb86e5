"""Login endpoint: htmx form post that sets a signed session cookie.

Two independent abuse controls sit in front of credential checks:

  1. Per-IP token bucket (dependency).  Slows one machine guessing.
  2. Per-account failed-login lockout.  Slows many machines guessing
     the same account.  Checked BEFORE the password is verified, bumped
     after a failure, cleared after a success.

The page swaps responses into ``#login-error``.  htmx ignores non-2xx
bodies, so every error here (including a rate-limit denial) is a 200
with a message and HX-Retarget/HX-Reswap headers.
"""

from __future__ import annotations

import html
import logging

from fastapi import APIRouter, Depends, Form, Request
from fastapi.responses import HTMLResponse

from abuse_guard.api.ratelimit import BY_IP, require_rate_limit
from abuse_guard.core.config import SETTINGS, Settings
from abuse_guard.core.metrics import LOGIN_FAILURES, LOGIN_LOCKOUTS
from abuse_guard.services import session, users
from abuse_guard.services.failed_login import failed_login_tracker
from abuse_guard.services.rate_limiter import RateLimitPolicy

logger = logging.getLogger(__name__)

router = APIRouter(tags=["login"])

LOCKED_OUT_MESSAGE = "Too many login attempts; please try again later"


def seed_dev_account(settings: Settings = SETTINGS) -> None:
    """Create the well-known test account everywhere except production."""
    if settings.is_prod:
        return
    users.seed_test_user()


seed_dev_account()


def login_error(message: str) -> HTMLResponse:
    """A 200 fragment that htmx swaps into the login form's error slot."""
    return HTMLResponse(
        html.escape(message),
        status_code=200,
        headers={"HX-Retarget": "#login-error", "HX-Reswap": "innerHTML"},
    )


def _login_denied(request: Request, policy: RateLimitPolicy) -> HTMLResponse:
    return login_error(LOCKED_OUT_MESSAGE)


# 10 attempts burst, 1/s sustained, per client address.
_login_limit = require_rate_limit(
    RateLimitPolicy(capacity=10, refill_rate=1.0, ttl_seconds=60),
    BY_IP,
    scope="login",
    denial_responder=_login_denied,
)


@router.post(
    "/api/login",
    response_class=HTMLResponse,
    dependencies=[Depends(_login_limit.dependency)],
)
async def api_login(
    email: str = Form(""),
    password: str = Form(""),
) -> HTMLResponse:
    email = email.strip()
    if not email or not password:
        return login_error("Email and password are required.")

    if await failed_login_tracker.is_blocked(email, SETTINGS.login_lockout_threshold):
        LOGIN_LOCKOUTS.inc()
        logger.warning("Login blocked by lockout  email=%s", email)
        return login_error(LOCKED_OUT_MESSAGE)

    user = users.authenticate_user(users.user_repo, email, password)
    if user is None:
        LOGIN_FAILURES.inc()
        count = await failed_login_tracker.increment(
            email, SETTINGS.login_lockout_window_seconds
        )
        logger.warning("Login failed  email=%s failures=%d", email, count)
        return login_error("Invalid username or password.")

    await failed_login_tracker.clear(email)

    response = HTMLResponse(
        "",
        status_code=200,
        headers={"HX-Trigger": "login-success", "HX-Redirect": "/"},
    )
    response.set_cookie(
        key=session.COOKIE_NAME,
        value=session.create_session_token(sub=user.email),
        httponly=True,
        samesite="lax",
        secure=SETTINGS.is_prod,
        path="/",
        max_age=session.SESSION_TTL_MIN * 60,
    )
    logger.info("Login succeeded  user_id=%s email=%s", user.id, user.email)
    return response
