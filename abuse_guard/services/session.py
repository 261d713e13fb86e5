"""Signed session cookie (HS256 JWT).

The session is what ``by_identity`` keys on, so it must be verified: an
unsigned identity would let a caller mint a fresh bucket per request.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime, timedelta

import jwt

from abuse_guard.core.config import SETTINGS

COOKIE_NAME = "session"
ALGORITHM = "HS256"
ISSUER = "abuse-guard"
SESSION_AUDIENCE = "abuse-guard-session"
SESSION_TTL_MIN = 60 * 24


def create_session_token(*, sub: str, secret: str | None = None) -> str:
    """Build and sign a session JWT for the session cookie."""
    now = datetime.now(UTC)
    payload = {
        "sub": sub,
        "iss": ISSUER,
        "aud": SESSION_AUDIENCE,
        "exp": now + timedelta(minutes=SESSION_TTL_MIN),
        "iat": now,
        "jti": str(uuid.uuid4()),
    }
    return jwt.encode(payload, secret or SETTINGS.session_secret, algorithm=ALGORITHM)


def decode_session_token(token: str, secret: str | None = None) -> dict:
    """Verify a session JWT.

    Raises jwt.ExpiredSignatureError, jwt.InvalidTokenError on failure.
    """
    return jwt.decode(
        token,
        secret or SETTINGS.session_secret,
        algorithms=[ALGORITHM],
        issuer=ISSUER,
        audience=SESSION_AUDIENCE,
        options={"require": ["sub", "exp", "iat", "jti"]},
    )
