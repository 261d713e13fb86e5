from __future__ import annotations

import logging

import jwt
from fastapi import HTTPException, Request, status

from abuse_guard.services import session

logger = logging.getLogger(__name__)


def session_identity(request: Request) -> str | None:
    """Return the verified session subject, or None for anonymous callers.

    Never raises: a missing, expired or forged cookie is just anonymous.
    """
    token = request.cookies.get(session.COOKIE_NAME)
    if not token:
        return None
    try:
        claims = session.decode_session_token(token)
    except jwt.InvalidTokenError as e:
        logger.debug("Ignoring invalid session cookie: %s", e)
        return None
    return claims["sub"]


def require_session_user(request: Request) -> str:
    """Dependency for endpoints that need a logged-in user. Returns the email."""
    email = session_identity(request)
    if email is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not logged in",
        )
    return email
