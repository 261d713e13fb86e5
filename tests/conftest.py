from __future__ import annotations

import os
import sys
from pathlib import Path

# Singletons pick their backend at import time; keep the suite on the
# in-process implementations regardless of the developer's shell.
for _name in ("REDIS_URL", "REDIS_ADDR", "REDIS_PASSWORD"):
    os.environ.pop(_name, None)
os.environ.setdefault("APP_ENV", "test")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from abuse_guard.api.ratelimit import _rate_limiter  # noqa: E402
from abuse_guard.api.tasks import _TASKS  # noqa: E402
from abuse_guard.main import app  # noqa: E402
from abuse_guard.services import session, users  # noqa: E402
from abuse_guard.services.failed_login import failed_login_tracker  # noqa: E402

# Ensure repo root is on sys.path so `import abuse_guard` works under pytest.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

_INITIAL_USERS = dict(users.user_repo._by_email)


class FakeClock:
    """Manually advanced clock for time-dependent services."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def reset_rate_limiter() -> None:
    """Clear rate limit buckets between tests so limits don't bleed."""
    if hasattr(_rate_limiter, "_buckets"):
        _rate_limiter._buckets.clear()  # type: ignore[union-attr]


@pytest.fixture(autouse=True)
def reset_failed_logins() -> None:
    if hasattr(failed_login_tracker, "_counts"):
        failed_login_tracker._counts.clear()  # type: ignore[union-attr]


@pytest.fixture(autouse=True)
def reset_users() -> None:
    users.user_repo._by_email.clear()
    users.user_repo._by_email.update(_INITIAL_USERS)


@pytest.fixture(autouse=True)
def reset_tasks() -> None:
    _TASKS.clear()


@pytest.fixture
def client() -> TestClient:
    return TestClient(app)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


def session_cookie(email: str = "test@example.com") -> dict[str, str]:
    """Cookie jar entry for a logged-in user."""
    return {session.COOKIE_NAME: session.create_session_token(sub=email)}


def logged_in(client: TestClient, email: str = "test@example.com") -> TestClient:
    client.cookies.update(session_cookie(email))
    return client
