"""Rate limiting through the real routes.

Verifies the limits the app actually ships:
1. Login: 10 per client address, then the htmx-friendly 200 fragment
2. Tasks: 60 mutations per user, then 429 + Retry-After; reads are free
3. Signup: 5 per address and 3 per submitted email
4. Limits keyed the same way but on different routes don't share buckets
5. A broken store lets requests through and says so in X-RateLimit-Error
"""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from abuse_guard.api import login, tasks
from abuse_guard.api.login import LOCKED_OUT_MESSAGE
from abuse_guard.services.errors import StoreUnavailable
from abuse_guard.main import app
from tests.conftest import FakeClock, logged_in


@pytest.fixture(autouse=True)
def frozen_limits(monkeypatch: pytest.MonkeyPatch, clock: FakeClock) -> FakeClock:
    """Stop the login and task buckets from refilling mid-test."""
    monkeypatch.setattr(login._login_limit, "_clock", clock)
    monkeypatch.setattr(tasks._task_limit, "_clock", clock)
    return clock


def _bad_login(client: TestClient, **headers: str):
    # Missing password: cheap to process, still spends a token.
    return client.post(
        "/api/login", data={"email": "someone@example.com"}, headers=headers
    )


# ---- login ----


def test_login_allows_ten_then_denies_with_fragment(client: TestClient) -> None:
    for _ in range(10):
        resp = _bad_login(client)
        assert resp.text == "Email and password are required."

    resp = _bad_login(client)
    assert resp.status_code == 200
    assert resp.text == LOCKED_OUT_MESSAGE
    assert resp.headers["HX-Retarget"] == "#login-error"
    assert resp.headers["HX-Reswap"] == "innerHTML"
    assert "retry-after" not in resp.headers


def test_login_bucket_refills(client: TestClient, frozen_limits: FakeClock) -> None:
    for _ in range(10):
        _bad_login(client)
    assert _bad_login(client).text == LOCKED_OUT_MESSAGE

    frozen_limits.advance(1)

    assert _bad_login(client).text == "Email and password are required."


def test_login_limit_is_per_forwarded_address(client: TestClient) -> None:
    for _ in range(11):
        _bad_login(client, **{"X-Forwarded-For": "203.0.113.1"})
    assert (
        _bad_login(client, **{"X-Forwarded-For": "203.0.113.1"}).text
        == LOCKED_OUT_MESSAGE
    )

    resp = _bad_login(client, **{"X-Forwarded-For": "203.0.113.2, 10.0.0.1"})
    assert resp.text == "Email and password are required."


def test_login_limit_runs_before_credentials_are_checked(client: TestClient) -> None:
    for _ in range(10):
        _bad_login(client)

    resp = client.post(
        "/api/login", data={"email": "test@example.com", "password": "test-password"}
    )

    assert resp.text == LOCKED_OUT_MESSAGE
    assert "session" not in resp.cookies


# ---- tasks ----


def test_task_mutations_allow_sixty_then_429(client: TestClient) -> None:
    logged_in(client)
    for i in range(60):
        assert client.post("/api/tasks", json={"title": f"t{i}"}).status_code == 201

    resp = client.post("/api/tasks", json={"title": "one too many"})

    assert resp.status_code == 429
    assert resp.json() == {"detail": "Too many requests"}
    assert resp.headers["Retry-After"] == "1"


def test_task_reads_are_not_limited(client: TestClient) -> None:
    logged_in(client)
    for i in range(60):
        client.post("/api/tasks", json={"title": f"t{i}"})

    for _ in range(100):
        assert client.get("/api/tasks").status_code == 200


def test_task_buckets_are_per_user() -> None:
    busy = logged_in(TestClient(app), "busy@example.com")
    quiet = logged_in(TestClient(app), "quiet@example.com")
    for i in range(61):
        busy.post("/api/tasks", json={"title": f"t{i}"})

    assert busy.post("/api/tasks", json={"title": "x"}).status_code == 429
    assert quiet.post("/api/tasks", json={"title": "mine"}).status_code == 201


def test_task_user_bucket_ignores_email_case() -> None:
    shouty = logged_in(TestClient(app), "Busy@Example.com")
    for i in range(60):
        shouty.post("/api/tasks", json={"title": f"t{i}"})

    quiet = logged_in(TestClient(app), "busy@example.com")
    assert quiet.post("/api/tasks", json={"title": "x"}).status_code == 429


def test_every_mutation_spends_from_the_same_bucket(client: TestClient) -> None:
    logged_in(client)
    task_id = client.post("/api/tasks", json={"title": "t"}).json()["id"]
    for _ in range(58):
        client.patch(f"/api/tasks/{task_id}", json={"done": True})

    assert client.delete(f"/api/tasks/{task_id}").status_code == 204
    assert client.post("/api/tasks", json={"title": "u"}).status_code == 429


# ---- signup ----


def _signup(client: TestClient, email: str, **headers: str):
    return client.post(
        "/api/signup",
        data={"email": email, "password": "long-enough-password"},
        headers=headers,
    )


def test_signup_limits_repeated_email(client: TestClient) -> None:
    replies = [_signup(client, "Spam@Example.com").text for _ in range(3)]
    assert replies[0] == "Account created. You can now log in."
    assert replies[1:] == ["An account with that email already exists."] * 2

    resp = _signup(client, "spam@example.com")

    assert resp.status_code == 200
    assert resp.text == "Too many requests"
    assert resp.headers["HX-Retarget"] == "#signup-message"


def test_signup_limits_client_address(client: TestClient) -> None:
    for i in range(5):
        resp = _signup(client, f"user{i}@example.com")
        assert resp.text == "Account created. You can now log in."

    resp = _signup(client, "user5@example.com")

    assert resp.text == "Too many requests"
    assert client.post(
        "/api/login",
        data={"email": "user5@example.com", "password": "long-enough-password"},
    ).text == "Invalid username or password."


def test_signup_address_limit_is_per_forwarded_address(client: TestClient) -> None:
    for i in range(5):
        _signup(client, f"a{i}@example.com", **{"X-Forwarded-For": "198.51.100.1"})

    resp = _signup(client, "b@example.com", **{"X-Forwarded-For": "198.51.100.2"})

    assert resp.text == "Account created. You can now log in."


def test_login_and_signup_buckets_are_separate(client: TestClient) -> None:
    for _ in range(11):
        _bad_login(client)
    assert _bad_login(client).text == LOCKED_OUT_MESSAGE

    assert _signup(client, "fresh@example.com").text == (
        "Account created. You can now log in."
    )


# ---- fail open ----


class _DownLimiter:
    async def allow(self, *args, **kwargs) -> bool:
        raise StoreUnavailable("Connection refused")


def test_store_outage_lets_login_through_with_error_header(
    client: TestClient, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(login._login_limit, "_limiter", _DownLimiter())

    for _ in range(15):
        resp = _bad_login(client)
        assert resp.text == "Email and password are required."
        assert resp.headers["X-RateLimit-Error"] == "store_unavailable"


def test_store_outage_lets_task_writes_through(
    client: TestClient, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(tasks._task_limit, "_limiter", _DownLimiter())
    logged_in(client)

    statuses = {
        client.post("/api/tasks", json={"title": "t"}).status_code for _ in range(70)
    }

    assert statuses == {201}


def test_healthy_store_sets_no_error_header(client: TestClient) -> None:
    resp = _bad_login(client)
    assert "X-RateLimit-Error" not in resp.headers
