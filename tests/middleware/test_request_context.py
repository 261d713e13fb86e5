"""Tests for the request context middleware.

Verifies that every response gets:
- An X-Request-ID header (generated or echoed from the request)
- The X-RateLimit-Error marker when a limit check failed open
"""

from __future__ import annotations

import uuid

import pytest
from fastapi.testclient import TestClient

from abuse_guard.api import tasks
from abuse_guard.services.errors import StoreProtocolError
from tests.conftest import logged_in


def test_request_id_generated_when_not_provided(client: TestClient) -> None:
    resp = client.get("/health")
    req_id = resp.headers.get("x-request-id")
    assert req_id is not None
    uuid.UUID(req_id)  # raises ValueError if invalid


def test_request_id_echoed_when_provided(client: TestClient) -> None:
    custom_id = "my-custom-request-id-123"
    resp = client.get("/health", headers={"X-Request-ID": custom_id})
    assert resp.headers.get("x-request-id") == custom_id


def test_request_id_present_on_error_responses(client: TestClient) -> None:
    resp = client.get("/api/tasks")  # No session cookie → 401
    assert resp.status_code == 401
    assert resp.headers.get("x-request-id") is not None


class _GarbledStore:
    async def allow(self, *args, **kwargs) -> bool:
        raise StoreProtocolError("unexpected reply")


def test_fail_open_marker_added_to_dependency_routes(
    client: TestClient, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(tasks._task_limit, "_limiter", _GarbledStore())
    logged_in(client)

    resp = client.post("/api/tasks", json={"title": "still works"})

    assert resp.status_code == 201
    assert resp.headers["X-RateLimit-Error"] == "store_protocol_error"


def test_fail_open_marker_survives_error_responses(
    client: TestClient, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(tasks._task_limit, "_limiter", _GarbledStore())

    resp = client.post("/api/tasks", json={"title": "anonymous"})

    assert resp.status_code == 401
    assert resp.headers["X-RateLimit-Error"] == "store_protocol_error"


def test_no_marker_on_unlimited_routes(client: TestClient) -> None:
    assert "X-RateLimit-Error" not in client.get("/health").headers
