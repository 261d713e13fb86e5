from __future__ import annotations

import asyncio
import json
from urllib.parse import urlencode

import pytest
from starlette.requests import Request

from abuse_guard.services.key_strategy import (
    by_account_field,
    by_client_address,
    by_identity,
    client_address,
    normalize_account,
)


def _request(
    *,
    headers: dict[str, str] | None = None,
    body: bytes = b"",
    client: tuple[str, int] | None = ("10.0.0.7", 51000),
) -> Request:
    raw_headers = [
        (name.lower().encode("latin-1"), value.encode("latin-1"))
        for name, value in (headers or {}).items()
    ]
    scope = {
        "type": "http",
        "method": "POST",
        "path": "/",
        "query_string": b"",
        "headers": raw_headers,
        "client": client,
    }

    async def receive() -> dict:
        return {"type": "http.request", "body": body, "more_body": False}

    return Request(scope, receive)


def _form(**fields: str) -> Request:
    return _request(
        headers={"content-type": "application/x-www-form-urlencoded"},
        body=urlencode(fields).encode(),
    )


def _json(payload) -> Request:
    return _request(
        headers={"content-type": "application/json"},
        body=json.dumps(payload).encode(),
    )


def _derive(strategy, request: Request) -> str:
    return asyncio.run(strategy(request))


# ---- client address ----


def test_forwarded_for_first_hop_wins() -> None:
    request = _request(headers={"x-forwarded-for": "203.0.113.9, 10.0.0.1"})
    assert _derive(by_client_address(), request) == "ip:203.0.113.9"


def test_forwarded_for_ignored_when_untrusted() -> None:
    request = _request(headers={"x-forwarded-for": "203.0.113.9"})
    strategy = by_client_address(trust_forwarded_for=False)
    assert _derive(strategy, request) == "ip:10.0.0.7"


def test_falls_back_to_socket_peer() -> None:
    assert _derive(by_client_address(), _request()) == "ip:10.0.0.7"


def test_blank_forwarded_for_falls_back_to_peer() -> None:
    request = _request(headers={"x-forwarded-for": " , 10.0.0.1"})
    assert client_address(request) == "10.0.0.7"


def test_unknown_peer() -> None:
    assert client_address(_request(client=None)) == "unknown"


def test_strategy_names() -> None:
    fallback = by_client_address()
    assert fallback.name == "ip"
    assert by_identity(lambda r: None, fallback=fallback).name == "user"
    assert by_account_field().name == "email"


# ---- identity ----


def test_identity_is_tagged_and_normalized() -> None:
    strategy = by_identity(lambda r: " Alice@Example.com", fallback=by_client_address())
    assert _derive(strategy, _request()) == "user:alice@example.com"


@pytest.mark.parametrize("identity", [None, ""])
def test_anonymous_caller_falls_back_to_address(identity) -> None:
    strategy = by_identity(lambda r: identity, fallback=by_client_address())
    assert _derive(strategy, _request()) == "ip:10.0.0.7"


# ---- submitted account ----


def test_form_email_is_casefolded() -> None:
    request = _form(email="  Victim@Example.COM ", password="x")
    assert _derive(by_account_field(), request) == "email:victim@example.com"


def test_json_email() -> None:
    request = _json({"email": "Victim@Example.com"})
    assert _derive(by_account_field(), request) == "email:victim@example.com"


@pytest.mark.parametrize(
    "request_factory",
    [
        lambda: _form(password="x"),
        lambda: _form(email="   "),
        lambda: _json({"email": 42}),
        lambda: _json(["not", "an", "object"]),
        lambda: _request(headers={"content-type": "application/json"}, body=b"{bad"),
        lambda: _request(headers={"content-type": "text/plain"}, body=b"email=a@b.c"),
        lambda: _request(),
    ],
)
def test_missing_account_yields_empty_value(request_factory) -> None:
    assert _derive(by_account_field(), request_factory()) == ""


def test_form_still_readable_after_keying() -> None:
    request = _form(email="a@b.com", password="hunter22")

    async def scenario() -> tuple[str, str]:
        value = await by_account_field()(request)
        form = await request.form()
        return value, form["password"]

    assert asyncio.run(scenario()) == ("email:a@b.com", "hunter22")


def test_custom_field_name_is_the_tag() -> None:
    strategy = by_account_field("username")
    assert strategy.name == "username"
    assert _derive(strategy, _form(username="Bob")) == "username:bob"


def test_normalize_account() -> None:
    assert normalize_account("  MiXeD@Case.Org\t") == "mixed@case.org"
    assert normalize_account("STRASSE") == normalize_account("straße")
