"""Request IDs: chosen per request, echoed on responses and log lines."""

from __future__ import annotations

import logging
import uuid

import pytest
from fastapi.testclient import TestClient

from app.core.logging import _RequestIdFilter, request_id_var
from app.middleware.request_context import MAX_REQUEST_ID_LENGTH, resolve_request_id
from tests.conftest import auth


@pytest.mark.parametrize("incoming", [None, "", "   ", "x" * (MAX_REQUEST_ID_LENGTH + 1)])
def test_unusable_incoming_ids_are_replaced(incoming: str | None) -> None:
    uuid.UUID(resolve_request_id(incoming))


def test_usable_incoming_id_is_kept_trimmed() -> None:
    assert resolve_request_id("  gw-trace-7 ") == "gw-trace-7"
    assert resolve_request_id("x" * MAX_REQUEST_ID_LENGTH) == "x" * MAX_REQUEST_ID_LENGTH


def test_generated_id_on_response(client: TestClient) -> None:
    uuid.UUID(client.get("/health").headers["x-request-id"])


def test_caller_id_echoed(client: TestClient) -> None:
    resp = client.get("/health", headers={"X-Request-ID": "my-custom-request-id-123"})
    assert resp.headers["x-request-id"] == "my-custom-request-id-123"


def test_auth_failure_still_gets_an_id(client: TestClient) -> None:
    resp = client.get("/v1/credentials/abc")
    assert resp.status_code == 401
    assert resp.headers["x-request-id"]


def test_domain_error_body_carries_request_id(client: TestClient, token: str) -> None:
    resp = client.get(
        "/v1/credentials/missing",
        headers={**auth(token), "X-Request-ID": "trace-42"},
    )
    assert resp.status_code == 404
    assert resp.json()["request_id"] == "trace-42"
    assert resp.headers["x-request-id"] == "trace-42"


def _record() -> logging.LogRecord:
    return logging.LogRecord("app.services.billing_service", logging.INFO, "b.py", 1, "m", (), None)


def test_filter_stamps_current_request_id() -> None:
    token = request_id_var.set("trace-9")
    try:
        record = _record()
        assert _RequestIdFilter().filter(record) is True
        assert record.request_id == "trace-9"  # type: ignore[attr-defined]
    finally:
        request_id_var.reset(token)


def test_filter_keeps_an_explicit_request_id() -> None:
    record = _record()
    record.request_id = "from-extra"  # type: ignore[attr-defined]
    _RequestIdFilter().filter(record)
    assert record.request_id == "from-extra"  # type: ignore[attr-defined]


def test_filter_outside_a_request_uses_placeholder() -> None:
    record = _record()
    _RequestIdFilter().filter(record)
    assert record.request_id == "-"  # type: ignore[attr-defined]
