"""Tests for the request context middleware.

Verifies that every response gets an X-Request-ID header (generated or
echoed), and that log lines, including those written by detached
telemetry tasks after the response, carry the same ID.
"""

from __future__ import annotations

import logging
import uuid

import pytest
from fastapi.testclient import TestClient

from app.core.errors import TransientConflict
from app.middleware.request_context import (
    _RequestContextFilter,
    install_request_context_filter,
)
from tests.conftest import drain, services_of


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
    resp = client.get("/v1/analytics")  # no token -> 401
    assert resp.status_code == 401
    assert resp.headers.get("x-request-id") is not None


def test_summary_line_logged(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.INFO, logger="app.middleware.request_context"):
        client.get("/health", headers={"X-Request-ID": "summary-1"})
    (record,) = [r for r in caplog.records if r.name == "app.middleware.request_context"]
    assert record.request_id == "summary-1"  # type: ignore[attr-defined]
    assert record.path == "/health"  # type: ignore[attr-defined]
    assert record.status_code == 200  # type: ignore[attr-defined]


def test_detached_task_logs_keep_request_id(
    client: TestClient,
    auth: dict[str, str],
    caplog: pytest.LogCaptureFixture,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    store = services_of(client).documents

    def always_conflict(tx) -> None:
        raise TransientConflict(["forced"])

    monkeypatch.setattr(store, "_commit", always_conflict)
    install_request_context_filter(caplog.handler)

    with caplog.at_level(logging.WARNING):
        client.post("/v1/lessons/l-ctx/view", headers={**auth, "X-Request-ID": "detached-7"})
        drain(client)

    dropped = [r for r in caplog.records if r.name == "app.services.telemetry"]
    assert dropped
    assert all(r.request_id == "detached-7" for r in dropped)  # type: ignore[attr-defined]


def test_filter_installed_once() -> None:
    handler = logging.NullHandler()
    install_request_context_filter(handler)
    install_request_context_filter(handler)
    assert sum(isinstance(f, _RequestContextFilter) for f in handler.filters) == 1
