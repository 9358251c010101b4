"""Tests for Prometheus metrics middleware.

NOTE ON TESTING PROMETHEUS METRICS:
The prometheus-client library uses a global default registry.  Counters
can only go up; they cannot be reset between tests.  To avoid test
pollution, we assert on DELTAS: read the value before the action, perform
the action, read the value after, and assert the difference.
"""

from __future__ import annotations

from fastapi.testclient import TestClient
from prometheus_client import REGISTRY

from tests.conftest import drain


def _get_sample(name: str, labels: dict | None = None) -> float:
    """Read a metric sample's current value from the global registry."""
    value = REGISTRY.get_sample_value(name, labels=labels or {})
    return value if value is not None else 0.0


def test_request_counter_increments(client: TestClient) -> None:
    labels = {"method": "GET", "endpoint": "/health", "status_code": "200"}
    before = _get_sample("http_requests_total", labels)
    client.get("/health")
    assert _get_sample("http_requests_total", labels) - before == 1


def test_request_duration_histogram_observes(client: TestClient) -> None:
    labels = {"method": "GET", "endpoint": "/health"}
    before = _get_sample("http_request_duration_seconds_count", labels)
    client.get("/health")
    assert _get_sample("http_request_duration_seconds_count", labels) - before == 1


def test_endpoint_label_is_route_template(client: TestClient, auth: dict[str, str]) -> None:
    """Lesson ids must not become label values, one series per lesson."""
    template = {
        "method": "POST",
        "endpoint": "/v1/lessons/{content_id}/view",
        "status_code": "202",
    }
    before = _get_sample("http_requests_total", template)
    client.post("/v1/lessons/lesson-a/view", headers=auth)
    client.post("/v1/lessons/lesson-b/view", headers=auth)
    drain(client)
    assert _get_sample("http_requests_total", template) - before == 2
    raw = dict(template, endpoint="/v1/lessons/lesson-a/view")
    assert _get_sample("http_requests_total", raw) == 0


def test_unknown_paths_share_one_label(client: TestClient) -> None:
    labels = {"method": "GET", "endpoint": "unmatched", "status_code": "404"}
    before = _get_sample("http_requests_total", labels)
    client.get("/no/such/path/1")
    client.get("/no/such/path/2")
    assert _get_sample("http_requests_total", labels) - before == 2


def test_metrics_endpoint_returns_prometheus_format(client: TestClient) -> None:
    client.get("/health")
    resp = client.get("/metrics")
    assert resp.status_code == 200
    assert "http_requests_total" in resp.text
    assert "aggregate_writes_total" in resp.text
    assert "telemetry_tasks_pending" in resp.text


def test_metrics_endpoint_not_self_instrumented(client: TestClient) -> None:
    labels = {"method": "GET", "endpoint": "/metrics", "status_code": "200"}
    before = _get_sample("http_requests_total", labels)
    client.get("/metrics")
    client.get("/metrics")
    assert _get_sample("http_requests_total", labels) == before


def test_aggregate_writes_counted(client: TestClient, auth: dict[str, str]) -> None:
    labels = {"operation": "view", "result": "committed"}
    before = _get_sample("aggregate_writes_total", labels)
    client.post("/v1/lessons/lesson-m/view", headers=auth)
    drain(client)
    assert _get_sample("aggregate_writes_total", labels) - before == 1


def test_active_requests_returns_to_baseline(client: TestClient) -> None:
    before = _get_sample("http_active_requests")
    client.get("/health")
    assert _get_sample("http_active_requests") == before
