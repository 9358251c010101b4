from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from app.core.errors import StorageError
from app.main import app
from tests.conftest import run, services_of


def test_routes_are_mounted() -> None:
    paths = {route.path for route in app.routes}
    assert {
        "/health",
        "/ready",
        "/metrics",
        "/v1/activity/events",
        "/v1/analytics",
        "/v1/analytics/dashboard",
        "/v1/lessons/{content_id}/view",
        "/v1/assignments",
    } <= paths


def test_lifespan_builds_fresh_services() -> None:
    with TestClient(app) as first:
        a = services_of(first)
    with TestClient(app) as second:
        b = services_of(second)
    assert a is not b
    assert a.events is not b.events


def test_storage_error_maps_to_503(
    client: TestClient, auth: dict[str, str], monkeypatch: pytest.MonkeyPatch
) -> None:
    async def down(user_id: str):
        raise StorageError("event store down")

    monkeypatch.setattr(services_of(client).events, "list_for_user", down)
    resp = client.get("/v1/analytics", headers=auth)
    assert resp.status_code == 503
    assert resp.json() == {"detail": "analytics storage unavailable"}


def test_dashboard_survives_event_store_outage(
    client: TestClient, auth: dict[str, str], monkeypatch: pytest.MonkeyPatch
) -> None:
    async def down(user_id: str):
        raise StorageError("event store down")

    monkeypatch.setattr(services_of(client).events, "list_for_user", down)
    resp = client.get("/v1/analytics/dashboard", headers=auth)
    assert resp.status_code == 200
    assert resp.json()["overview"]["total_activities"] == 0


def test_shutdown_drains_pending_telemetry(auth: dict[str, str]) -> None:
    with TestClient(app) as c:
        c.post("/v1/lessons/shutdown-lesson/view", headers=auth)
        services = services_of(c)
    # Leaving the block ran the lifespan shutdown, which drains.
    assert services.dispatcher.pending == 0
    counters = run(services.updater.get_counters("shutdown-lesson"))
    assert counters.views == 1
