"""Analytics read endpoints through the full HTTP stack."""

from __future__ import annotations

from datetime import UTC, date, datetime, timedelta

from fastapi.testclient import TestClient
from pydantic import TypeAdapter

from app.models.analytics import DashboardAnalytics, TimelineEntry, UserAnalytics
from tests.conftest import drain, mint_token


def _chat(client: TestClient, auth: dict[str, str], n: int = 1) -> None:
    for _ in range(n):
        client.post("/v1/activity/events", json={"type": "chat"}, headers=auth)


def test_read_models_serialize_timeline_dates() -> None:
    analytics = UserAnalytics(
        total_questions=0,
        daily_streak=0,
        total_days_spent=1,
        activity_timeline=[TimelineEntry(date=date(2026, 3, 10), count=2)],
        daily_breakdown={},
    )
    dumped = TypeAdapter(UserAnalytics).dump_python(analytics, mode="json")
    assert dumped["activity_timeline"] == [{"date": "2026-03-10", "count": 2}]
    assert TypeAdapter(DashboardAnalytics).dump_python(DashboardAnalytics(), mode="json")


def test_user_analytics_shape(client: TestClient, auth: dict[str, str]) -> None:
    _chat(client, auth, 3)
    client.post("/v1/activity/events", json={"type": "login"}, headers=auth)

    resp = client.get("/v1/analytics", headers=auth)
    assert resp.status_code == 200
    data = resp.json()
    assert data["total_questions"] == 3
    assert data["daily_streak"] == 1
    assert data["total_days_spent"] == 1
    (entry,) = data["activity_timeline"]
    assert entry["count"] == 4
    assert entry["date"] == datetime.now(UTC).date().isoformat()
    assert data["daily_breakdown"] == {
        "chat": 3,
        "login": 1,
        "library_view": 0,
        "book_upload": 0,
    }


def test_new_user_gets_zeroes(client: TestClient, auth: dict[str, str]) -> None:
    data = client.get("/v1/analytics", headers=auth).json()
    assert data["total_questions"] == 0
    assert data["daily_streak"] == 0
    assert data["activity_timeline"] == []


def test_refresh_recomputes(client: TestClient, auth: dict[str, str]) -> None:
    client.get("/v1/analytics", headers=auth)
    # Bypass the tracker so the cache is not invalidated.
    services = client.app.state.services  # type: ignore[attr-defined]
    client.portal.call(services.events.append, "test-user", "chat", None)
    assert client.get("/v1/analytics", headers=auth).json()["total_questions"] == 0
    refreshed = client.post("/v1/analytics/refresh", headers=auth).json()
    assert refreshed["total_questions"] == 1


def test_activities_paging(client: TestClient, auth: dict[str, str]) -> None:
    _chat(client, auth, 5)
    page = client.get("/v1/analytics/activities?limit=2&skip=1", headers=auth).json()
    assert page["total"] == 5
    assert page["limit"] == 2
    assert page["skip"] == 1
    assert len(page["events"]) == 2


def test_activities_filter_by_type(client: TestClient, auth: dict[str, str]) -> None:
    _chat(client, auth, 2)
    client.post("/v1/activity/events", json={"type": "login"}, headers=auth)
    page = client.get("/v1/analytics/activities?type=login", headers=auth).json()
    assert page["total"] == 1
    assert page["events"][0]["type"] == "login"


def test_activities_rejects_inverted_range(client: TestClient, auth: dict[str, str]) -> None:
    now = datetime.now(UTC)
    resp = client.get(
        "/v1/analytics/activities",
        params={"start": now.isoformat(), "end": (now - timedelta(days=1)).isoformat()},
        headers=auth,
    )
    assert resp.status_code == 422


def test_activities_rejects_bad_limit(client: TestClient, auth: dict[str, str]) -> None:
    assert client.get("/v1/analytics/activities?limit=0", headers=auth).status_code == 422
    assert client.get("/v1/analytics/activities?limit=501", headers=auth).status_code == 422
    assert client.get("/v1/analytics/activities?skip=-1", headers=auth).status_code == 422


def test_dashboard_sections(client: TestClient, auth: dict[str, str]) -> None:
    _chat(client, auth, 2)
    client.post("/v1/lessons/lesson-1/view", headers=auth)
    drain(client)
    client.post(
        "/v1/lessons/lesson-1/completion",
        json={"time_spent_seconds": 900, "rating": 4},
        headers=auth,
    )
    drain(client)

    resp = client.get("/v1/analytics/dashboard", headers=auth)
    assert resp.status_code == 200
    data = resp.json()
    assert set(data) == {"overview", "learning", "trends", "insights", "recent_activity"}
    assert data["overview"]["total_questions"] == 2
    assert data["overview"]["lessons_started"] == 1
    assert data["overview"]["lessons_completed"] == 1
    assert data["overview"]["total_learning_hours"] == 0.25
    (lesson,) = data["learning"]["lessons"]
    assert lesson["content_id"] == "lesson-1"
    assert lesson["completed"] is True
    assert len(data["trends"]["activity_timeline"]) == 14
    assert data["trends"]["engagement_trend"] == "increasing"
    assert 0 <= data["insights"]["growth_score"] <= 100
    assert data["insights"]["focus_area"] == "General Learning"
    types = {item["type"] for item in data["recent_activity"]}
    assert types == {"chat", "lesson_view", "lesson_complete"}


def test_lesson_stats_404_without_activity(client: TestClient, auth: dict[str, str]) -> None:
    resp = client.get("/v1/analytics/lessons/never-seen", headers=auth)
    assert resp.status_code == 404


def test_lesson_stats_after_views(client: TestClient, auth: dict[str, str]) -> None:
    for _ in range(3):
        client.post("/v1/lessons/lesson-7/view", headers=auth)
    drain(client)

    data = client.get("/v1/analytics/lessons/lesson-7", headers=auth).json()
    assert data["views"] == 3
    assert data["learners"] == 1
    assert data["completions"] == 0
    assert data["ratings_count"] == 0


def test_engagement_is_per_caller(client: TestClient, auth: dict[str, str]) -> None:
    client.post("/v1/lessons/lesson-2/view", headers=auth)
    drain(client)

    resp = client.get("/v1/analytics/lessons/lesson-2/engagement", headers=auth)
    assert resp.status_code == 200
    data = resp.json()
    assert data["ended_at"] is None
    assert [i["kind"] for i in data["interactions"]] == ["view"]

    other = {"Authorization": f"Bearer {mint_token('someone-else')}"}
    assert client.get("/v1/analytics/lessons/lesson-2/engagement", headers=other).status_code == 404
