from __future__ import annotations

from datetime import UTC, date, datetime, timedelta

import pytest

from app.models.activity import ActivityEvent
from app.services.growth_score import (
    GrowthInputs,
    classify_engagement_trend,
    estimate_growth_score,
    weekly_activity_counts,
)

TODAY = date(2026, 3, 10)


def _event(days_ago: int) -> ActivityEvent:
    day = TODAY - timedelta(days=days_ago)
    return ActivityEvent.new(
        user_id="u1",
        type="chat",
        timestamp=datetime(day.year, day.month, day.day, 12, tzinfo=UTC),
    )


# ---- weekly counts ----


def test_weekly_counts_split_at_seven_days() -> None:
    events = [_event(n) for n in (0, 3, 6, 7, 13, 14, 30)]
    assert weekly_activity_counts(events, TODAY) == (3, 2)


def test_weekly_counts_empty() -> None:
    assert weekly_activity_counts([], TODAY) == (0, 0)


# ---- growth score ----


def test_growth_score_flat_week_with_no_coursework() -> None:
    assert estimate_growth_score(GrowthInputs()) == 20


def test_growth_score_maximum() -> None:
    inputs = GrowthInputs(
        current_week_activity=30,
        previous_week_activity=0,
        recent_accuracy=100,
        assignment_completion_ratio=1.0,
    )
    assert estimate_growth_score(inputs) == 100


def test_growth_score_minimum_is_zero() -> None:
    inputs = GrowthInputs(current_week_activity=0, previous_week_activity=50)
    assert estimate_growth_score(inputs) == 0


def test_growth_score_weighted_components() -> None:
    # momentum 20 + 2*5 = 30, accuracy 80% of 35 = 28, completion 0.5 * 25 = 12.5
    inputs = GrowthInputs(
        current_week_activity=10,
        previous_week_activity=5,
        recent_accuracy=80,
        assignment_completion_ratio=0.5,
    )
    assert estimate_growth_score(inputs) == 71


def test_growth_score_rounds_half_up() -> None:
    # 20 + 0 + 12.5 = 32.5
    assert estimate_growth_score(GrowthInputs(assignment_completion_ratio=0.5)) == 33


def test_growth_score_clamps_out_of_range_inputs() -> None:
    inputs = GrowthInputs(recent_accuracy=250, assignment_completion_ratio=7)
    assert estimate_growth_score(inputs) == 80


@pytest.mark.parametrize("field", ["current_week_activity", "recent_accuracy", "assignment_completion_ratio"])
def test_growth_score_is_monotonic(field: str) -> None:
    base = GrowthInputs(
        current_week_activity=3,
        previous_week_activity=5,
        recent_accuracy=40,
        assignment_completion_ratio=0.2,
    )
    step = {"current_week_activity": 1, "recent_accuracy": 5, "assignment_completion_ratio": 0.05}[field]
    scores = []
    for i in range(20):
        value = getattr(base, field) + step * i
        kwargs = {
            "current_week_activity": base.current_week_activity,
            "previous_week_activity": base.previous_week_activity,
            "recent_accuracy": base.recent_accuracy,
            "assignment_completion_ratio": base.assignment_completion_ratio,
            field: value,
        }
        scores.append(estimate_growth_score(GrowthInputs(**kwargs)))
    assert scores == sorted(scores)
    assert all(0 <= s <= 100 for s in scores)


# ---- engagement trend ----


@pytest.mark.parametrize(
    ("current", "previous", "expected"),
    [
        (12, 10, "increasing"),
        (11, 10, "stable"),
        (10, 10, "stable"),
        (9, 10, "stable"),
        (8, 10, "decreasing"),
        (0, 10, "decreasing"),
        (1, 0, "increasing"),
        (0, 0, "stable"),
    ],
)
def test_engagement_trend(current: int, previous: int, expected: str) -> None:
    assert classify_engagement_trend(current, previous) == expected
