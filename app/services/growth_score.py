"""Growth score and engagement trend.

GROWTH SCORE (0..100)
----------------------
A weighted sum of three components, each clamped to its own range:

  activity momentum   40 pts   20 + 2 * (current_week - previous_week),
                               so a flat week scores 20 and ten more
                               events than last week scores the full 40
  solution accuracy   35 pts   recent_accuracy% of 35 (newest solutions)
  completion ratio    25 pts   completed / total assignments of 25

Every component is non-decreasing in its own input, so the score is too.
The result is rounded half-up and clamped to [0, 100].

ENGAGEMENT TREND
-----------------
Compares this week with last week:

  current > previous * 1.1   increasing
  current < previous * 0.9   decreasing
  otherwise                  stable

With no activity last week, any activity this week is "increasing".
"""

from __future__ import annotations

import math
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date, timedelta

from app.models.activity import ActivityEvent
from app.models.analytics import EngagementTrend
from app.services.activity_metrics import utc_date

MOMENTUM_WEIGHT = 40.0
ACCURACY_WEIGHT = 35.0
COMPLETION_WEIGHT = 25.0
MOMENTUM_BASELINE = 20.0
MOMENTUM_PER_EVENT = 2.0
TREND_THRESHOLD = 0.10
WEEK = timedelta(days=7)


@dataclass(frozen=True, slots=True)
class GrowthInputs:
    current_week_activity: int = 0
    previous_week_activity: int = 0
    recent_accuracy: float = 0.0  # 0..100, mean of the newest solutions
    assignment_completion_ratio: float = 0.0  # 0..1


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def weekly_activity_counts(
    events: Iterable[ActivityEvent], today: date
) -> tuple[int, int]:
    """Events in the 7 days ending today, and in the 7 days before that."""
    current_start = today - WEEK + timedelta(days=1)
    previous_start = current_start - WEEK
    current = previous = 0
    for event in events:
        day = utc_date(event.timestamp)
        if current_start <= day <= today:
            current += 1
        elif previous_start <= day < current_start:
            previous += 1
    return current, previous


def estimate_growth_score(inputs: GrowthInputs) -> int:
    delta = inputs.current_week_activity - inputs.previous_week_activity
    momentum = _clamp(
        MOMENTUM_BASELINE + MOMENTUM_PER_EVENT * delta, 0.0, MOMENTUM_WEIGHT
    )
    accuracy = _clamp(inputs.recent_accuracy, 0.0, 100.0) / 100.0 * ACCURACY_WEIGHT
    completion = _clamp(inputs.assignment_completion_ratio, 0.0, 1.0) * COMPLETION_WEIGHT
    # round() is banker's rounding; floor(x + 0.5) keeps 62.5 -> 63
    score = math.floor(momentum + accuracy + completion + 0.5)
    return int(_clamp(score, 0, 100))


def classify_engagement_trend(current: int, previous: int) -> EngagementTrend:
    if previous <= 0:
        return "increasing" if current > 0 else "stable"
    if current > previous * (1 + TREND_THRESHOLD):
        return "increasing"
    if current < previous * (1 - TREND_THRESHOLD):
        return "decreasing"
    return "stable"
