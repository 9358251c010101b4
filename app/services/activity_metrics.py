"""Pure functions over a user's activity events.

Every function here takes events (or dates) and a reference "today" and
returns a value; nothing reads a clock or a store.  That keeps streaks
and timelines trivially testable with hand-built events, and lets the
analytics service compute all of them from ONE fetch of the event log.

All calendar arithmetic is in UTC.  An event at 23:30 in New York is on
the next UTC day; that is a known limitation, not an accident (see the
open-question notes in DESIGN.md).
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable
from datetime import date, datetime, timedelta

from app.models.activity import ActivityEvent, ActivityType, as_utc
from app.models.analytics import TimelineEntry

# Types reported in the per-day breakdown.  Lesson and coursework events
# have their own dashboard sections and are deliberately not listed.
BREAKDOWN_TYPES: tuple[str, ...] = (
    ActivityType.CHAT,
    ActivityType.LOGIN,
    ActivityType.LIBRARY_VIEW,
    ActivityType.BOOK_UPLOAD,
)

# How wide the reported peak learning window is, in hours.
PEAK_WINDOW_HOURS = 2


def utc_date(ts: datetime) -> date:
    return as_utc(ts).date()


def distinct_activity_dates(events: Iterable[ActivityEvent]) -> set[date]:
    return {utc_date(e.timestamp) for e in events}


def calculate_daily_streak(dates: set[date], today: date) -> int:
    """Length of the run of consecutive active days ending today.

    Returns 0 when there was no activity today, even if yesterday ended a
    long run: this is the CURRENT streak, not the longest one.

        dates={today, today-1, today-2}          -> 3
        dates={today, today-2}                   -> 1
        dates={today-1, today-2}                 -> 0
    """
    streak = 0
    day = today
    while day in dates:
        streak += 1
        day -= timedelta(days=1)
    return streak


def build_activity_timeline(events: Iterable[ActivityEvent]) -> list[TimelineEntry]:
    """One entry per UTC date that has at least one event, oldest first."""
    per_day = Counter(utc_date(e.timestamp) for e in events)
    return [TimelineEntry(date=d, count=per_day[d]) for d in sorted(per_day)]


def zero_fill_timeline(
    entries: Iterable[TimelineEntry], start: date, end: date
) -> list[TimelineEntry]:
    """Gap-free series from start to end inclusive, for charting."""
    counts = {e.date: e.count for e in entries}
    days = (end - start).days
    return [
        TimelineEntry(date=d, count=counts.get(d, 0))
        for d in (start + timedelta(days=i) for i in range(days + 1))
    ]


def calculate_daily_breakdown(
    events: Iterable[ActivityEvent], today: date
) -> dict[str, int]:
    breakdown = {str(t): 0 for t in BREAKDOWN_TYPES}
    for event in events:
        if event.type in breakdown and utc_date(event.timestamp) == today:
            breakdown[event.type] += 1
    return breakdown


def peak_learning_window(events: Iterable[ActivityEvent]) -> str | None:
    """The busiest UTC hour of day as a window label, e.g. ``"14:00-16:00"``.

    Ties go to the earliest hour.  None when there are no events.
    """
    per_hour = Counter(as_utc(e.timestamp).hour for e in events)
    if not per_hour:
        return None
    peak = min(per_hour, key=lambda h: (-per_hour[h], h))
    end = (peak + PEAK_WINDOW_HOURS) % 24
    return f"{peak:02d}:00-{end:02d}:00"
