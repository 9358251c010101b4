"""Transactional lesson aggregates: no lost updates, running means, retries."""

from __future__ import annotations

import asyncio

import pytest
from prometheus_client import REGISTRY

from app.core.errors import (
    AnalyticsWriteFailed,
    StorageError,
    TransientConflict,
    ValidationError,
)
from app.db.document_store import InMemoryDocumentStore
from app.services.aggregate_updater import AggregateUpdater
from tests.conftest import FakeClock, run


def _sample(name: str, labels: dict) -> float:
    value = REGISTRY.get_sample_value(name, labels=labels)
    return value if value is not None else 0.0


class FlakyStore(InMemoryDocumentStore):
    """Fails the first ``failures`` commits with the given error."""

    def __init__(self, failures: int, error: type[Exception] = TransientConflict) -> None:
        super().__init__()
        self.failures = failures
        self.error = error
        self.commits = 0

    def _commit(self, tx) -> None:
        self.commits += 1
        if self.failures > 0:
            self.failures -= 1
            raise self.error(["forced"])
        super()._commit(tx)


def _updater(store=None, *, max_retries: int = 3) -> AggregateUpdater:
    return AggregateUpdater(
        store or InMemoryDocumentStore(),
        max_retries=max_retries,
        backoff_ms=0,
        clock=FakeClock(),
    )


# ---- views ----


def test_first_view_creates_counters_and_engagement() -> None:
    updater = _updater()

    async def scenario():
        await updater.record_view("lesson-1", "alice")
        return (
            await updater.get_counters("lesson-1"),
            await updater.get_engagement("alice", "lesson-1"),
        )

    counters, engagement = run(scenario())
    assert counters.views == 1
    assert counters.completions == 0
    assert counters.learners == 1
    assert counters.last_updated is not None
    assert engagement.is_open
    assert [i.kind for i in engagement.interactions] == ["view"]


def test_repeat_views_by_same_learner_count_views_not_learners() -> None:
    updater = _updater()

    async def scenario():
        for _ in range(3):
            await updater.record_view("lesson-1", "alice")
        return await updater.get_counters("lesson-1")

    counters = run(scenario())
    assert counters.views == 3
    assert counters.learners == 1


def test_concurrent_views_lose_no_updates() -> None:
    updater = _updater()
    n = 50

    async def scenario():
        await asyncio.gather(
            *(updater.record_view("hot-lesson", f"user-{i % 7}") for i in range(n))
        )
        return await updater.get_counters("hot-lesson")

    counters = run(scenario())
    assert counters.views == n
    assert counters.learners == 7


def test_replicas_sharing_a_store_lose_no_updates() -> None:
    # Separate updaters have separate locks, so only the store's
    # commit-time check keeps their writes apart.
    store = InMemoryDocumentStore()
    replicas = [_updater(store, max_retries=100) for _ in range(2)]
    n = 40
    retries_before = _sample("aggregate_write_retries_total", {"operation": "view"})

    async def scenario():
        await asyncio.gather(
            *(
                replicas[i % 2].record_view("shared-lesson", f"user-{i % 5}")
                for i in range(n)
            )
        )
        return await replicas[0].get_counters("shared-lesson")

    counters = run(scenario())
    assert counters.views == n
    assert counters.learners == 5
    assert _sample("aggregate_write_retries_total", {"operation": "view"}) > retries_before


def test_concurrent_writes_to_different_lessons_are_independent() -> None:
    updater = _updater()

    async def scenario():
        await asyncio.gather(
            *(updater.record_view(f"lesson-{i % 5}", "alice") for i in range(25))
        )
        return [await updater.get_counters(f"lesson-{i}") for i in range(5)]

    assert [c.views for c in run(scenario())] == [5] * 5


def test_held_lock_on_one_lesson_does_not_block_another() -> None:
    updater = _updater()

    async def scenario():
        async with updater._locks.hold("lesson-a"):
            await asyncio.wait_for(updater.record_view("lesson-b", "alice"), timeout=1)
        return await updater.get_counters("lesson-b")

    assert run(scenario()).views == 1


def test_locks_are_released_after_writes() -> None:
    updater = _updater()

    async def scenario():
        await asyncio.gather(*(updater.record_view("lesson-1", "alice") for _ in range(10)))

    run(scenario())
    assert len(updater._locks) == 0


# ---- completions and running means ----


def test_average_time_spent_is_running_mean_over_completions() -> None:
    updater = _updater()

    async def scenario():
        for user, seconds in (("a", 60), ("b", 120), ("c", 90)):
            await updater.record_view("lesson-1", user)
            await updater.record_completion("lesson-1", user, seconds)
        return await updater.get_counters("lesson-1")

    counters = run(scenario())
    assert counters.completions == 3
    assert counters.average_time_spent == pytest.approx(90.0)


def test_ratings_fold_into_difficulty_rating() -> None:
    updater = _updater()

    async def scenario():
        await updater.record_completion("lesson-1", "a", 100, rating=4)
        await updater.record_completion("lesson-1", "b", 100)
        await updater.record_completion("lesson-1", "c", 100, rating=5)
        return await updater.get_counters("lesson-1")

    counters = run(scenario())
    assert counters.ratings == (4.0, 5.0)
    assert counters.difficulty_rating == pytest.approx(4.5)
    assert counters.completions == 3


def test_struggled_sections_are_unioned() -> None:
    updater = _updater()

    async def scenario():
        await updater.record_completion("lesson-1", "a", 10, struggled_section_ids=["s1", "s2"])
        await updater.record_completion("lesson-1", "b", 10, struggled_section_ids=["s2", "s3"])
        return await updater.get_counters("lesson-1")

    assert run(scenario()).struggled_section_ids == frozenset({"s1", "s2", "s3"})


def test_completion_closes_engagement() -> None:
    updater = _updater()

    async def scenario():
        await updater.record_view("lesson-1", "alice")
        await updater.record_completion("lesson-1", "alice", 300, rating=3)
        return await updater.get_engagement("alice", "lesson-1")

    engagement = run(scenario())
    assert not engagement.is_open
    assert engagement.completed
    assert engagement.progress_percent == 100.0
    assert engagement.time_spent_seconds == 300.0
    assert engagement.interactions[-1].kind == "complete"
    assert engagement.interactions[-1].payload == {"time_spent_seconds": 300, "rating": 3}


def test_completion_without_view_counts_implicit_view() -> None:
    updater = _updater()

    async def scenario():
        await updater.record_completion("lesson-1", "alice", 30)
        return await updater.get_counters("lesson-1")

    counters = run(scenario())
    assert (counters.views, counters.completions, counters.learners) == (1, 1, 1)


def test_views_never_fall_below_completions() -> None:
    updater = _updater()

    async def scenario():
        await updater.record_view("lesson-1", "alice")
        await updater.record_completion("lesson-1", "alice", 30)
        # completing again without reopening must count another view
        await updater.record_completion("lesson-1", "alice", 20)
        return await updater.get_counters("lesson-1")

    counters = run(scenario())
    assert counters.completions == 2
    assert counters.views >= counters.completions
    assert counters.views == 2


def test_view_after_completion_reopens_engagement() -> None:
    updater = _updater()

    async def scenario():
        await updater.record_completion("lesson-1", "alice", 30)
        await updater.record_view("lesson-1", "alice")
        return await updater.get_engagement("alice", "lesson-1")

    engagement = run(scenario())
    assert engagement.is_open
    assert engagement.progress_percent == 100.0


# ---- progress ----


def test_average_progress_tracks_each_learner() -> None:
    updater = _updater()

    async def scenario():
        await updater.record_view("lesson-1", "a")
        await updater.record_view("lesson-1", "b")
        await updater.record_progress("lesson-1", "a", 50)
        await updater.record_progress("lesson-1", "b", 100)
        after_progress = await updater.get_counters("lesson-1")
        await updater.record_completion("lesson-1", "a", 60)
        after_completion = await updater.get_counters("lesson-1")
        return after_progress, after_completion

    after_progress, after_completion = run(scenario())
    assert after_progress.average_progress == pytest.approx(75.0)
    assert after_completion.average_progress == pytest.approx(100.0)


def test_new_learner_lowers_average_progress() -> None:
    updater = _updater()

    async def scenario():
        await updater.record_progress("lesson-1", "a", 80)
        await updater.record_view("lesson-1", "b")
        return await updater.get_counters("lesson-1")

    counters = run(scenario())
    assert counters.learners == 2
    assert counters.average_progress == pytest.approx(40.0)


# ---- exercises ----


def test_exercise_appends_interaction() -> None:
    updater = _updater()

    async def scenario():
        await updater.record_view("lesson-1", "alice")
        await updater.record_exercise("lesson-1", "alice", "ex-1", True, 42, attempts=2)
        return await updater.get_engagement("alice", "lesson-1")

    engagement = run(scenario())
    exercise = engagement.interactions[-1]
    assert exercise.kind == "exercise"
    assert exercise.payload == {
        "exercise_id": "ex-1",
        "correct": True,
        "time_spent_seconds": 42,
        "attempts": 2,
    }


# ---- retries ----


def test_one_forced_conflict_yields_exactly_one_completion() -> None:
    store = FlakyStore(failures=1)
    updater = _updater(store)
    labels = {"operation": "completion"}
    retries_before = _sample("aggregate_write_retries_total", labels)

    async def scenario():
        await updater.record_completion("lesson-1", "alice", 45, rating=4)
        return await updater.get_counters("lesson-1")

    counters = run(scenario())
    assert store.commits == 2
    assert counters.completions == 1
    assert counters.views == 1
    assert counters.ratings == (4.0,)
    assert _sample("aggregate_write_retries_total", labels) - retries_before == 1


def test_storage_errors_are_retried() -> None:
    store = FlakyStore(failures=2, error=StorageError)
    updater = _updater(store)

    async def scenario():
        await updater.record_view("lesson-1", "alice")
        return await updater.get_counters("lesson-1")

    assert run(scenario()).views == 1
    assert store.commits == 3


def test_write_failed_after_retries_exhausted() -> None:
    store = FlakyStore(failures=100)
    updater = _updater(store, max_retries=2)
    failed = {"operation": "view", "result": "failed"}
    failed_before = _sample("aggregate_writes_total", failed)

    with pytest.raises(AnalyticsWriteFailed) as exc_info:
        run(updater.record_view("lesson-1", "alice"))

    assert exc_info.value.attempts == 3
    assert exc_info.value.operation == "view"
    assert exc_info.value.key == "lesson-1"
    assert isinstance(exc_info.value.__cause__, TransientConflict)
    assert store.commits == 3
    assert run(updater.get_counters("lesson-1")) is None
    assert _sample("aggregate_writes_total", failed) - failed_before == 1


def test_retry_logs_carry_context(caplog: pytest.LogCaptureFixture) -> None:
    updater = _updater(FlakyStore(failures=1))
    with caplog.at_level("WARNING", logger="app.services.aggregate_updater"):
        run(updater.record_view("lesson-9", "alice"))
    (record,) = [r for r in caplog.records if "retrying" in r.getMessage()]
    assert record.content_id == "lesson-9"  # type: ignore[attr-defined]
    assert record.attempt == 1  # type: ignore[attr-defined]


# ---- validation ----


@pytest.mark.parametrize(
    "call",
    [
        lambda u: u.record_completion("lesson-1", "a", -1),
        lambda u: u.record_completion("lesson-1", "a", float("inf")),
        lambda u: u.record_completion("lesson-1", "a", float("nan")),
        lambda u: u.record_exercise("lesson-1", "a", "ex", True, float("inf")),
        lambda u: u.record_completion("lesson-1", "a", 10, rating=6),
        lambda u: u.record_completion("lesson-1", "a", 10, rating=0),
        lambda u: u.record_progress("lesson-1", "a", 101),
        lambda u: u.record_progress("lesson-1", "a", -5),
        lambda u: u.record_exercise("lesson-1", "a", "ex", True, 5, attempts=0),
        lambda u: u.record_view("", "a"),
        lambda u: u.record_view("lesson-1", "  "),
    ],
)
def test_invalid_input_is_rejected_without_writing(call) -> None:
    updater = _updater()
    with pytest.raises(ValidationError):
        run(call(updater))
    assert run(updater.get_counters("lesson-1")) is None


# ---- reads ----


def test_list_engagements_returns_only_that_user() -> None:
    updater = _updater()

    async def scenario():
        await updater.record_view("lesson-1", "alice")
        await updater.record_view("lesson-2", "alice")
        await updater.record_view("lesson-1", "alice:bob")
        await updater.record_view("lesson-1", "bob")
        return await updater.list_engagements("alice")

    engagements = run(scenario())
    assert sorted(e.content_id for e in engagements) == ["lesson-1", "lesson-2"]
    assert {e.user_id for e in engagements} == {"alice"}
