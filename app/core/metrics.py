"""Application metrics using the Prometheus client library.

All metrics are defined here: a single inventory of everything the
service measures.  Other modules import specific metrics and
increment/observe them at the point of action.

WHY COUNT SWALLOWED FAILURES
------------------------------
Analytics writes triggered by a lesson view or an assignment submission
are fire-and-forget: when they fail, the user never sees an error.
That is the right behaviour for the user, but it means the failure is
invisible unless something counts it.  ``aggregate_writes_total`` and
``telemetry_tasks_total`` with ``result="failed"`` are the numbers to
alert on:

    rate(aggregate_writes_total{result="failed"}[5m]) > 0

A steady trickle of ``aggregate_write_retries_total`` is normal under
contention (many learners opening the same lesson); a retry rate close
to the write rate means one content key is a hot spot.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

# ---------------------------------------------------------------------------
# HTTP metrics (populated by the MetricsMiddleware)
# ---------------------------------------------------------------------------

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests by method, endpoint, and status code",
    ["method", "endpoint", "status_code"],
)

REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
)

ACTIVE_REQUESTS = Gauge(
    "http_active_requests",
    "Number of HTTP requests currently being processed",
)

# ---------------------------------------------------------------------------
# Analytics engine metrics
# ---------------------------------------------------------------------------

ACTIVITY_EVENTS_APPENDED = Counter(
    "activity_events_appended_total",
    "Activity events written to the event store",
    ["type"],  # chat|login|library_view|book_upload|lesson_view|...
)

ACTIVITY_EVENT_APPEND_RETRIES = Counter(
    "activity_event_append_retries_total",
    "Detached event appends retried after a storage error",
    ["type"],
)

COURSEWORK_WRITE_RETRIES = Counter(
    "coursework_write_retries_total",
    "Coursework transactions retried after a conflict or storage error",
    ["operation"],
)

AGGREGATE_WRITES = Counter(
    "aggregate_writes_total",
    "Transactional aggregate updates by operation and outcome",
    ["operation", "result"],  # result: "committed" or "failed"
)

AGGREGATE_WRITE_RETRIES = Counter(
    "aggregate_write_retries_total",
    "Aggregate transactions retried after a conflict or storage error",
    ["operation"],
)

TELEMETRY_TASKS = Counter(
    "telemetry_tasks_total",
    "Detached telemetry tasks by operation and outcome",
    ["operation", "result"],  # result: "ok", "failed", "error"
)

TELEMETRY_PENDING = Gauge(
    "telemetry_tasks_pending",
    "Detached telemetry tasks spawned but not yet finished",
)

CACHE_OPERATIONS = Counter(
    "cache_operations_total",
    "Cache get operations by result",
    ["operation"],  # "hit" or "miss"
)

DASHBOARD_SOURCE_FAILURES = Counter(
    "dashboard_source_failures_total",
    "Dashboard data sources that failed and were replaced by defaults",
    ["source"],  # "events", "lessons", "coursework"
)
