"""Error taxonomy for the analytics engine.

WHERE EACH ERROR ENDS UP
--------------------------
  ValidationError       malformed input (bad date range, rating out of
                        range).  Surfaced to the caller as HTTP 422.

  StorageError          the backing store (Postgres, Redis) failed an I/O
                        operation.  Write paths retry it; read paths let it
                        surface as HTTP 503.

  TransientConflict     a transaction lost an optimistic-concurrency race
                        at commit time.  Retried inside the aggregate
                        updater, never seen outside it.

  AnalyticsWriteFailed  an aggregate write or detached event append still
                        failed after every retry.
                        The telemetry dispatcher logs and swallows it, so it
                        never reaches the response of the action that
                        triggered the write.
"""

from __future__ import annotations


class AnalyticsError(Exception):
    """Base class for every error raised by the analytics engine."""


class ValidationError(AnalyticsError, ValueError):
    pass


class StorageError(AnalyticsError):
    pass


class TransientConflict(AnalyticsError):
    def __init__(self, keys: list[str] | tuple[str, ...] = ()) -> None:
        self.keys = tuple(keys)
        super().__init__(f"transaction conflict on {', '.join(self.keys) or 'unknown keys'}")


class AnalyticsWriteFailed(AnalyticsError):
    def __init__(self, operation: str, key: str, attempts: int) -> None:
        self.operation = operation
        self.key = key  # content id for aggregates, user id for event appends
        self.attempts = attempts
        super().__init__(f"{operation} for {key} failed after {attempts} attempts")
