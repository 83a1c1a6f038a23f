"""Error taxonomy for calltrace.

Observability is best-effort: none of these errors may abort the command
being observed. Each component catches the kinds it owns and degrades
locally; only StorageError is surfaced to callers of the trace store.
"""

from __future__ import annotations


class CallTraceError(Exception):
    """Base class for all calltrace errors."""


class TraceValidationError(CallTraceError):
    """Malformed or missing trace fields supplied at a boundary.

    Recovered locally by substituting safe defaults.
    """

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        super().__init__(f"{field}: {message}")


class StorageError(CallTraceError):
    """I/O or decode failure inside the trace store.

    Callers degrade to an in-memory-only trace; there is no implicit retry.
    """

    def __init__(self, message: str, trace_id: str | None = None) -> None:
        self.trace_id = trace_id
        super().__init__(message)


class DuplicateTraceError(StorageError):
    """A trace with the same id has already been stored."""


class ComputationError(CallTraceError):
    """Inconsistent data met during analytics (e.g. negative durations)."""

    def __init__(self, metric: str, value: object) -> None:
        self.metric = metric
        self.value = value
        super().__init__(f"invalid value for {metric}: {value!r}")


class AlertEvaluationError(CallTraceError):
    """Missing or invalid threshold configuration for an alerted metric."""

    def __init__(self, metric: str, message: str) -> None:
        self.metric = metric
        super().__init__(f"{metric}: {message}")
