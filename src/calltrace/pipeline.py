"""Completion path of a recorded trace: analyze, persist, ingest.

A trace that cannot be persisted is still handed to the monitor; it is
then available for live metrics but not for later historical queries.
"""

from __future__ import annotations

from dataclasses import dataclass
from uuid import uuid4

from calltrace.analytics.aggregator import AnalyticsAggregator
from calltrace.errors import StorageError
from calltrace.logging_setup import get_logger
from calltrace.models.trace import StoredTrace
from calltrace.monitor.realtime import RealTimeMonitor
from calltrace.recording.recorder import TraceRecorder
from calltrace.storage.trace_store import TraceStore

logger = get_logger(__name__)


@dataclass
class CompletedTrace:
    """A finished trace and whether it reached durable storage."""

    trace: StoredTrace
    persisted: bool


class TracePipeline:
    """Wires a recorder's output into the aggregator, store and monitor.

    Every collaborator is optional; missing ones are simply skipped.
    """

    def __init__(
        self,
        aggregator: AnalyticsAggregator | None = None,
        store: TraceStore | None = None,
        monitor: RealTimeMonitor | None = None,
    ) -> None:
        self.aggregator = aggregator or AnalyticsAggregator()
        self.store = store
        self.monitor = monitor

    async def complete(self, recorder: TraceRecorder, error_message: str | None = None) -> CompletedTrace | None:
        """End the recorder's trace and deliver it.

        Args:
            recorder: Recorder holding the open (or just ended) trace.
            error_message: Set when the observed command failed.

        Returns:
            The completed trace, or None if the recorder had no trace.
        """
        flow = recorder.end_trace()
        trace = recorder.build_stored_trace(flow, error_message=error_message)
        if trace is None:
            return None
        trace.analytics = self.aggregator.process_trace(trace.execution_flow)

        trace.id = trace.id or uuid4().hex

        # Live ingestion happens before the write and never waits on it.
        if self.monitor is not None:
            self.monitor.process_trace(trace)

        persisted = False
        if self.store is not None:
            try:
                await self.store.store(trace)
                persisted = True
            except StorageError as exc:
                logger.warning("trace_persist_degraded", trace_id=exc.trace_id, error=str(exc))
        return CompletedTrace(trace=trace, persisted=persisted)
