"""RealTimeMonitor: rolling live metrics and alerting over ingested traces.

Lifecycle is stopped -> running -> stopped. While running, an asyncio
task calls tick() every tick_interval_seconds. tick() is public and the
clock is injectable, so tests drive the monitor without sleeping.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from calltrace.analytics.aggregator import AnalyticsAggregator
from calltrace.analytics.export import check_format, to_csv
from calltrace.analytics.metrics import Observations, clamp, compute_execution_metrics, mean, ratio
from calltrace.errors import StorageError
from calltrace.logging_setup import get_logger
from calltrace.models.analytics import AggregatedAnalytics, OptimizationOpportunity, UsagePattern
from calltrace.models.config import MonitorConfig
from calltrace.models.monitor import LiveMetrics, MonitorState, PerformanceTrends, RealTimeAlert
from calltrace.models.query import ExportedData, ExportMetadata, TraceFilters
from calltrace.models.trace import StoredTrace
from calltrace.monitor.alerts import AlertEvaluator
from calltrace.monitor.window import SlidingWindow

if TYPE_CHECKING:
    from calltrace.storage.trace_store import TraceStore

logger = get_logger(__name__)

AlertCallback = Callable[[RealTimeAlert], None]

HEALTH_DEDUCTIONS: dict[str, float] = {
    "response_time": 20.0,
    "error_rate": 30.0,
    "memory_usage": 15.0,
    "cpu_usage": 15.0,
}
ALERT_DEDUCTION = 5.0


class RealTimeMonitor:
    """Maintains a sliding window of traces and recomputes live metrics.

    Reads (get_live_metrics() and friends) are cheap synchronous accessors
    of the snapshot computed by the last tick.

    Args:
        config: Monitor settings. Defaults to MonitorConfig().
        aggregator: Computes window analytics. A private one is created
            when omitted.
        store: Trace store for backfill and optional persistence.
        clock: Returns the current aware datetime. Injected in tests.
    """

    def __init__(
        self,
        config: MonitorConfig | None = None,
        aggregator: AnalyticsAggregator | None = None,
        store: TraceStore | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.config = config or MonitorConfig()
        self.aggregator = aggregator or AnalyticsAggregator()
        self.store = store
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.window = SlidingWindow(self.config.window_seconds, self.config.bucket_seconds)
        self.alerts = AlertEvaluator(self.config)
        self._state = MonitorState.stopped
        self._task: asyncio.Task | None = None
        self._pending: set[asyncio.Task] = set()
        self._subscribers: list[AlertCallback] = []
        self._metrics = LiveMetrics()
        self._aggregate = AggregatedAnalytics()
        self._trends = PerformanceTrends()

    @property
    def state(self) -> MonitorState:
        return self._state

    # -- lifecycle --

    async def start(self) -> None:
        """Schedule the periodic tick task. No-op when already running."""
        if self._state is MonitorState.running:
            return
        self._state = MonitorState.running
        self._task = asyncio.create_task(self._run(), name="calltrace-monitor")
        logger.info("monitor_started", interval=self.config.tick_interval_seconds)

    async def shutdown(self) -> None:
        """Cancel the tick task and wait for pending persistence to settle."""
        if self._state is MonitorState.stopped:
            return
        self._state = MonitorState.stopped
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        logger.info("monitor_stopped")

    async def _run(self) -> None:
        while True:
            try:
                self.tick()
            except Exception:
                logger.exception("monitor_tick_failed")
            await asyncio.sleep(self.config.tick_interval_seconds)

    # -- ingestion --

    def process_trace(self, trace: StoredTrace) -> None:
        """Ingest a just-completed trace. Never waits on storage.

        With persist_ingested set, the trace is written to the store in a
        background task; a failed write is logged and otherwise ignored.
        """
        self.window.add(trace, self._clock())
        if not (self.config.persist_ingested and self.store is not None):
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("monitor_persist_skipped_no_loop", trace_id=trace.id)
            return
        task = loop.create_task(self._persist(trace))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _persist(self, trace: StoredTrace) -> None:
        try:
            await self.store.store(trace)
        except StorageError as exc:
            logger.warning("monitor_persist_failed", trace_id=exc.trace_id, error=str(exc))

    async def backfill(self, since: datetime | None = None) -> int:
        """Load recently stored traces into the window, oldest first.

        Args:
            since: Earliest stored_at to load. Defaults to the window start.

        Returns:
            Number of traces added.

        Raises:
            StorageError: If the store cannot be read.
        """
        if self.store is None:
            return 0
        now = self._clock()
        start = since or (now - self.window.window)
        traces = await self.store.search(TraceFilters(start=start, end=now, sort_by="stored_at", descending=False))
        for trace in traces:
            self.window.add(trace, trace.stored_at)
        logger.info("monitor_backfilled", count=len(traces))
        return len(traces)

    def subscribe(self, callback: AlertCallback) -> Callable[[], None]:
        """Call callback for every alert raised or resolved. Returns an unsubscribe function."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    # -- recomputation --

    def tick(self) -> LiveMetrics:
        """Evict aged traces, recompute live metrics and evaluate alerts."""
        now = self._clock()
        self.window.evict(now)
        traces = self.window.traces()
        last = self.window.last_added_at
        stale = last is None or now - last > timedelta(seconds=self.config.max_staleness_seconds)

        if not traces or stale:
            self._aggregate = AggregatedAnalytics()
            self._trends = PerformanceTrends()
            values = {"response_time": 0.0, "error_rate": 0.0, "memory_usage": 0.0, "cpu_usage": 0.0}
            metrics = LiveMetrics(last_updated=now)
        else:
            self._aggregate = self.aggregator.process_traces(traces)
            self._trends = self._build_trends(traces)
            execution = self._aggregate.metrics
            if execution.total_calls:
                error_rate = execution.error_rate
            else:
                error_rate = 1.0 - ratio(self._aggregate.successful_traces, len(traces))
            metrics = LiveMetrics(
                average_response_time=mean([t.duration_ms for t in traces]),
                error_rate=clamp(error_rate),
                memory_usage=clamp(execution.memory_usage.peak_usage / self.config.memory_limit_bytes),
                cpu_usage=execution.cpu_usage.average_usage,
                request_rate=len(traces) / self.config.window_seconds,
                cache_hit_rate=execution.cache_efficiency,
                external_lookup_hit_rate=execution.external_lookup_hit_rate,
                window_traces=len(traces),
                last_updated=now,
            )
            values = {
                "response_time": metrics.average_response_time,
                "error_rate": metrics.error_rate,
                "memory_usage": metrics.memory_usage,
                "cpu_usage": metrics.cpu_usage,
            }

        if self.config.enable_alerts:
            for alert in self.alerts.evaluate(values, now):
                self._notify(alert)
        metrics.active_alerts = len(self.alerts.active_alerts())
        metrics.health_score = self._health_score(values, metrics.active_alerts)
        self._metrics = metrics
        return metrics

    def _health_score(self, values: dict[str, float], active_alerts: int) -> float:
        score = 100.0
        for metric, deduction in HEALTH_DEDUCTIONS.items():
            threshold = self.config.thresholds.get(metric)
            if threshold is not None and values.get(metric, 0.0) > threshold:
                score -= deduction
        score -= ALERT_DEDUCTION * active_alerts
        return clamp(score, 0.0, 100.0)

    def _build_trends(self, traces: list[StoredTrace]) -> PerformanceTrends:
        trends = PerformanceTrends()
        for trace in traces:
            execution = compute_execution_metrics(Observations.from_flows([trace.execution_flow]))
            trends.timestamps.append(trace.stored_at)
            trends.response_time.append(trace.duration_ms)
            trends.error_rate.append(execution.error_rate)
            trends.memory_usage.append(clamp(execution.memory_usage.peak_usage / self.config.memory_limit_bytes))
            trends.cpu_usage.append(execution.cpu_usage.average_usage)
        return trends

    def _notify(self, alert: RealTimeAlert) -> None:
        for callback in list(self._subscribers):
            try:
                callback(alert)
            except Exception:
                logger.exception("alert_callback_failed", alert_id=alert.id)

    # -- reads --

    def get_live_metrics(self) -> LiveMetrics:
        """The last snapshot, or defaults once it is older than max staleness."""
        now = self._clock()
        if now - self._metrics.last_updated > timedelta(seconds=self.config.max_staleness_seconds):
            return LiveMetrics(last_updated=self._metrics.last_updated)
        return self._metrics.model_copy()

    def get_performance_trends(self) -> PerformanceTrends:
        return self._trends.model_copy(deep=True)

    def get_usage_patterns(self) -> list[UsagePattern]:
        return [p.model_copy(deep=True) for p in self._aggregate.patterns]

    def get_optimization_opportunities(self) -> list[OptimizationOpportunity]:
        return [o.model_copy(deep=True) for o in self._aggregate.optimization_opportunities]

    def get_active_alerts(self) -> list[RealTimeAlert]:
        return self.alerts.active_alerts()

    def get_alert_history(self) -> list[RealTimeAlert]:
        return self.alerts.history()

    def resolve_alert(self, alert_id: str) -> bool:
        resolved = self.alerts.resolve(alert_id, self._clock())
        if resolved:
            self._metrics.active_alerts = len(self.alerts.active_alerts())
        return resolved

    def get_recent_traces(self, count: int = 10) -> list[StoredTrace]:
        return self.window.recent(count)

    def export_snapshot(self, format: str = "json") -> ExportedData:
        """Export live metrics, active alerts and trends.

        csv renders the live metrics as metric/value rows.
        """
        fmt = check_format(format)
        metrics = self.get_live_metrics()
        if fmt == "json":
            data = [
                {
                    "live_metrics": metrics.model_dump(mode="json"),
                    "active_alerts": [a.model_dump(mode="json") for a in self.get_active_alerts()],
                    "trends": self._trends.model_dump(mode="json"),
                }
            ]
            count = 1
        else:
            rows = [
                {"metric": name, "value": value.isoformat() if isinstance(value, datetime) else value}
                for name, value in metrics.model_dump().items()
            ]
            data = to_csv(rows, ["metric", "value"])
            count = len(rows)
        timestamps = self._trends.timestamps
        return ExportedData(
            format=fmt,
            data=data,
            metadata=ExportMetadata(
                exported_at=self._clock(),
                record_count=count,
                time_range_start=min(timestamps) if timestamps else None,
                time_range_end=max(timestamps) if timestamps else None,
            ),
        )
