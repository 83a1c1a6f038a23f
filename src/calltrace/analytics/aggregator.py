"""AnalyticsAggregator: turns one or many traces into structured analytics.

Single-trace and multi-trace processing are pure functions of their
input. The aggregator only remembers the most recent aggregate so that
get_optimization_recommendations() can rank its findings.
"""

from __future__ import annotations

import hashlib
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, TypeVar

from calltrace.analytics.insights import (
    PRIORITY_ORDER,
    compare_benchmarks,
    compute_performance_insights,
    compute_quality_metrics,
    detect_usage_patterns,
    find_optimization_opportunities,
)
from calltrace.analytics.metrics import Observations, compute_execution_metrics
from calltrace.analytics.trends import aggregate_trends, trace_trends
from calltrace.errors import CallTraceError
from calltrace.logging_setup import get_logger
from calltrace.models.analytics import (
    EPOCH,
    AggregatedAnalytics,
    CallTreeAnalytics,
    ExecutionMetrics,
    PerformanceInsights,
    QualityMetrics,
    Recommendation,
    TimeRange,
    TrendAnalysis,
)
from calltrace.models.config import AnalyticsConfig
from calltrace.models.query import TraceFilters
from calltrace.models.trace import ExecutionFlow, StoredTrace

if TYPE_CHECKING:
    from calltrace.storage.trace_store import TraceStore

logger = get_logger(__name__)

T = TypeVar("T")


def _guard(section: str, compute: Callable[[], T], fallback: Callable[[], T]) -> T:
    """Run one analytics section, zeroing it if the data is inconsistent."""
    try:
        return compute()
    except (CallTraceError, ValueError, ArithmeticError) as exc:
        logger.warning("analytics_section_zeroed", section=section, error=str(exc))
        return fallback()


def analytics_id(trace: StoredTrace | ExecutionFlow) -> str:
    """Stable analytics id derived from the trace itself."""
    if isinstance(trace, StoredTrace) and trace.id:
        return f"analytics_{trace.id}"
    flow = trace.execution_flow if isinstance(trace, StoredTrace) else trace
    digest = hashlib.sha256(flow.model_dump_json().encode("utf-8")).hexdigest()
    return f"analytics_{digest[:16]}"


class AnalyticsAggregator:
    """Compute per-trace and aggregated analytics.

    Args:
        config: Thresholds and tuning knobs. Defaults to AnalyticsConfig().
        store: Trace store used for time-range queries and recommendations.
        clock: Returns the current aware datetime. Injected in tests.
    """

    def __init__(
        self,
        config: AnalyticsConfig | None = None,
        store: TraceStore | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.config = config or AnalyticsConfig()
        self.store = store
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._latest: AggregatedAnalytics | None = None

    @property
    def latest(self) -> AggregatedAnalytics | None:
        """The most recent aggregate produced by process_traces()."""
        return self._latest

    def process_trace(self, trace: StoredTrace | ExecutionFlow) -> CallTreeAnalytics:
        """Compute analytics for a single trace.

        Deterministic: the same trace always yields equal analytics, id
        and timestamp included.
        """
        flow = trace.execution_flow if isinstance(trace, StoredTrace) else trace
        obs = Observations.from_flows([flow])
        metrics = _guard("execution_metrics", lambda: compute_execution_metrics(obs), ExecutionMetrics)
        root = flow.nodes.get(flow.root_id)
        timestamp = (root.end_time or root.start_time) if root is not None else EPOCH

        return CallTreeAnalytics(
            id=analytics_id(trace),
            timestamp=timestamp,
            execution_metrics=metrics,
            performance_insights=_guard(
                "performance_insights",
                lambda: compute_performance_insights(obs, metrics, self.config),
                PerformanceInsights,
            ),
            optimization_opportunities=_guard(
                "optimization_opportunities",
                lambda: find_optimization_opportunities(obs, metrics, self.config),
                list,
            ),
            usage_patterns=_guard(
                "usage_patterns",
                lambda: detect_usage_patterns(obs, self.config.min_pattern_frequency),
                list,
            ),
            quality_metrics=_guard(
                "quality_metrics",
                lambda: compute_quality_metrics(obs, metrics, self.config),
                QualityMetrics,
            ),
            trends=_guard("trends", lambda: trace_trends(flow), TrendAnalysis),
            benchmarks=_guard("benchmarks", lambda: compare_benchmarks(metrics, self.config), list),
        )

    def process_traces(self, traces: Sequence[StoredTrace]) -> AggregatedAnalytics:
        """Combine many traces into one aggregate.

        Metrics are recomputed from the concatenated detail lists, so call
        counts sum, averages are weighted by call count, and rates derive
        from total call counts rather than averaging per-trace rates.
        """
        traces = list(traces)
        if not traces:
            aggregate = AggregatedAnalytics()
            self._latest = aggregate
            return aggregate

        obs = Observations.from_flows(t.execution_flow for t in traces)
        metrics = _guard("execution_metrics", lambda: compute_execution_metrics(obs), ExecutionMetrics)
        commands = [t.command for t in traces]
        config = self.config

        aggregate = AggregatedAnalytics(
            time_range=TimeRange(
                start=min(t.stored_at for t in traces),
                end=max(t.stored_at for t in traces),
            ),
            trace_count=len(traces),
            successful_traces=sum(1 for t in traces if t.success),
            metrics=metrics,
            insights=_guard(
                "performance_insights",
                lambda: compute_performance_insights(obs, metrics, config),
                PerformanceInsights,
            ),
            optimization_opportunities=_guard(
                "optimization_opportunities",
                lambda: find_optimization_opportunities(obs, metrics, config),
                list,
            ),
            patterns=_guard(
                "usage_patterns",
                lambda: detect_usage_patterns(obs, config.min_pattern_frequency, commands),
                list,
            ),
            quality=_guard("quality_metrics", lambda: compute_quality_metrics(obs, metrics, config), QualityMetrics),
            trends=_guard(
                "trends",
                lambda: aggregate_trends(traces, config.trend_bucket, config.min_seasonal_traces),
                TrendAnalysis,
            ),
            benchmarks=_guard("benchmarks", lambda: compare_benchmarks(metrics, config), list),
        )
        self._latest = aggregate
        return aggregate

    async def get_analytics_for_time_range(self, start: datetime, end: datetime) -> AggregatedAnalytics:
        """Aggregate every stored trace with start <= stored_at <= end.

        Raises:
            StorageError: If the store cannot be read.
        """
        if self.store is None:
            logger.warning("analytics_without_store", start=start.isoformat(), end=end.isoformat())
            return self.process_traces([])
        traces = await self.store.search(TraceFilters(start=start, end=end))
        return self.process_traces(traces)

    async def refresh(self) -> AggregatedAnalytics:
        """Aggregate the last recommendation_window_hours of stored traces."""
        end = self._clock()
        start = end - timedelta(hours=self.config.recommendation_window_hours)
        return await self.get_analytics_for_time_range(start, end)

    def get_optimization_recommendations(self) -> list[Recommendation]:
        """Rank the latest aggregate's bottlenecks and opportunities.

        Ordered by priority (critical first), then expected improvement.
        Empty until an aggregate has been computed.
        """
        aggregate = self._latest
        if aggregate is None:
            return []

        recs: list[Recommendation] = []
        for bottleneck in aggregate.insights.bottlenecks:
            recs.append(
                Recommendation(
                    id=bottleneck.id,
                    source="bottleneck",
                    priority=bottleneck.severity,
                    title=f"Reduce time spent in {bottleneck.operation}",
                    description=bottleneck.description,
                    expected_improvement=bottleneck.impact,
                    suggestions=list(bottleneck.solutions),
                )
            )
        for opportunity in aggregate.optimization_opportunities:
            recs.append(
                Recommendation(
                    id=opportunity.id,
                    source="opportunity",
                    priority=opportunity.priority,
                    title=f"Improve {opportunity.type.replace('_', ' ')} performance",
                    description=opportunity.description,
                    expected_improvement=opportunity.expected_improvement,
                    suggestions=list(opportunity.suggestions),
                )
            )
        recs.sort(key=lambda r: (PRIORITY_ORDER[r.priority], -r.expected_improvement, r.id))
        return recs
