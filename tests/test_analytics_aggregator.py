"""Tests for AnalyticsAggregator: single-trace and multi-trace analytics."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from calltrace.analytics.aggregator import AnalyticsAggregator, analytics_id
from calltrace.analytics.insights import PRIORITY_ORDER
from calltrace.models.analytics import AggregatedAnalytics
from calltrace.models.trace import ExecutionFlow, StoredTrace, ToolCallDetail, TraceNode
from calltrace.recording.recorder import TraceRecorder
from calltrace.storage.trace_store import TraceStore

NOW = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = NOW) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += timedelta(milliseconds=ms)


def _record(
    calls: list[tuple[str, float, bool]],
    command: str = "build the app",
    start: datetime = NOW,
    trace_id: str | None = None,
) -> StoredTrace:
    """Record a trace of sequential tool calls and wrap it for storage."""
    clock = FakeClock(start)
    recorder = TraceRecorder(clock=clock)
    recorder.start_trace(command)
    for tool, ms, ok in calls:
        clock.advance(ms)
        recorder.add_tool_call(tool, {"path": "src"}, ms, ok, error=None if ok else "Tool execution failed")
    trace = recorder.build_stored_trace(recorder.end_trace())
    trace.id = trace_id
    return trace


def _make_flow(calls: list[ToolCallDetail]) -> ExecutionFlow:
    root = TraceNode(id="node_1", tool="command", start_time=NOW, end_time=NOW)
    nodes = {root.id: root}
    for call in calls:
        nodes[call.node_id] = TraceNode(id=call.node_id, tool=call.tool, start_time=NOW, end_time=NOW, parent_id=root.id, level=1)
        root.children.append(call.node_id)
    return ExecutionFlow(root_id=root.id, nodes=nodes, tool_calls=calls)


class TestProcessTrace:
    def test_two_successful_calls(self):
        analytics = AnalyticsAggregator().process_trace(_record([("scan", 100, True), ("write", 200, True)]))
        metrics = analytics.execution_metrics
        assert metrics.total_calls == 2
        assert metrics.average_execution_time == pytest.approx(150.0)
        assert metrics.success_rate == 1.0
        assert metrics.error_rate == 0.0
        assert metrics.p50_execution_time == pytest.approx(150.0)
        assert metrics.tool_usage_distribution == {"scan": 1, "write": 1}

    def test_failed_call_error_rate(self):
        trace = _record([("scan", 50, False)])
        analytics = AnalyticsAggregator().process_trace(trace)
        assert analytics.execution_metrics.error_rate == 1.0
        errors = analytics.quality_metrics.error_analysis
        assert errors.total_errors == 1
        assert errors.common_errors[0].message == "Tool execution failed"
        assert errors.categories[0].name == "tool_error"

    def test_empty_trace_is_zeroed(self):
        """A trace with no calls has zero rates and no benchmarks."""
        analytics = AnalyticsAggregator().process_trace(_record([]))
        metrics = analytics.execution_metrics
        assert metrics.total_calls == 0
        assert metrics.success_rate == 0.0
        assert metrics.error_rate == 0.0
        assert metrics.p95_execution_time == 0.0
        assert analytics.benchmarks == []
        assert analytics.performance_insights.optimization_score == 0.0
        assert analytics.performance_insights.bottlenecks == []

    def test_deterministic(self):
        trace = _record([("scan", 100, True), ("write", 300, False), ("scan", 50, True)])
        aggregator = AnalyticsAggregator()
        first = aggregator.process_trace(trace)
        second = aggregator.process_trace(trace)
        assert first.model_dump_json() == second.model_dump_json()
        assert first.timestamp == trace.execution_flow.root.end_time

    def test_negative_duration_zeroed(self):
        """Inconsistent data is zeroed rather than propagated."""
        flow = _make_flow(
            [
                ToolCallDetail(node_id="node_2", tool="scan", execution_time_ms=-5, completed_at=NOW),
                ToolCallDetail(node_id="node_3", tool="scan", execution_time_ms=10, completed_at=NOW),
            ]
        )
        metrics = AnalyticsAggregator().process_trace(flow).execution_metrics
        assert metrics.total_calls == 2
        assert metrics.total_execution_time == pytest.approx(10.0)

    def test_incomplete_span_lowers_completeness(self):
        clock = FakeClock()
        recorder = TraceRecorder(clock=clock)
        recorder.start_trace("cmd")
        recorder.add_tool_call("scan", {}, 10, True)
        recorder.start_span("generate")
        flow = recorder.end_trace()
        quality = AnalyticsAggregator().process_trace(flow).quality_metrics
        assert quality.completeness == pytest.approx(50.0)
        assert quality.response_quality == pytest.approx(50.0)


class TestAnalyticsId:
    def test_uses_trace_id(self):
        trace = _record([("scan", 10, True)], trace_id="abc")
        assert analytics_id(trace) == "analytics_abc"

    def test_hash_for_anonymous_flow(self):
        trace = _record([("scan", 10, True)])
        first = analytics_id(trace.execution_flow)
        assert first.startswith("analytics_")
        assert len(first) == len("analytics_") + 16
        assert analytics_id(trace) == first


class TestInsights:
    def test_disproportionate_operation_is_bottleneck(self):
        analytics = AnalyticsAggregator().process_trace(_record([("generate", 900, True), ("scan", 100, True)]))
        bottlenecks = analytics.performance_insights.bottlenecks
        assert [b.operation for b in bottlenecks] == ["generate"]
        assert bottlenecks[0].severity == "critical"
        assert bottlenecks[0].impact == pytest.approx(90.0)
        assert bottlenecks[0].solutions

    def test_single_operation_is_not_a_bottleneck(self):
        analytics = AnalyticsAggregator().process_trace(_record([("scan", 900, True), ("scan", 800, True)]))
        assert analytics.performance_insights.bottlenecks == []

    def test_slowest_operations_ranked_by_average(self):
        analytics = AnalyticsAggregator().process_trace(
            _record([("scan", 10, True), ("generate", 400, True), ("write", 50, True), ("lint", 5, True)])
        )
        slowest = analytics.performance_insights.slowest_operations
        assert [s.operation for s in slowest] == ["generate", "write", "scan"]

    def test_slow_tool_opportunity(self):
        analytics = AnalyticsAggregator().process_trace(_record([("generate", 1200, True)]))
        ids = [o.id for o in analytics.optimization_opportunities]
        assert ids == ["opportunity_tool_chain"]
        assert analytics.optimization_opportunities[0].priority == "high"

    def test_repeated_call_pattern(self):
        analytics = AnalyticsAggregator().process_trace(
            _record([("scan", 10, True), ("scan", 10, True), ("scan", 10, True)])
        )
        patterns = {p.id: p for p in analytics.usage_patterns}
        repeated = patterns["repeated:scan(path)"]
        assert repeated.frequency == 3
        assert repeated.confidence == 1.0
        assert patterns["sequence:scan->scan"].frequency == 2

    def test_benchmarks(self):
        analytics = AnalyticsAggregator().process_trace(_record([("scan", 1200, True)]))
        by_name = {b.name: b for b in analytics.benchmarks}
        assert by_name["average_execution_time"].status == "warning"
        assert by_name["average_execution_time"].improvement == pytest.approx(-20.0)
        assert by_name["success_rate"].status == "pass"


class TestProcessTraces:
    def test_combines_two_traces(self):
        """Call counts and tool distribution sum across traces."""
        first = _record([("scan", 100, True), ("write", 200, True)])
        second = _record([("scan", 100, True)], start=NOW + timedelta(minutes=5))
        aggregate = AnalyticsAggregator().process_traces([first, second])
        assert aggregate.trace_count == 2
        assert aggregate.metrics.total_calls == 3
        assert aggregate.metrics.tool_usage_distribution == {"scan": 2, "write": 1}
        assert aggregate.time_range.start == first.stored_at
        assert aggregate.time_range.end == second.stored_at

    def test_average_weighted_by_call_count(self):
        light = _record([("scan", 100, True)])
        heavy = _record([("scan", 300, True), ("scan", 300, True), ("scan", 300, False)])
        metrics = AnalyticsAggregator().process_traces([light, heavy]).metrics
        assert metrics.average_execution_time == pytest.approx(250.0)
        assert metrics.error_rate == pytest.approx(0.25)
        assert metrics.success_rate == pytest.approx(0.75)

    def test_empty_input_is_fully_zeroed(self):
        aggregator = AnalyticsAggregator()
        aggregate = aggregator.process_traces([])
        assert aggregate == AggregatedAnalytics()
        assert aggregate.metrics.error_rate == 0.0
        assert aggregate.insights.optimization_score == 0.0
        assert aggregator.get_optimization_recommendations() == []

    def test_command_frequency_pattern(self):
        traces = [_record([("scan", 10, True)], command="build") for _ in range(2)]
        aggregate = AnalyticsAggregator().process_traces(traces)
        ids = [p.id for p in aggregate.patterns]
        assert "command:build" in ids

    def test_sequences_do_not_span_traces(self):
        traces = [_record([("scan", 10, True)]), _record([("write", 10, True)])]
        aggregate = AnalyticsAggregator().process_traces(traces)
        assert not any(p.type == "tool_sequence" for p in aggregate.patterns)

    def test_trend_series(self):
        traces = [
            _record([("scan", 100, True)], start=NOW),
            _record([("scan", 100, False)], start=NOW + timedelta(hours=1)),
        ]
        trends = AnalyticsAggregator().process_traces(traces).trends
        by_metric = {t.metric: t for t in trends.performance_trends}
        assert len(by_metric["response_time"].data_points) == 2
        assert by_metric["error_rate"].direction == "degrading"
        assert trends.quality_trends[0].metric == "success_rate"
        assert len(trends.quality_trends[0].data_points) == 2
        assert {u.pattern for u in trends.usage_trends} == {"trace_volume", "tool_calls"}


class TestRecommendations:
    def test_ranked_by_priority_then_improvement(self):
        aggregator = AnalyticsAggregator()
        aggregator.process_traces(
            [_record([("generate", 2500, False), ("scan", 100, True), ("lint", 50, False)])]
        )
        recs = aggregator.get_optimization_recommendations()
        assert recs
        assert recs[0].priority == "critical"
        orders = [PRIORITY_ORDER[r.priority] for r in recs]
        assert orders == sorted(orders)
        assert {r.source for r in recs} == {"bottleneck", "opportunity"}

    def test_latest_tracks_last_aggregate(self):
        aggregator = AnalyticsAggregator()
        assert aggregator.latest is None
        aggregate = aggregator.process_traces([_record([("scan", 10, True)])])
        assert aggregator.latest is aggregate


class TestTimeRange:
    @pytest.mark.asyncio
    async def test_queries_store(self, tmp_path: Path):
        store = TraceStore(tmp_path)
        await store.store(_record([("scan", 10, True)], start=NOW - timedelta(days=2), trace_id="old"))
        await store.store(_record([("scan", 10, True), ("write", 20, True)], start=NOW, trace_id="new"))

        aggregator = AnalyticsAggregator(store=store)
        aggregate = await aggregator.get_analytics_for_time_range(NOW - timedelta(hours=1), NOW + timedelta(hours=1))
        assert aggregate.trace_count == 1
        assert aggregate.metrics.total_calls == 2

    @pytest.mark.asyncio
    async def test_without_store_returns_empty(self):
        aggregate = await AnalyticsAggregator().get_analytics_for_time_range(NOW - timedelta(hours=1), NOW)
        assert aggregate.trace_count == 0

    @pytest.mark.asyncio
    async def test_refresh_uses_recommendation_window(self, tmp_path: Path):
        store = TraceStore(tmp_path)
        await store.store(_record([("scan", 10, True)], start=NOW - timedelta(hours=2), trace_id="recent"))
        await store.store(_record([("scan", 10, True)], start=NOW - timedelta(hours=30), trace_id="stale"))
        aggregator = AnalyticsAggregator(store=store, clock=lambda: NOW)
        aggregate = await aggregator.refresh()
        assert aggregate.trace_count == 1
        assert aggregator.latest is aggregate
