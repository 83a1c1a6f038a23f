"""Trend series over time.

A single trace yields per-call series in completion order. Many traces
are bucketed by hour (or day) of stored_at. Direction and strength come
from comparing the mean of the second half of a series with the first.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Sequence
from datetime import datetime

from calltrace.analytics.metrics import TREND_TOLERANCE, clamp, mean, ratio
from calltrace.models.analytics import (
    Direction,
    Movement,
    PerformanceTrend,
    QualityTrend,
    SeasonalPattern,
    TrendAnalysis,
    TrendDataPoint,
    UsageTrend,
)
from calltrace.models.trace import ExecutionFlow, StoredTrace

PEAK_FACTOR = 1.5


def _halves(values: Sequence[float]) -> tuple[float, float] | None:
    if len(values) < 2:
        return None
    half = len(values) // 2
    return mean(values[:half]), mean(values[half:])


def _strength(first: float, second: float) -> float:
    base = max(abs(first), abs(second))
    return round(clamp(abs(second - first) / base), 4) if base else 0.0


def movement_of(points: Sequence[TrendDataPoint]) -> tuple[Movement, float]:
    halves = _halves([p.value for p in points])
    if halves is None:
        return "stable", 0.0
    first, second = halves
    strength = _strength(first, second)
    if strength <= TREND_TOLERANCE:
        return "stable", strength
    return ("increasing" if second > first else "decreasing"), strength


def direction_of(points: Sequence[TrendDataPoint], higher_is_better: bool) -> tuple[Direction, float]:
    moved, strength = movement_of(points)
    if moved == "stable":
        return "stable", strength
    improving = (moved == "increasing") == higher_is_better
    return ("improving" if improving else "degrading"), strength


def _performance(metric: str, points: list[TrendDataPoint], higher_is_better: bool = False) -> PerformanceTrend:
    direction, strength = direction_of(points, higher_is_better)
    return PerformanceTrend(metric=metric, direction=direction, strength=strength, data_points=points)


def trace_trends(flow: ExecutionFlow) -> TrendAnalysis:
    """Per-call latency series for a single trace."""
    analysis = TrendAnalysis()
    if flow.tool_calls:
        points = [TrendDataPoint(timestamp=c.completed_at, value=c.execution_time_ms) for c in flow.tool_calls]
        analysis.performance_trends.append(_performance("tool_execution_time", points))
    if flow.external_lookups:
        points = [TrendDataPoint(timestamp=lk.completed_at, value=lk.response_time_ms) for lk in flow.external_lookups]
        analysis.performance_trends.append(_performance("lookup_response_time", points))
    return analysis


def bucket_start(moment: datetime, bucket: str) -> datetime:
    if bucket == "day":
        return moment.replace(hour=0, minute=0, second=0, microsecond=0)
    return moment.replace(minute=0, second=0, microsecond=0)


def seasonal_patterns(traces: Sequence[StoredTrace], min_traces: int) -> list[SeasonalPattern]:
    """Hours of day whose trace volume exceeds 1.5x the mean active hour."""
    if len(traces) < min_traces:
        return []
    by_hour = Counter(trace.stored_at.hour for trace in traces)
    average = mean(list(by_hour.values()))
    peaks = sorted(hour for hour, count in by_hour.items() if count >= PEAK_FACTOR * average)
    if not peaks:
        return []
    busiest = max(by_hour.values())
    return [
        SeasonalPattern(
            name="daily_activity",
            type="daily",
            description=f"Activity peaks at {', '.join(f'{h:02d}:00' for h in peaks)} UTC",
            strength=round(clamp((busiest - average) / busiest), 4),
            peak_times=[f"{hour:02d}:00" for hour in peaks],
        )
    ]


def aggregate_trends(traces: Sequence[StoredTrace], bucket: str = "hour", min_seasonal_traces: int = 24) -> TrendAnalysis:
    """Bucket traces by time and build performance, usage and quality series."""
    if not traces:
        return TrendAnalysis()

    buckets: dict[datetime, list[StoredTrace]] = {}
    for trace in sorted(traces, key=lambda t: t.stored_at):
        buckets.setdefault(bucket_start(trace.stored_at, bucket), []).append(trace)

    response, errors, volume, calls, success = [], [], [], [], []
    for start, group in buckets.items():
        tool_calls = [call for trace in group for call in trace.execution_flow.tool_calls]
        failed = sum(1 for call in tool_calls if not call.success)
        response.append(TrendDataPoint(timestamp=start, value=mean([t.duration_ms for t in group])))
        errors.append(TrendDataPoint(timestamp=start, value=ratio(failed, len(tool_calls))))
        volume.append(TrendDataPoint(timestamp=start, value=float(len(group))))
        calls.append(TrendDataPoint(timestamp=start, value=float(len(tool_calls))))
        success.append(TrendDataPoint(timestamp=start, value=ratio(sum(1 for t in group if t.success), len(group))))

    usage: list[UsageTrend] = []
    for name, points in (("trace_volume", volume), ("tool_calls", calls)):
        moved, strength = movement_of(points)
        usage.append(UsageTrend(pattern=name, direction=moved, strength=strength, data_points=points))

    direction, strength = direction_of(success, higher_is_better=True)
    return TrendAnalysis(
        performance_trends=[_performance("response_time", response), _performance("error_rate", errors)],
        usage_trends=usage,
        quality_trends=[QualityTrend(metric="success_rate", direction=direction, strength=strength, data_points=success)],
        seasonal_patterns=seasonal_patterns(traces, min_seasonal_traces),
    )
