"""Execution metrics computed from flattened trace observations.

Metrics are always recomputed from the concatenated detail lists of every
trace involved, so sums, rates and weighted averages combine exactly
across any subset of traces. Uses statistics.quantiles for percentiles
and guards the 0-item and 1-item cases.
"""

from __future__ import annotations

import math
import statistics
from collections import Counter
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from calltrace.errors import ComputationError
from calltrace.logging_setup import get_logger
from calltrace.models.analytics import (
    CpuMetrics,
    ExecutionMetrics,
    MemoryMetrics,
    Movement,
    ResponseSizeMetrics,
)
from calltrace.models.trace import (
    CacheOperationDetail,
    ErrorRecord,
    ExecutionFlow,
    ExternalLookupDetail,
    ResourceUsageSample,
    ToolCallDetail,
    TraceNode,
)

logger = get_logger(__name__)

# A half-over-half change inside this band counts as stable.
TREND_TOLERANCE = 0.1
CPU_INTENSIVE_RATIO = 0.8


@dataclass
class Observations:
    """Flattened detail lists of one or more execution flows.

    sequences keeps each flow's tool names in completion order so that
    consecutive-call patterns never span two traces.
    """

    tool_calls: list[ToolCallDetail] = field(default_factory=list)
    external_lookups: list[ExternalLookupDetail] = field(default_factory=list)
    cache_operations: list[CacheOperationDetail] = field(default_factory=list)
    resource_usage: list[ResourceUsageSample] = field(default_factory=list)
    errors: list[ErrorRecord] = field(default_factory=list)
    spans: list[TraceNode] = field(default_factory=list)
    sequences: list[list[str]] = field(default_factory=list)

    @classmethod
    def from_flows(cls, flows: Iterable[ExecutionFlow]) -> Observations:
        obs = cls()
        for flow in flows:
            obs.tool_calls.extend(flow.tool_calls)
            obs.external_lookups.extend(flow.external_lookups)
            obs.cache_operations.extend(flow.cache_operations)
            obs.resource_usage.extend(flow.resource_usage)
            obs.errors.extend(flow.errors)
            obs.spans.extend(flow.descendants())
            obs.sequences.append([call.tool for call in flow.tool_calls])
        return obs


def normalize_amount(value: float | int | None, metric: str) -> float:
    """Return value as a finite non-negative float.

    Raises:
        ComputationError: If the value is negative or not finite.
    """
    if value is None:
        return 0.0
    number = float(value)
    if not math.isfinite(number) or number < 0:
        raise ComputationError(metric, value)
    return number


def safe_amount(value: float | int | None, metric: str) -> float:
    """normalize_amount(), zeroing the value when it is inconsistent."""
    try:
        return normalize_amount(value, metric)
    except ComputationError as exc:
        logger.warning("metric_value_zeroed", metric=metric, error=str(exc))
        return 0.0


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    if not math.isfinite(value):
        return low
    return max(low, min(high, value))


def ratio(part: float, whole: float) -> float:
    """part / whole clamped to [0, 1], or 0 when whole is zero."""
    if whole <= 0:
        return 0.0
    return clamp(part / whole)


def mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def percentiles(values: Sequence[float]) -> tuple[float, float]:
    """Return (p50, p95) of values.

    quantiles() needs at least 2 data points, so 0 and 1 items are
    handled directly.
    """
    if not values:
        return 0.0, 0.0
    if len(values) == 1:
        return values[0], values[0]
    # quantiles(n=100) gives 99 cut points -> index 49 is p50, 94 is p95
    cuts = statistics.quantiles(values, n=100)
    return cuts[49], cuts[94]


def movement(values: Sequence[float]) -> Movement:
    """Compare the mean of the second half of values with the first half."""
    if len(values) < 2:
        return "stable"
    half = len(values) // 2
    first, second = mean(values[:half]), mean(values[half:])
    if first == 0:
        return "increasing" if second > 0 else "stable"
    change = (second - first) / first
    if change > TREND_TOLERANCE:
        return "increasing"
    if change < -TREND_TOLERANCE:
        return "decreasing"
    return "stable"


def _memory_metrics(obs: Observations) -> MemoryMetrics:
    values = [
        safe_amount(call.memory_usage_bytes, "memory_usage_bytes")
        for call in obs.tool_calls
        if call.memory_usage_bytes is not None
    ]
    peaks = list(values)
    for sample in obs.resource_usage:
        if sample.type == "memory":
            values.append(safe_amount(sample.value, "memory_usage"))
            peaks.append(safe_amount(sample.peak, "memory_peak"))
    if not values:
        return MemoryMetrics()
    return MemoryMetrics(
        peak_usage=max(peaks),
        average_usage=mean(values),
        trend=movement(values),
    )


def _cpu_metrics(obs: Observations) -> CpuMetrics:
    values: list[float] = []
    intensive: set[str] = set()
    for call in obs.tool_calls:
        if call.cpu_usage_ratio is None:
            continue
        usage = clamp(safe_amount(call.cpu_usage_ratio, "cpu_usage_ratio"))
        values.append(usage)
        if usage >= CPU_INTENSIVE_RATIO:
            intensive.add(call.tool)
    peaks = list(values)
    for sample in obs.resource_usage:
        if sample.type == "cpu":
            values.append(clamp(safe_amount(sample.value, "cpu_usage")))
            peaks.append(clamp(safe_amount(sample.peak, "cpu_peak")))
    if not values:
        return CpuMetrics()
    return CpuMetrics(
        peak_usage=max(peaks),
        average_usage=clamp(mean(values)),
        trend=movement(values),
        intensive_operations=sorted(intensive),
    )


def _response_size(obs: Observations) -> ResponseSizeMetrics:
    sizes = [int(safe_amount(lookup.response_size_bytes, "response_size_bytes")) for lookup in obs.external_lookups]
    if not sizes:
        return ResponseSizeMetrics()
    return ResponseSizeMetrics(
        average_size=mean(sizes),
        peak_size=max(sizes),
        total_size=sum(sizes),
    )


def compute_execution_metrics(obs: Observations) -> ExecutionMetrics:
    """Compute ExecutionMetrics from flattened observations.

    With no tool calls every count, time and rate is 0; success_rate and
    error_rate are both 0 rather than one of them defaulting to 1.
    """
    times = [safe_amount(call.execution_time_ms, "execution_time_ms") for call in obs.tool_calls]
    total_calls = len(obs.tool_calls)
    successful = sum(1 for call in obs.tool_calls if call.success)
    failed = total_calls - successful
    p50, p95 = percentiles(sorted(times))

    distribution = Counter(call.tool for call in obs.tool_calls)

    lookups = obs.external_lookups
    lookup_hits = sum(1 for lookup in lookups if lookup.cache_hit)
    lookup_times = [safe_amount(lookup.response_time_ms, "response_time_ms") for lookup in lookups]

    cache_ops = obs.cache_operations
    cache_hits = sum(1 for op in cache_ops if op.hit)

    return ExecutionMetrics(
        total_calls=total_calls,
        successful_calls=successful,
        failed_calls=failed,
        total_execution_time=sum(times),
        average_execution_time=mean(times),
        p50_execution_time=p50,
        p95_execution_time=p95,
        success_rate=ratio(successful, total_calls),
        error_rate=ratio(failed, total_calls),
        tool_usage_distribution={tool: distribution[tool] for tool in sorted(distribution)},
        external_lookup_calls=len(lookups),
        external_lookup_hits=lookup_hits,
        external_lookup_hit_rate=ratio(lookup_hits, len(lookups)),
        average_lookup_response_time=mean(lookup_times),
        total_token_usage=int(sum(safe_amount(lookup.token_usage, "token_usage") for lookup in lookups)),
        total_lookup_cost=sum(safe_amount(lookup.cost, "cost") for lookup in lookups),
        cache_operations=len(cache_ops),
        cache_hits=cache_hits,
        cache_efficiency=ratio(cache_hits, len(cache_ops)),
        memory_usage=_memory_metrics(obs),
        cpu_usage=_cpu_metrics(obs),
        response_size=_response_size(obs),
    )
