"""Performance insights, opportunities, patterns, quality and benchmarks.

All functions are pure: same observations and config in, same models out.
Identifiers are derived from the data they describe so that repeated
runs produce byte-equal output.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass

from calltrace.analytics.metrics import Observations, clamp, mean, ratio, safe_amount
from calltrace.models.analytics import (
    BenchmarkComparison,
    BottleneckAnalysis,
    CommonError,
    ErrorAnalysis,
    ErrorCategory,
    ExecutionMetrics,
    OperationTiming,
    OptimizationOpportunity,
    PerformanceInsights,
    PerformanceRecommendation,
    Priority,
    QualityMetrics,
    ResourceUtilization,
    ScalabilityMetrics,
    UsagePattern,
    UserSatisfaction,
)
from calltrace.models.config import AnalyticsConfig

COMMON_ERROR_LIMIT = 5

PRIORITY_ORDER: dict[str, int] = {"critical": 0, "high": 1, "medium": 2, "low": 3}

BOTTLENECK_SOLUTIONS: dict[str, list[str]] = {
    "algorithm": [
        "Profile the operation to find hot paths",
        "Cache intermediate results between invocations",
        "Split the operation into smaller steps that can run in parallel",
    ],
    "network": [
        "Cache lookup responses closer to the caller",
        "Batch related lookups into a single request",
        "Reduce response payload size",
    ],
    "io": [
        "Reduce the size of cached entries",
        "Move cache storage to faster media",
    ],
}


@dataclass
class OperationStats:
    """Timing totals for one named operation."""

    operation: str
    kind: str
    total_time: float = 0.0
    count: int = 0
    successful_time: float = 0.0

    @property
    def average_time(self) -> float:
        return self.total_time / self.count if self.count else 0.0


def operation_stats(obs: Observations) -> list[OperationStats]:
    """Group tool calls, lookups and cache operations by operation name."""
    stats: dict[str, OperationStats] = {}

    def add(name: str, kind: str, elapsed: float, success: bool) -> None:
        entry = stats.setdefault(name, OperationStats(operation=name, kind=kind))
        entry.total_time += elapsed
        entry.count += 1
        if success:
            entry.successful_time += elapsed

    for call in obs.tool_calls:
        add(call.tool, "algorithm", safe_amount(call.execution_time_ms, "execution_time_ms"), call.success)
    for lookup in obs.external_lookups:
        add(f"lookup:{lookup.endpoint}", "network", safe_amount(lookup.response_time_ms, "response_time_ms"), lookup.success)
    for op in obs.cache_operations:
        add(f"cache:{op.operation}", "io", safe_amount(op.duration_ms, "duration_ms"), op.success)
    return sorted(stats.values(), key=lambda s: s.operation)


def find_bottlenecks(stats: list[OperationStats], config: AnalyticsConfig) -> list[BottleneckAnalysis]:
    """Rank operations by total time contribution (average x frequency).

    An operation is a bottleneck when its share of all operation time
    reaches bottleneck_share. A single operation cannot be
    disproportionate to itself, so at least two are required.
    """
    grand_total = sum(s.total_time for s in stats)
    if len(stats) < 2 or grand_total <= 0:
        return []

    bottlenecks: list[BottleneckAnalysis] = []
    for entry in sorted(stats, key=lambda s: (-s.total_time, s.operation)):
        share = entry.total_time / grand_total
        if share < config.bottleneck_share:
            continue
        if share >= config.bottleneck_critical_share:
            severity: Priority = "critical"
        elif share >= config.bottleneck_high_share:
            severity = "high"
        else:
            severity = "medium"
        bottlenecks.append(
            BottleneckAnalysis(
                id=f"bottleneck_{entry.operation}",
                operation=entry.operation,
                type=entry.kind,
                severity=severity,
                description=(
                    f"{entry.operation} accounts for {share:.0%} of execution time "
                    f"({entry.count} call(s), {entry.average_time:.1f} ms average)"
                ),
                impact=clamp(share * 100, 0.0, 100.0),
                total_time=entry.total_time,
                average_time=entry.average_time,
                frequency=entry.count,
                solutions=list(BOTTLENECK_SOLUTIONS[entry.kind]),
            )
        )
    return bottlenecks


def slowest_operations(stats: list[OperationStats], limit: int) -> list[OperationTiming]:
    grand_total = sum(s.total_time for s in stats)
    ranked = sorted(stats, key=lambda s: (-s.average_time, s.operation))[:limit]
    return [
        OperationTiming(
            operation=entry.operation,
            execution_time=entry.average_time,
            percentage=clamp(ratio(entry.total_time, grand_total) * 100, 0.0, 100.0),
            frequency=entry.count,
        )
        for entry in ranked
    ]


def optimization_score(metrics: ExecutionMetrics, config: AnalyticsConfig) -> float:
    """Weighted composite of success rate, cache efficiency and lookup hit rate.

    Only components with observations take part; their weights are
    renormalized. Returns 0 when nothing was observed.
    """
    weights = config.score_weights
    parts: list[tuple[float, float]] = []
    if metrics.total_calls:
        parts.append((weights.success_rate, metrics.success_rate))
    if metrics.cache_operations:
        parts.append((weights.cache_efficiency, metrics.cache_efficiency))
    if metrics.external_lookup_calls:
        parts.append((weights.lookup_hit_rate, metrics.external_lookup_hit_rate))
    total_weight = sum(weight for weight, _ in parts)
    if total_weight <= 0:
        return 0.0
    score = sum(weight * value for weight, value in parts) / total_weight * 100
    return round(clamp(score, 0.0, 100.0), 2)


def _resource_utilization(metrics: ExecutionMetrics, stats: list[OperationStats]) -> ResourceUtilization:
    grand_total = sum(s.total_time for s in stats)
    io = sum(s.total_time for s in stats if s.kind == "io")
    network = sum(s.total_time for s in stats if s.kind == "network")
    return ResourceUtilization(
        cpu=metrics.cpu_usage.average_usage,
        memory=metrics.memory_usage.average_usage,
        io=io,
        network=network,
        efficiency=ratio(sum(s.successful_time for s in stats), grand_total),
    )


def _scalability(metrics: ExecutionMetrics) -> ScalabilityMetrics:
    """Serial capacity from average latency; concurrency via Little's law."""
    if metrics.average_execution_time <= 0:
        return ScalabilityMetrics()
    rps = 1000.0 / metrics.average_execution_time
    return ScalabilityMetrics(
        rps_capacity=round(rps, 3),
        concurrent_capacity=round(rps * metrics.p95_execution_time / 1000.0, 3),
        response_time_under_load=metrics.p95_execution_time,
        scaling_efficiency=ratio(metrics.p50_execution_time, metrics.p95_execution_time),
    )


def performance_recommendations(
    metrics: ExecutionMetrics,
    bottlenecks: list[BottleneckAnalysis],
    config: AnalyticsConfig,
) -> list[PerformanceRecommendation]:
    recs: list[PerformanceRecommendation] = []
    for bottleneck in bottlenecks:
        recs.append(
            PerformanceRecommendation(
                id=f"recommendation_{bottleneck.id}",
                type="optimization",
                priority=bottleneck.severity,
                title=f"Reduce time spent in {bottleneck.operation}",
                description=bottleneck.description,
                expected_impact=f"up to {bottleneck.impact:.0f}% of execution time",
                implementation_steps=list(bottleneck.solutions),
                related_metrics=["average_execution_time", "p95_execution_time"],
            )
        )
    if metrics.total_calls and metrics.error_rate > config.error_rate_threshold:
        recs.append(
            PerformanceRecommendation(
                id="recommendation_error_rate",
                type="monitoring",
                priority="high" if metrics.error_rate > 2 * config.error_rate_threshold else "medium",
                title="Investigate failing tool calls",
                description=f"Error rate is {metrics.error_rate:.1%}, above {config.error_rate_threshold:.1%}",
                expected_impact="fewer retries and failed commands",
                implementation_steps=[
                    "Review the most common errors in the error analysis",
                    "Add input validation before invoking failing tools",
                ],
                related_metrics=["error_rate", "success_rate"],
            )
        )
    if metrics.total_calls > 1 and metrics.p50_execution_time > 0 and metrics.p95_execution_time > 3 * metrics.p50_execution_time:
        recs.append(
            PerformanceRecommendation(
                id="recommendation_tail_latency",
                type="scaling",
                priority="medium",
                title="Reduce tail latency",
                description=(
                    f"p95 execution time ({metrics.p95_execution_time:.0f} ms) is more than "
                    f"three times the median ({metrics.p50_execution_time:.0f} ms)"
                ),
                expected_impact="more predictable response times",
                implementation_steps=["Add timeouts to slow operations", "Precompute expensive results"],
                related_metrics=["p95_execution_time"],
            )
        )
    return recs


def compute_performance_insights(
    obs: Observations,
    metrics: ExecutionMetrics,
    config: AnalyticsConfig,
) -> PerformanceInsights:
    stats = operation_stats(obs)
    bottlenecks = find_bottlenecks(stats, config)
    return PerformanceInsights(
        bottlenecks=bottlenecks,
        slowest_operations=slowest_operations(stats, config.slowest_operations),
        resource_utilization=_resource_utilization(metrics, stats),
        scalability=_scalability(metrics),
        optimization_score=optimization_score(metrics, config),
        recommendations=performance_recommendations(metrics, bottlenecks, config),
    )


def find_optimization_opportunities(
    obs: Observations,
    metrics: ExecutionMetrics,
    config: AnalyticsConfig,
) -> list[OptimizationOpportunity]:
    """Compare metrics against configured thresholds.

    Only areas with observations can produce an opportunity.
    """
    opportunities: list[OptimizationOpportunity] = []

    threshold = config.cache_hit_rate_threshold
    if metrics.cache_operations and metrics.cache_efficiency < threshold:
        opportunities.append(
            OptimizationOpportunity(
                id="opportunity_cache",
                type="cache",
                priority="high" if metrics.cache_efficiency < 0.5 else "medium",
                description=f"Cache efficiency is {metrics.cache_efficiency:.1%}, below {threshold:.0%}",
                expected_improvement=clamp((threshold - metrics.cache_efficiency) * 100, 0.0, 100.0),
                effort="low",
                affected_metrics=["cache_efficiency", "response_time"],
                suggestions=[
                    "Implement cache warming strategies",
                    "Optimize cache key generation",
                    "Increase cache TTL for frequently accessed data",
                ],
            )
        )

    limit = config.lookup_response_time_threshold_ms
    average = metrics.average_lookup_response_time
    if metrics.external_lookup_calls and average > limit:
        opportunities.append(
            OptimizationOpportunity(
                id="opportunity_external_lookup",
                type="external_lookup",
                priority="high" if average > 2 * limit else "medium",
                description=f"External lookups average {average:.0f} ms, above {limit:.0f} ms",
                expected_improvement=clamp((average - limit) / average * 100, 0.0, 100.0),
                effort="medium",
                affected_metrics=["average_lookup_response_time", "external_lookup_hit_rate"],
                suggestions=[
                    "Cache lookup results for repeated queries",
                    "Request only the sections that are needed",
                    "Prefetch documentation for commonly used libraries",
                ],
            )
        )

    limit = config.tool_execution_time_threshold_ms
    slow = [s for s in operation_stats(obs) if s.kind == "algorithm" and s.average_time > limit]
    if slow:
        worst = max(s.average_time for s in slow)
        names = ", ".join(s.operation for s in slow)
        opportunities.append(
            OptimizationOpportunity(
                id="opportunity_tool_chain",
                type="tool_chain",
                priority="high" if worst > 2 * limit else "medium",
                description=f"Tools averaging above {limit:.0f} ms: {names}",
                expected_improvement=clamp((worst - limit) / worst * 100, 0.0, 100.0),
                effort="medium",
                affected_metrics=["average_execution_time", "success_rate"],
                suggestions=[f"Optimize {s.operation} ({s.average_time:.0f} ms average)" for s in slow],
            )
        )

    if metrics.total_calls and metrics.error_rate > config.error_rate_threshold:
        opportunities.append(
            OptimizationOpportunity(
                id="opportunity_error_rate",
                type="algorithm",
                priority="critical" if metrics.error_rate >= 0.5 else "high",
                description=f"{metrics.failed_calls} of {metrics.total_calls} tool calls failed",
                expected_improvement=clamp((metrics.error_rate - config.error_rate_threshold) * 100, 0.0, 100.0),
                effort="medium",
                affected_metrics=["error_rate", "success_rate"],
                suggestions=[
                    "Validate tool parameters before execution",
                    "Add fallbacks for tools that fail intermittently",
                ],
            )
        )

    if metrics.cpu_usage.intensive_operations:
        opportunities.append(
            OptimizationOpportunity(
                id="opportunity_resource_cpu",
                type="resource",
                priority="medium",
                description="CPU-intensive operations: " + ", ".join(metrics.cpu_usage.intensive_operations),
                expected_improvement=clamp((metrics.cpu_usage.peak_usage - 0.5) * 100, 0.0, 100.0),
                effort="high",
                affected_metrics=["cpu_usage"],
                suggestions=["Move heavy computation out of the request path"],
            )
        )
    return opportunities


def detect_usage_patterns(
    obs: Observations,
    min_frequency: int,
    commands: list[str] | None = None,
) -> list[UsagePattern]:
    """Find repeated (tool, parameter shape) calls and consecutive tool pairs.

    Confidence of a repeated call is its frequency over all tool calls.
    The parameter shape is the sorted tuple of parameter names.
    """
    patterns: list[UsagePattern] = []
    total_calls = len(obs.tool_calls)

    shapes = Counter((call.tool, tuple(sorted(call.parameters))) for call in obs.tool_calls)
    for (tool, keys), count in shapes.items():
        if count < min_frequency:
            continue
        patterns.append(
            UsagePattern(
                id=f"repeated:{tool}({','.join(keys)})",
                type="repeated_call",
                confidence=ratio(count, total_calls),
                description=f"{tool} called {count} times with parameters ({', '.join(keys) or 'none'})",
                frequency=count,
                data={"tool": tool, "parameter_keys": list(keys), "count": count},
                insights=[f"Results of {tool} may be cacheable for identical parameters"],
            )
        )

    pairs: Counter[tuple[str, str]] = Counter()
    for sequence in obs.sequences:
        pairs.update(zip(sequence, sequence[1:]))
    total_pairs = sum(max(0, len(sequence) - 1) for sequence in obs.sequences)
    for (first, second), count in pairs.items():
        if count < min_frequency:
            continue
        patterns.append(
            UsagePattern(
                id=f"sequence:{first}->{second}",
                type="tool_sequence",
                confidence=ratio(count, total_pairs),
                description=f"{second} follows {first} {count} times",
                frequency=count,
                data={"from": first, "to": second, "count": count},
                insights=[f"Consider combining {first} and {second} into one step"],
            )
        )

    if commands:
        for command, count in Counter(commands).items():
            if count < min_frequency:
                continue
            patterns.append(
                UsagePattern(
                    id=f"command:{command}",
                    type="command_frequency",
                    confidence=ratio(count, len(commands)),
                    description=f"Command run {count} times",
                    frequency=count,
                    data={"command": command, "count": count},
                )
            )

    patterns.sort(key=lambda p: (-p.frequency, p.id))
    return patterns


def analyze_errors(obs: Observations, metrics: ExecutionMetrics) -> ErrorAnalysis:
    total = len(obs.errors)
    if not total:
        return ErrorAnalysis(error_rate=metrics.error_rate)
    by_type = Counter(error.type for error in obs.errors)
    by_message = Counter(error.message for error in obs.errors)
    return ErrorAnalysis(
        total_errors=total,
        error_rate=metrics.error_rate,
        categories=[
            ErrorCategory(name=name, count=count, percentage=clamp(count / total * 100, 0.0, 100.0))
            for name, count in sorted(by_type.items(), key=lambda item: (-item[1], item[0]))
        ],
        common_errors=[
            CommonError(message=message, count=count, frequency=ratio(count, total))
            for message, count in sorted(by_message.items(), key=lambda item: (-item[1], item[0]))[:COMMON_ERROR_LIMIT]
        ],
    )


def compute_quality_metrics(
    obs: Observations,
    metrics: ExecutionMetrics,
    config: AnalyticsConfig,
) -> QualityMetrics:
    """Quality proxies derived from success, completeness and latency.

    completeness is the share of spans that were closed normally rather
    than force-closed at end of trace.
    """
    response_quality = metrics.success_rate * 100 if metrics.total_calls else 0.0
    spans = obs.spans
    completeness = ratio(sum(1 for span in spans if not span.incomplete), len(spans)) * 100

    outcomes = (
        [call.success for call in obs.tool_calls]
        + [lookup.success for lookup in obs.external_lookups]
        + [op.success for op in obs.cache_operations]
    )
    accuracy = ratio(sum(outcomes), len(outcomes)) * 100

    satisfaction = UserSatisfaction()
    if metrics.total_calls:
        baseline = config.baseline_execution_time_ms
        average = metrics.average_execution_time
        time_score = 100.0 if average <= baseline else clamp(baseline / average) * 100
        satisfaction = UserSatisfaction(
            overall_score=round(mean([time_score, response_quality]), 2),
            response_time_satisfaction=round(time_score, 2),
            quality_satisfaction=round(response_quality, 2),
        )

    return QualityMetrics(
        response_quality=round(response_quality, 2),
        completeness=round(completeness, 2),
        accuracy=round(accuracy, 2),
        user_satisfaction=satisfaction,
        error_analysis=analyze_errors(obs, metrics),
    )


def compare_benchmarks(metrics: ExecutionMetrics, config: AnalyticsConfig) -> list[BenchmarkComparison]:
    """Compare average execution time and success rate with their baselines."""
    if not metrics.total_calls:
        return []
    warning_ratio = config.benchmark_warning_ratio

    baseline = config.baseline_execution_time_ms
    current = metrics.average_execution_time
    if current <= baseline:
        time_status = "pass"
    elif current <= baseline * warning_ratio:
        time_status = "warning"
    else:
        time_status = "fail"

    target = config.baseline_success_rate
    rate = metrics.success_rate
    if rate >= target:
        rate_status = "pass"
    elif rate >= target / warning_ratio:
        rate_status = "warning"
    else:
        rate_status = "fail"

    return [
        BenchmarkComparison(
            name="average_execution_time",
            type="performance",
            current_value=current,
            baseline_value=baseline,
            improvement=round((baseline - current) / baseline * 100, 2),
            status=time_status,
            description=f"Average tool execution time against a {baseline:.0f} ms baseline",
        ),
        BenchmarkComparison(
            name="success_rate",
            type="quality",
            current_value=rate,
            baseline_value=target,
            improvement=round((rate - target) / target * 100, 2) if target else 0.0,
            status=rate_status,
            description=f"Tool call success rate against a {target:.0%} baseline",
        ),
    ]
