"""Analytics models derived from execution traces.

Every field carries a zero default so that analytics computed from an
empty input are fully defined: consumers read .error_rate and friends
unconditionally. Rates are fractions in [0, 1]; scores and percentages
are in [0, 100].
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field

Priority = Literal["low", "medium", "high", "critical"]
Direction = Literal["improving", "degrading", "stable"]
Movement = Literal["increasing", "decreasing", "stable"]

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

UnitRate = Annotated[float, Field(ge=0.0, le=1.0)]
Percent = Annotated[float, Field(ge=0.0, le=100.0)]


class MemoryMetrics(BaseModel):
    peak_usage: float = 0.0
    average_usage: float = 0.0
    trend: Movement = "stable"


class CpuMetrics(BaseModel):
    peak_usage: UnitRate = 0.0
    average_usage: UnitRate = 0.0
    trend: Movement = "stable"
    intensive_operations: list[str] = Field(default_factory=list)


class ResponseSizeMetrics(BaseModel):
    average_size: float = 0.0
    peak_size: int = 0
    total_size: int = 0


class ExecutionMetrics(BaseModel):
    """Call counts, timings and hit rates over a set of tool calls."""

    total_calls: int = Field(default=0, ge=0)
    successful_calls: int = Field(default=0, ge=0)
    failed_calls: int = Field(default=0, ge=0)
    total_execution_time: float = 0.0
    average_execution_time: float = 0.0
    p50_execution_time: float = 0.0
    p95_execution_time: float = 0.0
    success_rate: UnitRate = 0.0
    error_rate: UnitRate = 0.0
    tool_usage_distribution: dict[str, int] = Field(default_factory=dict)
    external_lookup_calls: int = Field(default=0, ge=0)
    external_lookup_hits: int = Field(default=0, ge=0)
    external_lookup_hit_rate: UnitRate = 0.0
    average_lookup_response_time: float = 0.0
    total_token_usage: int = Field(default=0, ge=0)
    total_lookup_cost: float = 0.0
    cache_operations: int = Field(default=0, ge=0)
    cache_hits: int = Field(default=0, ge=0)
    cache_efficiency: UnitRate = 0.0
    memory_usage: MemoryMetrics = Field(default_factory=MemoryMetrics)
    cpu_usage: CpuMetrics = Field(default_factory=CpuMetrics)
    response_size: ResponseSizeMetrics = Field(default_factory=ResponseSizeMetrics)


class BottleneckAnalysis(BaseModel):
    id: str
    operation: str
    type: Literal["cpu", "memory", "io", "network", "algorithm"] = "algorithm"
    severity: Priority = "medium"
    description: str = ""
    impact: Percent = 0.0
    total_time: float = 0.0
    average_time: float = 0.0
    frequency: int = 0
    solutions: list[str] = Field(default_factory=list)


class OperationTiming(BaseModel):
    operation: str
    execution_time: float = 0.0
    percentage: Percent = 0.0
    frequency: int = 0


class ResourceUtilization(BaseModel):
    cpu: UnitRate = 0.0
    memory: float = 0.0
    io: float = 0.0
    network: float = 0.0
    efficiency: UnitRate = 0.0


class ScalabilityMetrics(BaseModel):
    """Rough serial-capacity estimate derived from observed timings."""

    rps_capacity: float = 0.0
    concurrent_capacity: float = 0.0
    response_time_under_load: float = 0.0
    scaling_efficiency: UnitRate = 0.0


class PerformanceRecommendation(BaseModel):
    id: str
    type: Literal["optimization", "scaling", "monitoring", "architecture"] = "optimization"
    priority: Priority = "medium"
    title: str
    description: str = ""
    expected_impact: str = ""
    implementation_steps: list[str] = Field(default_factory=list)
    related_metrics: list[str] = Field(default_factory=list)


class PerformanceInsights(BaseModel):
    bottlenecks: list[BottleneckAnalysis] = Field(default_factory=list)
    slowest_operations: list[OperationTiming] = Field(default_factory=list)
    resource_utilization: ResourceUtilization = Field(default_factory=ResourceUtilization)
    scalability: ScalabilityMetrics = Field(default_factory=ScalabilityMetrics)
    optimization_score: Percent = 0.0
    recommendations: list[PerformanceRecommendation] = Field(default_factory=list)


class OptimizationOpportunity(BaseModel):
    id: str
    type: Literal["cache", "external_lookup", "tool_chain", "resource", "algorithm"]
    priority: Priority = "medium"
    description: str = ""
    expected_improvement: Percent = 0.0
    effort: Literal["low", "medium", "high"] = "medium"
    affected_metrics: list[str] = Field(default_factory=list)
    suggestions: list[str] = Field(default_factory=list)


class UsagePattern(BaseModel):
    id: str
    type: Literal["repeated_call", "tool_sequence", "command_frequency", "time_based"]
    confidence: UnitRate = 0.0
    description: str = ""
    frequency: int = 0
    data: dict[str, Any] = Field(default_factory=dict)
    insights: list[str] = Field(default_factory=list)


class ErrorCategory(BaseModel):
    name: str
    count: int = 0
    percentage: Percent = 0.0


class CommonError(BaseModel):
    message: str
    count: int = 0
    frequency: UnitRate = 0.0


class ErrorAnalysis(BaseModel):
    total_errors: int = Field(default=0, ge=0)
    error_rate: UnitRate = 0.0
    categories: list[ErrorCategory] = Field(default_factory=list)
    common_errors: list[CommonError] = Field(default_factory=list)


class UserSatisfaction(BaseModel):
    """Satisfaction proxy built from success and latency, not real feedback."""

    overall_score: Percent = 0.0
    response_time_satisfaction: Percent = 0.0
    quality_satisfaction: Percent = 0.0


class QualityMetrics(BaseModel):
    response_quality: Percent = 0.0
    completeness: Percent = 0.0
    accuracy: Percent = 0.0
    user_satisfaction: UserSatisfaction = Field(default_factory=UserSatisfaction)
    error_analysis: ErrorAnalysis = Field(default_factory=ErrorAnalysis)


class TrendDataPoint(BaseModel):
    timestamp: datetime
    value: float = 0.0


class PerformanceTrend(BaseModel):
    metric: str
    direction: Direction = "stable"
    strength: UnitRate = 0.0
    data_points: list[TrendDataPoint] = Field(default_factory=list)


class UsageTrend(BaseModel):
    pattern: str
    direction: Movement = "stable"
    strength: UnitRate = 0.0
    data_points: list[TrendDataPoint] = Field(default_factory=list)


class QualityTrend(BaseModel):
    metric: str
    direction: Direction = "stable"
    strength: UnitRate = 0.0
    data_points: list[TrendDataPoint] = Field(default_factory=list)


class SeasonalPattern(BaseModel):
    name: str
    type: Literal["daily", "weekly"] = "daily"
    description: str = ""
    strength: UnitRate = 0.0
    peak_times: list[str] = Field(default_factory=list)


class TrendAnalysis(BaseModel):
    performance_trends: list[PerformanceTrend] = Field(default_factory=list)
    usage_trends: list[UsageTrend] = Field(default_factory=list)
    quality_trends: list[QualityTrend] = Field(default_factory=list)
    seasonal_patterns: list[SeasonalPattern] = Field(default_factory=list)


class BenchmarkComparison(BaseModel):
    name: str
    type: Literal["performance", "quality", "usage", "resource"] = "performance"
    current_value: float = 0.0
    baseline_value: float = 0.0
    improvement: float = 0.0  # percent relative to baseline, may be negative
    status: Literal["pass", "fail", "warning"] = "pass"
    description: str = ""


class CallTreeAnalytics(BaseModel):
    """Analytics derived from a single trace. Never hand-edited."""

    id: str = ""
    timestamp: datetime = EPOCH
    execution_metrics: ExecutionMetrics = Field(default_factory=ExecutionMetrics)
    performance_insights: PerformanceInsights = Field(default_factory=PerformanceInsights)
    optimization_opportunities: list[OptimizationOpportunity] = Field(default_factory=list)
    usage_patterns: list[UsagePattern] = Field(default_factory=list)
    quality_metrics: QualityMetrics = Field(default_factory=QualityMetrics)
    trends: TrendAnalysis = Field(default_factory=TrendAnalysis)
    benchmarks: list[BenchmarkComparison] = Field(default_factory=list)


class TimeRange(BaseModel):
    start: datetime = EPOCH
    end: datetime = EPOCH


class AggregatedAnalytics(BaseModel):
    """Analytics combined across many traces."""

    time_range: TimeRange = Field(default_factory=TimeRange)
    trace_count: int = Field(default=0, ge=0)
    successful_traces: int = Field(default=0, ge=0)
    metrics: ExecutionMetrics = Field(default_factory=ExecutionMetrics)
    insights: PerformanceInsights = Field(default_factory=PerformanceInsights)
    optimization_opportunities: list[OptimizationOpportunity] = Field(default_factory=list)
    patterns: list[UsagePattern] = Field(default_factory=list)
    quality: QualityMetrics = Field(default_factory=QualityMetrics)
    trends: TrendAnalysis = Field(default_factory=TrendAnalysis)
    benchmarks: list[BenchmarkComparison] = Field(default_factory=list)


class Recommendation(BaseModel):
    """A ranked suggestion derived from bottlenecks and opportunities."""

    id: str
    source: Literal["bottleneck", "opportunity"]
    priority: Priority = "medium"
    title: str
    description: str = ""
    expected_improvement: Percent = 0.0
    suggestions: list[str] = Field(default_factory=list)
