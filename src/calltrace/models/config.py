"""Project configuration model for calltrace.

Captures calltrace.yaml fields with sensible defaults for the recorder,
the trace store, the analytics aggregator and the real-time monitor.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, model_validator

CONFIG_FILENAME = "calltrace.yaml"


class RecorderConfig(BaseModel):
    """Configuration for the trace recorder."""

    model_config = {"extra": "forbid"}

    enabled: bool = True
    include_parameters: bool = True
    include_results: bool = True
    max_depth: int = Field(default=10, ge=1)
    root_tool: str = "command"


class StorageConfig(BaseModel):
    """Configuration for the JSON trace store and its retention policy.

    When archive_expired is set, the newest archive_limit expired traces
    are moved to the archive instead of deleted (0 archives all of them).
    """

    model_config = {"extra": "forbid"}

    storage_dir: str = ".calltrace"
    retention_days: float = Field(default=30, gt=0)
    archive_expired: bool = False
    archive_limit: int = Field(default=0, ge=0)
    max_memory_entries: int = Field(default=100, ge=0)


class ScoreWeights(BaseModel):
    """Weights of the optimization score components."""

    model_config = {"extra": "forbid"}

    success_rate: float = Field(default=0.6, ge=0.0)
    cache_efficiency: float = Field(default=0.2, ge=0.0)
    lookup_hit_rate: float = Field(default=0.2, ge=0.0)


class AnalyticsConfig(BaseModel):
    """Thresholds and tuning knobs for the analytics aggregator."""

    model_config = {"extra": "forbid"}

    cache_hit_rate_threshold: float = Field(default=0.8, ge=0.0, le=1.0)
    lookup_response_time_threshold_ms: float = Field(default=1000.0, gt=0)
    tool_execution_time_threshold_ms: float = Field(default=500.0, gt=0)
    error_rate_threshold: float = Field(default=0.05, ge=0.0, le=1.0)

    # Share of total tool time an operation must contribute to count as a
    # bottleneck, and the shares at which severity escalates.
    bottleneck_share: float = Field(default=0.3, gt=0.0, le=1.0)
    bottleneck_high_share: float = Field(default=0.5, gt=0.0, le=1.0)
    bottleneck_critical_share: float = Field(default=0.75, gt=0.0, le=1.0)

    min_pattern_frequency: int = Field(default=2, ge=1)
    slowest_operations: int = Field(default=3, ge=1)
    score_weights: ScoreWeights = Field(default_factory=ScoreWeights)

    baseline_execution_time_ms: float = Field(default=1000.0, gt=0)
    baseline_success_rate: float = Field(default=0.95, ge=0.0, le=1.0)
    benchmark_warning_ratio: float = Field(default=1.5, ge=1.0)

    trend_bucket: Literal["hour", "day"] = "hour"
    min_seasonal_traces: int = Field(default=24, ge=1)
    recommendation_window_hours: float = Field(default=24, gt=0)

    @model_validator(mode="after")
    def _check_bottleneck_order(self) -> "AnalyticsConfig":
        if not (self.bottleneck_share <= self.bottleneck_high_share <= self.bottleneck_critical_share):
            raise ValueError(
                "bottleneck shares must satisfy bottleneck_share <= "
                "bottleneck_high_share <= bottleneck_critical_share"
            )
        return self


class MonitorConfig(BaseModel):
    """Configuration for the real-time monitor.

    thresholds maps each alerted metric (response_time, error_rate,
    memory_usage, cpu_usage) to its breach value. Entries are checked at
    evaluation time so a bad value disables only that metric.
    """

    model_config = {"extra": "forbid"}

    tick_interval_seconds: float = Field(default=1.0, gt=0)
    window_seconds: float = Field(default=3600.0, gt=0)
    bucket_seconds: float = Field(default=60.0, gt=0)
    max_staleness_seconds: float = Field(default=300.0, gt=0)

    enable_alerts: bool = True
    thresholds: dict[str, float | None] = Field(
        default_factory=lambda: {
            "response_time": 1000.0,
            "error_rate": 0.05,
            "memory_usage": 0.8,
            "cpu_usage": 0.8,
        }
    )
    medium_below_ratio: float = Field(default=1.5, gt=1.0)
    high_below_ratio: float = Field(default=3.0, gt=1.0)
    hysteresis_ticks: int = Field(default=2, ge=2)
    recovery_ratio: float = Field(default=0.9, gt=0.0, le=1.0)
    alert_history_size: int = Field(default=100, ge=1)

    memory_limit_bytes: int = Field(default=512 * 1024 * 1024, gt=0)
    persist_ingested: bool = False

    @model_validator(mode="after")
    def _check_ratios(self) -> "MonitorConfig":
        if self.high_below_ratio < self.medium_below_ratio:
            raise ValueError("high_below_ratio must be >= medium_below_ratio")
        return self


class ProjectConfig(BaseModel):
    """Project-level configuration loaded from calltrace.yaml."""

    model_config = {"extra": "forbid"}

    recorder: RecorderConfig = Field(default_factory=RecorderConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    analytics: AnalyticsConfig = Field(default_factory=AnalyticsConfig)
    monitor: MonitorConfig = Field(default_factory=MonitorConfig)


def find_project_root(start: Path | None = None) -> Path:
    """Walk up from start (default: cwd) looking for calltrace.yaml or .calltrace/.

    Args:
        start: Starting path (file or directory). Defaults to cwd.

    Returns:
        Path to the directory containing calltrace.yaml or .calltrace/,
        or cwd if neither is found.
    """
    current = (start or Path.cwd()).resolve()
    if current.is_file():
        current = current.parent
    while current != current.parent:
        if (current / CONFIG_FILENAME).exists() or (current / ".calltrace").exists():
            return current
        current = current.parent
    return Path.cwd()


def load_project_config(project_root: Path | None = None) -> ProjectConfig:
    """Load ProjectConfig from calltrace.yaml. Returns defaults if not found.

    Args:
        project_root: Path to the project root directory. If None,
            uses find_project_root() to locate it.

    Returns:
        Validated ProjectConfig instance.
    """
    if project_root is None:
        project_root = find_project_root()
    config_path = project_root / CONFIG_FILENAME
    if not config_path.exists():
        return ProjectConfig()
    import yaml

    raw = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    if raw is None:
        return ProjectConfig()
    return ProjectConfig.model_validate(raw)
