"""Models exposed by the real-time monitor."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from calltrace.models.analytics import EPOCH, Percent, UnitRate


class MonitorState(str, Enum):
    """Lifecycle state of a real-time monitor."""

    stopped = "stopped"
    running = "running"


class AlertCategory(str, Enum):
    performance = "performance"
    error = "error"
    resource = "resource"
    quality = "quality"
    security = "security"


class AlertSeverity(str, Enum):
    low = "low"
    medium = "medium"
    high = "high"
    critical = "critical"


class LiveMetrics(BaseModel):
    """Rolling snapshot recomputed on every monitor tick.

    Ratios are fractions in [0, 1]; health_score is in [0, 100].
    """

    average_response_time: float = 0.0
    error_rate: UnitRate = 0.0
    memory_usage: UnitRate = 0.0
    cpu_usage: UnitRate = 0.0
    request_rate: float = 0.0
    health_score: Percent = 100.0
    active_alerts: int = Field(default=0, ge=0)
    cache_hit_rate: UnitRate = 0.0
    external_lookup_hit_rate: UnitRate = 0.0
    window_traces: int = Field(default=0, ge=0)
    last_updated: datetime = EPOCH


class RealTimeAlert(BaseModel):
    """An alert raised when a live metric crosses its threshold."""

    id: str
    metric: str
    category: AlertCategory
    severity: AlertSeverity
    title: str
    message: str
    data: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime
    resolved_at: datetime | None = None
    active: bool = True


class PerformanceTrends(BaseModel):
    """Per-trace series reconstructed from the sliding window, oldest first."""

    timestamps: list[datetime] = Field(default_factory=list)
    response_time: list[float] = Field(default_factory=list)
    error_rate: list[float] = Field(default_factory=list)
    memory_usage: list[float] = Field(default_factory=list)
    cpu_usage: list[float] = Field(default_factory=list)
