"""Query, maintenance and export models for the trace store."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

ComparisonOperator = Literal["gt", "gte", "lt", "lte", "eq"]
QualityLevel = Literal["high", "medium", "low"]


class PerformanceThreshold(BaseModel):
    """Predicate over one numeric trace metric, e.g. duration_ms gt 500."""

    model_config = {"extra": "forbid"}

    metric: str
    operator: ComparisonOperator
    value: float


class TraceFilters(BaseModel):
    """Search filters. All set filters must match (logical AND)."""

    model_config = {"extra": "forbid"}

    start: datetime | None = None
    end: datetime | None = None
    command: str | None = None  # case-insensitive substring
    tools: list[str] = Field(default_factory=list)  # any tool matches
    success: bool | None = None
    roles: list[str] = Field(default_factory=list)
    quality_levels: list[QualityLevel] = Field(default_factory=list)
    performance_threshold: PerformanceThreshold | None = None
    sort_by: Literal["stored_at", "duration_ms", "command"] = "stored_at"
    descending: bool = True
    limit: int | None = Field(default=None, ge=1)


class CleanupResult(BaseModel):
    deleted: int = Field(default=0, ge=0)
    archived: int = Field(default=0, ge=0)


class ToolSummary(BaseModel):
    calls: int = 0
    failures: int = 0
    traces: int = 0


class StoreStatistics(BaseModel):
    """Aggregate store figures for capacity planning."""

    total_entries: int = 0
    memory_entries: int = 0
    disk_entries: int = 0
    archived_entries: int = 0
    disk_size_bytes: int = 0
    memory_size_bytes: int = 0
    oldest_stored_at: datetime | None = None
    newest_stored_at: datetime | None = None
    sessions: dict[str, int] = Field(default_factory=dict)
    tools: dict[str, ToolSummary] = Field(default_factory=dict)


class ExportMetadata(BaseModel):
    exported_at: datetime
    record_count: int = 0
    time_range_start: datetime | None = None
    time_range_end: datetime | None = None


class ExportedData(BaseModel):
    """Read-only export snapshot. data is a list of records for json and
    CSV text for csv."""

    format: Literal["json", "csv"]
    data: Any
    metadata: ExportMetadata
