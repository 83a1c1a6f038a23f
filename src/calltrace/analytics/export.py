"""Export snapshots for read-only consumers.

JSON exports carry a list of records; CSV exports carry the rendered text
(one header row, then one row per record) built with the csv module.
"""

from __future__ import annotations

import csv
import io
from collections.abc import Iterable, Sequence
from datetime import datetime, timezone
from typing import Any

from calltrace.errors import TraceValidationError
from calltrace.models.analytics import AggregatedAnalytics
from calltrace.models.query import ExportedData, ExportMetadata
from calltrace.models.trace import StoredTrace

EXPORT_FORMATS = ("json", "csv")

TRACE_FIELDS = [
    "id",
    "command",
    "stored_at",
    "duration_ms",
    "success",
    "tool_calls",
    "failed_calls",
    "external_lookups",
    "cache_operations",
    "errors",
    "tools",
    "optimization_score",
    "error_message",
]


def check_format(format: str) -> str:
    fmt = (format or "").lower()
    if fmt not in EXPORT_FORMATS:
        raise TraceValidationError("format", f"unsupported export format {format!r}")
    return fmt


def to_csv(rows: Iterable[dict[str, Any]], fieldnames: Sequence[str]) -> str:
    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=list(fieldnames), extrasaction="ignore", lineterminator="\n")
    writer.writeheader()
    for row in rows:
        writer.writerow(row)
    return buffer.getvalue()


def summarize_trace(trace: StoredTrace) -> dict[str, Any]:
    """Flatten a trace into one CSV-friendly summary row."""
    flow = trace.execution_flow
    score = trace.analytics.performance_insights.optimization_score if trace.analytics else ""
    return {
        "id": trace.id or "",
        "command": trace.command,
        "stored_at": trace.stored_at.isoformat(),
        "duration_ms": trace.duration_ms,
        "success": trace.success,
        "tool_calls": len(flow.tool_calls),
        "failed_calls": sum(1 for call in flow.tool_calls if not call.success),
        "external_lookups": len(flow.external_lookups),
        "cache_operations": len(flow.cache_operations),
        "errors": len(flow.errors),
        "tools": ";".join(sorted(trace.tools_used())),
        "optimization_score": score,
        "error_message": trace.error_message or "",
    }


def _metadata(count: int, moments: Sequence[datetime], now: datetime | None) -> ExportMetadata:
    return ExportMetadata(
        exported_at=now or datetime.now(timezone.utc),
        record_count=count,
        time_range_start=min(moments) if moments else None,
        time_range_end=max(moments) if moments else None,
    )


def export_traces(traces: Sequence[StoredTrace], format: str = "json", now: datetime | None = None) -> ExportedData:
    """Export full traces (json) or per-trace summaries (csv)."""
    fmt = check_format(format)
    if fmt == "json":
        data: Any = [trace.model_dump(mode="json") for trace in traces]
    else:
        data = to_csv((summarize_trace(trace) for trace in traces), TRACE_FIELDS)
    return ExportedData(
        format=fmt,
        data=data,
        metadata=_metadata(len(traces), [t.stored_at for t in traces], now),
    )


def analytics_rows(aggregate: AggregatedAnalytics) -> list[dict[str, Any]]:
    """Scalar metrics of an aggregate as metric/value rows."""
    rows = [
        {"metric": "trace_count", "value": aggregate.trace_count},
        {"metric": "successful_traces", "value": aggregate.successful_traces},
    ]
    for name, value in aggregate.metrics.model_dump().items():
        if isinstance(value, int | float) and not isinstance(value, bool):
            rows.append({"metric": name, "value": value})
    for name, count in aggregate.metrics.tool_usage_distribution.items():
        rows.append({"metric": f"tool_usage.{name}", "value": count})
    rows.append({"metric": "optimization_score", "value": aggregate.insights.optimization_score})
    rows.append({"metric": "response_quality", "value": aggregate.quality.response_quality})
    rows.append({"metric": "completeness", "value": aggregate.quality.completeness})
    return rows


def export_analytics(aggregate: AggregatedAnalytics, format: str = "json", now: datetime | None = None) -> ExportedData:
    fmt = check_format(format)
    if fmt == "json":
        data: Any = [aggregate.model_dump(mode="json")]
        count = 1
    else:
        rows = analytics_rows(aggregate)
        data = to_csv(rows, ["metric", "value"])
        count = len(rows)
    moments = [aggregate.time_range.start, aggregate.time_range.end] if aggregate.trace_count else []
    return ExportedData(format=fmt, data=data, metadata=_metadata(count, moments, now))
