"""Tests for calltrace.analytics.export -- json/csv snapshots."""

from __future__ import annotations

import csv
import io
from datetime import datetime, timedelta, timezone

import pytest

from calltrace.analytics.aggregator import AnalyticsAggregator
from calltrace.analytics.export import (
    TRACE_FIELDS,
    check_format,
    export_analytics,
    export_traces,
    summarize_trace,
)
from calltrace.errors import TraceValidationError
from calltrace.models.analytics import AggregatedAnalytics
from calltrace.recording.recorder import TraceRecorder

NOW = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)


def _make_trace(command: str = "build, then test", offset_minutes: int = 0, fail: bool = False):
    recorder = TraceRecorder(clock=lambda: NOW + timedelta(minutes=offset_minutes))
    recorder.start_trace(command)
    recorder.add_tool_call("scan", {}, 40, True)
    recorder.add_tool_call("write", {}, 60, not fail, error="disk full" if fail else None)
    recorder.add_external_lookup("docs", {}, 120, True, cache_hit=True)
    flow = recorder.end_trace()
    trace = recorder.build_stored_trace(flow, analytics=AnalyticsAggregator().process_trace(flow))
    trace.id = f"trace-{offset_minutes}"
    return trace


def test_check_format_normalizes_case():
    assert check_format("CSV") == "csv"
    with pytest.raises(TraceValidationError):
        check_format("parquet")


def test_summarize_trace():
    row = summarize_trace(_make_trace(fail=True))
    assert set(row) == set(TRACE_FIELDS)
    assert row["tool_calls"] == 2
    assert row["failed_calls"] == 1
    assert row["external_lookups"] == 1
    assert row["tools"] == "scan;write"
    assert row["errors"] == 1


def test_export_traces_json():
    traces = [_make_trace(offset_minutes=0), _make_trace(offset_minutes=30)]
    exported = export_traces(traces, "json", now=NOW)
    assert exported.metadata.record_count == 2
    assert exported.metadata.exported_at == NOW
    assert exported.metadata.time_range_start == NOW
    assert exported.metadata.time_range_end == NOW + timedelta(minutes=30)
    assert exported.data[0]["execution_flow"]["root_id"] == "node_1"


def test_export_traces_csv_quotes_commas():
    exported = export_traces([_make_trace()], "csv", now=NOW)
    rows = list(csv.DictReader(io.StringIO(exported.data)))
    assert len(rows) == 1
    assert rows[0]["command"] == "build, then test"
    assert rows[0]["success"] == "True"


def test_export_empty():
    exported = export_traces([], "json", now=NOW)
    assert exported.data == []
    assert exported.metadata.record_count == 0
    assert exported.metadata.time_range_start is None


def test_export_analytics_csv():
    aggregate = AnalyticsAggregator().process_traces([_make_trace(), _make_trace(offset_minutes=5)])
    exported = export_analytics(aggregate, "csv", now=NOW)
    rows = {row["metric"]: row["value"] for row in csv.DictReader(io.StringIO(exported.data))}
    assert rows["trace_count"] == "2"
    assert rows["total_calls"] == "4"
    assert rows["tool_usage.scan"] == "2"
    assert "optimization_score" in rows
    assert exported.metadata.record_count == len(rows)


def test_export_analytics_json_of_empty_aggregate():
    exported = export_analytics(AggregatedAnalytics(), "json", now=NOW)
    assert exported.metadata.record_count == 1
    assert exported.metadata.time_range_start is None
    assert exported.data[0]["trace_count"] == 0
