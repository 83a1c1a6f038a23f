"""Tests for the calltrace CLI: report, traces, show, stats, cleanup, export."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from unittest.mock import patch

from typer.testing import CliRunner

from calltrace import __version__
from calltrace.analytics.aggregator import AnalyticsAggregator
from calltrace.cli.main import app
from calltrace.recording.recorder import TraceRecorder
from calltrace.storage.trace_store import TraceStore

runner = CliRunner()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _seed(
    tmp_path: Path,
    runs: list[tuple[str, list[tuple[str, float, bool]], str | None]],
) -> list[str]:
    """Record and store one trace per (command, calls, error_message) tuple."""
    store = TraceStore(tmp_path)
    ids = []
    for command, calls, error_message in runs:
        recorder = TraceRecorder()
        recorder.start_trace(command)
        for tool, ms, ok in calls:
            recorder.add_tool_call(tool, {"path": "src"}, ms, ok)
        flow = recorder.end_trace()
        trace = recorder.build_stored_trace(
            flow,
            analytics=AnalyticsAggregator().process_trace(flow),
            error_message=error_message,
        )
        ids.append(asyncio.run(store.store(trace)))
    return ids


def _default_seed(tmp_path: Path) -> list[str]:
    return _seed(
        tmp_path,
        [
            ("build login page", [("scan", 100, True), ("generate", 900, True)], None),
            ("fix failing test", [("scan", 50, True), ("write", 20, False)], "exit 1"),
        ],
    )


class TestVersion:
    def test_version_flag(self):
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert f"calltrace {__version__}" in result.output


class TestReport:
    def test_no_storage_dir(self, tmp_path: Path):
        with patch("calltrace.cli.report_cmd.find_project_root", return_value=tmp_path):
            result = runner.invoke(app, ["report"])
        assert result.exit_code == 0
        assert "No .calltrace/ directory found" in result.output

    def test_no_traces_in_range(self, tmp_path: Path):
        TraceStore(tmp_path).ensure_dirs()
        with patch("calltrace.cli.report_cmd.find_project_root", return_value=tmp_path):
            result = runner.invoke(app, ["report", "--hours", "2"])
        assert result.exit_code == 0
        assert "No traces found in the last 2 hours." in result.output

    def test_report_aggregates(self, tmp_path: Path):
        _default_seed(tmp_path)
        with patch("calltrace.cli.report_cmd.find_project_root", return_value=tmp_path):
            result = runner.invoke(app, ["report"])
        assert result.exit_code == 0, result.output
        assert "1/2 succeeded" in result.output
        assert "Recommendations" in result.output
        assert "generate" in result.output

    def test_report_command_filter(self, tmp_path: Path):
        _default_seed(tmp_path)
        with patch("calltrace.cli.report_cmd.find_project_root", return_value=tmp_path):
            result = runner.invoke(app, ["report", "--command", "login"])
        assert result.exit_code == 0
        assert "1/1 succeeded" in result.output


class TestTraces:
    def test_lists_traces(self, tmp_path: Path):
        _default_seed(tmp_path)
        with patch("calltrace.cli.traces_cmd.find_project_root", return_value=tmp_path):
            result = runner.invoke(app, ["traces"])
        assert result.exit_code == 0
        assert "2 trace(s) shown." in result.output

    def test_failed_filter(self, tmp_path: Path):
        _default_seed(tmp_path)
        with patch("calltrace.cli.traces_cmd.find_project_root", return_value=tmp_path):
            result = runner.invoke(app, ["traces", "--failed"])
        assert result.exit_code == 0
        assert "1 trace(s) shown." in result.output

    def test_no_match(self, tmp_path: Path):
        _default_seed(tmp_path)
        with patch("calltrace.cli.traces_cmd.find_project_root", return_value=tmp_path):
            result = runner.invoke(app, ["traces", "--tool", "deploy"])
        assert result.exit_code == 0
        assert "No matching traces found." in result.output

    def test_show_trace(self, tmp_path: Path):
        ids = _default_seed(tmp_path)
        with patch("calltrace.cli.traces_cmd.find_project_root", return_value=tmp_path):
            result = runner.invoke(app, ["show", ids[1]])
        assert result.exit_code == 0
        assert "Call Tree" in result.output
        assert "write" in result.output
        assert "exit 1" in result.output

    def test_show_unknown_trace(self, tmp_path: Path):
        _default_seed(tmp_path)
        with patch("calltrace.cli.traces_cmd.find_project_root", return_value=tmp_path):
            result = runner.invoke(app, ["show", "nope"])
        assert result.exit_code == 1
        assert "Trace 'nope' not found." in result.output


class TestStoreCommands:
    def test_stats(self, tmp_path: Path):
        _default_seed(tmp_path)
        with patch("calltrace.cli.store_cmd.find_project_root", return_value=tmp_path):
            result = runner.invoke(app, ["stats"])
        assert result.exit_code == 0
        assert "Traces" in result.output
        assert "scan" in result.output

    def test_cleanup_force(self, tmp_path: Path):
        _default_seed(tmp_path)
        with patch("calltrace.cli.store_cmd.find_project_root", return_value=tmp_path):
            result = runner.invoke(app, ["cleanup", "--force"])
        assert result.exit_code == 0
        assert "Deleted 2 trace(s), archived 0." in result.output
        assert asyncio.run(TraceStore(tmp_path).search()) == []

    def test_cleanup_keeps_recent(self, tmp_path: Path):
        _default_seed(tmp_path)
        with patch("calltrace.cli.store_cmd.find_project_root", return_value=tmp_path):
            result = runner.invoke(app, ["cleanup"])
        assert result.exit_code == 0
        assert "Deleted 0 trace(s), archived 0." in result.output

    def test_export_json_stdout(self, tmp_path: Path):
        _default_seed(tmp_path)
        with patch("calltrace.cli.store_cmd.find_project_root", return_value=tmp_path):
            result = runner.invoke(app, ["export"])
        assert result.exit_code == 0
        payload = json.loads(result.output)
        assert payload["metadata"]["record_count"] == 2
        assert {record["command"] for record in payload["data"]} == {"build login page", "fix failing test"}

    def test_export_csv_to_file(self, tmp_path: Path):
        _default_seed(tmp_path)
        target = tmp_path / "out.csv"
        with patch("calltrace.cli.store_cmd.find_project_root", return_value=tmp_path):
            result = runner.invoke(app, ["export", "--format", "csv", "--output", str(target), "--command", "login"])
        assert result.exit_code == 0
        assert "Exported 1 trace(s)" in result.output
        lines = target.read_text().strip().split("\n")
        assert lines[0].startswith("id,command")
        assert len(lines) == 2

    def test_export_unknown_format(self, tmp_path: Path):
        _default_seed(tmp_path)
        with patch("calltrace.cli.store_cmd.find_project_root", return_value=tmp_path):
            result = runner.invoke(app, ["export", "--format", "xml"])
        assert result.exit_code == 2
