"""Tests for structured JSON logging setup."""

from __future__ import annotations

import json
from pathlib import Path

from calltrace.logging_setup import close_logging, get_logger, setup_logging


def test_file_logging_writes_json_lines(tmp_path: Path):
    log_file = tmp_path / "logs" / "calltrace.log"
    setup_logging(log_file=log_file)
    try:
        get_logger(__name__).info("trace_stored", trace_id="abc", command="build")
        get_logger(__name__).debug("hidden_debug_event")
    finally:
        close_logging()

    lines = [json.loads(line) for line in log_file.read_text().splitlines()]
    assert len(lines) == 1
    record = lines[0]
    assert record["message"] == "trace_stored"
    assert record["level"] == "info"
    assert record["trace_id"] == "abc"
    assert record["logger"].startswith("calltrace")


def test_verbose_logging_includes_debug(tmp_path: Path):
    log_file = tmp_path / "debug.log"
    setup_logging(log_file=log_file, verbose=True)
    try:
        get_logger("recorder").debug("span_ignored_no_trace", tool="scan")
    finally:
        close_logging()
    assert "span_ignored_no_trace" in log_file.read_text()
