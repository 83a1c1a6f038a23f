"""Structured logging for calltrace, built on structlog.

The stdlib "calltrace" logger carries a NullHandler until setup_logging()
attaches a real handler, so importing the library never writes output.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

import structlog

ROOT_LOGGER_NAME = "calltrace"

_handler: logging.Handler | None = None


def _json_formatter(logger, method_name, event_dict):
    """Render an event dict as a single JSON line."""
    log_data = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "level": event_dict.pop("level", "info"),
    }
    if "logger" in event_dict:
        log_data["logger"] = event_dict.pop("logger")
    if "event" in event_dict:
        log_data["message"] = event_dict.pop("event")
    log_data.update(event_dict)
    return json.dumps(log_data, ensure_ascii=False, default=str)


_stdlib_logger = logging.getLogger(ROOT_LOGGER_NAME)
_stdlib_logger.addHandler(logging.NullHandler())
_stdlib_logger.propagate = False
_stdlib_logger.setLevel(logging.DEBUG)

structlog.configure(
    processors=[
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        _json_formatter,
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)


def get_logger(name: str = ROOT_LOGGER_NAME) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger under the calltrace namespace."""
    if not name.startswith(ROOT_LOGGER_NAME):
        name = f"{ROOT_LOGGER_NAME}.{name}"
    return structlog.get_logger(name)


def setup_logging(log_file: Path | None = None, verbose: bool = False) -> None:
    """Attach a handler to the calltrace logger.

    Args:
        log_file: Append JSON lines to this file. When None, log to stderr.
        verbose: Emit DEBUG events; otherwise INFO and above.
    """
    global _handler

    if _handler is not None:
        _stdlib_logger.removeHandler(_handler)
        _handler.close()

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        _handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
    else:
        _handler = logging.StreamHandler(sys.stderr)
    _handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    _stdlib_logger.addHandler(_handler)


def close_logging() -> None:
    """Detach and close the handler installed by setup_logging()."""
    global _handler

    if _handler is not None:
        _stdlib_logger.removeHandler(_handler)
        _handler.close()
        _handler = None
