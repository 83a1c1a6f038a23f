"""Boundary checks for opaque trace payloads.

Parameters, results and error context are schema-less key/value bags.
They are checked only here, at the recorder boundary: anything that is
not JSON-serializable is stringified, secrets are redacted, and oversized
strings are truncated, so the stored trace round-trips exactly.
"""

from __future__ import annotations

import math
import re
from collections.abc import Mapping
from typing import Any

from calltrace.errors import TraceValidationError

# Regex patterns that match common secret formats in parameter values.
REDACTION_PATTERNS: list[str] = [
    r"(?i)bearer\s+[a-zA-Z0-9._-]+",
    r"sk-[a-zA-Z0-9]{20,}",
    r"(?i)(api[_-]?key|secret|password|token|authorization)\s*[:=]\s*\S+",
    r"sk-ant-[a-zA-Z0-9-]{20,}",
    r"ghp_[a-zA-Z0-9]{36}",
    r"gho_[a-zA-Z0-9]{36}",
]

_COMPILED_PATTERNS: list[re.Pattern[str]] = [re.compile(p) for p in REDACTION_PATTERNS]

# Keys whose values are always replaced, whatever they contain.
SECRET_KEYS: frozenset[str] = frozenset(
    {"api_key", "apikey", "password", "secret", "token", "authorization"}
)

REDACTED_PLACEHOLDER = "[REDACTED]"
MAX_STRING_SIZE: int = 10_000


def redact_content(content: str) -> str:
    """Replace secret patterns in content with [REDACTED]."""
    for pattern in _COMPILED_PATTERNS:
        content = pattern.sub(REDACTED_PLACEHOLDER, content)
    return content


def truncate_content(content: str, max_size: int = MAX_STRING_SIZE) -> str:
    """Truncate content to max_size characters, appending a notice if truncated."""
    if len(content) <= max_size:
        return content
    return content[:max_size] + "... [truncated]"


def _sanitize(value: Any, depth: int = 0) -> Any:
    if depth > 32:
        return truncate_content(str(value))
    if value is None or isinstance(value, bool | int):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    if isinstance(value, str):
        return truncate_content(redact_content(value))
    if isinstance(value, Mapping):
        out: dict[str, Any] = {}
        for key, item in value.items():
            key = str(key)
            if key.lower() in SECRET_KEYS:
                out[key] = REDACTED_PLACEHOLDER
            else:
                out[key] = _sanitize(item, depth + 1)
        return out
    if isinstance(value, list | tuple | set | frozenset):
        items = sorted(value, key=repr) if isinstance(value, set | frozenset) else value
        return [_sanitize(item, depth + 1) for item in items]
    # Unknown objects (datetimes, paths, exceptions, ...) are stored as text.
    return truncate_content(redact_content(str(value)))


def coerce_payload(value: Any) -> Any:
    """Return a JSON-safe copy of an opaque payload."""
    return _sanitize(value)


def coerce_bag(value: Any) -> dict[str, Any]:
    """Return a JSON-safe key/value bag.

    None becomes {}; a non-mapping value is wrapped as {"value": ...}.
    """
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        return {"value": _sanitize(value)}
    return _sanitize(value)


def coerce_duration(value: Any, field: str = "duration") -> float:
    """Return a finite, non-negative duration in milliseconds.

    Raises:
        TraceValidationError: If the value is missing, non-numeric,
            negative or not finite.
    """
    if value is None or isinstance(value, bool):
        raise TraceValidationError(field, "missing")
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise TraceValidationError(field, f"not a number: {value!r}") from exc
    if not math.isfinite(number) or number < 0:
        raise TraceValidationError(field, f"out of range: {value!r}")
    return number


def coerce_name(value: Any, default: str = "unknown") -> str:
    """Return a non-empty stripped name, or default."""
    if value is None:
        return default
    name = str(value).strip()
    return name or default
