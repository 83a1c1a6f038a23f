"""Recording subpackage: the trace recorder and its payload boundary checks."""

from calltrace.recording.payload import coerce_bag, coerce_payload, redact_content
from calltrace.recording.recorder import ToolCallTracker, TraceRecorder

__all__ = [
    "ToolCallTracker",
    "TraceRecorder",
    "coerce_bag",
    "coerce_payload",
    "redact_content",
]
