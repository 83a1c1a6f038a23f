"""Storage subpackage: durable JSON persistence for completed traces."""

from calltrace.storage.trace_store import TraceStore, matches, metric_value, quality_level

__all__ = ["TraceStore", "matches", "metric_value", "quality_level"]
