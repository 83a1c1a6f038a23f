"""Pydantic data models shared by every calltrace component."""

from calltrace.models.analytics import AggregatedAnalytics, CallTreeAnalytics, Recommendation
from calltrace.models.monitor import LiveMetrics, MonitorState, RealTimeAlert
from calltrace.models.query import CleanupResult, StoreStatistics, TraceFilters
from calltrace.models.trace import ExecutionFlow, StoredTrace, TraceNode

__all__ = [
    "AggregatedAnalytics",
    "CallTreeAnalytics",
    "CleanupResult",
    "ExecutionFlow",
    "LiveMetrics",
    "MonitorState",
    "RealTimeAlert",
    "Recommendation",
    "StoreStatistics",
    "StoredTrace",
    "TraceFilters",
    "TraceNode",
]
