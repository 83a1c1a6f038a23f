"""Analytics package: metrics, insights, trends and export snapshots.

Provides the AnalyticsAggregator facade plus the pure computation
modules it delegates to.
"""

from calltrace.analytics.aggregator import AnalyticsAggregator, analytics_id
from calltrace.analytics.export import export_analytics, export_traces
from calltrace.analytics.metrics import Observations, compute_execution_metrics

__all__ = [
    "AnalyticsAggregator",
    "Observations",
    "analytics_id",
    "compute_execution_metrics",
    "export_analytics",
    "export_traces",
]
