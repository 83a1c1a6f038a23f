"""Real-time monitor: sliding window, alert evaluation and live metrics."""

from calltrace.monitor.alerts import AlertEvaluator, severity_for
from calltrace.monitor.realtime import RealTimeMonitor
from calltrace.monitor.window import SlidingWindow

__all__ = ["AlertEvaluator", "RealTimeMonitor", "SlidingWindow", "severity_for"]
