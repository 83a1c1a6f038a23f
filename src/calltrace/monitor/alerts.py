"""Threshold alerting with severity breakpoints and hysteresis.

A breach on a tick creates an alert, or refreshes the active one for that
metric. The alert is deactivated only after the metric has stayed below
threshold x recovery_ratio for hysteresis_ticks consecutive ticks, so a
single good sample never resolves it.
"""

from __future__ import annotations

import math
from collections import deque
from dataclasses import dataclass
from datetime import datetime

from calltrace.errors import AlertEvaluationError
from calltrace.logging_setup import get_logger
from calltrace.models.config import MonitorConfig
from calltrace.models.monitor import AlertCategory, AlertSeverity, RealTimeAlert

logger = get_logger(__name__)

METRIC_CATEGORIES: dict[str, AlertCategory] = {
    "response_time": AlertCategory.performance,
    "error_rate": AlertCategory.error,
    "memory_usage": AlertCategory.resource,
    "cpu_usage": AlertCategory.resource,
}

METRIC_TITLES: dict[str, str] = {
    "response_time": "High response time",
    "error_rate": "High error rate",
    "memory_usage": "High memory usage",
    "cpu_usage": "High CPU usage",
}


@dataclass
class _MetricState:
    alert: RealTimeAlert | None = None
    recovery_ticks: int = 0


def severity_for(value: float, threshold: float, config: MonitorConfig) -> AlertSeverity:
    """Map how far value exceeds threshold onto a severity."""
    excess = value / threshold
    if excess < config.medium_below_ratio:
        return AlertSeverity.medium
    if excess < config.high_below_ratio:
        return AlertSeverity.high
    return AlertSeverity.critical


def _format(metric: str, value: float) -> str:
    if metric == "response_time":
        return f"{value:.0f} ms"
    return f"{value:.1%}"


class AlertEvaluator:
    """Evaluates live metric values against configured thresholds."""

    def __init__(self, config: MonitorConfig | None = None) -> None:
        self.config = config or MonitorConfig()
        self._states: dict[str, _MetricState] = {}
        self._history: deque[RealTimeAlert] = deque(maxlen=self.config.alert_history_size)
        self._sequence = 0

    def threshold(self, metric: str) -> float:
        """Return the configured threshold for metric.

        Raises:
            AlertEvaluationError: If the threshold is missing or not a
                positive finite number.
        """
        raw = self.config.thresholds.get(metric)
        if raw is None:
            raise AlertEvaluationError(metric, "no threshold configured")
        value = float(raw)
        if not math.isfinite(value) or value <= 0:
            raise AlertEvaluationError(metric, f"invalid threshold {raw!r}")
        return value

    def evaluate(self, values: dict[str, float], now: datetime) -> list[RealTimeAlert]:
        """Evaluate one tick.

        Metrics whose threshold is invalid are skipped for this tick with a
        warning; the others are still evaluated.

        Args:
            values: Current value per metric. Metrics absent here are not
                evaluated.
            now: Tick time.

        Returns:
            Alerts created or resolved on this tick.
        """
        changed: list[RealTimeAlert] = []
        for metric in self.config.thresholds:
            if metric not in values:
                continue
            try:
                threshold = self.threshold(metric)
            except AlertEvaluationError as exc:
                logger.warning("alert_metric_skipped", metric=metric, error=str(exc))
                continue
            value = values[metric]
            state = self._states.setdefault(metric, _MetricState())
            if value > threshold:
                state.recovery_ticks = 0
                if state.alert is None:
                    state.alert = self._open(metric, value, threshold, now)
                    changed.append(state.alert)
                else:
                    self._refresh(state.alert, value, threshold, now)
            elif state.alert is not None:
                if value < threshold * self.config.recovery_ratio:
                    state.recovery_ticks += 1
                else:
                    state.recovery_ticks = 0
                if state.recovery_ticks >= self.config.hysteresis_ticks:
                    changed.append(self._close(state, now))
        return changed

    def resolve(self, alert_id: str, now: datetime) -> bool:
        """Manually resolve an active alert. Returns False if none matched."""
        for state in self._states.values():
            if state.alert is not None and state.alert.id == alert_id:
                self._close(state, now)
                return True
        return False

    def active_alerts(self) -> list[RealTimeAlert]:
        alerts = [s.alert for s in self._states.values() if s.alert is not None]
        return [a.model_copy() for a in sorted(alerts, key=lambda a: a.created_at)]

    def history(self) -> list[RealTimeAlert]:
        """Alerts created so far, oldest first, bounded by alert_history_size."""
        return [a.model_copy() for a in self._history]

    def reset(self) -> None:
        self._states.clear()

    def _open(self, metric: str, value: float, threshold: float, now: datetime) -> RealTimeAlert:
        self._sequence += 1
        severity = severity_for(value, threshold, self.config)
        alert = RealTimeAlert(
            id=f"alert_{metric}_{self._sequence}",
            metric=metric,
            category=METRIC_CATEGORIES.get(metric, AlertCategory.performance),
            severity=severity,
            title=METRIC_TITLES.get(metric, f"Threshold exceeded: {metric}"),
            message=f"{metric} is {_format(metric, value)}, above threshold {_format(metric, threshold)}",
            data={"value": value, "threshold": threshold},
            created_at=now,
            updated_at=now,
        )
        self._history.append(alert)
        logger.warning("alert_raised", metric=metric, severity=severity.value, value=value, threshold=threshold)
        return alert

    def _refresh(self, alert: RealTimeAlert, value: float, threshold: float, now: datetime) -> None:
        alert.severity = severity_for(value, threshold, self.config)
        alert.message = f"{alert.metric} is {_format(alert.metric, value)}, above threshold {_format(alert.metric, threshold)}"
        alert.data = {"value": value, "threshold": threshold}
        alert.updated_at = now

    def _close(self, state: _MetricState, now: datetime) -> RealTimeAlert:
        alert = state.alert
        alert.active = False
        alert.resolved_at = now
        alert.updated_at = now
        state.alert = None
        state.recovery_ticks = 0
        logger.info("alert_resolved", metric=alert.metric, alert_id=alert.id)
        return alert.model_copy()
