"""TraceRecorder building one hierarchical trace per command execution.

The recorder owns a node arena (id -> TraceNode) rooted at a single
command node, plus flat side lists of tool calls, external lookups, cache
operations, samples, errors and patterns. Side-list entries are appended
when an operation completes, so their order is completion order.

Recording is best-effort: no public method raises for malformed input.
Bad values are replaced with safe defaults and a warning is logged.
"""

from __future__ import annotations

import math
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, get_args

from calltrace.errors import TraceValidationError
from calltrace.logging_setup import get_logger
from calltrace.models.config import RecorderConfig
from calltrace.models.trace import (
    INCOMPLETE_ERROR,
    CacheOperationDetail,
    ErrorRecord,
    ExecutionFlow,
    ExternalLookupDetail,
    PerformanceSample,
    ResourceUsageSample,
    StoredTrace,
    ToolCallDetail,
    TraceNode,
    TracePhase,
    UserPatternRecord,
)
from calltrace.recording.payload import (
    coerce_bag,
    coerce_duration,
    coerce_name,
    coerce_payload,
)

if TYPE_CHECKING:
    from calltrace.analytics.aggregator import AnalyticsAggregator
    from calltrace.models.analytics import CallTreeAnalytics

logger = get_logger(__name__)

CACHE_OPERATIONS = frozenset({"get", "set", "delete", "clear"})
RESOURCE_TYPES = frozenset({"memory", "cpu", "io", "network"})
DEFAULT_ERROR = "unknown error"
PHASES = frozenset(get_args(TracePhase))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _elapsed_ms(start: datetime, end: datetime) -> float:
    return max(0.0, (end - start).total_seconds() * 1000.0)


class ToolCallTracker:
    """Context helper handed out by TraceRecorder.track_tool_call()."""

    def __init__(self, node_id: str | None) -> None:
        self.node_id = node_id
        self.success = True
        self.error: str | None = None
        self.result: Any = None
        self.memory_usage_bytes: int | None = None
        self.cpu_usage_ratio: float | None = None

    def set_result(self, result: Any) -> None:
        self.result = result

    def set_error(self, error: Any) -> None:
        self.success = False
        self.error = coerce_name(error, default=DEFAULT_ERROR)

    def set_resources(
        self,
        memory_usage_bytes: int | None = None,
        cpu_usage_ratio: float | None = None,
    ) -> None:
        self.memory_usage_bytes = memory_usage_bytes
        self.cpu_usage_ratio = cpu_usage_ratio


class TraceRecorder:
    """Builds the call tree and side lists for one in-flight command.

    Only one trace may be open per instance; concurrent commands need
    separate recorders. Node insertion and side-list appends go through a
    single lock so parallel sub-operations cannot drop children.

    Args:
        config: Recorder settings. Defaults to RecorderConfig().
        clock: Returns the current aware datetime. Injected in tests.
        analyzer: Aggregator used by end_trace(analyze=True).
    """

    def __init__(
        self,
        config: RecorderConfig | None = None,
        clock: Callable[[], datetime] | None = None,
        analyzer: "AnalyticsAggregator | None" = None,
    ) -> None:
        self.config = config or RecorderConfig()
        self._clock = clock or _utcnow
        self._analyzer = analyzer
        self._lock = threading.RLock()
        self._reset()
        self._last_flow: ExecutionFlow | None = None
        self._last_command = ""
        self._last_options: dict[str, Any] = {}
        self._last_context: dict[str, Any] = {}

    def _reset(self) -> None:
        self._active = False
        self._node_counter = 0
        self._root_id: str | None = None
        self._nodes: dict[str, TraceNode] = {}
        self._command = ""
        self._options: dict[str, Any] = {}
        self._context: dict[str, Any] = {}
        self._tool_calls: list[ToolCallDetail] = []
        self._external_lookups: list[ExternalLookupDetail] = []
        self._cache_operations: list[CacheOperationDetail] = []
        self._performance_metrics: list[PerformanceSample] = []
        self._errors: list[ErrorRecord] = []
        self._resource_usage: list[ResourceUsageSample] = []
        self._user_patterns: list[UserPatternRecord] = []

    @property
    def is_active(self) -> bool:
        return self._active

    @property
    def root_id(self) -> str | None:
        return self._root_id

    # -- lifecycle --

    def start_trace(
        self,
        command: str,
        options: dict[str, Any] | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        """Begin a new trace, resetting every side list.

        A trace still open on this recorder is force-ended and discarded.
        """
        if not self.config.enabled:
            return
        with self._lock:
            if self._active:
                logger.warning("trace_already_open", command=self._command)
                self.end_trace()
            self._reset()
            now = self._clock()
            self._command = coerce_name(command, default="")
            self._options = coerce_bag(options)
            self._context = coerce_bag(context)
            root = TraceNode(
                id=self._next_id(),
                tool=self.config.root_tool,
                phase="planning",
                start_time=now,
                level=0,
                parameters=(
                    {"command": self._command, "options": self._options}
                    if self.config.include_parameters
                    else {}
                ),
            )
            self._root_id = root.id
            self._nodes[root.id] = root
            self._active = True
            self._user_patterns.append(
                UserPatternRecord(
                    type="command_start",
                    data={"command": self._command, "options": self._options},
                    timestamp=now,
                )
            )

    def end_trace(self, analyze: bool = False) -> "ExecutionFlow | CallTreeAnalytics | None":
        """Close the root span and return the finished flow.

        Descendants still open are force-closed as failed with an
        "incomplete" error and counted as failed calls of their kind.

        Args:
            analyze: Return CallTreeAnalytics for the flow instead of the flow.

        Returns:
            The ExecutionFlow (or its analytics), or None if no trace is open.
        """
        with self._lock:
            if not self._active or self._root_id is None:
                return None
            now = self._clock()
            root = self._nodes[self._root_id]

            forced = 0
            for node in list(self._iter_nodes()):
                if node.id != root.id and node.is_open:
                    self._force_close(node, now)
                    forced += 1

            root.end_time = now
            root.duration_ms = _elapsed_ms(root.start_time, now)
            if forced:
                root.success = False
                root.error = f"{forced} span(s) incomplete at end of trace"

            flow = ExecutionFlow(
                root_id=root.id,
                nodes={node_id: node.model_copy(deep=True) for node_id, node in self._nodes.items()},
                tool_calls=list(self._tool_calls),
                external_lookups=list(self._external_lookups),
                cache_operations=list(self._cache_operations),
                performance_metrics=list(self._performance_metrics),
                errors=list(self._errors),
                resource_usage=list(self._resource_usage),
                user_patterns=list(self._user_patterns),
            )
            self._last_flow = flow
            self._last_command = self._command
            self._last_options = self._options
            self._last_context = self._context
            self._reset()

        if analyze:
            if self._analyzer is None:
                from calltrace.analytics.aggregator import AnalyticsAggregator

                self._analyzer = AnalyticsAggregator()
            return self._analyzer.process_trace(flow)
        return flow

    def build_stored_trace(
        self,
        flow: ExecutionFlow | None = None,
        analytics: "CallTreeAnalytics | None" = None,
        error_message: str | None = None,
    ) -> StoredTrace | None:
        """Wrap the last finished flow as a StoredTrace ready for persistence.

        Args:
            flow: Flow to wrap. Defaults to the one returned by end_trace().
            analytics: Frozen analytics for the flow, if already computed.
            error_message: Set when the observed command failed.

        Returns:
            The StoredTrace, or None when no trace has been finished.
        """
        flow = flow or self._last_flow
        if flow is None:
            return None
        return StoredTrace(
            command=self._last_command,
            options=self._last_options,
            context=self._last_context,
            execution_flow=flow,
            analytics=analytics,
            stored_at=self._clock(),
            duration_ms=flow.root.duration_ms,
            success=error_message is None and flow.root.success,
            error_message=error_message,
        )

    # -- spans --

    def start_span(
        self,
        tool: str,
        phase: TracePhase = "execution",
        parameters: dict[str, Any] | None = None,
        parent_id: str | None = None,
        dependencies: list[str] | None = None,
    ) -> str | None:
        """Open a child span and return its id (None when no trace is open).

        Parallel branches declare ordering through dependencies, a list of
        sibling span ids.
        """
        with self._lock:
            if not self._active:
                logger.debug("span_ignored_no_trace", tool=tool)
                return None
            node = self._add_node(
                coerce_name(tool),
                phase,
                parameters,
                parent_id,
                dependencies,
                self._clock(),
            )
            return node.id

    def end_span(
        self,
        node_id: str,
        success: bool = True,
        result: Any = None,
        error: str | None = None,
    ) -> None:
        """Close a span opened with start_span()."""
        with self._lock:
            node = self._nodes.get(node_id) if self._active else None
            if node is None or not node.is_open:
                logger.debug("end_span_ignored", node_id=node_id)
                return
            now = self._clock()
            self._close_node(node, now, _elapsed_ms(node.start_time, now), bool(success), result, error)

    @contextmanager
    def track_tool_call(
        self,
        tool: str,
        parameters: dict[str, Any] | None = None,
        parent_id: str | None = None,
    ) -> Iterator[ToolCallTracker]:
        """Time a tool call and record it on exit.

        An exception raised inside the block marks the call failed and is
        re-raised unchanged.
        """
        node_id = self.start_span(tool, "execution", parameters, parent_id)
        tracker = ToolCallTracker(node_id)
        started = time.perf_counter()
        try:
            yield tracker
        except BaseException as exc:
            tracker.set_error(str(exc) or type(exc).__name__)
            raise
        finally:
            self.add_tool_call(
                tool,
                parameters,
                (time.perf_counter() - started) * 1000.0,
                tracker.success,
                result=tracker.result,
                error=tracker.error,
                memory_usage_bytes=tracker.memory_usage_bytes,
                cpu_usage_ratio=tracker.cpu_usage_ratio,
                node_id=node_id,
            )

    # -- operations --

    def add_tool_call(
        self,
        tool: str,
        parameters: dict[str, Any] | None = None,
        execution_time_ms: float = 0.0,
        success: bool = True,
        result: Any = None,
        error: str | None = None,
        memory_usage_bytes: int | None = None,
        cpu_usage_ratio: float | None = None,
        node_id: str | None = None,
        parent_id: str | None = None,
    ) -> str | None:
        """Record a completed tool handler invocation.

        Closes node_id when it names an open span, otherwise adds a new
        closed child span. A failed call is also added to the error list.

        Returns:
            The span id, or None when no trace is open.
        """
        with self._lock:
            if not self._active:
                logger.debug("tool_call_ignored_no_trace", tool=tool)
                return None
            now = self._clock()
            tool = coerce_name(tool)
            params = coerce_bag(parameters)
            elapsed = self._duration(execution_time_ms, "execution_time_ms")
            success = bool(success)
            error = coerce_name(error, default=DEFAULT_ERROR) if not success else None

            node = self._claim_node(node_id, tool, "execution", params, parent_id, now, elapsed)
            self._close_node(node, now, elapsed, success, result, error)

            detail = ToolCallDetail(
                node_id=node.id,
                tool=tool,
                parameters=params if self.config.include_parameters else {},
                execution_time_ms=elapsed,
                success=success,
                memory_usage_bytes=self._memory(memory_usage_bytes),
                cpu_usage_ratio=self._ratio(cpu_usage_ratio, "cpu_usage_ratio"),
                result=coerce_payload(result) if self.config.include_results else None,
                error=error,
                completed_at=now,
            )
            self._tool_calls.append(detail)
            self._sample("tool_execution_time", elapsed, "ms", {"tool": tool, "success": str(success).lower()}, now)
            self._user_patterns.append(
                UserPatternRecord(
                    type="tool_usage",
                    data={"tool": tool, "execution_time_ms": elapsed, "success": success},
                    timestamp=now,
                )
            )
            if not success:
                self._errors.append(
                    ErrorRecord(
                        message=error,
                        type="tool_error",
                        context={"tool": tool, "node_id": node.id},
                        timestamp=now,
                    )
                )
            return node.id

    def add_external_lookup(
        self,
        endpoint: str,
        parameters: dict[str, Any] | None = None,
        response_time_ms: float = 0.0,
        success: bool = True,
        response_size_bytes: int = 0,
        cache_hit: bool = False,
        token_usage: int | None = None,
        cost: float | None = None,
        node_id: str | None = None,
        parent_id: str | None = None,
    ) -> str | None:
        """Record a completed call to an external lookup service."""
        with self._lock:
            if not self._active:
                logger.debug("lookup_ignored_no_trace", endpoint=endpoint)
                return None
            now = self._clock()
            endpoint = coerce_name(endpoint)
            params = coerce_bag(parameters)
            elapsed = self._duration(response_time_ms, "response_time_ms")
            success = bool(success)
            tokens = int(self._count(token_usage, "token_usage"))
            spent = self._count(cost, "cost")

            node = self._claim_node(
                node_id, "external_lookup", "lookup", {"endpoint": endpoint, **params}, parent_id, now, elapsed
            )
            self._close_node(node, now, elapsed, success, None, None if success else "lookup failed")

            self._external_lookups.append(
                ExternalLookupDetail(
                    node_id=node.id,
                    endpoint=endpoint,
                    parameters=params,
                    response_time_ms=elapsed,
                    success=success,
                    response_size_bytes=int(self._count(response_size_bytes, "response_size_bytes")),
                    cache_hit=bool(cache_hit),
                    token_usage=tokens,
                    cost=spent,
                    completed_at=now,
                )
            )
            tags = {"endpoint": endpoint, "cache_hit": str(bool(cache_hit)).lower()}
            self._sample("lookup_response_time", elapsed, "ms", tags, now)
            self._sample("lookup_token_usage", tokens, "tokens", {"endpoint": endpoint}, now)
            self._sample("lookup_cost", spent, "dollars", {"endpoint": endpoint}, now)
            if not success:
                self._errors.append(
                    ErrorRecord(
                        message=f"external lookup failed: {endpoint}",
                        type="lookup_error",
                        context={"endpoint": endpoint, "node_id": node.id},
                        timestamp=now,
                    )
                )
            return node.id

    def add_cache_operation(
        self,
        operation: str,
        key: str,
        duration_ms: float = 0.0,
        hit: bool = False,
        success: bool = True,
        data_size_bytes: int = 0,
        node_id: str | None = None,
        parent_id: str | None = None,
    ) -> str | None:
        """Record a completed cache get/set/delete/clear."""
        with self._lock:
            if not self._active:
                logger.debug("cache_op_ignored_no_trace", operation=operation)
                return None
            now = self._clock()
            if operation not in CACHE_OPERATIONS:
                logger.warning("invalid_cache_operation", operation=operation)
                operation = "get"
            key = coerce_name(key, default="")
            elapsed = self._duration(duration_ms, "duration_ms")
            success = bool(success)
            size = int(self._count(data_size_bytes, "data_size_bytes"))

            node = self._claim_node(
                node_id, "cache", "cache", {"operation": operation, "key": key, "size": size}, parent_id, now, elapsed
            )
            self._close_node(node, now, elapsed, success, None, None if success else "cache operation failed")

            self._cache_operations.append(
                CacheOperationDetail(
                    node_id=node.id,
                    operation=operation,
                    key=key,
                    duration_ms=elapsed,
                    hit=bool(hit),
                    success=success,
                    data_size_bytes=size,
                    completed_at=now,
                )
            )
            self._sample("cache_operation_time", elapsed, "ms", {"operation": operation, "hit": str(bool(hit)).lower()}, now)
            return node.id

    # -- samples and records --

    def record_performance_metric(
        self,
        name: str,
        value: float,
        unit: str = "",
        tags: dict[str, str] | None = None,
    ) -> None:
        with self._lock:
            if not self._active:
                return
            try:
                number = float(value)
            except (TypeError, ValueError):
                number = math.nan
            if not math.isfinite(number):
                logger.warning("invalid_metric_value", metric=name, value=repr(value))
                number = 0.0
            self._sample(coerce_name(name), number, str(unit or ""), tags, self._clock())

    def record_error(
        self,
        message: str,
        type: str = "error",
        stack: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        with self._lock:
            if not self._active:
                return
            now = self._clock()
            error_type = coerce_name(type, default="error")
            self._errors.append(
                ErrorRecord(
                    message=coerce_name(message, default=DEFAULT_ERROR),
                    type=error_type,
                    stack=None if stack is None else str(stack),
                    context=coerce_bag(context),
                    timestamp=now,
                )
            )
            self._sample("error_count", 1, "count", {"error_type": error_type}, now)

    def record_resource_usage(
        self,
        type: str,
        value: float,
        unit: str = "",
        peak: float | None = None,
    ) -> None:
        with self._lock:
            if not self._active:
                return
            if type not in RESOURCE_TYPES:
                logger.warning("invalid_resource_type", resource_type=type)
                type = "memory"
            amount = self._count(value, "resource_value")
            self._resource_usage.append(
                ResourceUsageSample(
                    type=type,
                    value=amount,
                    unit=str(unit or ""),
                    peak=max(amount, self._count(peak, "resource_peak")) if peak is not None else amount,
                    timestamp=self._clock(),
                )
            )

    def record_user_pattern(
        self,
        type: str,
        data: dict[str, Any] | None = None,
        confidence: float = 1.0,
    ) -> None:
        with self._lock:
            if not self._active:
                return
            self._user_patterns.append(
                UserPatternRecord(
                    type=coerce_name(type),
                    data=coerce_bag(data),
                    confidence=self._ratio(confidence, "confidence") or 0.0,
                    timestamp=self._clock(),
                )
            )

    # -- internals --

    def _next_id(self) -> str:
        self._node_counter += 1
        return f"node_{self._node_counter}"

    def _iter_nodes(self) -> Iterator[TraceNode]:
        if self._root_id is None:
            return
        stack = [self._root_id]
        while stack:
            node = self._nodes[stack.pop()]
            yield node
            stack.extend(reversed(node.children))

    def _add_node(
        self,
        tool: str,
        phase: TracePhase,
        parameters: dict[str, Any] | None,
        parent_id: str | None,
        dependencies: list[str] | None,
        start_time: datetime,
    ) -> TraceNode:
        if phase not in PHASES:
            logger.warning("invalid_span_phase", phase=repr(phase), tool=tool)
            phase = "execution"
        parent = self._nodes.get(parent_id) if parent_id else None
        if parent_id and parent is None:
            logger.warning("unknown_parent_span", parent_id=parent_id, tool=tool)
        if parent is None:
            parent = self._nodes[self._root_id]
        while parent.level + 1 > self.config.max_depth and parent.parent_id is not None:
            parent = self._nodes[parent.parent_id]

        node_id = self._next_id()
        deps = [dep for dep in (dependencies or []) if dep in self._nodes and dep != node_id]
        node = TraceNode(
            id=node_id,
            tool=tool,
            phase=phase,
            start_time=start_time,
            parent_id=parent.id,
            dependencies=deps,
            level=parent.level + 1,
            parameters=coerce_bag(parameters) if self.config.include_parameters else {},
        )
        self._nodes[node.id] = node
        parent.children.append(node.id)
        return node

    def _claim_node(
        self,
        node_id: str | None,
        tool: str,
        phase: TracePhase,
        parameters: dict[str, Any],
        parent_id: str | None,
        now: datetime,
        elapsed_ms: float,
    ) -> TraceNode:
        """Return the open span node_id, or a new span that started elapsed_ms ago."""
        if node_id is not None:
            node = self._nodes.get(node_id)
            if node is not None and node.is_open and node.id != self._root_id:
                return node
            logger.warning("span_not_open", node_id=node_id, tool=tool)
        return self._add_node(tool, phase, parameters, parent_id, None, now - timedelta(milliseconds=elapsed_ms))

    def _close_node(
        self,
        node: TraceNode,
        end_time: datetime,
        duration_ms: float,
        success: bool,
        result: Any,
        error: str | None,
    ) -> None:
        node.end_time = end_time
        node.duration_ms = duration_ms
        node.success = success
        node.error = None if success else coerce_name(error, default=DEFAULT_ERROR)
        if self.config.include_results and result is not None:
            node.result = coerce_payload(result)

    def _force_close(self, node: TraceNode, now: datetime) -> None:
        elapsed = _elapsed_ms(node.start_time, now)
        self._close_node(node, now, elapsed, False, None, INCOMPLETE_ERROR)
        node.incomplete = True
        logger.warning("span_force_closed", node_id=node.id, tool=node.tool)

        if node.phase == "lookup":
            self._external_lookups.append(
                ExternalLookupDetail(
                    node_id=node.id,
                    endpoint=str(node.parameters.get("endpoint", node.tool)),
                    parameters=node.parameters,
                    response_time_ms=elapsed,
                    success=False,
                    completed_at=now,
                )
            )
        elif node.phase == "cache":
            operation = node.parameters.get("operation", "get")
            self._cache_operations.append(
                CacheOperationDetail(
                    node_id=node.id,
                    operation=operation if operation in CACHE_OPERATIONS else "get",
                    key=str(node.parameters.get("key", "")),
                    duration_ms=elapsed,
                    success=False,
                    completed_at=now,
                )
            )
        elif node.phase != "internal":
            self._tool_calls.append(
                ToolCallDetail(
                    node_id=node.id,
                    tool=node.tool,
                    parameters=node.parameters,
                    execution_time_ms=elapsed,
                    success=False,
                    error=INCOMPLETE_ERROR,
                    completed_at=now,
                )
            )
        self._errors.append(
            ErrorRecord(
                message=INCOMPLETE_ERROR,
                type="incomplete",
                context={"tool": node.tool, "node_id": node.id},
                timestamp=now,
            )
        )

    def _sample(
        self,
        name: str,
        value: float,
        unit: str,
        tags: dict[str, Any] | None,
        now: datetime,
    ) -> None:
        self._performance_metrics.append(
            PerformanceSample(
                name=name,
                value=float(value),
                unit=unit,
                tags={key: str(item) for key, item in coerce_bag(tags).items()},
                timestamp=now,
            )
        )

    def _duration(self, value: Any, field: str) -> float:
        try:
            return coerce_duration(value, field)
        except TraceValidationError as exc:
            logger.warning("invalid_duration", field=field, error=str(exc))
            return 0.0

    def _count(self, value: Any, field: str) -> float:
        if value is None:
            return 0.0
        try:
            return coerce_duration(value, field)
        except TraceValidationError as exc:
            logger.warning("invalid_amount", field=field, error=str(exc))
            return 0.0

    def _memory(self, value: Any) -> int | None:
        if value is None:
            return None
        return int(self._count(value, "memory_usage_bytes"))

    def _ratio(self, value: Any, field: str) -> float | None:
        if value is None:
            return None
        amount = self._count(value, field)
        if amount > 1.0:
            logger.warning("ratio_clamped", field=field, value=amount)
            return 1.0
        return amount
