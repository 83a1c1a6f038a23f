"""Trace models: the call tree, its side lists, and the persisted unit.

Pydantic models because traces are serialized to JSON for persistence and
must round-trip losslessly. The call tree is an arena: every TraceNode is
stored once in ExecutionFlow.nodes and parents reference children by id,
so no node holds a pointer back to an ancestor.
"""

from __future__ import annotations

from collections.abc import Iterator
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from calltrace.models.analytics import CallTreeAnalytics

TracePhase = Literal["planning", "execution", "lookup", "cache", "internal"]

INCOMPLETE_ERROR = "incomplete: span still open when trace ended"


class TraceNode(BaseModel):
    """A single span in the execution tree."""

    id: str
    tool: str
    phase: TracePhase = "execution"
    start_time: datetime
    end_time: datetime | None = None
    duration_ms: float = 0.0
    parent_id: str | None = None
    children: list[str] = Field(default_factory=list)
    dependencies: list[str] = Field(default_factory=list)
    level: int = 0
    parameters: dict[str, Any] = Field(default_factory=dict)
    result: Any = None
    success: bool = True
    error: str | None = None
    incomplete: bool = False

    @property
    def is_open(self) -> bool:
        return self.end_time is None


class ToolCallDetail(BaseModel):
    """One tool handler invocation as reported by the handler."""

    node_id: str
    tool: str
    parameters: dict[str, Any] = Field(default_factory=dict)
    execution_time_ms: float = 0.0
    success: bool = True
    memory_usage_bytes: int | None = None
    cpu_usage_ratio: float | None = None
    result: Any = None
    error: str | None = None
    completed_at: datetime


class ExternalLookupDetail(BaseModel):
    """One call to an external lookup service (documentation, knowledge)."""

    node_id: str
    endpoint: str
    parameters: dict[str, Any] = Field(default_factory=dict)
    response_time_ms: float = 0.0
    success: bool = True
    response_size_bytes: int = 0
    cache_hit: bool = False
    token_usage: int = 0
    cost: float = 0.0
    completed_at: datetime


class CacheOperationDetail(BaseModel):
    """One cache get/set/delete/clear."""

    node_id: str
    operation: Literal["get", "set", "delete", "clear"] = "get"
    key: str = ""
    duration_ms: float = 0.0
    hit: bool = False
    success: bool = True
    data_size_bytes: int = 0
    completed_at: datetime


class PerformanceSample(BaseModel):
    name: str
    value: float
    unit: str = ""
    tags: dict[str, str] = Field(default_factory=dict)
    timestamp: datetime


class ErrorRecord(BaseModel):
    message: str
    type: str = "error"
    stack: str | None = None
    context: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime


class ResourceUsageSample(BaseModel):
    type: Literal["memory", "cpu", "io", "network"] = "memory"
    value: float = 0.0
    unit: str = ""
    peak: float = 0.0
    timestamp: datetime


class UserPatternRecord(BaseModel):
    type: str
    data: dict[str, Any] = Field(default_factory=dict)
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    timestamp: datetime


class ExecutionFlow(BaseModel):
    """Full record of one command run: the call tree plus flat side lists.

    Side lists are ordered by completion time. Every ToolCallDetail.node_id
    references exactly one descendant of the root node.
    """

    root_id: str
    nodes: dict[str, TraceNode]
    tool_calls: list[ToolCallDetail] = Field(default_factory=list)
    external_lookups: list[ExternalLookupDetail] = Field(default_factory=list)
    cache_operations: list[CacheOperationDetail] = Field(default_factory=list)
    performance_metrics: list[PerformanceSample] = Field(default_factory=list)
    errors: list[ErrorRecord] = Field(default_factory=list)
    resource_usage: list[ResourceUsageSample] = Field(default_factory=list)
    user_patterns: list[UserPatternRecord] = Field(default_factory=list)

    @property
    def root(self) -> TraceNode:
        return self.nodes[self.root_id]

    def children_of(self, node_id: str) -> list[TraceNode]:
        """Return the child nodes of node_id in insertion order."""
        node = self.nodes.get(node_id)
        if node is None:
            return []
        return [self.nodes[child] for child in node.children if child in self.nodes]

    def walk(self) -> Iterator[TraceNode]:
        """Yield every reachable node depth-first, root first."""
        if self.root_id not in self.nodes:
            return
        seen: set[str] = set()
        stack = [self.root_id]
        while stack:
            node_id = stack.pop()
            if node_id in seen or node_id not in self.nodes:
                continue
            seen.add(node_id)
            node = self.nodes[node_id]
            yield node
            stack.extend(reversed(node.children))

    def descendants(self) -> list[TraceNode]:
        """Every reachable node except the root."""
        return [node for node in self.walk() if node.id != self.root_id]


class StoredTrace(BaseModel):
    """The persisted unit: one completed trace with frozen analytics.

    Immutable once stored; removed only by retention cleanup.
    """

    id: str | None = None
    command: str
    options: dict[str, Any] = Field(default_factory=dict)
    context: dict[str, Any] = Field(default_factory=dict)
    execution_flow: ExecutionFlow
    analytics: CallTreeAnalytics | None = None
    stored_at: datetime
    duration_ms: float = 0.0
    success: bool = True
    error_message: str | None = None

    def tools_used(self) -> set[str]:
        return {call.tool for call in self.execution_flow.tool_calls}
