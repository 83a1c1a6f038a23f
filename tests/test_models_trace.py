"""Tests for calltrace.models.trace - the call-tree arena and StoredTrace."""

from datetime import datetime, timezone

from calltrace.models.trace import ExecutionFlow, StoredTrace, ToolCallDetail, TraceNode

NOW = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)


def _make_flow() -> ExecutionFlow:
    """root -> (a -> c), b"""
    nodes = {
        "node_1": TraceNode(id="node_1", tool="command", start_time=NOW, children=["node_2", "node_3"]),
        "node_2": TraceNode(id="node_2", tool="plan", start_time=NOW, parent_id="node_1", level=1, children=["node_4"]),
        "node_3": TraceNode(id="node_3", tool="write", start_time=NOW, parent_id="node_1", level=1),
        "node_4": TraceNode(id="node_4", tool="scan", start_time=NOW, parent_id="node_2", level=2),
    }
    return ExecutionFlow(
        root_id="node_1",
        nodes=nodes,
        tool_calls=[
            ToolCallDetail(node_id="node_4", tool="scan", completed_at=NOW),
            ToolCallDetail(node_id="node_3", tool="write", completed_at=NOW),
        ],
    )


class TestExecutionFlow:
    def test_walk_is_depth_first_root_first(self):
        assert [n.id for n in _make_flow().walk()] == ["node_1", "node_2", "node_4", "node_3"]

    def test_descendants_exclude_root(self):
        assert [n.id for n in _make_flow().descendants()] == ["node_2", "node_4", "node_3"]

    def test_children_of(self):
        flow = _make_flow()
        assert [n.id for n in flow.children_of("node_1")] == ["node_2", "node_3"]
        assert flow.children_of("missing") == []

    def test_walk_ignores_dangling_child_ids(self):
        flow = _make_flow()
        flow.nodes["node_3"].children.append("node_99")
        assert len(list(flow.walk())) == 4

    def test_open_node(self):
        node = TraceNode(id="node_5", tool="x", start_time=NOW)
        assert node.is_open
        node.end_time = NOW
        assert not node.is_open


class TestStoredTrace:
    def test_tools_used(self):
        trace = StoredTrace(command="cmd", execution_flow=_make_flow(), stored_at=NOW)
        assert trace.tools_used() == {"scan", "write"}

    def test_json_round_trip(self):
        trace = StoredTrace(
            id="t1",
            command="cmd",
            options={"role": "dev"},
            execution_flow=_make_flow(),
            stored_at=NOW,
            duration_ms=12.5,
        )
        assert StoredTrace.model_validate_json(trace.model_dump_json()) == trace
