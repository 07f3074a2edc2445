"""
Unit tests for flow graph utilities.
"""

import pytest
from services.orchestrator.engine.graph import (
    auto_layout_flow,
    create_empty_flow,
    create_initial_flow_run_result,
    detect_cycle,
    incoming_connectors,
    is_condition_satisfied,
    is_starting_node,
    node_depths,
    outgoing_connectors,
    starting_nodes,
    topological_order,
    upstream_node_ids,
    validate_flow,
)
from shared.types import (
    FlowConnector,
    FlowNodeResult,
    FlowNodeStatus,
    FlowRunStatus,
)
from tests.factories import json_response, make_flow


def _result(status, response=None):
    return FlowNodeResult(node_id="n", request_id="r", alias="a", status=status, response=response)


def test_incoming_and_outgoing_connectors():
    """Connectors filter by target and source"""
    flow = make_flow(["a", "b", "c"], [("a", "b", "any"), ("a", "c", "any"), ("b", "c", "any")])

    assert [c.id for c in outgoing_connectors(flow, "n-a")] == ["c-a-b", "c-a-c"]
    assert [c.id for c in incoming_connectors(flow, "n-c")] == ["c-a-c", "c-b-c"]
    assert incoming_connectors(flow, "n-a") == []


def test_starting_nodes():
    """Only nodes without incoming connectors are starting nodes"""
    flow = make_flow(["a", "b", "c"], [("a", "b", "any")])

    assert [n.id for n in starting_nodes(flow)] == ["n-a", "n-c"]
    assert is_starting_node(flow, "n-a")
    assert not is_starting_node(flow, "n-b")


def test_upstream_closure_is_transitive_and_excludes_self():
    """Ancestors are collected through several hops"""
    flow = make_flow(
        ["a", "b", "c", "d", "x"],
        [("a", "b", "any"), ("b", "c", "any"), ("c", "d", "any"), ("x", "c", "any")],
    )

    assert upstream_node_ids(flow, "n-d") == {"n-a", "n-b", "n-c", "n-x"}
    assert upstream_node_ids(flow, "n-a") == set()
    assert "n-d" not in upstream_node_ids(flow, "n-d")


def test_upstream_closure_survives_cycles():
    """Malformed cyclic input terminates and never includes the node itself"""
    flow = make_flow(["a", "b", "c"], [("a", "b", "any"), ("b", "c", "any"), ("c", "a", "any")])

    assert upstream_node_ids(flow, "n-a") == {"n-b", "n-c"}


def test_detect_cycle():
    """Cycles anywhere in the graph are found"""
    acyclic = make_flow(["a", "b", "c"], [("a", "b", "any"), ("a", "c", "any"), ("b", "c", "any")])
    cyclic = make_flow(["a", "b", "c", "d"], [("a", "b", "any"), ("c", "d", "any"), ("d", "c", "any")])

    assert not detect_cycle(acyclic)
    assert detect_cycle(cyclic)
    assert topological_order(cyclic) is None


def test_detect_cycle_handles_deep_chains():
    """Long chains don't hit the recursion limit"""
    aliases = [f"n{i}" for i in range(3000)]
    edges = [(aliases[i], aliases[i + 1], "any") for i in range(len(aliases) - 1)]
    flow = make_flow(aliases, edges)

    assert not detect_cycle(flow)
    assert len(upstream_node_ids(flow, "n-n2999")) == 2999


def test_topological_order_respects_every_connector():
    """Every node appears once and sources come before targets"""
    flow = make_flow(
        ["d", "c", "b", "a"],
        [("a", "b", "any"), ("a", "c", "any"), ("b", "d", "any"), ("c", "d", "any")],
    )

    order = [n.id for n in topological_order(flow)]

    assert sorted(order) == sorted(n.id for n in flow.nodes)
    for connector in flow.connectors:
        assert order.index(connector.source_node_id) < order.index(connector.target_node_id)


def test_topological_order_is_fifo_stable():
    """Simultaneously ready nodes keep encounter order"""
    flow = make_flow(["a", "b", "c", "d"], [("a", "c", "any"), ("a", "b", "any")])

    assert [n.alias for n in topological_order(flow)] == ["a", "d", "c", "b"]


def test_validate_flow_accepts_valid_flow():
    """A well-formed flow has no errors"""
    flow = make_flow(["a", "b"], [("a", "b", "success")])

    assert validate_flow(flow) == []


def test_validate_flow_rejects_empty_flow():
    """An empty flow is invalid"""
    assert validate_flow(create_empty_flow()) == ["Flow must have at least one node"]


def test_validate_flow_rejects_case_insensitive_duplicate_alias():
    """Aliases must be unique ignoring case"""
    flow = make_flow(["A", "b"])
    flow.nodes[1].alias = "a"

    errors = validate_flow(flow)

    assert errors == ["Duplicate node alias: a"]


def test_validate_flow_reports_connector_problems():
    """Self loops, duplicate pairs, dangling endpoints and cycles are all reported"""
    flow = make_flow(["a", "b"], [("a", "b", "any"), ("b", "a", "any")])
    flow.connectors.append(FlowConnector(id="dup", source_node_id="n-a", target_node_id="n-b"))
    flow.connectors.append(FlowConnector(id="self", source_node_id="n-a", target_node_id="n-a"))
    flow.connectors.append(FlowConnector(id="ghost", source_node_id="n-a", target_node_id="n-zzz"))

    errors = validate_flow(flow)

    assert "Duplicate connector between same nodes" in errors
    assert "Connector cannot reference the same node" in errors
    assert "Connector references non-existent target node: n-zzz" in errors
    assert "Flow contains a cycle (circular dependency)" in errors


def test_node_depths_use_longest_path():
    """A node reachable by a short and a long path sits at the long path's depth"""
    flow = make_flow(["a", "b", "c", "d"], [("a", "b", "any"), ("b", "c", "any"), ("a", "c", "any"), ("c", "d", "any")])

    assert node_depths(flow) == {"n-a": 0, "n-b": 1, "n-c": 2, "n-d": 3}


def test_auto_layout_assigns_grid_positions():
    """Columns by depth, rows by sibling index"""
    flow = make_flow(["a", "b", "c"], [("a", "b", "any"), ("a", "c", "any")])
    flow.updated_at = "2000-01-01T00:00:00Z"

    laid_out = auto_layout_flow(flow)
    positions = {n.alias: (n.position.x, n.position.y) for n in laid_out.nodes}

    assert positions == {"a": (50, 50), "b": (400, 50), "c": (400, 150)}
    assert laid_out.updated_at != "2000-01-01T00:00:00Z"
    assert flow.nodes[1].position.x == 0


def test_initial_run_result_has_every_node_idle():
    """Every node gets an idle entry"""
    flow = make_flow(["a", "b"])

    result = create_initial_flow_run_result(flow)

    assert result.status == FlowRunStatus.IDLE
    assert set(result.node_results) == {"n-a", "n-b"}
    assert all(r.status == FlowNodeStatus.IDLE for r in result.node_results.values())
    assert result.progress.total == 2


@pytest.mark.parametrize("condition,status,http_status,expected", [
    ("any", FlowNodeStatus.FAILED, None, True),
    ("success", FlowNodeStatus.SUCCESS, 200, True),
    ("success", FlowNodeStatus.SUCCESS, 302, True),
    ("success", FlowNodeStatus.FAILED, 500, False),
    ("success", FlowNodeStatus.SUCCESS, None, False),
    ("failure", FlowNodeStatus.FAILED, None, True),
    ("failure", FlowNodeStatus.SUCCESS, 404, True),
    ("failure", FlowNodeStatus.SUCCESS, 200, False),
    ("bogus", FlowNodeStatus.SUCCESS, 200, False),
])
def test_is_condition_satisfied(condition, status, http_status, expected):
    """Connector conditions evaluate against the source node's result"""
    response = json_response({}, status=http_status) if http_status else None

    assert is_condition_satisfied(condition, _result(status, response)) is expected


def test_validation_conditions():
    """validation_pass/validation_fail look at the response's validation result"""
    passed = _result(FlowNodeStatus.SUCCESS, json_response({}, all_passed=True))
    failed = _result(FlowNodeStatus.SUCCESS, json_response({}, all_passed=False))
    missing = _result(FlowNodeStatus.SUCCESS, json_response({}))

    assert is_condition_satisfied("validation_pass", passed)
    assert not is_condition_satisfied("validation_pass", failed)
    assert is_condition_satisfied("validation_fail", failed)
    assert not is_condition_satisfied("validation_fail", missing)
    assert not is_condition_satisfied("validation_pass", missing)
