"""
Unit tests for flow editing operations.
"""

import pytest
from services.orchestrator.engine.flow_editor import (
    add_connector,
    add_node,
    new_connector,
    new_node,
    remove_connector,
    remove_node,
    rename_node,
)
from shared.exceptions import CycleDetectedError, FlowValidationError
from shared.types import ConnectorCondition, FlowConnector, FlowNode
from tests.factories import make_flow


def test_add_node_returns_new_flow():
    """Adding a node leaves the original flow untouched"""
    flow = make_flow(["a"])

    updated = add_node(flow, FlowNode(id="n-b", alias="b", request_id="req-b"))

    assert [n.alias for n in updated.nodes] == ["a", "b"]
    assert [n.alias for n in flow.nodes] == ["a"]


def test_add_node_rejects_duplicate_alias():
    """Aliases collide ignoring case"""
    flow = make_flow(["getUser"])

    with pytest.raises(FlowValidationError, match="Duplicate node alias"):
        add_node(flow, FlowNode(id="n-x", alias="GETUSER", request_id="req-x"))


def test_rename_node_checks_other_aliases_only():
    """Renaming to your own alias is fine, taking another node's is not"""
    flow = make_flow(["a", "b"])

    assert rename_node(flow, "n-a", "A").nodes[0].alias == "A"
    with pytest.raises(FlowValidationError):
        rename_node(flow, "n-a", "B")


def test_remove_node_drops_its_connectors():
    """Connectors touching a removed node go with it"""
    flow = make_flow(["a", "b", "c"], [("a", "b", "any"), ("b", "c", "any"), ("a", "c", "any")])

    updated = remove_node(flow, "n-b")

    assert [n.id for n in updated.nodes] == ["n-a", "n-c"]
    assert [c.id for c in updated.connectors] == ["c-a-c"]


def test_add_connector_rejects_self_loop_and_duplicates():
    """Self loops and repeated pairs are refused"""
    flow = make_flow(["a", "b"], [("a", "b", "any")])

    with pytest.raises(FlowValidationError, match="same node"):
        add_connector(flow, FlowConnector(id="x", source_node_id="n-a", target_node_id="n-a"))
    with pytest.raises(FlowValidationError, match="Duplicate connector"):
        add_connector(flow, FlowConnector(id="y", source_node_id="n-a", target_node_id="n-b"))
    with pytest.raises(FlowValidationError, match="non-existent"):
        add_connector(flow, FlowConnector(id="z", source_node_id="n-a", target_node_id="n-q"))


def test_add_connector_rejects_cycles():
    """Closing a loop raises CycleDetectedError"""
    flow = make_flow(["a", "b", "c"], [("a", "b", "any"), ("b", "c", "any")])

    with pytest.raises(CycleDetectedError):
        add_connector(flow, FlowConnector(id="back", source_node_id="n-c", target_node_id="n-a"))


def test_add_and_remove_connector():
    """Connectors can be added and removed by id"""
    flow = make_flow(["a", "b"])

    with_edge = add_connector(flow, FlowConnector(id="e1", source_node_id="n-a", target_node_id="n-b"))
    without_edge = remove_connector(with_edge, "e1")

    assert [c.id for c in with_edge.connectors] == ["e1"]
    assert without_edge.connectors == []


def test_new_node_and_connector_get_generated_ids():
    node = new_node("req-1", "getUser", method="post")
    connector = new_connector(node.id, "n-other", ConnectorCondition.ANY)

    assert node.id.startswith("node-")
    assert (node.name, node.method) == ("getUser", "POST")
    assert connector.id.startswith("conn-")
    assert connector.condition == ConnectorCondition.ANY
    assert new_node("req-1", "x").id != new_node("req-1", "x").id
