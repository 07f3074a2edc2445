"""Editing operations on a Flow. Each returns a new Flow and never mutates its input."""

from shared.exceptions import CycleDetectedError, FlowValidationError
from shared.types import ConnectorCondition, Flow, FlowConnector, FlowNode, Position
from shared.utils import generate_connector_id, generate_node_id, utc_now_iso
from services.orchestrator.engine.graph import detect_cycle


def _touch(flow: Flow, **update) -> Flow:
    update["updated_at"] = utc_now_iso()
    return flow.model_copy(update=update)


def _ensure_alias_free(flow: Flow, alias: str, ignore_node_id: str = None) -> None:
    if not alias or not alias.strip():
        raise FlowValidationError("Node alias cannot be empty", flow.id)
    for node in flow.nodes:
        if node.id != ignore_node_id and node.alias.lower() == alias.lower():
            raise FlowValidationError(f"Duplicate node alias: {alias}", flow.id, node_id=node.id)


def new_node(request_id: str, alias: str, name: str = "", method: str = "GET", position: Position = None) -> FlowNode:
    return FlowNode(
        id=generate_node_id(),
        alias=alias,
        request_id=request_id,
        name=name or alias,
        method=method.upper(),
        position=position or Position(),
    )


def new_connector(source_node_id: str, target_node_id: str, condition: ConnectorCondition = ConnectorCondition.SUCCESS) -> FlowConnector:
    return FlowConnector(
        id=generate_connector_id(),
        source_node_id=source_node_id,
        target_node_id=target_node_id,
        condition=condition,
    )


def add_node(flow: Flow, node: FlowNode) -> Flow:
    if any(existing.id == node.id for existing in flow.nodes):
        raise FlowValidationError(f"Duplicate node id: {node.id}", flow.id)
    _ensure_alias_free(flow, node.alias)
    return _touch(flow, nodes=[*flow.nodes, node])


def rename_node(flow: Flow, node_id: str, alias: str) -> Flow:
    if not any(node.id == node_id for node in flow.nodes):
        raise FlowValidationError(f"Node not found: {node_id}", flow.id)
    _ensure_alias_free(flow, alias, ignore_node_id=node_id)
    nodes = [
        node.model_copy(update={"alias": alias}) if node.id == node_id else node
        for node in flow.nodes
    ]
    return _touch(flow, nodes=nodes)


def remove_node(flow: Flow, node_id: str) -> Flow:
    nodes = [node for node in flow.nodes if node.id != node_id]
    connectors = [
        c for c in flow.connectors
        if c.source_node_id != node_id and c.target_node_id != node_id
    ]
    return _touch(flow, nodes=nodes, connectors=connectors)


def add_connector(flow: Flow, connector: FlowConnector) -> Flow:
    source, target = connector.source_node_id, connector.target_node_id
    if source == target:
        raise FlowValidationError("Connector cannot reference the same node", flow.id)

    node_ids = {node.id for node in flow.nodes}
    for endpoint in (source, target):
        if endpoint not in node_ids:
            raise FlowValidationError(f"Connector references non-existent node: {endpoint}", flow.id)

    if any(c.source_node_id == source and c.target_node_id == target for c in flow.connectors):
        raise FlowValidationError("Duplicate connector between same nodes", flow.id)

    updated = _touch(flow, connectors=[*flow.connectors, connector])
    if detect_cycle(updated):
        raise CycleDetectedError(
            "Connector would create a cycle (circular dependency)",
            flow.id,
            source_node_id=source,
            target_node_id=target,
        )
    return updated


def remove_connector(flow: Flow, connector_id: str) -> Flow:
    return _touch(flow, connectors=[c for c in flow.connectors if c.id != connector_id])
