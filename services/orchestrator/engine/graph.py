"""Pure graph utilities over a Flow: ordering, cycles, validation and layout."""

from collections import deque
from typing import Dict, List, Optional, Set
from shared.constants import (
    LAYOUT_HORIZONTAL_SPACING,
    LAYOUT_VERTICAL_SPACING,
    LAYOUT_START_X,
    LAYOUT_START_Y,
    SUCCESS_STATUS_MIN,
    SUCCESS_STATUS_MAX,
)
from shared.types import (
    ConnectorCondition,
    Flow,
    FlowConnector,
    FlowNode,
    FlowNodeResult,
    FlowNodeStatus,
    FlowProgress,
    FlowRunResult,
    FlowRunStatus,
    Position,
)
from shared.utils import generate_flow_id, utc_now_iso


def create_empty_flow(name: str = "New Flow") -> Flow:
    now = utc_now_iso()
    return Flow(id=generate_flow_id(), name=name, created_at=now, updated_at=now)


def create_initial_flow_run_result(flow: Flow) -> FlowRunResult:
    node_results = {
        node.id: FlowNodeResult(
            node_id=node.id,
            request_id=node.request_id,
            alias=node.alias,
            status=FlowNodeStatus.IDLE,
        )
        for node in flow.nodes
    }
    return FlowRunResult(
        flow_id=flow.id,
        status=FlowRunStatus.IDLE,
        node_results=node_results,
        progress=FlowProgress(total=len(flow.nodes)),
    )


def incoming_connectors(flow: Flow, node_id: str) -> List[FlowConnector]:
    return [c for c in flow.connectors if c.target_node_id == node_id]


def outgoing_connectors(flow: Flow, node_id: str) -> List[FlowConnector]:
    return [c for c in flow.connectors if c.source_node_id == node_id]


def is_starting_node(flow: Flow, node_id: str) -> bool:
    return not any(c.target_node_id == node_id for c in flow.connectors)


def starting_nodes(flow: Flow) -> List[FlowNode]:
    return [node for node in flow.nodes if is_starting_node(flow, node.id)]


def upstream_node_ids(flow: Flow, node_id: str) -> Set[str]:
    """Every transitive ancestor of `node_id`, never including the node itself"""
    parents: Dict[str, List[str]] = {}
    for connector in flow.connectors:
        parents.setdefault(connector.target_node_id, []).append(connector.source_node_id)

    upstream: Set[str] = set()
    visited = {node_id}
    stack = [node_id]
    while stack:
        current = stack.pop()
        for source_id in parents.get(current, []):
            if source_id == node_id:
                continue
            upstream.add(source_id)
            if source_id not in visited:
                visited.add(source_id)
                stack.append(source_id)
    return upstream


def detect_cycle(flow: Flow) -> bool:
    """White/gray/black DFS over every node; iterative to stay clear of the recursion limit"""
    children: Dict[str, List[str]] = {}
    for connector in flow.connectors:
        children.setdefault(connector.source_node_id, []).append(connector.target_node_id)

    visited: Set[str] = set()
    on_stack: Set[str] = set()

    for root in flow.nodes:
        if root.id in visited:
            continue
        visited.add(root.id)
        on_stack.add(root.id)
        stack = [(root.id, iter(children.get(root.id, [])))]
        while stack:
            current, targets = stack[-1]
            target = next(targets, None)
            if target is None:
                on_stack.discard(current)
                stack.pop()
            elif target in on_stack:
                return True
            elif target not in visited:
                visited.add(target)
                on_stack.add(target)
                stack.append((target, iter(children.get(target, []))))
    return False


def topological_order(flow: Flow) -> Optional[List[FlowNode]]:
    """Kahn's algorithm with a FIFO queue. Returns None when a cycle is present."""
    node_map = {node.id: node for node in flow.nodes}
    in_degree = {node.id: 0 for node in flow.nodes}
    children: Dict[str, List[str]] = {node.id: [] for node in flow.nodes}

    for connector in flow.connectors:
        if connector.target_node_id in in_degree:
            in_degree[connector.target_node_id] += 1
        children.setdefault(connector.source_node_id, []).append(connector.target_node_id)

    queue = deque([nid for nid, degree in in_degree.items() if degree == 0])
    ordered: List[FlowNode] = []

    while queue:
        node_id = queue.popleft()
        ordered.append(node_map[node_id])
        for child_id in children.get(node_id, []):
            if child_id not in in_degree:
                continue
            in_degree[child_id] -= 1
            if in_degree[child_id] == 0:
                queue.append(child_id)

    if len(ordered) != len(flow.nodes):
        return None
    return ordered


def validate_flow(flow: Flow) -> List[str]:
    """Structural checks; an empty list means the flow can run"""
    errors: List[str] = []

    if not flow.nodes:
        errors.append("Flow must have at least one node")
        return errors

    aliases: Set[str] = set()
    for node in flow.nodes:
        if node.alias.lower() in aliases:
            errors.append(f"Duplicate node alias: {node.alias}")
        aliases.add(node.alias.lower())

    pairs: Set[tuple] = set()
    for connector in flow.connectors:
        pair = (connector.source_node_id, connector.target_node_id)
        if pair in pairs:
            errors.append("Duplicate connector between same nodes")
        pairs.add(pair)

    for connector in flow.connectors:
        if connector.source_node_id == connector.target_node_id:
            errors.append("Connector cannot reference the same node")

    node_ids = {node.id for node in flow.nodes}
    for connector in flow.connectors:
        if connector.source_node_id not in node_ids:
            errors.append(f"Connector references non-existent source node: {connector.source_node_id}")
        if connector.target_node_id not in node_ids:
            errors.append(f"Connector references non-existent target node: {connector.target_node_id}")

    if detect_cycle(flow):
        errors.append("Flow contains a cycle (circular dependency)")

    return errors


def node_depths(flow: Flow) -> Dict[str, int]:
    """Longest-path depth from any starting node"""
    depths = {node.id: 0 for node in starting_nodes(flow)}
    queue = deque(depths.keys())
    # A cyclic residue would otherwise keep deepening forever
    max_depth = len(flow.nodes)

    while queue:
        node_id = queue.popleft()
        next_depth = depths.get(node_id, 0) + 1
        if next_depth > max_depth:
            continue
        for connector in outgoing_connectors(flow, node_id):
            existing = depths.get(connector.target_node_id)
            if existing is None or next_depth > existing:
                depths[connector.target_node_id] = next_depth
                queue.append(connector.target_node_id)
    return depths


def auto_layout_flow(flow: Flow) -> Flow:
    depths = node_depths(flow)
    by_depth: Dict[int, List[str]] = {}
    for node in flow.nodes:
        by_depth.setdefault(depths.get(node.id, 0), []).append(node.id)

    nodes = []
    for node in flow.nodes:
        depth = depths.get(node.id, 0)
        index = by_depth[depth].index(node.id)
        position = Position(
            x=LAYOUT_START_X + depth * LAYOUT_HORIZONTAL_SPACING,
            y=LAYOUT_START_Y + index * LAYOUT_VERTICAL_SPACING,
        )
        nodes.append(node.model_copy(update={"position": position}))

    return flow.model_copy(update={"nodes": nodes, "updated_at": utc_now_iso()})


def _is_success_status(status: int) -> bool:
    return SUCCESS_STATUS_MIN <= status < SUCCESS_STATUS_MAX


def is_condition_satisfied(condition: str, node_result: FlowNodeResult) -> bool:
    response = node_result.response
    validation = response.validation_result if response is not None else None

    if condition == ConnectorCondition.ANY:
        return True
    if condition == ConnectorCondition.SUCCESS:
        return (
            node_result.status == FlowNodeStatus.SUCCESS
            and response is not None
            and _is_success_status(response.status)
        )
    if condition == ConnectorCondition.FAILURE:
        return node_result.status == FlowNodeStatus.FAILED or (
            response is not None and not _is_success_status(response.status)
        )
    if condition == ConnectorCondition.VALIDATION_PASS:
        return validation is not None and validation.all_passed is True
    if condition == ConnectorCondition.VALIDATION_FAIL:
        return validation is not None and validation.all_passed is False
    return False
