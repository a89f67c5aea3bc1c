"""Graph algorithms over workflow connections."""

from typing import Dict, Iterable, List, Set

from ..models.core import Workflow, WorkflowConnection
from .exceptions import GraphValidationError


def topological_order(workflow: Workflow) -> List[str]:
    """
    Order node ids with Kahn's algorithm.

    Ties are broken by the order nodes were authored in, so the result is
    deterministic for a given workflow. Connections to unknown nodes are
    ignored.

    Raises:
        GraphValidationError: If the connections contain a cycle
    """
    position = {node.id: i for i, node in enumerate(workflow.nodes)}
    in_degree: Dict[str, int] = {node_id: 0 for node_id in position}
    successors: Dict[str, List[str]] = {node_id: [] for node_id in position}

    for connection in workflow.connections:
        source, target = connection.source_node_id, connection.target_node_id
        if source not in position or target not in position:
            continue
        successors[source].append(target)
        in_degree[target] += 1

    ready = sorted((node_id for node_id, degree in in_degree.items() if degree == 0), key=position.get)
    order: List[str] = []
    while ready:
        current = ready.pop(0)
        order.append(current)
        released = []
        for target in successors[current]:
            in_degree[target] -= 1
            if in_degree[target] == 0:
                released.append(target)
        if released:
            ready = sorted(ready + released, key=position.get)

    if len(order) != len(position):
        remaining = [node_id for node_id in position if node_id not in order]
        raise GraphValidationError(
            f"Workflow contains a cycle involving nodes: {', '.join(remaining)}",
            validation_errors=[f"Cycle detected among nodes {remaining}"],
            workflow_id=workflow.id,
        ).add_details(cycle_nodes=remaining)
    return order


def find_cycle_nodes(workflow: Workflow) -> List[str]:
    """Return the nodes left over by Kahn's algorithm; empty when the graph is acyclic."""
    try:
        topological_order(workflow)
    except GraphValidationError as e:
        return list(e.details.get("cycle_nodes", []))
    return []


def would_create_cycle(connections: Iterable[WorkflowConnection], source_id: str, target_id: str) -> bool:
    """
    Check whether adding ``source_id -> target_id`` closes a cycle.

    Walks backward from the source over existing connections; reaching the
    target means a path target -> ... -> source already exists.
    """
    if source_id == target_id:
        return True
    predecessors: Dict[str, List[str]] = {}
    for connection in connections:
        predecessors.setdefault(connection.target_node_id, []).append(connection.source_node_id)

    visited: Set[str] = set()
    stack = [source_id]
    while stack:
        current = stack.pop()
        if current == target_id:
            return True
        if current in visited:
            continue
        visited.add(current)
        stack.extend(predecessors.get(current, []))
    return False


def reachable_from(workflow: Workflow, start_ids: Iterable[str]) -> Set[str]:
    """All node ids reachable from ``start_ids`` following connections forward."""
    reached: Set[str] = set()
    stack = list(start_ids)
    while stack:
        current = stack.pop()
        if current in reached:
            continue
        reached.add(current)
        stack.extend(connection.target_node_id for connection in workflow.outgoing(current))
    return reached
