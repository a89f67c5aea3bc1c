"""Helpers for building workflow documents in tests."""

from typing import Any, Dict, Iterable, Optional

from workflow_core.models.core import Workflow


def node(node_id: str, node_type: str = "action", **config) -> Dict[str, Any]:
    return {"id": node_id, "type": node_type, "name": node_id, "config": config}


def trigger(node_id: str = "start", **config) -> Dict[str, Any]:
    return node(node_id, "trigger", **config)


def connect(source: str, target: str, condition: Optional[str] = None, **metadata) -> Dict[str, Any]:
    return {
        "id": f"{source}_to_{target}",
        "sourceNodeId": source,
        "targetNodeId": target,
        "condition": condition,
        "metadata": metadata,
    }


def build_workflow(nodes: Iterable[Dict[str, Any]], connections: Iterable[Dict[str, Any]] = (),
                   name: str = "Test Workflow", variables: Optional[Dict[str, Any]] = None,
                   **settings) -> Workflow:
    """Build a workflow model; keyword arguments become camelCase workflow settings."""
    return Workflow.model_validate({
        "name": name,
        "nodes": list(nodes),
        "connections": list(connections),
        "variables": [{"name": key, "defaultValue": value} for key, value in (variables or {}).items()],
        "settings": settings,
    })
