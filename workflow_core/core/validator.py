"""Structural and configuration validation for workflows."""

from typing import Any, List, Optional

from pydantic import ValidationError

from ..models.conditions import ConditionalExpression, LoopConfig
from ..models.core import (
    NodeType,
    ValidationIssue,
    ValidationResult,
    Workflow,
    WorkflowConnection,
    WorkflowNode,
)
from .conditions import ConditionalLogicEngine, parse_guard
from .graph_utils import find_cycle_nodes, reachable_from, would_create_cycle
from .logging import get_logger

logger = get_logger(__name__)

ANY_TYPE = "any"


def _port_type(node: WorkflowNode, port_id: str, outgoing: bool) -> Optional[str]:
    """
    Type of a node's port, or None when the port does not exist.

    Nodes that declare no ports on a side accept any port id on that side with type ``any``.
    """
    ports = node.outputs if outgoing else node.inputs
    if not ports:
        return ANY_TYPE
    port = next((p for p in ports if p.id == port_id), None)
    return port.type if port else None


def _types_compatible(source_type: str, target_type: str) -> bool:
    return source_type == target_type or ANY_TYPE in (source_type, target_type)


def _is_blank(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == {}


class WorkflowValidator:
    """Validates workflows and candidate connections."""

    def __init__(self, conditions: Optional[ConditionalLogicEngine] = None):
        self._conditions = conditions or ConditionalLogicEngine()

    def check_connection(self, workflow: Workflow, connection: WorkflowConnection) -> List[str]:
        """
        Problems that prevent ``connection`` from being added to ``workflow``.

        Checks both endpoints and their ports exist, port types are compatible
        and the connection would not close a cycle.
        """
        errors = []
        source = workflow.get_node(connection.source_node_id)
        target = workflow.get_node(connection.target_node_id)
        if source is None:
            errors.append(f"Source node '{connection.source_node_id}' does not exist")
        if target is None:
            errors.append(f"Target node '{connection.target_node_id}' does not exist")
        if errors:
            return errors

        source_type = _port_type(source, connection.source_output_id, outgoing=True)
        target_type = _port_type(target, connection.target_input_id, outgoing=False)
        if source_type is None:
            errors.append(f"Output port '{connection.source_output_id}' does not exist on node '{source.id}'")
        if target_type is None:
            errors.append(f"Input port '{connection.target_input_id}' does not exist on node '{target.id}'")
        if source_type is not None and target_type is not None and not _types_compatible(source_type, target_type):
            errors.append(f"Port type mismatch: '{source_type}' cannot connect to '{target_type}'")

        others = [c for c in workflow.connections if c.id != connection.id]
        if would_create_cycle(others, connection.source_node_id, connection.target_node_id):
            errors.append(
                f"Connection {connection.source_node_id} -> {connection.target_node_id} would create a cycle"
            )
        return errors

    def validate_connection(self, workflow: Workflow, connection: WorkflowConnection) -> bool:
        return not self.check_connection(workflow, connection)

    def validate_node(self, node: WorkflowNode, workflow: Optional[Workflow] = None) -> ValidationResult:
        """Validate a node's required inputs and type-specific configuration."""
        errors: List[ValidationIssue] = []
        warnings: List[ValidationIssue] = []
        suggestions: List[ValidationIssue] = []

        connected_inputs = set()
        if workflow is not None:
            connected_inputs = {c.target_input_id for c in workflow.incoming(node.id)}

        for port in node.inputs:
            if not port.required:
                continue
            satisfied = (
                not _is_blank(node.config.get(port.id))
                or port.default_value is not None
                or port.id in connected_inputs
            )
            if not satisfied:
                errors.append(ValidationIssue(
                    type="configuration",
                    message=f"Required input '{port.name or port.id}' is not configured",
                    node_id=node.id,
                ))

        config = node.config
        if node.type == NodeType.API and _is_blank(config.get("url")):
            errors.append(ValidationIssue(type="configuration", message="API node requires a URL", node_id=node.id))

        if node.type == NodeType.DELAY:
            duration = config.get("duration")
            if isinstance(duration, bool) or not isinstance(duration, (int, float)) or duration <= 0:
                errors.append(ValidationIssue(
                    type="configuration",
                    message="Delay node requires a positive duration",
                    node_id=node.id,
                ))

        if node.type == NodeType.LOOP:
            try:
                LoopConfig.model_validate(config)
            except ValidationError as e:
                errors.append(ValidationIssue(
                    type="configuration",
                    message=f"Invalid loop configuration: {e.errors()[0]['msg']}",
                    node_id=node.id,
                ))

        if node.type == NodeType.PARALLEL and not isinstance(config.get("tasks", []), list):
            errors.append(ValidationIssue(
                type="configuration",
                message="Parallel node 'tasks' must be a list",
                node_id=node.id,
            ))

        if node.type == NodeType.CONDITION and _is_blank(config.get("condition")):
            errors.append(ValidationIssue(
                type="configuration",
                message="Condition node requires a condition",
                node_id=node.id,
            ))

        if node.type in (NodeType.CONDITION, NodeType.LOOP):
            self._check_embedded_conditions(node, errors, warnings)

        if node.type == NodeType.ACTION and _is_blank(config.get("action")):
            suggestions.append(ValidationIssue(
                type="configuration",
                severity="info",
                message="Action node has no 'action'; it will fail at runtime",
                node_id=node.id,
            ))

        return ValidationResult(is_valid=not errors, errors=errors, warnings=warnings, suggestions=suggestions)

    def _check_embedded_conditions(self, node: WorkflowNode, errors: List[ValidationIssue],
                                   warnings: List[ValidationIssue]) -> None:
        raw = []
        if node.config.get("condition") is not None:
            raw.append(node.config["condition"])
        for key in ("breakConditions", "continueConditions"):
            raw.extend(node.config.get(key) or [])

        for item in raw:
            if isinstance(item, str):
                continue
            try:
                expression = ConditionalExpression.model_validate(item)
            except ValidationError as e:
                errors.append(ValidationIssue(
                    type="syntax",
                    message=f"Invalid condition: {e.errors()[0]['msg']}",
                    node_id=node.id,
                ))
                continue
            if expression.contains_script():
                warnings.append(ValidationIssue(
                    type="security",
                    severity="warning",
                    message="Script condition runs in the restricted expression evaluator",
                    node_id=node.id,
                ))
                problem = self._conditions.check_script_safety(expression)
                if problem:
                    errors.append(ValidationIssue(type="security", message=problem, node_id=node.id))

    def validate_workflow(self, workflow: Workflow) -> ValidationResult:
        """
        Validate a complete workflow.

        Args:
            workflow: The workflow to validate

        Returns:
            ValidationResult: errors make the workflow invalid; warnings and
            suggestions are advisory
        """
        errors: List[ValidationIssue] = []
        warnings: List[ValidationIssue] = []
        suggestions: List[ValidationIssue] = []

        for node in workflow.nodes:
            node_result = self.validate_node(node, workflow)
            errors.extend(node_result.errors)
            warnings.extend(node_result.warnings)
            suggestions.extend(node_result.suggestions)

        node_ids = {node.id for node in workflow.nodes}
        for connection in workflow.connections:
            if connection.source_node_id not in node_ids or connection.target_node_id not in node_ids:
                errors.append(ValidationIssue(
                    type="connection",
                    message="Connection references non-existent node",
                    connection_id=connection.id,
                ))
                continue
            source = workflow.get_node(connection.source_node_id)
            target = workflow.get_node(connection.target_node_id)
            if _port_type(source, connection.source_output_id, outgoing=True) is None:
                errors.append(ValidationIssue(
                    type="connection",
                    message=f"Connection references missing output port '{connection.source_output_id}'",
                    connection_id=connection.id,
                ))
            if _port_type(target, connection.target_input_id, outgoing=False) is None:
                errors.append(ValidationIssue(
                    type="connection",
                    message=f"Connection references missing input port '{connection.target_input_id}'",
                    connection_id=connection.id,
                ))
            if connection.condition and parse_guard(connection.condition) is None:
                warnings.append(ValidationIssue(
                    type="syntax",
                    severity="warning",
                    message="Connection guard is empty",
                    connection_id=connection.id,
                ))

        cycle_nodes = find_cycle_nodes(workflow)
        if cycle_nodes:
            errors.append(ValidationIssue(
                type="logic",
                message=f"Workflow contains a cycle involving nodes: {', '.join(cycle_nodes)}",
            ))

        connected = {c.source_node_id for c in workflow.connections} | {c.target_node_id for c in workflow.connections}
        for node in workflow.nodes:
            if node.type != NodeType.TRIGGER and node.id not in connected:
                warnings.append(ValidationIssue(
                    type="logic",
                    severity="warning",
                    message=f"Node '{node.name or node.id}' is disconnected",
                    node_id=node.id,
                ))

        triggers = workflow.trigger_nodes()
        if not triggers:
            errors.append(ValidationIssue(type="logic", message="Workflow must have at least one trigger node"))
        else:
            if len(triggers) > 1:
                warnings.append(ValidationIssue(
                    type="logic",
                    severity="warning",
                    message="Multiple trigger nodes detected - ensure this is intentional",
                ))
            reachable = reachable_from(workflow, [node.id for node in triggers])
            for node in workflow.nodes:
                if node.id not in reachable and node.id in connected:
                    warnings.append(ValidationIssue(
                        type="logic",
                        severity="warning",
                        message=f"Node '{node.name or node.id}' is not reachable from any trigger",
                        node_id=node.id,
                    ))

        for node in workflow.nodes:
            if node.type != NodeType.CONDITION:
                continue
            outgoing = workflow.outgoing(node.id)
            has_default = any(
                not (c.condition or "").strip() or (c.metadata or {}).get("isDefault") for c in outgoing
            )
            if outgoing and not has_default:
                suggestions.append(ValidationIssue(
                    type="logic",
                    severity="info",
                    message=f"Condition node '{node.name or node.id}' has no default branch",
                    node_id=node.id,
                ))

        result = ValidationResult(is_valid=not errors, errors=errors, warnings=warnings, suggestions=suggestions)
        logger.debug(
            f"Validated workflow {workflow.id}: {len(errors)} errors, {len(warnings)} warnings, "
            f"{len(suggestions)} suggestions"
        )
        return result
