"""Graph Manager for workflow definition handling."""

import json
import threading
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError

from ..models.core import (
    Workflow,
    WorkflowConnection,
    WorkflowFilters,
    WorkflowNode,
    WorkflowStatus,
    WorkflowTemplate,
    ValidationResult,
    generate_id,
)
from ..storage.kv_store import InMemoryKeyValueStore, KeyValueStore
from .exceptions import GraphValidationError, WorkflowNotFoundError
from .logging import get_logger
from .validator import WorkflowValidator

logger = get_logger(__name__)

WORKFLOW_PREFIX = "workflow:"
TEMPLATE_PREFIX = "template:"
EXPORT_FORMAT_VERSION = "1.0"


def clone_with_new_ids(workflow: Workflow, name: Optional[str] = None) -> Workflow:
    """
    Copy ``workflow`` giving the workflow, every node and every connection a fresh id.

    Connection endpoints are remapped onto the new node ids.
    """
    data = workflow.model_dump()
    id_map: Dict[str, str] = {}
    for node in data["nodes"]:
        new_id = generate_id("node")
        id_map[node["id"]] = new_id
        node["id"] = new_id
    for connection in data["connections"]:
        connection["id"] = generate_id("conn")
        connection["source_node_id"] = id_map.get(connection["source_node_id"], connection["source_node_id"])
        connection["target_node_id"] = id_map.get(connection["target_node_id"], connection["target_node_id"])

    now = datetime.utcnow()
    data["id"] = generate_id("workflow")
    data["created_at"] = now
    data["updated_at"] = now
    if name:
        data["name"] = name
    return Workflow.model_validate(data)


class GraphManager:
    """Manages workflow definitions, graph edits, validation and templates."""

    def __init__(self, store: Optional[KeyValueStore] = None, validator: Optional[WorkflowValidator] = None):
        self._store = store or InMemoryKeyValueStore()
        self._validator = validator or WorkflowValidator()
        self._lock = threading.RLock()

    @property
    def validator(self) -> WorkflowValidator:
        return self._validator

    def _save(self, workflow: Workflow) -> None:
        self._store.put(f"{WORKFLOW_PREFIX}{workflow.id}", workflow.to_json_dict())

    def create_workflow(self, workflow: Union[Workflow, Dict[str, Any]]) -> Workflow:
        """
        Store a new workflow.

        Validation findings are logged but not enforced here; graphs are
        usually built incrementally.

        Args:
            workflow: Workflow model or its JSON representation

        Returns:
            Workflow: The stored workflow

        Raises:
            GraphValidationError: If the document is malformed or the id is taken
        """
        workflow = self._coerce(workflow)
        with self._lock:
            if self._store.get(f"{WORKFLOW_PREFIX}{workflow.id}") is not None:
                raise GraphValidationError(f"Workflow '{workflow.id}' already exists", workflow_id=workflow.id)
            workflow.created_at = workflow.updated_at = datetime.utcnow()
            self._save(workflow)
        logger.info(f"Created workflow {workflow.id} ({workflow.name})")
        return workflow

    def get_workflow(self, workflow_id: str) -> Workflow:
        """
        Raises:
            WorkflowNotFoundError: If no workflow is stored under ``workflow_id``
        """
        document = self._store.get(f"{WORKFLOW_PREFIX}{workflow_id}")
        if document is None:
            raise WorkflowNotFoundError(f"Workflow '{workflow_id}' not found", resource_id=workflow_id)
        return Workflow.model_validate(document)

    def update_workflow(self, workflow_id: str, updates: Dict[str, Any]) -> Workflow:
        """Apply top-level field updates; ids and creation time are preserved."""
        with self._lock:
            workflow = self.get_workflow(workflow_id)
            data = workflow.model_dump()
            patch = self._validate_model(Workflow, {**workflow.to_json_dict(), **updates}, workflow_id).model_dump()
            for key in patch:
                if key not in ("id", "created_at"):
                    data[key] = patch[key]
            updated = Workflow.model_validate(data)
            updated.touch()
            self._save(updated)
        logger.info(f"Updated workflow {workflow_id}")
        return updated

    def delete_workflow(self, workflow_id: str) -> bool:
        deleted = self._store.delete(f"{WORKFLOW_PREFIX}{workflow_id}")
        if deleted:
            logger.info(f"Deleted workflow {workflow_id}")
        return deleted

    def list_workflows(self, filters: Optional[WorkflowFilters] = None) -> List[Workflow]:
        """List workflows, most recently updated first."""
        workflows = []
        for key in self._store.keys(WORKFLOW_PREFIX):
            document = self._store.get(key)
            if document is not None:
                workflows.append(Workflow.model_validate(document))
        workflows.sort(key=lambda w: w.updated_at, reverse=True)
        if filters is None:
            return workflows

        if filters.status:
            workflows = [w for w in workflows if w.status in filters.status]
        if filters.tags:
            wanted = set(filters.tags)
            workflows = [w for w in workflows if wanted.intersection(w.tags)]
        if filters.search:
            needle = filters.search.lower()
            workflows = [
                w for w in workflows
                if needle in w.name.lower() or needle in (w.description or "").lower()
            ]
        if filters.date_range is not None:
            if filters.date_range.start is not None:
                workflows = [w for w in workflows if w.created_at >= filters.date_range.start]
            if filters.date_range.end is not None:
                workflows = [w for w in workflows if w.created_at <= filters.date_range.end]
        workflows = workflows[filters.offset:]
        if filters.limit is not None:
            workflows = workflows[:filters.limit]
        return workflows

    def duplicate_workflow(self, workflow_id: str, name: Optional[str] = None) -> Workflow:
        original = self.get_workflow(workflow_id)
        duplicate = clone_with_new_ids(original, name or f"{original.name} (Copy)")
        duplicate.status = WorkflowStatus.DRAFT
        return self.create_workflow(duplicate)

    def add_node(self, workflow_id: str, node: Union[WorkflowNode, Dict[str, Any]]) -> WorkflowNode:
        """
        Raises:
            GraphValidationError: If a node with the same id already exists
        """
        node = node if isinstance(node, WorkflowNode) else self._validate_model(WorkflowNode, node, workflow_id)
        with self._lock:
            workflow = self.get_workflow(workflow_id)
            if workflow.get_node(node.id) is not None:
                raise GraphValidationError(f"Node '{node.id}' already exists", workflow_id=workflow_id)
            workflow.nodes.append(node)
            workflow.touch()
            self._save(workflow)
        logger.debug(f"Added {node.type.value} node {node.id} to workflow {workflow_id}")
        return node

    def update_node(self, workflow_id: str, node_id: str, updates: Dict[str, Any]) -> WorkflowNode:
        with self._lock:
            workflow = self.get_workflow(workflow_id)
            index = next((i for i, n in enumerate(workflow.nodes) if n.id == node_id), None)
            if index is None:
                raise WorkflowNotFoundError(f"Node '{node_id}' not found", resource_id=node_id)
            merged = {**workflow.nodes[index].to_json_dict(), **updates, "id": node_id}
            node = self._validate_model(WorkflowNode, merged, workflow_id)
            workflow.nodes[index] = node
            workflow.touch()
            self._save(workflow)
        return node

    def delete_node(self, workflow_id: str, node_id: str) -> bool:
        """Delete a node together with every connection touching it."""
        with self._lock:
            workflow = self.get_workflow(workflow_id)
            if workflow.get_node(node_id) is None:
                return False
            workflow.nodes = [n for n in workflow.nodes if n.id != node_id]
            before = len(workflow.connections)
            workflow.connections = [
                c for c in workflow.connections
                if c.source_node_id != node_id and c.target_node_id != node_id
            ]
            workflow.touch()
            self._save(workflow)
        logger.debug(f"Deleted node {node_id} and {before - len(workflow.connections)} connections")
        return True

    def add_connection(self, workflow_id: str,
                       connection: Union[WorkflowConnection, Dict[str, Any]]) -> WorkflowConnection:
        """
        Add a connection after checking endpoints, ports, port types and acyclicity.

        Raises:
            GraphValidationError: If the connection is rejected
        """
        if not isinstance(connection, WorkflowConnection):
            connection = self._validate_model(WorkflowConnection, connection, workflow_id)
        with self._lock:
            workflow = self.get_workflow(workflow_id)
            if workflow.get_connection(connection.id) is not None:
                raise GraphValidationError(f"Connection '{connection.id}' already exists", workflow_id=workflow_id)
            problems = self._validator.check_connection(workflow, connection)
            if problems:
                logger.warning(f"Rejected connection in workflow {workflow_id}: {'; '.join(problems)}")
                raise GraphValidationError(
                    f"Invalid connection: {'; '.join(problems)}",
                    validation_errors=problems,
                    workflow_id=workflow_id,
                )
            workflow.connections.append(connection)
            workflow.touch()
            self._save(workflow)
        return connection

    def update_connection(self, workflow_id: str, connection_id: str,
                          updates: Dict[str, Any]) -> WorkflowConnection:
        with self._lock:
            workflow = self.get_workflow(workflow_id)
            index = next((i for i, c in enumerate(workflow.connections) if c.id == connection_id), None)
            if index is None:
                raise WorkflowNotFoundError(f"Connection '{connection_id}' not found", resource_id=connection_id)
            merged = {**workflow.connections[index].to_json_dict(), **updates, "id": connection_id}
            connection = self._validate_model(WorkflowConnection, merged, workflow_id)
            problems = self._validator.check_connection(workflow, connection)
            if problems:
                raise GraphValidationError(
                    f"Invalid connection: {'; '.join(problems)}",
                    validation_errors=problems,
                    workflow_id=workflow_id,
                )
            workflow.connections[index] = connection
            workflow.touch()
            self._save(workflow)
        return connection

    def delete_connection(self, workflow_id: str, connection_id: str) -> bool:
        with self._lock:
            workflow = self.get_workflow(workflow_id)
            remaining = [c for c in workflow.connections if c.id != connection_id]
            if len(remaining) == len(workflow.connections):
                return False
            workflow.connections = remaining
            workflow.touch()
            self._save(workflow)
        return True

    def validate_connection(self, workflow_id: str,
                            connection: Union[WorkflowConnection, Dict[str, Any]]) -> bool:
        if not isinstance(connection, WorkflowConnection):
            try:
                connection = WorkflowConnection.model_validate(connection)
            except ValidationError:
                return False
        return self._validator.validate_connection(self.get_workflow(workflow_id), connection)

    def validate_workflow(self, workflow: Union[str, Workflow]) -> ValidationResult:
        if isinstance(workflow, str):
            workflow = self.get_workflow(workflow)
        return self._validator.validate_workflow(workflow)

    def export_workflow(self, workflow_id: str) -> str:
        """Serialize a workflow to a JSON document."""
        workflow = self.get_workflow(workflow_id)
        document = {
            "formatVersion": EXPORT_FORMAT_VERSION,
            "exportedAt": datetime.utcnow().isoformat(),
            "workflow": workflow.to_json_dict(),
        }
        return json.dumps(document, indent=2)

    def import_workflow(self, data: Union[str, Dict[str, Any]]) -> Workflow:
        """
        Create a workflow from an exported JSON document.

        Every workflow, node and connection id is regenerated, so importing the
        same document twice yields two independent workflows.

        Raises:
            GraphValidationError: If the document cannot be parsed
        """
        try:
            document = json.loads(data) if isinstance(data, str) else data
        except json.JSONDecodeError as e:
            raise GraphValidationError(f"Import document is not valid JSON: {e}")
        payload = document.get("workflow", document) if isinstance(document, dict) else None
        if not isinstance(payload, dict):
            raise GraphValidationError("Import document does not contain a workflow")

        workflow = self._validate_model(Workflow, payload, None)
        imported = clone_with_new_ids(workflow)
        imported.status = WorkflowStatus.DRAFT
        logger.info(f"Imported workflow {workflow.id} as {imported.id}")
        return self.create_workflow(imported)

    def create_template(self, workflow_id: str, name: Optional[str] = None, description: str = "",
                        category: str = "custom", tags: Optional[List[str]] = None) -> WorkflowTemplate:
        workflow = self.get_workflow(workflow_id)
        template = WorkflowTemplate(
            name=name or workflow.name,
            description=description or workflow.description or "",
            category=category,
            tags=tags if tags is not None else list(workflow.tags),
            workflow=workflow,
        )
        self._store.put(f"{TEMPLATE_PREFIX}{template.id}", template.to_json_dict())
        logger.info(f"Created template {template.id} from workflow {workflow_id}")
        return template

    def get_template(self, template_id: str) -> WorkflowTemplate:
        document = self._store.get(f"{TEMPLATE_PREFIX}{template_id}")
        if document is None:
            raise WorkflowNotFoundError(f"Template '{template_id}' not found", resource_id=template_id)
        return WorkflowTemplate.model_validate(document)

    def list_templates(self, category: Optional[str] = None) -> List[WorkflowTemplate]:
        templates = []
        for key in self._store.keys(TEMPLATE_PREFIX):
            document = self._store.get(key)
            if document is not None:
                templates.append(WorkflowTemplate.model_validate(document))
        if category:
            templates = [t for t in templates if t.category == category]
        return sorted(templates, key=lambda t: t.created_at)

    def apply_template(self, template_id: str, name: Optional[str] = None,
                       variables: Optional[Dict[str, Any]] = None) -> Workflow:
        """
        Instantiate a template as a new draft workflow with fresh ids.

        ``variables`` overrides the default values of the template's declared variables.
        """
        with self._lock:
            template = self.get_template(template_id)
            workflow = clone_with_new_ids(template.workflow, name or template.name)
            workflow.status = WorkflowStatus.DRAFT
            workflow.metadata = {**workflow.metadata, "templateId": template.id}
            for variable in workflow.variables:
                if variables and variable.name in variables:
                    variable.default_value = variables[variable.name]
            template.usage_count += 1
            template.updated_at = datetime.utcnow()
            self._store.put(f"{TEMPLATE_PREFIX}{template.id}", template.to_json_dict())
        return self.create_workflow(workflow)

    def _coerce(self, workflow: Union[Workflow, Dict[str, Any]]) -> Workflow:
        if isinstance(workflow, Workflow):
            return workflow
        return self._validate_model(Workflow, workflow, None)

    @staticmethod
    def _validate_model(model, data: Dict[str, Any], workflow_id: Optional[str]):
        try:
            return model.model_validate(data)
        except ValidationError as e:
            messages = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
            raise GraphValidationError(
                f"Invalid {model.__name__}: {'; '.join(messages)}",
                validation_errors=messages,
                workflow_id=workflow_id,
            )
