"""Core Pydantic models for the workflow orchestration core."""

import threading
import uuid
from copy import deepcopy
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, field_validator, model_validator
from pydantic.alias_generators import to_camel


def generate_id(prefix: str) -> str:
    """Generate a unique, prefixed identifier."""
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


class CamelModel(BaseModel):
    """Base model whose JSON shape uses camelCase keys."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json_dict(self) -> Dict[str, Any]:
        """Dump to the persisted camelCase JSON shape."""
        return self.model_dump(mode="json", by_alias=True)


class WorkflowStatus(str, Enum):
    """Lifecycle status of a workflow definition."""
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    ARCHIVED = "archived"
    ERROR = "error"


class NodeType(str, Enum):
    """Enumeration of node behaviors."""
    TRIGGER = "trigger"
    ACTION = "action"
    CONDITION = "condition"
    LOOP = "loop"
    PARALLEL = "parallel"
    DELAY = "delay"
    TRANSFORM = "transform"
    API = "api"
    PLUGIN = "plugin"
    CUSTOM = "custom"


class ExecutionStatus(str, Enum):
    """Enumeration of execution statuses."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    ExecutionStatus.COMPLETED,
    ExecutionStatus.FAILED,
    ExecutionStatus.CANCELLED,
    ExecutionStatus.TIMEOUT,
})

ALLOWED_TRANSITIONS = {
    ExecutionStatus.PENDING: frozenset({ExecutionStatus.RUNNING, ExecutionStatus.CANCELLED}),
    ExecutionStatus.RUNNING: TERMINAL_STATUSES,
}


class ErrorHandling(str, Enum):
    """Workflow-level reaction to a node that fails after retries."""
    STOP = "stop"
    CONTINUE = "continue"
    RETRY = "retry"


class LogLevel(str, Enum):
    """Levels of execution log entries."""
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class EventType(str, Enum):
    """Execution events published to collaborators."""
    START = "start"
    NODE_START = "node_start"
    NODE_COMPLETE = "node_complete"
    NODE_ERROR = "node_error"
    COMPLETE = "complete"
    ERROR = "error"
    PAUSE = "pause"


class NodeInput(CamelModel):
    """Typed input port of a node."""
    id: str = Field(..., description="Port identifier, unique within the node")
    name: str = Field(default="", description="Display name")
    type: str = Field(default="any", description="Port data type")
    required: bool = Field(default=False, description="Whether the input must be satisfied")
    default_value: Any = Field(default=None, description="Value used when nothing is connected")


class NodeOutput(CamelModel):
    """Typed output port of a node."""
    id: str = Field(..., description="Port identifier, unique within the node")
    name: str = Field(default="", description="Display name")
    type: str = Field(default="any", description="Port data type")


class WorkflowNode(CamelModel):
    """A unit of work in a workflow graph."""
    id: str = Field(default_factory=lambda: generate_id("node"), description="Unique node identifier")
    type: NodeType = Field(..., description="Node behavior")
    name: str = Field(default="", description="Human readable name")
    description: Optional[str] = Field(default=None, description="Optional description")
    inputs: List[NodeInput] = Field(default_factory=list, description="Input ports")
    outputs: List[NodeOutput] = Field(default_factory=list, description="Output ports")
    config: Dict[str, Any] = Field(default_factory=dict, description="Type-specific configuration")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Free-form metadata")

    @field_validator('id')
    @classmethod
    def validate_id(cls, id_value):
        """Ensure node ID is not blank."""
        if not id_value or not id_value.strip():
            raise ValueError("Node ID cannot be empty")
        return id_value.strip()

    def get_input(self, port_id: str) -> Optional[NodeInput]:
        return next((port for port in self.inputs if port.id == port_id), None)

    def get_output(self, port_id: str) -> Optional[NodeOutput]:
        return next((port for port in self.outputs if port.id == port_id), None)


class WorkflowConnection(CamelModel):
    """A directed link from one node's output port to another node's input port."""
    id: str = Field(default_factory=lambda: generate_id("conn"), description="Unique connection identifier")
    source_node_id: str = Field(..., description="Source node ID")
    source_output_id: str = Field(default="output", description="Source output port ID")
    target_node_id: str = Field(..., description="Target node ID")
    target_input_id: str = Field(default="input", description="Target input port ID")
    condition: Optional[str] = Field(default=None, description="Optional guard expression")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Branch priority, default flag, name")

    @model_validator(mode='after')
    def validate_endpoints(self):
        """Self-referencing connections would form a cycle of length one."""
        if self.source_node_id == self.target_node_id:
            raise ValueError("Self-referencing connections are not allowed")
        return self


class WorkflowVariable(CamelModel):
    """A typed workflow variable seeded into each execution."""
    name: str = Field(..., description="Variable name")
    type: str = Field(default="any", description="Variable type")
    default_value: Any = Field(default=None, description="Initial value")
    description: Optional[str] = Field(default=None, description="Optional description")


class WorkflowTrigger(CamelModel):
    """A declared trigger; scheduling and dispatch live outside the core."""
    type: str = Field(..., description="Trigger type, e.g. manual, schedule, webhook")
    config: Dict[str, Any] = Field(default_factory=dict, description="Trigger configuration")
    enabled: bool = Field(default=True, description="Whether the trigger is active")


class WorkflowSettings(CamelModel):
    """Execution defaults declared by the workflow author."""
    timeout_ms: int = Field(default=300000, description="Overall execution deadline in milliseconds")
    max_retries: Optional[int] = Field(default=None, ge=0, description="Default retry count per node; engine default when unset")
    retry_delay_ms: Optional[int] = Field(default=None, ge=0, description="Linear backoff step; engine default when unset")
    max_parallel_executions: int = Field(default=1, ge=1, description="Declared concurrency hint")
    error_handling: ErrorHandling = Field(default=ErrorHandling.STOP, description="Node failure policy")


class Workflow(CamelModel):
    """Complete definition of a workflow graph."""
    id: str = Field(default_factory=lambda: generate_id("workflow"), description="Unique workflow identifier")
    name: str = Field(..., description="Name of the workflow")
    description: Optional[str] = Field(default=None, description="Description of the workflow")
    version: str = Field(default="1.0.0", description="Workflow version")
    status: WorkflowStatus = Field(default=WorkflowStatus.DRAFT, description="Lifecycle status")
    nodes: List[WorkflowNode] = Field(default_factory=list, description="Ordered list of nodes")
    connections: List[WorkflowConnection] = Field(default_factory=list, description="Connections between nodes")
    variables: List[WorkflowVariable] = Field(default_factory=list, description="Typed variables")
    triggers: List[WorkflowTrigger] = Field(default_factory=list, description="Declared triggers")
    settings: WorkflowSettings = Field(default_factory=WorkflowSettings, description="Execution defaults")
    tags: List[str] = Field(default_factory=list, description="Tags used for filtering")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Free-form metadata")
    created_at: datetime = Field(default_factory=datetime.utcnow, description="Creation time")
    updated_at: datetime = Field(default_factory=datetime.utcnow, description="Last update time")

    @field_validator('nodes')
    @classmethod
    def validate_unique_node_ids(cls, nodes):
        """Ensure all node IDs are unique."""
        node_ids = [node.id for node in nodes]
        if len(node_ids) != len(set(node_ids)):
            raise ValueError("All node IDs must be unique")
        return nodes

    @field_validator('name')
    @classmethod
    def validate_name_not_empty(cls, name):
        """Ensure workflow name is not empty."""
        if not name.strip():
            raise ValueError("Workflow name cannot be empty")
        return name.strip()

    def get_node(self, node_id: str) -> Optional[WorkflowNode]:
        return next((node for node in self.nodes if node.id == node_id), None)

    def get_connection(self, connection_id: str) -> Optional[WorkflowConnection]:
        return next((conn for conn in self.connections if conn.id == connection_id), None)

    def incoming(self, node_id: str) -> List[WorkflowConnection]:
        return [conn for conn in self.connections if conn.target_node_id == node_id]

    def outgoing(self, node_id: str) -> List[WorkflowConnection]:
        return [conn for conn in self.connections if conn.source_node_id == node_id]

    def trigger_nodes(self) -> List[WorkflowNode]:
        return [node for node in self.nodes if node.type == NodeType.TRIGGER]

    def touch(self) -> None:
        self.updated_at = datetime.utcnow()


class ValidationIssue(CamelModel):
    """A single validation finding."""
    type: str = Field(..., description="syntax, logic, connection, configuration or security")
    severity: str = Field(default="error", description="error, warning or info")
    message: str = Field(..., description="Human readable description")
    node_id: Optional[str] = Field(default=None, description="Offending node, if any")
    connection_id: Optional[str] = Field(default=None, description="Offending connection, if any")


class ValidationResult(CamelModel):
    """Result of workflow validation."""
    is_valid: bool = Field(..., description="Whether the workflow has no errors")
    errors: List[ValidationIssue] = Field(default_factory=list, description="Validation errors")
    warnings: List[ValidationIssue] = Field(default_factory=list, description="Validation warnings")
    suggestions: List[ValidationIssue] = Field(default_factory=list, description="Advisory suggestions")

    @property
    def error_messages(self) -> List[str]:
        return [issue.message for issue in self.errors]


class ExecutionLogEntry(CamelModel):
    """Ordered log entry recorded on an execution context."""
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    level: LogLevel = Field(default=LogLevel.INFO)
    message: str
    node_id: Optional[str] = None
    data: Any = None


class NodeExecutionResult(CamelModel):
    """Outcome of running a single node, after retries."""
    node_id: str
    status: ExecutionStatus
    start_time: datetime
    end_time: datetime
    duration_ms: float = 0.0
    output: Any = None
    error: Optional[str] = None
    attempts: int = 1


class ExecutionContext(CamelModel):
    """
    Mutable state of one workflow run.

    Status, variables and logs are guarded by a per-context lock; node handlers
    only ever see deep copies of the variables.
    """
    id: str = Field(default_factory=lambda: generate_id("ctx"))
    execution_id: str = Field(default_factory=lambda: generate_id("exec"))
    workflow_id: str
    status: ExecutionStatus = ExecutionStatus.PENDING
    variables: Dict[str, Any] = Field(default_factory=dict)
    node_outputs: Dict[str, Any] = Field(default_factory=dict)
    node_results: List[NodeExecutionResult] = Field(default_factory=list)
    current_node_id: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration_ms: Optional[float] = None
    error: Optional[str] = None
    logs: List[ExecutionLogEntry] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    _lock: Any = PrivateAttr(default_factory=threading.RLock)

    @property
    def lock(self):
        return self._lock

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def try_transition(self, target: ExecutionStatus) -> bool:
        """Move to ``target`` if the state machine allows it; terminal states are final."""
        with self._lock:
            if target not in ALLOWED_TRANSITIONS.get(self.status, frozenset()):
                return False
            self.status = target
            now = datetime.utcnow()
            if target == ExecutionStatus.RUNNING:
                self.start_time = now
            elif target in TERMINAL_STATUSES:
                self.end_time = now
                started = self.start_time or now
                self.duration_ms = (now - started).total_seconds() * 1000
            return True

    def add_log(self, level: LogLevel, message: str, node_id: Optional[str] = None, data: Any = None) -> None:
        with self._lock:
            self.logs.append(ExecutionLogEntry(level=level, message=message, node_id=node_id, data=data))

    def snapshot_variables(self) -> Dict[str, Any]:
        """Return a deep copy of the variables with node outputs under ``nodes``."""
        with self._lock:
            frame = deepcopy(self.variables)
            frame["nodes"] = deepcopy(self.node_outputs)
            return frame

    def merge_node_output(
        self,
        node_id: str,
        result_key: str,
        output: Any,
        bindings: Optional[Dict[str, Any]] = None,
        output_variable: Optional[str] = None,
    ) -> bool:
        """
        Merge a node's output into the shared context.

        Returns False and discards the output when the context is already terminal.
        """
        with self._lock:
            if self.is_terminal:
                return False
            self.node_outputs[node_id] = deepcopy(output)
            self.variables[result_key] = deepcopy(output)
            if output_variable:
                self.variables[output_variable] = deepcopy(output)
            if bindings:
                self.variables.update(deepcopy(bindings))
            return True

    def record_result(self, result: NodeExecutionResult) -> None:
        with self._lock:
            self.node_results.append(result)


class ExecutionEvent(CamelModel):
    """Event published while an execution runs."""
    type: EventType
    execution_id: str
    workflow_id: str
    node_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    data: Dict[str, Any] = Field(default_factory=dict)


class ExecutionOptions(CamelModel):
    """Per-call execution overrides."""
    timeout_ms: Optional[int] = Field(default=None, gt=0, description="Per-node timeout")
    max_retries: Optional[int] = Field(default=None, ge=0, description="Per-node retry count")
    retry_delay_ms: Optional[int] = Field(default=None, ge=0, description="Linear backoff step")
    dry_run: bool = Field(default=False, description="Walk the plan without running handlers")
    max_concurrency: Optional[int] = Field(default=None, ge=1, description="Engine-wide running cap")
    validate_first: Optional[bool] = Field(default=None, alias="validate",
                                           description="Override validate-before-execute")


class ExecutionHistory(CamelModel):
    """Record written to the history sink when an execution ends."""
    id: str = Field(default_factory=lambda: generate_id("hist"))
    workflow_id: str
    execution_id: str
    status: ExecutionStatus
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration_ms: Optional[float] = None
    trigger: Dict[str, Any] = Field(default_factory=dict)
    input: Dict[str, Any] = Field(default_factory=dict)
    output: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    node_results: List[NodeExecutionResult] = Field(default_factory=list)
    logs: List[ExecutionLogEntry] = Field(default_factory=list)


class DateRange(CamelModel):
    start: Optional[datetime] = None
    end: Optional[datetime] = None


class WorkflowFilters(CamelModel):
    """Filters for listing workflows."""
    status: List[WorkflowStatus] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    search: Optional[str] = None
    date_range: Optional[DateRange] = None
    limit: Optional[int] = Field(default=None, ge=1)
    offset: int = Field(default=0, ge=0)


class ExecutionFilters(CamelModel):
    """Filters for querying execution history."""
    status: List[ExecutionStatus] = Field(default_factory=list)
    date_range: Optional[DateRange] = None
    trigger: Optional[str] = None
    limit: Optional[int] = Field(default=None, ge=1)
    offset: int = Field(default=0, ge=0)


class WorkflowTemplate(CamelModel):
    """A reusable workflow snapshot that can be instantiated with fresh ids."""
    id: str = Field(default_factory=lambda: generate_id("template"))
    name: str
    description: str = ""
    category: str = "custom"
    version: str = "1.0.0"
    tags: List[str] = Field(default_factory=list)
    workflow: Workflow
    usage_count: int = 0
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
