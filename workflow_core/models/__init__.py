"""Data models for the workflow orchestration core."""

from .core import (
    Workflow,
    WorkflowNode,
    WorkflowConnection,
    WorkflowVariable,
    WorkflowTrigger,
    WorkflowSettings,
    WorkflowStatus,
    WorkflowTemplate,
    NodeType,
    NodeInput,
    NodeOutput,
    ExecutionStatus,
    ExecutionContext,
    ExecutionEvent,
    ExecutionHistory,
    ExecutionOptions,
    ExecutionFilters,
    WorkflowFilters,
    DateRange,
    NodeExecutionResult,
    ErrorHandling,
    EventType,
    LogLevel,
    ValidationIssue,
    ValidationResult,
    generate_id,
)
from .conditions import (
    ConditionalExpression,
    ConditionType,
    ConditionOperator,
    LogicOperator,
    LoopConfig,
    LoopType,
    BranchPath,
)
