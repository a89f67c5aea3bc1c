"""Core workflow components."""

from .exceptions import (
    WorkflowEngineError,
    GraphValidationError,
    WorkflowNotFoundError,
    NodeExecutionError,
    NodeTimeoutError,
    ExecutionEngineError,
    ExecutionNotFoundError,
    ExecutionCancelledError,
    ExecutionTimeoutError,
    ConditionEvaluationError,
    UnsafeExpressionError,
    RegistryError,
    StorageError,
    ConfigurationError,
)
from .logging import setup_logging, get_logger

__all__ = [
    "WorkflowEngineError",
    "GraphValidationError",
    "WorkflowNotFoundError",
    "NodeExecutionError",
    "NodeTimeoutError",
    "ExecutionEngineError",
    "ExecutionNotFoundError",
    "ExecutionCancelledError",
    "ExecutionTimeoutError",
    "ConditionEvaluationError",
    "UnsafeExpressionError",
    "RegistryError",
    "StorageError",
    "ConfigurationError",
    "setup_logging",
    "get_logger",
]
