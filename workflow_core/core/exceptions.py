"""Exceptions for the workflow orchestration core with detailed error information."""

from datetime import datetime
from typing import Optional, Dict, Any, List
from enum import Enum


class ErrorSeverity(Enum):
    """Error severity levels for categorizing exceptions."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Categories of errors for better classification."""
    VALIDATION = "validation"
    EXECUTION = "execution"
    STORAGE = "storage"
    NETWORK = "network"
    CONFIGURATION = "configuration"
    SECURITY = "security"
    NOT_FOUND = "not_found"


class WorkflowEngineError(Exception):
    """Base exception for all workflow core errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        category: ErrorCategory = ErrorCategory.EXECUTION,
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = False,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.severity = severity
        self.category = category
        self.details = details or {}
        self.recoverable = recoverable
        self.context = context or {}
        self.timestamp = datetime.utcnow()

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging and API responses."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category.value,
            "details": self.details,
            "recoverable": self.recoverable,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "exception_type": self.__class__.__name__
        }

    def add_context(self, **kwargs):
        """Add additional context to the exception."""
        self.context.update(kwargs)
        return self

    def add_details(self, **kwargs):
        """Add additional details to the exception."""
        self.details.update(kwargs)
        return self


class GraphValidationError(WorkflowEngineError):
    """Raised when a workflow or graph edit fails structural validation."""

    def __init__(
        self,
        message: str,
        validation_errors: Optional[List[str]] = None,
        workflow_id: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.VALIDATION,
            **kwargs
        )
        self.validation_errors = validation_errors or []
        if workflow_id:
            self.add_context(workflow_id=workflow_id)
        if validation_errors:
            self.add_details(validation_errors=validation_errors)


class WorkflowNotFoundError(WorkflowEngineError):
    """Raised when a workflow, node, connection or template id is unknown."""

    def __init__(self, message: str, resource_id: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.LOW,
            category=ErrorCategory.NOT_FOUND,
            **kwargs
        )
        if resource_id:
            self.add_context(resource_id=resource_id)


class NodeExecutionError(WorkflowEngineError):
    """Raised when a node fails, carrying the attempt count after retries."""

    def __init__(
        self,
        message: str,
        node_id: Optional[str] = None,
        execution_id: Optional[str] = None,
        attempts: int = 1,
        timed_out: bool = False,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.EXECUTION,
            recoverable=True,
            **kwargs
        )
        self.node_id = node_id
        self.attempts = attempts
        self.timed_out = timed_out
        if node_id:
            self.add_context(node_id=node_id)
        if execution_id:
            self.add_context(execution_id=execution_id)
        self.add_details(attempts=attempts, timed_out=timed_out)


class NodeTimeoutError(NodeExecutionError):
    """Raised when a single node attempt exceeds its timeout."""

    def __init__(self, message: str, timeout_ms: Optional[int] = None, **kwargs):
        super().__init__(message, timed_out=True, **kwargs)
        if timeout_ms is not None:
            self.add_details(timeout_ms=timeout_ms)


class ExecutionEngineError(WorkflowEngineError):
    """Raised when execution engine operations fail."""

    def __init__(
        self,
        message: str,
        execution_id: Optional[str] = None,
        workflow_id: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.EXECUTION,
            **kwargs
        )
        if execution_id:
            self.add_context(execution_id=execution_id)
        if workflow_id:
            self.add_context(workflow_id=workflow_id)


class ExecutionNotFoundError(ExecutionEngineError):
    """Raised when an execution id is unknown."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, **kwargs)
        self.category = ErrorCategory.NOT_FOUND
        self.severity = ErrorSeverity.LOW


class ExecutionCancelledError(ExecutionEngineError):
    """Raised inside an execution when its cancellation token has been set."""


class ExecutionTimeoutError(ExecutionEngineError):
    """Raised when the workflow-level deadline expires."""


class ConditionEvaluationError(WorkflowEngineError):
    """Raised internally while evaluating a condition; never escapes evaluate_condition."""

    def __init__(self, message: str, expression_id: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.LOW,
            category=ErrorCategory.EXECUTION,
            **kwargs
        )
        if expression_id:
            self.add_context(expression_id=expression_id)


class UnsafeExpressionError(ConditionEvaluationError):
    """Raised when a script uses syntax outside the restricted expression language."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, **kwargs)
        self.category = ErrorCategory.SECURITY


class RegistryError(WorkflowEngineError):
    """Raised when action or plugin registry operations fail."""

    def __init__(
        self,
        message: str,
        name: Optional[str] = None,
        operation: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.CONFIGURATION,
            **kwargs
        )
        if name:
            self.add_context(name=name)
        if operation:
            self.add_context(operation=operation)


class StorageError(WorkflowEngineError):
    """Raised when storage operations fail."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        key: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.STORAGE,
            recoverable=True,
            **kwargs
        )
        if operation:
            self.add_context(operation=operation)
        if key:
            self.add_context(key=key)


class ConfigurationError(WorkflowEngineError):
    """Raised when node or engine configuration is invalid or missing."""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.CONFIGURATION,
            **kwargs
        )
        if config_key:
            self.add_context(config_key=config_key)


def create_error_response(error: WorkflowEngineError) -> Dict[str, Any]:
    """Create a standardized error response from a WorkflowEngineError."""
    return {
        "error": error.error_code,
        "message": error.message,
        "details": {
            **error.details,
            "severity": error.severity.value,
            "category": error.category.value,
            "recoverable": error.recoverable,
            "timestamp": error.timestamp.isoformat()
        },
        "context": error.context
    }
