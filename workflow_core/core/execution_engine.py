"""Execution Engine for workflow processing."""

import logging
import threading
import time
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FutureTimeoutError, wait
from copy import deepcopy
from datetime import datetime
from typing import Any, Dict, List, Optional, Set, Union

import requests

from ..config import AppConfig, get_config
from ..models.core import (
    ErrorHandling,
    EventType,
    ExecutionContext,
    ExecutionEvent,
    ExecutionFilters,
    ExecutionHistory,
    ExecutionOptions,
    ExecutionStatus,
    LogLevel,
    NodeExecutionResult,
    NodeType,
    Workflow,
    WorkflowNode,
)
from ..storage.history import HistorySink, InMemoryHistorySink
from .concurrency import AdmissionGate, CancellationToken, TimedCall
from .conditions import ConditionalLogicEngine, parse_guard
from .events import EventBus
from .exceptions import (
    ExecutionCancelledError,
    ExecutionEngineError,
    ExecutionNotFoundError,
    ExecutionTimeoutError,
    GraphValidationError,
    NodeExecutionError,
    NodeTimeoutError,
    StorageError,
    WorkflowEngineError,
)
from .expressions import SafeExpressionEvaluator
from .graph_manager import GraphManager
from .graph_utils import topological_order
from .logging import clear_logging_context, get_logger, log_with_context, set_logging_context
from .node_handlers import HandlerContext, NodeHandler, NodeOutcome, as_outcome, build_default_handlers
from .registry import CallableRegistry, register_builtin_actions

logger = get_logger(__name__)

_PY_LEVELS = {
    LogLevel.DEBUG: logging.DEBUG,
    LogLevel.INFO: logging.INFO,
    LogLevel.WARN: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}


def _first_set(*values: Any) -> Any:
    return next((value for value in values if value is not None), None)


class ExecutionEngine:
    """
    Runs workflows on worker threads.

    Each execution walks its workflow in a deterministic topological order.
    A node runs at most once, when it is activated: trigger nodes are always
    activated; other nodes are activated by fired incoming connections
    according to their join mode (``config.join``: ``any`` by default, or
    ``all``). Condition nodes fire exactly one outgoing connection, chosen by
    priority with a default fallback; other nodes fire every outgoing
    connection whose guard holds.
    """

    def __init__(
        self,
        graph_manager: Optional[GraphManager] = None,
        config: Optional[AppConfig] = None,
        conditions: Optional[ConditionalLogicEngine] = None,
        actions: Optional[CallableRegistry] = None,
        plugins: Optional[CallableRegistry] = None,
        custom_handlers: Optional[CallableRegistry] = None,
        history_sink: Optional[HistorySink] = None,
        event_bus: Optional[EventBus] = None,
        http_session: Optional[requests.Session] = None,
    ):
        """Initialize the execution engine.

        Args:
            graph_manager: Source of workflows executed by id
            config: Engine configuration; defaults to the global configuration
            conditions: Conditional logic engine used for guards, loops and branches
            actions: Registry consulted by action nodes
            plugins: Registry consulted by plugin nodes
            custom_handlers: Registry consulted by custom nodes
            history_sink: Receives a record for every finished execution
            event_bus: Receives execution events
            http_session: requests session used by api nodes
        """
        self.config = config or get_config()
        self.graph_manager = graph_manager or GraphManager()
        self.conditions = conditions or ConditionalLogicEngine(
            allow_scripts=self.config.allow_script_conditions,
            default_max_iterations=self.config.default_max_iterations,
        )
        self.actions = actions or CallableRegistry("action")
        register_builtin_actions(self.actions)
        self.plugins = plugins or CallableRegistry("plugin")
        self.custom_handlers = custom_handlers or CallableRegistry("handler")
        self.history = history_sink or InMemoryHistorySink(self.config.history_limit)
        self.events = event_bus or EventBus()

        self._handlers: Dict[NodeType, NodeHandler] = build_default_handlers(
            self.conditions,
            self.actions,
            self.plugins,
            self.custom_handlers,
            evaluator=SafeExpressionEvaluator(),
            http_session=http_session,
            http_timeout=self.config.http_timeout,
            parallel_concurrency=self.config.default_parallel_concurrency,
        )

        self._gate = AdmissionGate(self.config.max_concurrent_executions)
        self._executor = ThreadPoolExecutor(
            max_workers=max(self.config.max_concurrent_executions, self.config.worker_threads),
            thread_name_prefix="execution",
        )
        self._contexts: Dict[str, ExecutionContext] = {}
        self._finished: deque = deque()
        self._tokens: Dict[str, CancellationToken] = {}
        self._futures: Dict[str, Future] = {}
        self._lock = threading.RLock()
        self._is_shutdown = False

        logger.info(
            f"ExecutionEngine initialized with max_concurrent_executions={self.config.max_concurrent_executions}"
        )

    def register_handler(self, node_type: Union[NodeType, str], handler: NodeHandler) -> None:
        """Replace the handler used for ``node_type``."""
        self._handlers[NodeType(node_type)] = handler

    def execute_workflow(
        self,
        workflow: Union[str, Workflow],
        input: Optional[Dict[str, Any]] = None,
        options: Optional[Union[ExecutionOptions, Dict[str, Any]]] = None,
        trigger: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        Start executing a workflow and return its execution id immediately.

        Args:
            workflow: Workflow model, or the id of a stored workflow
            input: Values merged over the workflow's variable defaults
            options: Per-call overrides (timeouts, retries, dry run, concurrency, validation)
            trigger: Description of what started the execution, kept in history

        Returns:
            str: Execution id

        Raises:
            WorkflowNotFoundError: If ``workflow`` is an unknown id
            GraphValidationError: If validation is enforced and the workflow has errors
            ExecutionEngineError: If the engine has been shut down
        """
        if self._is_shutdown:
            raise ExecutionEngineError("Execution engine has been shut down")

        if isinstance(workflow, str):
            workflow = self.graph_manager.get_workflow(workflow)
        if options is None:
            options = ExecutionOptions()
        elif not isinstance(options, ExecutionOptions):
            options = ExecutionOptions.model_validate(options)

        enforce = _first_set(options.validate_first, self.config.enforce_validation)
        if enforce:
            result = self.graph_manager.validator.validate_workflow(workflow)
            if not result.is_valid:
                messages = result.error_messages
                logger.error(f"Refusing to execute invalid workflow {workflow.id}: {'; '.join(messages)}")
                raise GraphValidationError(
                    f"Workflow validation failed: {'; '.join(messages)}",
                    validation_errors=messages,
                    workflow_id=workflow.id,
                )

        variables = {variable.name: deepcopy(variable.default_value) for variable in workflow.variables}
        variables.update(deepcopy(input or {}))
        context = ExecutionContext(
            workflow_id=workflow.id,
            variables=variables,
            metadata={
                "workflowName": workflow.name,
                "dryRun": options.dry_run,
                "input": deepcopy(input or {}),
                "trigger": trigger or {"type": "manual"},
            },
        )
        execution_id = context.execution_id
        token = CancellationToken()

        with self._lock:
            self._contexts[execution_id] = context
            self._tokens[execution_id] = token
            self._futures[execution_id] = self._executor.submit(
                self._run_execution, workflow.model_copy(deep=True), context, options, token
            )

        logger.info(f"Submitted workflow execution: execution_id={execution_id}, workflow_id={workflow.id}")
        return execution_id

    def _run_execution(self, workflow: Workflow, context: ExecutionContext,
                       options: ExecutionOptions, token: CancellationToken) -> None:
        execution_id = context.execution_id
        set_logging_context(execution_id=execution_id, workflow_id=workflow.id)
        admitted = self._gate.acquire(execution_id, options.max_concurrency, token)
        try:
            if not admitted or not context.try_transition(ExecutionStatus.RUNNING):
                logger.info(f"Execution {execution_id} cancelled before it started")
                return

            context.add_log(LogLevel.INFO, f"Execution started for workflow '{workflow.name}'")
            self._emit(EventType.START, context, data={"workflowName": workflow.name, "dryRun": options.dry_run})

            self._walk(workflow, context, options, token)

            if self._finish(context, ExecutionStatus.COMPLETED):
                context.add_log(LogLevel.INFO, "Execution completed")
                self._emit(EventType.COMPLETE, context, data={"durationMs": context.duration_ms})
                logger.info(f"Workflow execution completed successfully: {execution_id}")

        except ExecutionCancelledError:
            self._finish(context, ExecutionStatus.CANCELLED)
            logger.info(f"Workflow execution cancelled: {execution_id}")
        except ExecutionTimeoutError as e:
            self._fail(context, ExecutionStatus.TIMEOUT, e.message)
        except NodeExecutionError as e:
            status = ExecutionStatus.TIMEOUT if e.timed_out else ExecutionStatus.FAILED
            self._fail(context, status, e.message, e.node_id)
        except WorkflowEngineError as e:
            self._fail(context, ExecutionStatus.FAILED, e.message)
        except Exception as e:
            logger.error(f"Unexpected error in execution {execution_id}: {e}", exc_info=True)
            self._fail(context, ExecutionStatus.FAILED, str(e))
        finally:
            if admitted:
                self._gate.release()
            self._record_history(context)
            with self._lock:
                self._tokens.pop(execution_id, None)
                self._futures.pop(execution_id, None)
                self._retain_finished(execution_id)
            clear_logging_context()

    def _walk(self, workflow: Workflow, context: ExecutionContext,
              options: ExecutionOptions, token: CancellationToken) -> None:
        order = topological_order(workflow)
        deadline = None
        if workflow.settings.timeout_ms and workflow.settings.timeout_ms > 0:
            deadline = time.monotonic() + workflow.settings.timeout_ms / 1000.0

        handler_ctx = HandlerContext(
            context.execution_id, workflow.id, token, self._context_logger(context), self._handlers
        )
        fired: Set[str] = set()
        plan: List[str] = []

        for node_id in order:
            node = workflow.get_node(node_id)
            self._check_cancelled(context, token)
            self._check_deadline(deadline, workflow, context.execution_id)

            if not self._is_activated(workflow, node, fired):
                context.add_log(LogLevel.DEBUG, f"Skipping node '{node.name or node.id}': not activated", node.id)
                continue

            if options.dry_run:
                self._dry_run_node(node, context)
                plan.append(node.id)
                fired.update(connection.id for connection in workflow.outgoing(node.id))
                continue

            try:
                self._execute_node_with_retry(workflow, node, context, options, handler_ctx, deadline)
                fired.update(self._select_connections(workflow, node, context))
            except NodeExecutionError as e:
                if workflow.settings.error_handling != ErrorHandling.CONTINUE:
                    raise
                context.add_log(LogLevel.WARN, f"Continuing after failure of node '{node.id}': {e.message}", node.id)
                with context.lock:
                    context.metadata.setdefault("failedNodes", []).append(node.id)

        if options.dry_run:
            with context.lock:
                context.variables["dryRunPlan"] = plan

    def _is_activated(self, workflow: Workflow, node: WorkflowNode, fired: Set[str]) -> bool:
        if node.type == NodeType.TRIGGER:
            return True
        incoming = workflow.incoming(node.id)
        if not incoming:
            return False
        arrived = [connection for connection in incoming if connection.id in fired]
        if str(node.config.get("join", "any")).lower() == "all":
            return len(arrived) == len(incoming)
        return bool(arrived)

    def _select_connections(self, workflow: Workflow, node: WorkflowNode,
                            context: ExecutionContext) -> List[str]:
        outgoing = workflow.outgoing(node.id)
        if not outgoing:
            return []
        variables = context.snapshot_variables()

        if node.type == NodeType.CONDITION:
            try:
                selected = self.conditions.execute_branching(workflow, node.id, variables)
            except NodeExecutionError as e:
                e.add_context(execution_id=context.execution_id)
                context.add_log(LogLevel.ERROR, e.message, node.id)
                self._emit(EventType.NODE_ERROR, context, node.id, {"error": e.message})
                raise
            context.add_log(LogLevel.INFO, f"Selected branch '{selected.name}'", node.id,
                            {"connectionId": selected.connection_id})
            return [selected.connection_id]

        fired = []
        for connection in outgoing:
            guard = parse_guard(connection.condition)
            if guard is None or self.conditions.evaluate_condition(guard, variables):
                fired.append(connection.id)
        return fired

    def _execute_node_with_retry(
        self,
        workflow: Workflow,
        node: WorkflowNode,
        context: ExecutionContext,
        options: ExecutionOptions,
        handler_ctx: HandlerContext,
        deadline: Optional[float],
    ) -> NodeOutcome:
        """
        Run a node, retrying failures with linear backoff.

        Retry count and delay come from the node's config, then the execution
        options, then the workflow settings, then the engine configuration. Attempt ``n`` waits
        ``retryDelayMs * n`` before the next attempt.

        Raises:
            NodeExecutionError: When the node still fails after all retries
            ExecutionCancelledError: If the execution is cancelled
            ExecutionTimeoutError: If the workflow deadline expires
        """
        handler = self._handlers[node.type]
        max_retries = int(_first_set(node.config.get("maxRetries"), options.max_retries,
                                     workflow.settings.max_retries, self.config.default_max_retries))
        retry_delay_ms = float(_first_set(node.config.get("retryDelayMs"), options.retry_delay_ms,
                                          workflow.settings.retry_delay_ms,
                                          self.config.default_retry_delay_ms))
        timeout_ms = _first_set(node.config.get("timeoutMs"), options.timeout_ms)
        label = node.name or node.id

        attempt = 0
        while True:
            attempt += 1
            self._check_cancelled(context, handler_ctx.token)
            self._check_deadline(deadline, workflow, context.execution_id)
            with context.lock:
                context.current_node_id = node.id
            started = datetime.utcnow()
            self._emit(EventType.NODE_START, context, node.id,
                       {"attempt": attempt, "nodeType": node.type.value, "nodeName": node.name})

            try:
                outcome = self._invoke_handler(handler, node, context, handler_ctx, timeout_ms, deadline, workflow)
            except (ExecutionCancelledError, ExecutionTimeoutError):
                raise
            except Exception as e:
                if handler_ctx.token.is_cancelled:
                    raise ExecutionCancelledError(f"Execution {context.execution_id} was cancelled")
                timed_out = isinstance(e, NodeTimeoutError)
                message = e.message if isinstance(e, WorkflowEngineError) else str(e) or type(e).__name__

                if attempt > max_retries:
                    finished = datetime.utcnow()
                    context.record_result(NodeExecutionResult(
                        node_id=node.id,
                        status=ExecutionStatus.TIMEOUT if timed_out else ExecutionStatus.FAILED,
                        start_time=started,
                        end_time=finished,
                        duration_ms=(finished - started).total_seconds() * 1000,
                        error=message,
                        attempts=attempt,
                    ))
                    context.add_log(LogLevel.ERROR, f"Node '{label}' failed after {attempt} attempt(s): {message}",
                                    node.id)
                    self._emit(EventType.NODE_ERROR, context, node.id,
                               {"error": message, "attempts": attempt, "timedOut": timed_out})
                    raise NodeExecutionError(
                        f"Node '{label}' failed after {attempt} attempt(s): {message}",
                        node_id=node.id,
                        execution_id=context.execution_id,
                        attempts=attempt,
                        timed_out=timed_out,
                    ) from e

                delay = retry_delay_ms * attempt / 1000.0
                context.add_log(LogLevel.WARN,
                                f"Node '{label}' attempt {attempt} failed: {message}; retrying in {delay:.3f}s",
                                node.id)
                if handler_ctx.token.wait(delay):
                    raise ExecutionCancelledError(f"Execution {context.execution_id} was cancelled")
                continue

            finished = datetime.utcnow()
            merged = context.merge_node_output(
                node.id, handler.result_key, outcome.output, outcome.bindings, node.config.get("outputVariable")
            )
            if not merged:
                logger.debug(f"Discarded output of node {node.id}: execution {context.execution_id} already ended")
                raise ExecutionCancelledError(f"Execution {context.execution_id} was cancelled")
            context.record_result(NodeExecutionResult(
                node_id=node.id,
                status=ExecutionStatus.COMPLETED,
                start_time=started,
                end_time=finished,
                duration_ms=(finished - started).total_seconds() * 1000,
                output=deepcopy(outcome.output),
                attempts=attempt,
            ))
            self._emit(EventType.NODE_COMPLETE, context, node.id,
                       {"attempts": attempt, "durationMs": (finished - started).total_seconds() * 1000})
            return outcome

    def _invoke_handler(
        self,
        handler: NodeHandler,
        node: WorkflowNode,
        context: ExecutionContext,
        handler_ctx: HandlerContext,
        timeout_ms: Optional[float],
        deadline: Optional[float],
        workflow: Workflow,
    ) -> NodeOutcome:
        """Run one attempt, racing it against the node timeout and the workflow deadline."""
        frame = context.snapshot_variables()
        node_timeout = timeout_ms / 1000.0 if timeout_ms else None
        remaining = deadline - time.monotonic() if deadline is not None else None
        limits = [limit for limit in (node_timeout, remaining) if limit is not None]
        if not limits:
            return as_outcome(handler.execute(node, frame, handler_ctx))

        attempt_token = handler_ctx.token.child()
        call = TimedCall(handler.execute, node, frame, handler_ctx.with_token(attempt_token),
                         name=f"node-{context.execution_id}-{node.id}").start()
        if deadline is not None:
            remaining = deadline - time.monotonic()
            limits = [limit for limit in (node_timeout, remaining) if limit is not None]
        try:
            return as_outcome(call.result(timeout=max(min(limits), 0.0)))
        except FutureTimeoutError:
            attempt_token.cancel("timeout")
            if remaining is not None and (node_timeout is None or remaining <= node_timeout):
                raise ExecutionTimeoutError(
                    f"Execution exceeded workflow timeout of {workflow.settings.timeout_ms} ms",
                    execution_id=context.execution_id,
                    workflow_id=workflow.id,
                )
            raise NodeTimeoutError(
                f"Node '{node.id}' timed out after {timeout_ms} ms",
                node_id=node.id,
                execution_id=context.execution_id,
                timeout_ms=int(timeout_ms),
            )

    def _dry_run_node(self, node: WorkflowNode, context: ExecutionContext) -> None:
        now = datetime.utcnow()
        self._emit(EventType.NODE_START, context, node.id, {"attempt": 1, "dryRun": True, "nodeType": node.type.value})
        context.record_result(NodeExecutionResult(
            node_id=node.id, status=ExecutionStatus.COMPLETED, start_time=now, end_time=now, attempts=0
        ))
        context.add_log(LogLevel.DEBUG, f"Dry run: would execute {node.type.value} node '{node.name or node.id}'",
                        node.id)
        self._emit(EventType.NODE_COMPLETE, context, node.id, {"dryRun": True})

    def _check_cancelled(self, context: ExecutionContext, token: CancellationToken) -> None:
        if token.is_cancelled or context.status == ExecutionStatus.CANCELLED:
            raise ExecutionCancelledError(f"Execution {context.execution_id} was cancelled",
                                          execution_id=context.execution_id)

    def _check_deadline(self, deadline: Optional[float], workflow: Workflow, execution_id: str) -> None:
        if deadline is not None and time.monotonic() >= deadline:
            raise ExecutionTimeoutError(
                f"Execution exceeded workflow timeout of {workflow.settings.timeout_ms} ms",
                execution_id=execution_id,
                workflow_id=workflow.id,
            )

    def _retain_finished(self, execution_id: str) -> None:
        """Keep at most ``history_limit`` finished contexts; older ones live only in history."""
        context = self._contexts.get(execution_id)
        if context is None or not context.is_terminal:
            return
        self._finished.append(execution_id)
        while len(self._finished) > max(1, self.config.history_limit):
            self._contexts.pop(self._finished.popleft(), None)

    def _finish(self, context: ExecutionContext, status: ExecutionStatus) -> bool:
        return context.try_transition(status)

    def _fail(self, context: ExecutionContext, status: ExecutionStatus, message: str,
              node_id: Optional[str] = None) -> None:
        with context.lock:
            changed = context.try_transition(status)
            if changed:
                context.error = message
        if not changed:
            return
        context.add_log(LogLevel.ERROR, f"Execution {status.value}: {message}", node_id)
        logger.error(f"Workflow execution {status.value} for {context.execution_id}: {message}")
        self._emit(EventType.ERROR, context, node_id, {"error": message, "status": status.value})

    def _context_logger(self, context: ExecutionContext):
        def log(level: LogLevel, message: str, node_id: Optional[str] = None, data: Any = None) -> None:
            context.add_log(level, message, node_id, data)
            logger.log(_PY_LEVELS[level], f"[{context.execution_id}] {message}")
        return log

    def _emit(self, event_type: EventType, context: ExecutionContext,
              node_id: Optional[str] = None, data: Optional[Dict[str, Any]] = None) -> None:
        event = ExecutionEvent(
            type=event_type,
            execution_id=context.execution_id,
            workflow_id=context.workflow_id,
            node_id=node_id,
            data=data or {},
        )
        log_with_context(logger, logging.DEBUG, f"Event {event_type.value}",
                         execution_id=event.execution_id, node_id=node_id)
        self.events.publish(event)

    def _record_history(self, context: ExecutionContext) -> None:
        with context.lock:
            if not context.is_terminal:
                return
            history = ExecutionHistory(
                workflow_id=context.workflow_id,
                execution_id=context.execution_id,
                status=context.status,
                start_time=context.start_time,
                end_time=context.end_time,
                duration_ms=context.duration_ms,
                trigger=deepcopy(context.metadata.get("trigger", {})),
                input=deepcopy(context.metadata.get("input", {})),
                output=deepcopy(context.variables),
                error=context.error,
                node_results=list(context.node_results),
                logs=list(context.logs),
            )
        try:
            self.history.record(history)
        except StorageError as e:
            logger.error(f"Failed to record history for execution {context.execution_id}: {e.message}")

    def stop_execution(self, execution_id: str) -> bool:
        """
        Cancel an execution.

        The status becomes ``cancelled`` immediately. A node that is already
        running is not interrupted; it observes the cancellation token at its
        next check and its output is discarded.

        Returns:
            bool: False if the execution had already finished

        Raises:
            ExecutionNotFoundError: If the execution id is unknown
        """
        context = self.get_execution_status(execution_id)
        with self._lock:
            token = self._tokens.get(execution_id)
        if token is not None:
            token.cancel("stopped")
        self._gate.wake()

        with context.lock:
            cancelled = context.try_transition(ExecutionStatus.CANCELLED)
        if not cancelled:
            logger.warning(f"Attempted to stop finished execution: {execution_id}")
            return False

        context.add_log(LogLevel.WARN, "Execution cancelled by request")
        self._emit(EventType.PAUSE, context, context.current_node_id, {"reason": "cancelled"})
        logger.info(f"Cancelled workflow execution: {execution_id}")
        return True

    def get_execution_status(self, execution_id: str) -> ExecutionContext:
        """
        Raises:
            ExecutionNotFoundError: If the execution id is unknown
        """
        with self._lock:
            context = self._contexts.get(execution_id)
        if context is None:
            raise ExecutionNotFoundError(f"Execution '{execution_id}' not found", execution_id=execution_id)
        return context

    def wait_for_completion(self, execution_id: str, timeout: Optional[float] = None) -> ExecutionContext:
        """Block until the execution's worker finishes (or ``timeout`` elapses) and return its context."""
        context = self.get_execution_status(execution_id)
        with self._lock:
            future = self._futures.get(execution_id)
        if future is not None:
            wait([future], timeout=timeout)
        return context

    def get_active_executions(self) -> List[str]:
        with self._lock:
            return [eid for eid, context in self._contexts.items() if not context.is_terminal]

    def get_execution_history(self, workflow_id: Optional[str] = None,
                              filters: Optional[Union[ExecutionFilters, Dict[str, Any]]] = None) -> List[ExecutionHistory]:
        """Finished executions, newest first."""
        if filters is not None and not isinstance(filters, ExecutionFilters):
            filters = ExecutionFilters.model_validate(filters)
        return self.history.query(workflow_id, filters)

    def clear_execution_history(self, workflow_id: Optional[str] = None) -> int:
        """Drop history records and finished contexts; returns the number of history records removed."""
        with self._lock:
            for execution_id in [
                eid for eid, context in self._contexts.items()
                if context.is_terminal and (workflow_id is None or context.workflow_id == workflow_id)
            ]:
                del self._contexts[execution_id]
            self._finished = deque(eid for eid in self._finished if eid in self._contexts)
        return self.history.clear(workflow_id)

    def get_execution_statistics(self, workflow_id: Optional[str] = None) -> Dict[str, Any]:
        """Aggregate counts and durations over recorded history."""
        records = self.history.query(workflow_id)
        by_status = {status.value: 0 for status in ExecutionStatus}
        durations = []
        for record in records:
            by_status[record.status.value] += 1
            if record.duration_ms is not None:
                durations.append(record.duration_ms)
        total = len(records)
        return {
            "total_executions": total,
            "by_status": by_status,
            "success_rate": by_status[ExecutionStatus.COMPLETED.value] / total if total else 0.0,
            "average_duration_ms": sum(durations) / len(durations) if durations else 0.0,
            "active_executions": len(self.get_active_executions()),
        }

    def get_execution_queue_status(self) -> Dict[str, Any]:
        return {
            "running_executions": self._gate.running,
            "queued_executions": self._gate.queued,
            "max_concurrent_executions": self._gate.default_limit,
            "available_slots": max(0, self._gate.default_limit - self._gate.running),
        }

    def shutdown(self, wait_for_workers: bool = True) -> None:
        """Cancel active executions and stop the worker pools."""
        self._is_shutdown = True
        for execution_id in self.get_active_executions():
            try:
                self.stop_execution(execution_id)
            except ExecutionNotFoundError:
                continue
        self._executor.shutdown(wait=wait_for_workers)
        logger.info("ExecutionEngine shutdown completed")
