"""Handlers that execute each node type."""

from concurrent.futures import ThreadPoolExecutor
from copy import deepcopy
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Mapping, Optional

import requests
from pydantic import ValidationError

from ..models.conditions import ConditionalExpression, LoopConfig
from ..models.core import LogLevel, NodeType, WorkflowNode, generate_id
from .concurrency import CancellationToken
from .conditions import ConditionalLogicEngine, parse_guard
from .exceptions import ConfigurationError, ExecutionCancelledError, NodeExecutionError
from .expressions import SafeExpressionEvaluator, normalize_script, render_template
from .logging import get_logger
from .registry import CallableRegistry

logger = get_logger(__name__)


@dataclass
class NodeOutcome:
    """Output of a handler plus variable bindings it wants merged into the context."""
    output: Any = None
    bindings: Dict[str, Any] = field(default_factory=dict)


LogCallback = Callable[[LogLevel, str, Optional[str], Any], None]


class HandlerContext:
    """Per-execution services handed to node handlers."""

    def __init__(
        self,
        execution_id: str,
        workflow_id: str,
        token: CancellationToken,
        log: LogCallback,
        handlers: Dict[NodeType, "NodeHandler"],
    ):
        self.execution_id = execution_id
        self.workflow_id = workflow_id
        self.token = token
        self._log = log
        self._handlers = handlers

    def log(self, level: LogLevel, message: str, node_id: Optional[str] = None, data: Any = None) -> None:
        self._log(level, message, node_id, data)

    def check_cancelled(self) -> None:
        if self.token.is_cancelled:
            raise ExecutionCancelledError(
                f"Execution {self.execution_id} was cancelled", execution_id=self.execution_id
            )

    def with_token(self, token: CancellationToken) -> "HandlerContext":
        return HandlerContext(self.execution_id, self.workflow_id, token, self._log, self._handlers)

    def run_task(self, task: Mapping[str, Any], frame: Dict[str, Any]) -> NodeOutcome:
        """
        Run an inline task (a loop body step or a parallel task) against ``frame``.

        The task's output is stored in ``frame`` under its handler's result key
        and its bindings are applied to ``frame``.
        """
        self.check_cancelled()
        try:
            node = WorkflowNode.model_validate({
                "id": task.get("id") or generate_id("task"),
                "type": task.get("type"),
                "name": task.get("name", ""),
                "config": task.get("config") or {},
            })
        except ValidationError as e:
            raise ConfigurationError(f"Invalid inline task: {e.errors()[0]['msg']}", config_key="type")

        handler = self._handlers[node.type]
        outcome = as_outcome(handler.execute(node, deepcopy(frame), self))
        bindings = dict(outcome.bindings)
        if node.config.get("outputVariable"):
            bindings[node.config["outputVariable"]] = outcome.output
        frame[handler.result_key] = deepcopy(outcome.output)
        frame.update(deepcopy(bindings))
        return NodeOutcome(outcome.output, bindings)


def as_outcome(value: Any) -> NodeOutcome:
    return value if isinstance(value, NodeOutcome) else NodeOutcome(output=value)


def coerce_condition(value: Any) -> Optional[ConditionalExpression]:
    """Accept a ConditionalExpression, its JSON form, or a guard string."""
    if value is None or isinstance(value, ConditionalExpression):
        return value
    if isinstance(value, str):
        return parse_guard(value)
    return ConditionalExpression.model_validate(value)


class NodeHandler:
    """Base class for node handlers."""

    result_key = "result"

    def execute(self, node: WorkflowNode, variables: Dict[str, Any], ctx: HandlerContext) -> Any:
        raise NotImplementedError


class TriggerHandler(NodeHandler):
    result_key = "triggerResult"

    def execute(self, node, variables, ctx):
        return {
            "triggeredAt": datetime.utcnow().isoformat(),
            "triggerType": node.config.get("triggerType", "manual"),
            "payload": render_template(node.config.get("payload", {}), variables),
        }


class ActionHandler(NodeHandler):
    """
    Runs ``config.action``.

    ``log`` writes ``config.message`` to the execution log, ``set`` binds
    ``config.variables``; any other name is looked up in the action registry
    and called with the rendered ``config.params``.
    """

    result_key = "actionResult"

    def __init__(self, actions: CallableRegistry):
        self._actions = actions

    def execute(self, node, variables, ctx):
        action = node.config.get("action")
        if not action:
            raise ConfigurationError(f"Action node '{node.id}' has no action", config_key="action")

        if action == "log":
            message = render_template(node.config.get("message", ""), variables)
            level = LogLevel(node.config.get("level", LogLevel.INFO.value))
            ctx.log(level, str(message), node.id)
            return {"message": message}

        if action == "set":
            values = render_template(node.config.get("variables") or {}, variables)
            if not isinstance(values, dict):
                raise ConfigurationError("'set' action requires a 'variables' mapping", config_key="variables")
            return NodeOutcome(output=values, bindings=values)

        params = render_template(node.config.get("params") or {}, variables)
        output = self._actions.call(action, params, variables)
        if node.config.get("mergeOutput") and isinstance(output, dict):
            return NodeOutcome(output=output, bindings=output)
        return output


class ConditionHandler(NodeHandler):
    result_key = "conditionResult"

    def __init__(self, conditions: ConditionalLogicEngine):
        self._conditions = conditions

    def execute(self, node, variables, ctx):
        expression = coerce_condition(node.config.get("condition"))
        if expression is None:
            raise ConfigurationError(f"Condition node '{node.id}' has no condition", config_key="condition")
        context = {"nodeId": node.id, "executionId": ctx.execution_id, "workflowId": ctx.workflow_id}
        result = self._conditions.evaluate_condition(expression, variables, context)
        return {"result": result, "conditionId": expression.id}


class LoopHandler(NodeHandler):
    result_key = "loopResults"

    def __init__(self, conditions: ConditionalLogicEngine):
        self._conditions = conditions

    def execute(self, node, variables, ctx):
        try:
            config = LoopConfig.model_validate(node.config)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid loop configuration: {e.errors()[0]['msg']}")

        def body(frame: Dict[str, Any]) -> Any:
            if not config.body:
                return {"iteration": frame["iteration"], "index": frame["index"], "item": frame.get("item")}
            output = None
            for task in config.body:
                output = ctx.run_task(task, frame).output
            return output

        summary = self._conditions.run_loop(
            config,
            variables,
            body,
            token=ctx.token,
            on_warning=lambda message: ctx.log(LogLevel.WARN, message, node.id),
        )
        bindings = summary.pop("bindings")
        return NodeOutcome(output=summary, bindings=bindings)


class ParallelHandler(NodeHandler):
    """
    Runs ``config.tasks`` on a pull-based worker pool of ``config.maxConcurrency`` threads.

    Each task works on its own copy of the variables. Outputs and bindings are
    merged in task order regardless of completion order.
    """

    result_key = "parallelResults"

    def __init__(self, default_concurrency: int = 3):
        self._default_concurrency = default_concurrency

    def execute(self, node, variables, ctx):
        tasks = node.config.get("tasks") or []
        if not isinstance(tasks, list):
            raise ConfigurationError("Parallel node 'tasks' must be a list", config_key="tasks")
        if not tasks:
            return []
        workers = max(1, int(node.config.get("maxConcurrency") or self._default_concurrency))

        def run_one(index: int, task: Dict[str, Any]) -> NodeOutcome:
            ctx.check_cancelled()
            frame = deepcopy(variables)
            frame["taskIndex"] = index
            return ctx.run_task(task, frame)

        executor = ThreadPoolExecutor(max_workers=min(workers, len(tasks)),
                                      thread_name_prefix=f"parallel-{node.id}")
        try:
            futures = [executor.submit(run_one, i, task) for i, task in enumerate(tasks)]
            outcomes = [future.result() for future in futures]
        finally:
            executor.shutdown(wait=True, cancel_futures=True)

        bindings: Dict[str, Any] = {}
        for outcome in outcomes:
            bindings.update(outcome.bindings)
        return NodeOutcome(output=[outcome.output for outcome in outcomes], bindings=bindings)


class DelayHandler(NodeHandler):
    result_key = "delayResult"

    def execute(self, node, variables, ctx):
        duration = node.config.get("duration")
        if isinstance(duration, bool) or not isinstance(duration, (int, float)) or duration <= 0:
            raise ConfigurationError("Delay node requires a positive duration", config_key="duration")
        if ctx.token.wait(duration / 1000.0):
            raise ExecutionCancelledError(f"Delay in node '{node.id}' interrupted by cancellation")
        return {"delayedMs": duration}


class TransformHandler(NodeHandler):
    """Computes a value from ``config.expression``, ``config.mappings`` or ``config.template``."""

    result_key = "transformResult"

    def __init__(self, evaluator: SafeExpressionEvaluator):
        self._evaluator = evaluator

    def execute(self, node, variables, ctx):
        config = node.config
        if config.get("expression"):
            names = dict(variables)
            names["variables"] = variables
            return self._evaluator.evaluate(normalize_script(config["expression"]), names)
        if "mappings" in config:
            return render_template(config["mappings"], variables)
        if "template" in config:
            return render_template(config["template"], variables)
        raise ConfigurationError(
            f"Transform node '{node.id}' needs an expression, mappings or template", config_key="expression"
        )


class ApiHandler(NodeHandler):
    """Performs an HTTP request with :mod:`requests`; non-2xx responses fail the node."""

    result_key = "apiResult"

    def __init__(self, session: Optional[requests.Session] = None, timeout: float = 30.0):
        self._session = session or requests.Session()
        self._timeout = timeout

    def execute(self, node, variables, ctx):
        config = render_template(node.config, variables)
        url = config.get("url")
        if not url:
            raise ConfigurationError("API node requires a URL", config_key="url")
        method = str(config.get("method", "GET")).upper()
        timeout = config.get("timeoutMs")
        timeout = timeout / 1000.0 if timeout else self._timeout

        response = self._session.request(
            method,
            url,
            headers=config.get("headers") or None,
            params=config.get("params") or None,
            json=config.get("body"),
            timeout=timeout,
        )
        if not response.ok:
            raise NodeExecutionError(
                f"HTTP {response.status_code} from {method} {url}",
                node_id=node.id,
                execution_id=ctx.execution_id,
            )
        try:
            data = response.json()
        except ValueError:
            data = response.text
        return {"status": response.status_code, "headers": dict(response.headers), "data": data}


class PluginHandler(NodeHandler):
    result_key = "pluginResult"

    def __init__(self, plugins: CallableRegistry):
        self._plugins = plugins

    def execute(self, node, variables, ctx):
        name = node.config.get("plugin")
        if not name:
            raise ConfigurationError(f"Plugin node '{node.id}' has no plugin", config_key="plugin")
        params = render_template(node.config.get("params") or {}, variables)
        return self._plugins.call(name, params, variables)


class CustomHandler(NodeHandler):
    result_key = "customResult"

    def __init__(self, handlers: CallableRegistry):
        self._handlers = handlers

    def execute(self, node, variables, ctx):
        name = node.config.get("handler")
        if not name:
            return {"executed": True, "nodeId": node.id, "config": deepcopy(node.config)}
        params = render_template(node.config.get("params") or {}, variables)
        return self._handlers.call(name, params, variables)


def build_default_handlers(
    conditions: ConditionalLogicEngine,
    actions: CallableRegistry,
    plugins: CallableRegistry,
    custom: CallableRegistry,
    evaluator: Optional[SafeExpressionEvaluator] = None,
    http_session: Optional[requests.Session] = None,
    http_timeout: float = 30.0,
    parallel_concurrency: int = 3,
) -> Dict[NodeType, NodeHandler]:
    """Create one handler per node type."""
    return {
        NodeType.TRIGGER: TriggerHandler(),
        NodeType.ACTION: ActionHandler(actions),
        NodeType.CONDITION: ConditionHandler(conditions),
        NodeType.LOOP: LoopHandler(conditions),
        NodeType.PARALLEL: ParallelHandler(parallel_concurrency),
        NodeType.DELAY: DelayHandler(),
        NodeType.TRANSFORM: TransformHandler(evaluator or SafeExpressionEvaluator()),
        NodeType.API: ApiHandler(http_session, http_timeout),
        NodeType.PLUGIN: PluginHandler(plugins),
        NodeType.CUSTOM: CustomHandler(custom),
    }
