"""Conditional logic: expression evaluation, guard parsing, loops and branch selection."""

import math
import re
from copy import deepcopy
from typing import Any, Callable, Dict, List, Mapping, Optional

from ..models.conditions import (
    BranchPath,
    ConditionalExpression,
    ConditionOperator,
    ConditionType,
    LogicOperator,
    LoopConfig,
    LoopType,
)
from ..models.core import NodeType, Workflow
from .concurrency import CancellationToken
from .exceptions import (
    ConditionEvaluationError,
    ConfigurationError,
    ExecutionCancelledError,
    NodeExecutionError,
    UnsafeExpressionError,
)
from .expressions import (
    FULL_TEMPLATE_PATTERN,
    MISSING,
    SafeExpressionEvaluator,
    get_nested,
    normalize_script,
    to_text,
)
from .logging import get_logger

logger = get_logger(__name__)

_NUMBER_PATTERN = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$")
_PATH_PATTERN = re.compile(r"^[A-Za-z_$][\w$]*(\.[\w$]+)*$")
_KEYWORDS = {"true": True, "false": False, "null": None}

# Checked in order so that longer operators win over their prefixes.
_GUARD_OPERATORS = ["===", "!==", "==", "!=", ">=", "<=", ">", "<"]

_LOOP_BINDINGS = ("iteration", "index", "item", "nodes")


def resolve_operand(operand: Optional[str], variables: Mapping[str, Any]) -> Any:
    """
    Resolve an operand string against ``variables``.

    Resolution order: ``{{dotted.path}}`` lookup (missing path yields MISSING),
    exact variable name, quoted string literal, numeric literal,
    ``true``/``false``/``null``, then the raw text itself.
    """
    if operand is None:
        return MISSING
    text = operand.strip()

    template = FULL_TEMPLATE_PATTERN.match(text)
    if template:
        return get_nested(variables, template.group(1))
    if text in variables:
        return variables[text]
    if len(text) >= 2 and text[0] == text[-1] and text[0] in ("'", '"'):
        return text[1:-1]
    if _NUMBER_PATTERN.match(text):
        number = float(text)
        return int(number) if number.is_integer() and "." not in text and "e" not in text.lower() else number
    if text in _KEYWORDS:
        return _KEYWORDS[text]
    return operand


def to_number(value: Any) -> float:
    """Numeric coercion; values that are not numbers become NaN."""
    if value is MISSING:
        return math.nan
    if value is None:
        return 0.0
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return 0.0
        try:
            return float(text)
        except ValueError:
            return math.nan
    return math.nan


def is_truthy(value: Any) -> bool:
    if isinstance(value, float) and math.isnan(value):
        return False
    return bool(value)


def strict_equals(left: Any, right: Any) -> bool:
    """Value equality that never equates booleans with numbers or numbers with strings."""
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    if isinstance(left, (int, float)) and isinstance(right, (int, float)):
        return float(left) == float(right)
    if type(left) is not type(right) and not (isinstance(left, (list, tuple)) and isinstance(right, (list, tuple))):
        return False
    return left == right


def _split_top_level(text: str, separator: str) -> List[str]:
    """Split on ``separator`` outside of quotes and parentheses."""
    parts = []
    depth = 0
    quote = None
    start = 0
    i = 0
    while i < len(text):
        ch = text[i]
        if quote:
            if ch == quote:
                quote = None
        elif ch in ("'", '"'):
            quote = ch
        elif ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
        elif depth == 0 and text.startswith(separator, i):
            parts.append(text[start:i])
            i += len(separator)
            start = i
            continue
        i += 1
    parts.append(text[start:])
    return parts


def _find_operator(text: str):
    """Locate the first comparison operator outside quotes, preferring longer spellings."""
    quote = None
    i = 0
    while i < len(text):
        ch = text[i]
        if quote:
            if ch == quote:
                quote = None
        elif ch in ("'", '"'):
            quote = ch
        else:
            for symbol in _GUARD_OPERATORS:
                if text.startswith(symbol, i):
                    return i, symbol
        i += 1
    return None


def _strip_parens(text: str) -> str:
    """Remove parentheses that wrap the whole text."""
    while text.startswith("(") and text.endswith(")"):
        depth = 0
        for i, ch in enumerate(text):
            if ch == "(":
                depth += 1
            elif ch == ")":
                depth -= 1
                if depth == 0 and i != len(text) - 1:
                    return text
        text = text[1:-1].strip()
    return text


def _guard_operand(text: str) -> str:
    """Dotted variable paths in guards become lookups; plain words resolve as names or literals."""
    text = text.strip()
    if "." in text and _PATH_PATTERN.match(text):
        return "{{" + text + "}}"
    return text


def parse_guard(guard: Optional[str]) -> Optional[ConditionalExpression]:
    """
    Parse a connection guard string into a ConditionalExpression.

    Supports ``||``, ``&&``, prefix ``!``, parentheses and the comparisons
    ``=== !== == != >= <= > <``. ``>=`` and ``<=`` become an ``or`` of the strict
    comparison and ``equals``. A guard without an operator tests its operand's
    truthiness. Returns None for an empty guard.
    """
    if guard is None or not guard.strip():
        return None
    text = _strip_parens(guard.strip())

    alternatives = _split_top_level(text, "||")
    if len(alternatives) > 1:
        return ConditionalExpression.compound("or", [parse_guard(part) for part in alternatives])

    conjuncts = _split_top_level(text, "&&")
    if len(conjuncts) > 1:
        return ConditionalExpression.compound("and", [parse_guard(part) for part in conjuncts])

    if text.startswith("!") and not text.startswith("!="):
        return ConditionalExpression.compound("not", [parse_guard(text[1:])])

    found = _find_operator(text)
    if found is None:
        return ConditionalExpression.simple(_guard_operand(text))

    position, symbol = found
    left = _guard_operand(text[:position])
    right = _guard_operand(text[position + len(symbol):])
    if symbol in ("===", "=="):
        return ConditionalExpression.simple(left, "equals", right)
    if symbol in ("!==", "!="):
        return ConditionalExpression.simple(left, "not-equals", right)
    if symbol == ">":
        return ConditionalExpression.simple(left, "greater", right)
    if symbol == "<":
        return ConditionalExpression.simple(left, "less", right)
    strict = "greater" if symbol == ">=" else "less"
    return ConditionalExpression.compound("or", [
        ConditionalExpression.simple(left, strict, right),
        ConditionalExpression.simple(left, "equals", right),
    ])


class ConditionalLogicEngine:
    """Evaluates conditions, runs loops and selects branches for condition nodes."""

    def __init__(
        self,
        allow_scripts: bool = False,
        default_max_iterations: int = 1000,
        evaluator: Optional[SafeExpressionEvaluator] = None,
    ):
        self.allow_scripts = allow_scripts
        self.default_max_iterations = default_max_iterations
        self._evaluator = evaluator or SafeExpressionEvaluator()

    def evaluate_condition(
        self,
        expression: ConditionalExpression,
        variables: Mapping[str, Any],
        context: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        """
        Evaluate ``expression`` against ``variables``.

        Never raises: script failures, bad regexes and malformed expressions
        are logged and evaluate to False.
        """
        try:
            return self._evaluate(expression, variables, context or {})
        except Exception as e:
            logger.warning(f"Condition {expression.id} evaluated to false after error: {e}")
            return False

    def _evaluate(self, expression: ConditionalExpression, variables: Mapping[str, Any],
                  context: Mapping[str, Any]) -> bool:
        if expression.type == ConditionType.SIMPLE:
            return self._evaluate_simple(expression, variables)
        if expression.type == ConditionType.COMPOUND:
            return self._evaluate_compound(expression, variables, context)
        return self._evaluate_script(expression, variables, context)

    def _evaluate_simple(self, expression: ConditionalExpression, variables: Mapping[str, Any]) -> bool:
        left = resolve_operand(expression.left, variables)
        right = resolve_operand(expression.right, variables)

        if expression.operator is None or right is MISSING:
            return is_truthy(left)

        op = expression.operator
        if op == ConditionOperator.EQUALS:
            return strict_equals(left, right)
        if op == ConditionOperator.NOT_EQUALS:
            return not strict_equals(left, right)
        if op == ConditionOperator.GREATER:
            return to_number(left) > to_number(right)
        if op == ConditionOperator.LESS:
            return to_number(left) < to_number(right)
        if op == ConditionOperator.CONTAINS:
            if isinstance(left, (list, tuple)):
                return any(strict_equals(item, right) for item in left)
            return to_text(right) in to_text(left)
        if op == ConditionOperator.STARTS_WITH:
            return to_text(left).startswith(to_text(right))
        if op == ConditionOperator.ENDS_WITH:
            return to_text(left).endswith(to_text(right))
        if op == ConditionOperator.REGEX:
            try:
                return re.search(to_text(right), to_text(left)) is not None
            except re.error as e:
                logger.debug(f"Invalid regex in condition {expression.id}: {e}")
                return False
        raise ConditionEvaluationError(f"Unknown operator {op}", expression_id=expression.id)

    def _evaluate_compound(self, expression: ConditionalExpression, variables: Mapping[str, Any],
                           context: Mapping[str, Any]) -> bool:
        if expression.logic == LogicOperator.NOT:
            # Only the first child is negated; any further children are ignored.
            if not expression.children:
                raise ConditionEvaluationError("'not' requires a child expression", expression_id=expression.id)
            return not self.evaluate_condition(expression.children[0], variables, context)

        results = [self.evaluate_condition(child, variables, context) for child in expression.children]
        if expression.logic == LogicOperator.AND:
            return all(results)
        return any(results)

    def _evaluate_script(self, expression: ConditionalExpression, variables: Mapping[str, Any],
                         context: Mapping[str, Any]) -> bool:
        if not self.allow_scripts:
            logger.warning(f"Script condition {expression.id} skipped: script conditions are disabled")
            return False
        source = normalize_script(expression.script or "")
        names = dict(variables)
        names["variables"] = variables
        names["context"] = context
        return is_truthy(self._evaluator.evaluate(source, names))

    def check_script_safety(self, expression: ConditionalExpression) -> Optional[str]:
        """Return an error message when a script condition would be rejected, else None."""
        if expression.type == ConditionType.SCRIPT:
            try:
                self._evaluator.compile(normalize_script(expression.script or ""))
            except UnsafeExpressionError as e:
                return e.message
            return None
        for child in expression.children:
            problem = self.check_script_safety(child)
            if problem:
                return problem
        return None

    def run_loop(
        self,
        config: LoopConfig,
        variables: Mapping[str, Any],
        body: Callable[[Dict[str, Any]], Any],
        token: Optional[CancellationToken] = None,
        on_warning: Optional[Callable[[str], None]] = None,
    ) -> Dict[str, Any]:
        """
        Run ``body`` once per loop iteration over a private copy of ``variables``.

        Each pass checks, in order: cancellation, the loop kind's continuation
        predicate, the maxIterations ceiling, break conditions, then continue
        conditions. A true continue condition skips the body but still counts
        toward the ceiling. ``body`` receives the loop frame and may update it.

        Returns:
            Dict with ``iterations``, ``results``, ``skipped``, ``terminatedBy``
            and ``bindings`` (variables the body changed)
        """
        frame: Dict[str, Any] = deepcopy(dict(variables))
        max_iterations = config.max_iterations or self.default_max_iterations
        collection = self._resolve_collection(config, frame)

        iteration = 0
        index = config.start_index if config.type == LoopType.FOR else 0
        results: List[Any] = []
        skipped = 0
        terminated_by = "condition"

        while True:
            if token is not None and token.is_cancelled:
                raise ExecutionCancelledError("Loop cancelled")

            if not self._should_continue(config, iteration, index, collection, frame):
                break

            if iteration >= max_iterations:
                message = f"Loop reached maximum iterations ({max_iterations}); stopping"
                logger.warning(message)
                if on_warning:
                    on_warning(message)
                terminated_by = "maxIterations"
                break

            frame["iteration"] = iteration
            frame["index"] = index
            if collection is not None:
                frame["item"] = collection[index]

            if any(self.evaluate_condition(cond, frame) for cond in config.break_conditions):
                terminated_by = "break"
                break

            if any(self.evaluate_condition(cond, frame) for cond in config.continue_conditions):
                skipped += 1
            else:
                results.append(body(frame))

            iteration += 1
            index += config.step if config.type == LoopType.FOR else 1

        bindings = {
            key: value for key, value in frame.items()
            if key not in _LOOP_BINDINGS and (key not in variables or variables[key] != value)
        }
        return {
            "iterations": iteration,
            "results": results,
            "skipped": skipped,
            "terminatedBy": terminated_by,
            "bindings": bindings,
        }

    def _resolve_collection(self, config: LoopConfig, frame: Mapping[str, Any]) -> Optional[list]:
        if config.type != LoopType.FOR_EACH:
            return None
        collection = config.collection
        if isinstance(collection, str):
            collection = resolve_operand(collection, frame)
        if isinstance(collection, Mapping):
            return [{"key": key, "value": value} for key, value in collection.items()]
        if isinstance(collection, (list, tuple)):
            return list(collection)
        raise ConfigurationError(
            f"for-each collection must resolve to a list, got {type(collection).__name__}",
            config_key="collection",
        )

    def _should_continue(self, config: LoopConfig, iteration: int, index: int,
                         collection: Optional[list], frame: Mapping[str, Any]) -> bool:
        if config.type == LoopType.FOR_EACH:
            return index < len(collection)
        if config.type == LoopType.FOR:
            return index < config.end_index if config.step > 0 else index > config.end_index
        if config.type == LoopType.DO_WHILE and iteration == 0:
            return True
        return self.evaluate_condition(config.condition, frame)

    def extract_branches(self, workflow: Workflow, node_id: str) -> List[BranchPath]:
        """
        Collect one BranchPath per outgoing connection of a condition node.

        Each branch lists the nodes and connections reachable from its target up
        to, and including, the next condition node. Branches are sorted by
        descending priority; an unguarded connection is a default branch.
        """
        branches = []
        for connection in workflow.outgoing(node_id):
            metadata = connection.metadata or {}
            condition = parse_guard(connection.condition)
            nodes, connections = self._collect_subgraph(workflow, connection.target_node_id)
            branches.append(BranchPath(
                name=metadata.get("name") or connection.id,
                condition=condition,
                priority=int(metadata.get("priority", 0)),
                is_default=bool(metadata.get("isDefault", False)) or condition is None,
                connection_id=connection.id,
                target_node_id=connection.target_node_id,
                nodes=nodes,
                connections=[connection.id] + connections,
            ))
        branches.sort(key=lambda branch: branch.priority, reverse=True)
        return branches

    def _collect_subgraph(self, workflow: Workflow, start_id: str):
        nodes: List[str] = []
        connections: List[str] = []
        stack = [start_id]
        while stack:
            current = stack.pop()
            if current in nodes:
                continue
            nodes.append(current)
            node = workflow.get_node(current)
            if node is None or node.type == NodeType.CONDITION:
                continue
            for connection in workflow.outgoing(current):
                connections.append(connection.id)
                stack.append(connection.target_node_id)
        return nodes, connections

    def select_branch(self, branches: List[BranchPath], variables: Mapping[str, Any]) -> Optional[BranchPath]:
        """Return the highest-priority branch whose guard holds, else the default branch, else None."""
        for branch in branches:
            if branch.condition is not None and self.evaluate_condition(branch.condition, variables):
                return branch
        return next((branch for branch in branches if branch.is_default), None)

    def execute_branching(
        self,
        workflow: Workflow,
        node_id: str,
        variables: Mapping[str, Any],
        runner: Optional[Callable[[BranchPath], Any]] = None,
    ) -> BranchPath:
        """
        Select exactly one branch after a condition node and optionally run it.

        Raises:
            NodeExecutionError: If no guard holds and no default branch exists
        """
        selected = self.select_branch(self.extract_branches(workflow, node_id), variables)
        if selected is None:
            raise NodeExecutionError(
                f"No branch matched after condition node '{node_id}' and no default branch is defined",
                node_id=node_id,
            )
        logger.debug(f"Condition node {node_id} selected branch {selected.name}")
        if runner is not None:
            runner(selected)
        return selected
