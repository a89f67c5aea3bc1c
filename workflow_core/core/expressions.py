"""Restricted expression evaluation and variable templating.

Script conditions and transform expressions are parsed with :mod:`ast` and
interpreted node by node. Nothing is handed to ``eval``: only literals,
variable lookups, comparisons, boolean and arithmetic operators, subscripts,
attribute access on mappings and a short list of builtins are understood.
"""

import ast
import json
import math
import operator
import re
from typing import Any, Callable, Dict, Mapping, Optional

from .exceptions import UnsafeExpressionError


class _Missing:
    """Sentinel for a variable path that does not resolve."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self):
        return False

    def __repr__(self):
        return "MISSING"

    def __deepcopy__(self, memo):
        return self

    def __copy__(self):
        return self


MISSING = _Missing()

TEMPLATE_PATTERN = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")
FULL_TEMPLATE_PATTERN = re.compile(r"^\{\{\s*([^{}]+?)\s*\}\}$")


def get_nested(variables: Mapping[str, Any], path: str) -> Any:
    """Resolve a dotted path against nested mappings and sequences; missing paths yield MISSING."""
    current: Any = variables
    for part in path.strip().split("."):
        if isinstance(current, Mapping):
            if part not in current:
                return MISSING
            current = current[part]
        elif isinstance(current, (list, tuple)):
            try:
                current = current[int(part)]
            except (ValueError, IndexError):
                return MISSING
        else:
            return MISSING
    return current


def to_text(value: Any) -> str:
    """Coerce a value to the string form used by string operators and templates."""
    if value is MISSING or value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, default=str)
    return str(value)


def render_template(value: Any, variables: Mapping[str, Any]) -> Any:
    """
    Substitute ``{{path}}`` placeholders.

    A string that is exactly one placeholder renders to the raw resolved value
    (None when missing); placeholders embedded in text are interpolated as text.
    Dicts and lists are rendered recursively.
    """
    if isinstance(value, str):
        full = FULL_TEMPLATE_PATTERN.match(value)
        if full:
            resolved = get_nested(variables, full.group(1))
            return None if resolved is MISSING else resolved
        return TEMPLATE_PATTERN.sub(lambda m: to_text(get_nested(variables, m.group(1))), value)
    if isinstance(value, dict):
        return {key: render_template(item, variables) for key, item in value.items()}
    if isinstance(value, list):
        return [render_template(item, variables) for item in value]
    return value


_BIN_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
}

_UNARY_OPS = {
    ast.Not: operator.not_,
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
}

_COMPARE_OPS = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
}

SAFE_FUNCTIONS: Dict[str, Callable] = {
    "len": len,
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "abs": abs,
    "min": min,
    "max": max,
    "sum": sum,
    "round": round,
    "any": any,
    "all": all,
    "sorted": sorted,
    "isnan": math.isnan,
}

SAFE_METHODS = {
    str: {"lower", "upper", "strip", "startswith", "endswith", "split", "replace"},
    dict: {"get", "keys", "values", "items"},
    list: {"count", "index"},
}

_CONSTANT_NAMES = {
    "true": True, "false": False, "null": None,
    "True": True, "False": False, "None": None,
}

MAX_EXPRESSION_LENGTH = 2000
MAX_POWER_OPERAND = 10 ** 6
MAX_SEQUENCE_LENGTH = 100_000

_SEQUENCE_TYPES = (str, bytes, list, tuple)


def _check_sequence_size(op: ast.operator, left: Any, right: Any) -> None:
    """Refuse sequence repetition or concatenation whose result would exceed MAX_SEQUENCE_LENGTH."""
    size = None
    if isinstance(op, ast.Mult):
        for sequence, count in ((left, right), (right, left)):
            if isinstance(sequence, _SEQUENCE_TYPES) and isinstance(count, int):
                size = len(sequence) * count
    elif isinstance(op, ast.Add):
        if isinstance(left, _SEQUENCE_TYPES) and isinstance(right, _SEQUENCE_TYPES):
            size = len(left) + len(right)
    if size is not None and size > MAX_SEQUENCE_LENGTH:
        raise UnsafeExpressionError(f"Result would exceed {MAX_SEQUENCE_LENGTH} items")


def _check_replace_size(text: str, args: list) -> None:
    if len(args) < 2 or not isinstance(args[0], str) or not isinstance(args[1], str):
        return
    old, new = args[0], args[1]
    hits = text.count(old) if old else len(text) + 1
    if len(args) > 2 and isinstance(args[2], int) and args[2] >= 0:
        hits = min(hits, args[2])
    if len(text) + hits * (len(new) - len(old)) > MAX_SEQUENCE_LENGTH:
        raise UnsafeExpressionError(f"Result would exceed {MAX_SEQUENCE_LENGTH} items")


def normalize_script(script: str) -> str:
    """
    Turn a condition script body into a single expression.

    Strips a leading ``return`` and trailing semicolon and maps ``&&``, ``||``,
    ``===``, ``!==`` and prefix ``!`` onto their Python spellings outside of
    string literals.
    """
    text = script.strip()
    if text.startswith("return "):
        text = text[len("return "):]
    text = text.rstrip(";").strip()

    out = []
    quote = None
    i = 0
    while i < len(text):
        ch = text[i]
        if quote:
            out.append(ch)
            if ch == "\\" and i + 1 < len(text):
                out.append(text[i + 1])
                i += 2
                continue
            if ch == quote:
                quote = None
            i += 1
            continue
        if ch in ("'", '"'):
            quote = ch
            out.append(ch)
            i += 1
            continue
        for js, py in (("===", "=="), ("!==", "!="), ("&&", " and "), ("||", " or ")):
            if text.startswith(js, i):
                out.append(py)
                i += len(js)
                break
        else:
            if ch == "!" and not text.startswith("!=", i):
                out.append(" not ")
            else:
                out.append(ch)
            i += 1
    return "".join(out).strip()


class SafeExpressionEvaluator:
    """Interpreter for a small, side-effect free subset of Python expressions."""

    def __init__(self, functions: Optional[Dict[str, Callable]] = None):
        self._functions = dict(SAFE_FUNCTIONS)
        if functions:
            self._functions.update(functions)

    def compile(self, expression: str) -> ast.Expression:
        """
        Parse and vet an expression.

        Raises:
            UnsafeExpressionError: If the expression is too long, malformed or
                uses constructs outside the supported subset
        """
        if len(expression) > MAX_EXPRESSION_LENGTH:
            raise UnsafeExpressionError("Expression exceeds maximum length")
        try:
            tree = ast.parse(expression, mode="eval")
        except SyntaxError as e:
            raise UnsafeExpressionError(f"Invalid expression syntax: {e.msg}")

        for node in ast.walk(tree):
            if isinstance(node, ast.Attribute) and node.attr.startswith("_"):
                raise UnsafeExpressionError(f"Access to '{node.attr}' is not allowed")
            if isinstance(node, ast.Name) and node.id.startswith("__"):
                raise UnsafeExpressionError(f"Name '{node.id}' is not allowed")
            if isinstance(node, (ast.Lambda, ast.ListComp, ast.SetComp, ast.DictComp,
                                 ast.GeneratorExp, ast.NamedExpr, ast.Await, ast.Yield,
                                 ast.YieldFrom, ast.Starred)):
                raise UnsafeExpressionError(f"{type(node).__name__} is not allowed")
        return tree

    def evaluate(self, expression: str, names: Mapping[str, Any]) -> Any:
        """Evaluate ``expression`` with ``names`` as the only visible bindings."""
        tree = self.compile(expression)
        return self._eval(tree.body, names)

    def _eval(self, node: ast.AST, names: Mapping[str, Any]) -> Any:
        if isinstance(node, ast.Constant):
            return node.value

        if isinstance(node, ast.Name):
            if node.id in names:
                return names[node.id]
            if node.id in _CONSTANT_NAMES:
                return _CONSTANT_NAMES[node.id]
            if node.id in self._functions:
                return self._functions[node.id]
            return None

        if isinstance(node, ast.BoolOp):
            if isinstance(node.op, ast.And):
                result: Any = True
                for value in node.values:
                    result = self._eval(value, names)
                    if not result:
                        return result
                return result
            result = False
            for value in node.values:
                result = self._eval(value, names)
                if result:
                    return result
            return result

        if isinstance(node, ast.UnaryOp):
            op = _UNARY_OPS.get(type(node.op))
            if op is None:
                raise UnsafeExpressionError(f"Unsupported unary operator {type(node.op).__name__}")
            return op(self._eval(node.operand, names))

        if isinstance(node, ast.BinOp):
            left = self._eval(node.left, names)
            right = self._eval(node.right, names)
            if isinstance(node.op, ast.Pow):
                if abs(left) > MAX_POWER_OPERAND or abs(right) > 64:
                    raise UnsafeExpressionError("Exponent too large")
                return left ** right
            op = _BIN_OPS.get(type(node.op))
            if op is None:
                raise UnsafeExpressionError(f"Unsupported operator {type(node.op).__name__}")
            _check_sequence_size(node.op, left, right)
            return op(left, right)

        if isinstance(node, ast.Compare):
            left = self._eval(node.left, names)
            for op_node, comparator in zip(node.ops, node.comparators):
                right = self._eval(comparator, names)
                if not _COMPARE_OPS[type(op_node)](left, right):
                    return False
                left = right
            return True

        if isinstance(node, ast.IfExp):
            if self._eval(node.test, names):
                return self._eval(node.body, names)
            return self._eval(node.orelse, names)

        if isinstance(node, ast.Subscript):
            container = self._eval(node.value, names)
            index = self._eval(node.slice, names)
            try:
                return container[index]
            except (KeyError, IndexError, TypeError):
                return None

        if isinstance(node, ast.Attribute):
            target = self._eval(node.value, names)
            if isinstance(target, Mapping):
                return target.get(node.attr)
            for kind, methods in SAFE_METHODS.items():
                if isinstance(target, kind) and node.attr in methods:
                    return getattr(target, node.attr)
            raise UnsafeExpressionError(f"Attribute '{node.attr}' is not accessible")

        if isinstance(node, ast.Call):
            func = self._eval(node.func, names)
            if not self._is_allowed_callable(func):
                raise UnsafeExpressionError("Call target is not an allowed function")
            args = [self._eval(arg, names) for arg in node.args]
            kwargs = {kw.arg: self._eval(kw.value, names) for kw in node.keywords if kw.arg}
            if isinstance(getattr(func, "__self__", None), str) and func.__name__ == "replace":
                _check_replace_size(func.__self__, args)
            return func(*args, **kwargs)

        if isinstance(node, (ast.List, ast.Tuple, ast.Set)):
            items = [self._eval(element, names) for element in node.elts]
            if isinstance(node, ast.Tuple):
                return tuple(items)
            if isinstance(node, ast.Set):
                return set(items)
            return items

        if isinstance(node, ast.Dict):
            return {
                self._eval(key, names): self._eval(value, names)
                for key, value in zip(node.keys, node.values)
                if key is not None
            }

        if isinstance(node, ast.Slice):
            return slice(
                self._eval(node.lower, names) if node.lower else None,
                self._eval(node.upper, names) if node.upper else None,
                self._eval(node.step, names) if node.step else None,
            )

        raise UnsafeExpressionError(f"Unsupported expression element {type(node).__name__}")

    def _is_allowed_callable(self, func: Any) -> bool:
        if any(func is allowed for allowed in self._functions.values()):
            return True
        owner = getattr(func, "__self__", None)
        name = getattr(func, "__name__", None)
        for kind, methods in SAFE_METHODS.items():
            if isinstance(owner, kind) and name in methods:
                return True
        return False
