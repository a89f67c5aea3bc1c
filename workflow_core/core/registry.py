"""Registries of named callables used by action and plugin nodes."""

import importlib
import inspect
import threading
from typing import Any, Callable, Dict, List, Optional

from .exceptions import RegistryError
from .logging import get_logger

logger = get_logger(__name__)


class CallableRegistry:
    """
    Registry of Python callables that workflow nodes invoke by name.

    Registered callables are called as ``func(params, variables)`` where
    ``params`` is the node's rendered parameter map and ``variables`` is a
    private copy of the execution variables.
    """

    def __init__(self, kind: str = "action"):
        self.kind = kind
        self._entries: Dict[str, Callable] = {}
        self._descriptions: Dict[str, str] = {}
        self._lock = threading.Lock()

    def register(self, name: str, function: Callable, description: str = "", replace: bool = False) -> None:
        """Register a callable under ``name``.

        Args:
            name: Unique identifier
            function: Callable accepting ``(params, variables)``
            description: Optional description
            replace: Overwrite an existing registration instead of failing

        Raises:
            RegistryError: If the name is empty or taken, or the function is not callable
        """
        if not name or not name.strip():
            raise RegistryError(f"{self.kind.capitalize()} name cannot be empty", operation="register")
        name = name.strip()

        if not callable(function):
            raise RegistryError(f"{self.kind.capitalize()} '{name}' must be callable", name=name, operation="register")

        try:
            params = inspect.signature(function).parameters
            if len(params) < 2 and not any(p.kind == p.VAR_POSITIONAL for p in params.values()):
                logger.warning(f"{self.kind.capitalize()} '{name}' accepts fewer than (params, variables)")
        except (ValueError, TypeError):
            pass

        with self._lock:
            if name in self._entries and not replace:
                raise RegistryError(f"{self.kind.capitalize()} '{name}' is already registered",
                                    name=name, operation="register")
            self._entries[name] = function
            self._descriptions[name] = description.strip() if description else ""
        logger.info(f"Registered {self.kind} '{name}'")

    def register_from_path(self, name: str, dotted_path: str, description: str = "") -> None:
        """Register a callable given as ``package.module:function``."""
        module_name, _, attribute = dotted_path.partition(":")
        if not module_name or not attribute:
            raise RegistryError(f"Invalid callable path '{dotted_path}'", name=name, operation="register")
        try:
            module = importlib.import_module(module_name)
            function = getattr(module, attribute)
        except ImportError as e:
            raise RegistryError(f"Cannot import module for {self.kind} '{name}': {e}", name=name)
        except AttributeError as e:
            raise RegistryError(f"Function not found for {self.kind} '{name}': {e}", name=name)
        self.register(name, function, description)

    def get(self, name: str) -> Callable:
        """
        Raises:
            RegistryError: If nothing is registered under ``name``
        """
        with self._lock:
            function = self._entries.get(name)
        if function is None:
            raise RegistryError(f"{self.kind.capitalize()} '{name}' is not registered", name=name, operation="get")
        return function

    def exists(self, name: str) -> bool:
        with self._lock:
            return name in self._entries

    def unregister(self, name: str) -> bool:
        with self._lock:
            removed = self._entries.pop(name, None) is not None
            self._descriptions.pop(name, None)
        if removed:
            logger.info(f"Unregistered {self.kind} '{name}'")
        return removed

    def list(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [
                {"name": name, "description": self._descriptions.get(name, "")}
                for name in sorted(self._entries)
            ]

    def call(self, name: str, params: Dict[str, Any], variables: Dict[str, Any]) -> Any:
        return self.get(name)(params, variables)


def register_builtin_actions(registry: CallableRegistry) -> None:
    """Register the small set of actions shipped with the core."""

    def echo(params: Dict[str, Any], variables: Dict[str, Any]) -> Any:
        return params.get("value", params)

    def increment(params: Dict[str, Any], variables: Dict[str, Any]) -> Dict[str, Any]:
        variable = params.get("variable", "counter")
        current = variables.get(variable) or 0
        return {variable: current + params.get("by", 1)}

    for name, function, description in (
        ("echo", echo, "Return the 'value' parameter unchanged"),
        ("increment", increment, "Return the named variable increased by 'by'"),
    ):
        if not registry.exists(name):
            registry.register(name, function, description)
