"""Directed-graph workflow orchestration core."""

__version__ = "1.0.0"

from .core.graph_manager import GraphManager
from .core.conditions import ConditionalLogicEngine
from .core.execution_engine import ExecutionEngine

__all__ = [
    "GraphManager",
    "ConditionalLogicEngine",
    "ExecutionEngine",
    "__version__",
]
