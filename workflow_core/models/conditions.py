"""Pydantic models for conditional expressions, loops and branch paths."""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import Field, field_validator, model_validator

from .core import CamelModel, generate_id


class ConditionType(str, Enum):
    SIMPLE = "simple"
    COMPOUND = "compound"
    SCRIPT = "script"


class ConditionOperator(str, Enum):
    """Operators supported by simple conditions."""
    EQUALS = "equals"
    NOT_EQUALS = "not-equals"
    GREATER = "greater"
    LESS = "less"
    CONTAINS = "contains"
    STARTS_WITH = "starts-with"
    ENDS_WITH = "ends-with"
    REGEX = "regex"


class LogicOperator(str, Enum):
    AND = "and"
    OR = "or"
    NOT = "not"


class ConditionalExpression(CamelModel):
    """
    A boolean expression over execution variables.

    ``simple`` compares ``left`` and ``right`` operands with ``operator``;
    ``compound`` combines ``children`` with ``logic``; ``script`` evaluates
    ``script`` with the restricted expression evaluator.
    """
    id: str = Field(default_factory=lambda: generate_id("cond"))
    type: ConditionType = ConditionType.SIMPLE
    operator: Optional[ConditionOperator] = None
    left: Optional[str] = None
    right: Optional[str] = None
    logic: Optional[LogicOperator] = None
    children: List["ConditionalExpression"] = Field(default_factory=list)
    script: Optional[str] = None

    @field_validator('left', 'right', mode='before')
    @classmethod
    def stringify_operands(cls, value):
        """Operands are authored as strings; accept plain scalars too."""
        if value is None or isinstance(value, str):
            return value
        if isinstance(value, bool):
            return "true" if value else "false"
        return str(value)

    @model_validator(mode='after')
    def validate_shape(self):
        if self.type == ConditionType.COMPOUND and self.logic is None:
            raise ValueError("Compound conditions require a logic operator")
        if self.type == ConditionType.SCRIPT and not (self.script or "").strip():
            raise ValueError("Script conditions require a script body")
        return self

    @classmethod
    def simple(cls, left: Any, operator: Optional[str] = None, right: Any = None) -> "ConditionalExpression":
        return cls(type=ConditionType.SIMPLE, left=left, operator=operator, right=right)

    @classmethod
    def compound(cls, logic: str, children: List["ConditionalExpression"]) -> "ConditionalExpression":
        return cls(type=ConditionType.COMPOUND, logic=logic, children=children)

    def contains_script(self) -> bool:
        if self.type == ConditionType.SCRIPT:
            return True
        return any(child.contains_script() for child in self.children)


ConditionalExpression.model_rebuild()


class LoopType(str, Enum):
    FOR_EACH = "for-each"
    WHILE = "while"
    FOR = "for"
    DO_WHILE = "do-while"


class LoopConfig(CamelModel):
    """Configuration of a loop node; ``body`` holds the inline tasks run per iteration."""
    type: LoopType
    condition: Optional[ConditionalExpression] = None
    collection: Optional[Any] = None
    start_index: int = 0
    end_index: Optional[int] = None
    step: int = 1
    max_iterations: Optional[int] = Field(default=None, ge=1)
    break_conditions: List[ConditionalExpression] = Field(default_factory=list)
    continue_conditions: List[ConditionalExpression] = Field(default_factory=list)
    body: List[Dict[str, Any]] = Field(default_factory=list)

    @model_validator(mode='before')
    @classmethod
    def parse_guard_strings(cls, data: Any) -> Any:
        """Conditions written as guard strings (``count < 3``) are parsed like connection guards."""
        if not isinstance(data, dict):
            return data
        from ..core.conditions import parse_guard

        data = dict(data)
        if isinstance(data.get("condition"), str):
            data["condition"] = parse_guard(data["condition"])
        for key in ("breakConditions", "break_conditions", "continueConditions", "continue_conditions"):
            if isinstance(data.get(key), list):
                parsed = [parse_guard(item) if isinstance(item, str) else item for item in data[key]]
                data[key] = [item for item in parsed if item is not None]
        return data

    @model_validator(mode='after')
    def validate_kind(self):
        """Each loop kind needs the data its continuation check reads."""
        if self.type == LoopType.FOR_EACH and self.collection is None:
            raise ValueError("for-each loops require a collection")
        if self.type == LoopType.FOR:
            if self.end_index is None:
                raise ValueError("for loops require an endIndex")
            if self.step == 0:
                raise ValueError("for loops require a non-zero step")
        if self.type in (LoopType.WHILE, LoopType.DO_WHILE) and self.condition is None:
            raise ValueError(f"{self.type.value} loops require a condition")
        return self


class BranchPath(CamelModel):
    """A candidate branch leaving a condition node."""
    id: str = Field(default_factory=lambda: generate_id("branch"))
    name: str = ""
    condition: Optional[ConditionalExpression] = None
    priority: int = 0
    is_default: bool = False
    connection_id: str
    target_node_id: str
    nodes: List[str] = Field(default_factory=list)
    connections: List[str] = Field(default_factory=list)
