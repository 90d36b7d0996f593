"""Workflow graph data model.

A workflow is authored as triggers plus an ordered list of steps (the
authoring tool calls them containers). Each step declares form fields and an
ordered list of nodes. Conditional nodes carry two nested node lists and an
optional redirect per branch. The engine only reads these models; they are
frozen so a graph can be shared by concurrent runs.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Discriminator,
    Field,
    Tag,
    field_validator,
    model_validator,
)
from typing_extensions import Annotated

CONDITIONAL_NODE_TYPES = frozenset({"conditional", "if"})

CONDITION_OPERATORS = frozenset(
    {
        "equals",
        "not_equals",
        "exists",
        "not_exists",
        "is_empty",
        "is_not_empty",
        "contains",
        "not_contains",
        "starts_with",
        "not_starts_with",
        "ends_with",
        "not_ends_with",
        "matches_regex",
        "not_matches_regex",
        "greater_than",
        "greater_than_equals",
        "less_than",
        "less_than_equals",
        "includes",
        "not_includes",
        "has_length",
        "has_property",
        "not_has_property",
    }
)

CONDITION_DATA_TYPES = frozenset(
    {"string", "number", "boolean", "date_time", "array", "object"}
)

_GOTO_PATTERN = re.compile(r"^(\d+)-(\d+)$")


class RedirectKind(str, Enum):
    CONTINUE = "continue"
    END = "end"
    GOTO = "goto"


@dataclass(frozen=True)
class RedirectTarget:
    """Where execution goes after a conditional branch finishes.

    ``CONTINUE`` falls through to the next item of the enclosing list,
    ``END`` terminates the run, ``GOTO`` jumps to a top-level
    ``(step_index, node_index)`` position.
    """

    kind: RedirectKind = RedirectKind.CONTINUE
    step_index: Optional[int] = None
    node_index: Optional[int] = None

    @classmethod
    def continue_(cls) -> "RedirectTarget":
        return cls(RedirectKind.CONTINUE)

    @classmethod
    def end(cls) -> "RedirectTarget":
        return cls(RedirectKind.END)

    @classmethod
    def goto(cls, step_index: int, node_index: int) -> "RedirectTarget":
        if step_index < 0 or node_index < 0:
            raise ValueError("redirect indexes must be non-negative")
        return cls(RedirectKind.GOTO, step_index, node_index)

    @classmethod
    def parse(cls, raw: Any) -> "RedirectTarget":
        """Parse the authoring encoding: null/"" , "end" or "<step>-<node>"."""
        if isinstance(raw, RedirectTarget):
            return raw
        if raw is None:
            return cls.continue_()
        if isinstance(raw, str):
            text = raw.strip()
            if not text:
                return cls.continue_()
            if text.lower() == "end":
                return cls.end()
            match = _GOTO_PATTERN.match(text)
            if match:
                return cls.goto(int(match.group(1)), int(match.group(2)))
        raise ValueError(
            f"invalid redirect target {raw!r}; expected null, 'end' or '<stepIndex>-<nodeIndex>'"
        )

    @property
    def position(self) -> Optional[Tuple[int, int]]:
        if self.kind is RedirectKind.GOTO:
            return (self.step_index, self.node_index)  # type: ignore[return-value]
        return None

    def encode(self) -> Optional[str]:
        if self.kind is RedirectKind.END:
            return "end"
        if self.kind is RedirectKind.GOTO:
            return f"{self.step_index}-{self.node_index}"
        return None


@dataclass(frozen=True)
class NodeLocation:
    """Address of a node: its top-level position plus the branch path below it."""

    step_index: int
    node_index: int
    branch_path: Tuple[Tuple[str, int], ...] = ()

    def child(self, branch: str, index: int) -> "NodeLocation":
        return NodeLocation(
            self.step_index, self.node_index, self.branch_path + ((branch, index),)
        )

    @property
    def position(self) -> Tuple[int, int]:
        return (self.step_index, self.node_index)

    @property
    def is_top_level(self) -> bool:
        return not self.branch_path

    @property
    def path(self) -> str:
        rendered = f"steps[{self.step_index}].nodes[{self.node_index}]"
        for branch, index in self.branch_path:
            rendered += f".{branch}Nodes[{index}]"
        return rendered

    @property
    def output_path(self) -> str:
        return f"{self.path}.output"

    @property
    def status_path(self) -> str:
        return f"{self.path}.status"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step_index": self.step_index,
            "node_index": self.node_index,
            "branch_path": [list(part) for part in self.branch_path],
            "path": self.path,
        }

    def __str__(self) -> str:
        return self.path


class GraphModel(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")


class Trigger(GraphModel):
    id: str
    type: str = "manual"
    label: str = ""
    config: Dict[str, Any] = Field(default_factory=dict)


class StepField(GraphModel):
    """Form-like input declared by a step; carries no behavior."""

    id: str = ""
    name: str = ""
    label: str = ""
    type: str = "text"
    default_value: Any = Field(None, alias="defaultValue")
    required: bool = False


class Node(GraphModel):
    id: str = ""
    type: str
    label: str = ""
    config: Dict[str, Any] = Field(default_factory=dict)
    enabled: bool = True

    @property
    def is_conditional(self) -> bool:
        return False


class ActionNode(Node):
    """A node dispatched to the tool registered under its ``type``."""


class Condition(GraphModel):
    id: str = ""
    left_operand: Any = Field("", alias="leftOperand")
    operator: str
    right_operand: Any = Field("", alias="rightOperand")
    data_type: str = Field("string", alias="dataType")

    @field_validator("operator")
    @classmethod
    def _known_operator(cls, value: str) -> str:
        if value not in CONDITION_OPERATORS:
            raise ValueError(f"unknown condition operator {value!r}")
        return value

    @field_validator("data_type")
    @classmethod
    def _known_data_type(cls, value: str) -> str:
        if value not in CONDITION_DATA_TYPES:
            raise ValueError(f"unknown condition data type {value!r}")
        return value


class ConditionGroup(GraphModel):
    id: str = ""
    conditions: List[Condition] = Field(default_factory=list)
    logical_operator: str = Field("AND", alias="logicalOperator")
    convert_types: bool = Field(False, alias="convertTypes")

    @field_validator("logical_operator", mode="before")
    @classmethod
    def _normalize_logical(cls, value: Any) -> str:
        text = str(value or "AND").upper()
        if text not in {"AND", "OR"}:
            raise ValueError(f"logicalOperator must be AND or OR, got {value!r}")
        return text


# Keys the authoring tool keeps inside a conditional node's ``config``
_BRANCH_CONFIG_KEYS = {
    "condition": "condition",
    "conditionGroups": "condition_groups",
    "trueNodes": "true_nodes",
    "falseNodes": "false_nodes",
    "redirectOnTrue": "redirect_on_true",
    "redirectOnFalse": "redirect_on_false",
}


class ConditionalNode(Node):
    """A node that walks one of two nested node lists."""

    condition: Optional[str] = None
    condition_groups: List[ConditionGroup] = Field(
        default_factory=list, alias="conditionGroups"
    )
    true_nodes: List["AnyNode"] = Field(default_factory=list, alias="trueNodes")
    false_nodes: List["AnyNode"] = Field(default_factory=list, alias="falseNodes")
    redirect_on_true: RedirectTarget = Field(
        default_factory=RedirectTarget.continue_, alias="redirectOnTrue"
    )
    redirect_on_false: RedirectTarget = Field(
        default_factory=RedirectTarget.continue_, alias="redirectOnFalse"
    )

    @model_validator(mode="before")
    @classmethod
    def _lift_branch_config(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        config = data.get("config")
        if not isinstance(config, dict):
            return data
        merged = dict(data)
        remaining = dict(config)
        for alias, name in _BRANCH_CONFIG_KEYS.items():
            for key in (alias, name):
                if key not in remaining:
                    continue
                value = remaining.pop(key)
                if alias not in merged and name not in merged:
                    merged[alias] = value
        merged["config"] = remaining
        return merged

    @field_validator("redirect_on_true", "redirect_on_false", mode="before")
    @classmethod
    def _parse_redirect(cls, value: Any) -> RedirectTarget:
        return RedirectTarget.parse(value)

    @property
    def is_conditional(self) -> bool:
        return True

    @property
    def has_condition(self) -> bool:
        return bool((self.condition or "").strip()) or bool(self.condition_groups)

    def branch(self, taken: bool) -> List["AnyNode"]:
        return self.true_nodes if taken else self.false_nodes

    def redirect(self, taken: bool) -> RedirectTarget:
        return self.redirect_on_true if taken else self.redirect_on_false


def _node_kind(value: Any) -> str:
    if isinstance(value, dict):
        node_type = value.get("type")
    else:
        node_type = getattr(value, "type", None)
    if isinstance(node_type, str) and node_type.lower() in CONDITIONAL_NODE_TYPES:
        return "conditional"
    return "action"


AnyNode = Annotated[
    Union[
        Annotated[ConditionalNode, Tag("conditional")],
        Annotated[ActionNode, Tag("action")],
    ],
    Discriminator(_node_kind),
]

ConditionalNode.model_rebuild()


class Step(GraphModel):
    id: str = ""
    title: str = ""
    fields: List[StepField] = Field(
        default_factory=list, validation_alias=AliasChoices("fields", "elements")
    )
    nodes: List[AnyNode] = Field(default_factory=list)


class WorkflowGraph(GraphModel):
    id: str = ""
    name: str = ""
    triggers: List[Trigger] = Field(default_factory=list)
    steps: List[Step] = Field(
        default_factory=list, validation_alias=AliasChoices("steps", "containers")
    )

    def find_trigger(self, trigger_id: str) -> Optional[Tuple[int, Trigger]]:
        for index, trigger in enumerate(self.triggers):
            if trigger.id == trigger_id:
                return index, trigger
        return None

    def has_position(self, step_index: int, node_index: int) -> bool:
        if step_index < 0 or step_index >= len(self.steps):
            return False
        return 0 <= node_index < len(self.steps[step_index].nodes)

    def node_at(self, step_index: int, node_index: int) -> Node:
        if not self.has_position(step_index, node_index):
            raise IndexError(f"no node at {step_index}-{node_index}")
        return self.steps[step_index].nodes[node_index]

    def positions(self) -> List[Tuple[int, int]]:
        """Top-level (step, node) pairs in execution order."""
        return [
            (step_index, node_index)
            for step_index, step in enumerate(self.steps)
            for node_index in range(len(step.nodes))
        ]

    def iter_nodes(self) -> Iterator[Tuple[NodeLocation, Node]]:
        """Yield every node, branch nodes included, depth first."""

        def _walk(location: NodeLocation, node: Node) -> Iterator[Tuple[NodeLocation, Node]]:
            yield location, node
            if isinstance(node, ConditionalNode):
                for branch, nodes in (("true", node.true_nodes), ("false", node.false_nodes)):
                    for index, child in enumerate(nodes):
                        yield from _walk(location.child(branch, index), child)

        for step_index, node_index in self.positions():
            yield from _walk(
                NodeLocation(step_index, node_index), self.steps[step_index].nodes[node_index]
            )
