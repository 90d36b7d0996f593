"""Variable path resolution.

Paths are the contract shared with the authoring UI: dot-separated
identifiers, each followed by optional ``[n]`` subscripts, for example
``steps[0].nodes[1].output.status`` or ``triggers[0].id``. Runtime values
produced during a run are stored under canonical path strings; at every
prefix of a path a runtime entry wins over the static graph.

Below a concrete value (a node output, a config map, a trigger payload)
missing keys resolve to ``None``. Structural addresses that cannot exist in
the graph raise ``InvalidPathError``. A value that has not been produced yet
resolves to the ``UNRESOLVED`` sentinel.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, List, Mapping, Optional, Sequence, Tuple, Union

from stepflow.graph.models import (
    ConditionalNode,
    Node,
    NodeLocation,
    Step,
    StepField,
    Trigger,
    WorkflowGraph,
)
from stepflow.service.errors import InvalidPathError, UnresolvedVariableError
from stepflow.service.transforms import (
    UNRESOLVED,
    Transformation,
    get_transformation,
    parse_argument,
    stringify,
)

PathToken = Union[str, int]

_SEGMENT = re.compile(r"([A-Za-z_][A-Za-z0-9_]*)((?:\[\d+\])*)$")
_SUBSCRIPT = re.compile(r"\[(\d+)\]")
TOKEN_PATTERN = re.compile(r"\{\{(.*?)\}\}", re.DOTALL)

ROOTS = ("steps", "triggers", "trigger", "vars")

_TRIGGER_ATTRS = ("id", "type", "label", "config")
_STEP_ATTRS = ("id", "title")
_FIELD_ATTRS = {
    "id": "id",
    "name": "name",
    "label": "label",
    "type": "type",
    "required": "required",
    "defaultValue": "default_value",
}
_NODE_ATTRS = ("id", "type", "label", "config", "enabled")
_CONDITIONAL_ATTRS = ("condition",)


def parse_path(path: str) -> Tuple[PathToken, ...]:
    """Split ``path`` into names and integer subscripts."""
    if not isinstance(path, str):
        raise InvalidPathError(repr(path), "path must be a string")
    text = path.strip()
    if not text:
        raise InvalidPathError(path, "path is empty")
    tokens: List[PathToken] = []
    for segment in text.split("."):
        match = _SEGMENT.match(segment)
        if not match:
            raise InvalidPathError(path, f"malformed segment {segment!r}")
        tokens.append(match.group(1))
        tokens.extend(int(index) for index in _SUBSCRIPT.findall(match.group(2)))
    return tuple(tokens)


def format_path(tokens: Sequence[PathToken]) -> str:
    """Render tokens back to the canonical path string."""
    rendered = ""
    for token in tokens:
        if isinstance(token, int):
            rendered += f"[{token}]"
        elif rendered:
            rendered += f".{token}"
        else:
            rendered = token
    return rendered


def canonical_path(path: str) -> str:
    return format_path(parse_path(path))


def value_type(value: Any) -> str:
    if value is UNRESOLVED:
        return "unresolved"
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, (list, tuple)):
        return "array"
    return "object"


@dataclass(frozen=True)
class Variable:
    path: str
    value: Any
    type: str

    @property
    def resolved(self) -> bool:
        return self.value is not UNRESOLVED


@dataclass(frozen=True)
class TokenReference:
    """One ``{{ path | transform:arg }}`` occurrence inside a string."""

    raw: str
    path: str
    transforms: Tuple[Tuple[Transformation, Tuple[Any, ...]], ...] = field(default=())

    def apply(self, value: Any) -> Any:
        for transformation, args in self.transforms:
            value = transformation.apply(value, args)
        return value


def _split_outside_quotes(text: str, separator: str) -> List[str]:
    parts: List[str] = []
    current = ""
    quote: Optional[str] = None
    for char in text:
        if quote:
            current += char
            if char == quote:
                quote = None
        elif char in {'"', "'"}:
            quote = char
            current += char
        elif char == separator:
            parts.append(current)
            current = ""
        else:
            current += char
    parts.append(current)
    return parts


def parse_token(raw: str) -> TokenReference:
    """Parse the inside of a ``{{ }}`` token."""
    inner = raw.strip()
    if inner.startswith("{{") and inner.endswith("}}"):
        inner = inner[2:-2]
    parts = [part.strip() for part in _split_outside_quotes(inner, "|")]
    path = canonical_path(parts[0])
    transforms = []
    for spec in parts[1:]:
        name, *args = _split_outside_quotes(spec, ":")
        name = name.strip()
        transformation = get_transformation(name)
        if transformation is None:
            raise InvalidPathError(path, f"unknown transformation {name!r}")
        transforms.append((transformation, tuple(parse_argument(arg) for arg in args)))
    return TokenReference(raw=raw, path=path, transforms=tuple(transforms))


def find_references(value: Any) -> List[str]:
    """Paths referenced by tokens anywhere inside ``value``, in order, deduplicated."""
    found: List[str] = []

    def _walk(item: Any) -> None:
        if isinstance(item, str):
            for match in TOKEN_PATTERN.finditer(item):
                path = parse_token(match.group(0)).path
                if path not in found:
                    found.append(path)
        elif isinstance(item, Mapping):
            for nested in item.values():
                _walk(nested)
        elif isinstance(item, (list, tuple)):
            for nested in item:
                _walk(nested)

    _walk(value)
    return found


def _child_value(value: Any, token: PathToken) -> Any:
    if isinstance(token, int):
        if isinstance(value, (list, tuple)) and token < len(value):
            return value[token]
        return None
    if isinstance(value, Mapping):
        return value.get(token)
    return None


class VariableResolver:
    """Resolves paths and tokens against one graph plus a run's variables."""

    def __init__(self, graph: WorkflowGraph) -> None:
        self.graph = graph

    # -- structural walk -------------------------------------------------

    def resolve(self, path: str, variables: Optional[Mapping[str, Any]] = None) -> Any:
        tokens = parse_path(path)
        runtime = variables or {}
        root = tokens[0]
        if root not in ROOTS:
            raise InvalidPathError(path, f"unknown root {root!r}")

        if root in runtime:
            return self._walk_value(runtime[root], tokens, 1, runtime)
        if root in ("trigger", "vars"):
            return self._walk_value(UNRESOLVED, tokens, 1, runtime)

        entity: Any = self.graph.steps if root == "steps" else self.graph.triggers
        kind = root
        location: Optional[NodeLocation] = None
        step_index = 0
        index = 1
        while index < len(tokens):
            token = tokens[index]
            prefix = format_path(tokens[: index + 1])
            if prefix in runtime:
                return self._walk_value(runtime[prefix], tokens, index + 1, runtime)

            if kind in ("steps", "triggers", "fields", "nodes"):
                if not isinstance(token, int):
                    raise InvalidPathError(path, f"{format_path(tokens[:index])} needs an index")
                if token >= len(entity):
                    raise InvalidPathError(
                        path, f"{prefix} is out of range ({len(entity)} available)"
                    )
                item = entity[token]
                if kind == "steps":
                    kind, step_index = "step", token
                elif kind == "triggers":
                    kind = "trigger"
                elif kind == "fields":
                    kind = "field"
                else:
                    location = self._node_location(location, step_index, tokens[index - 1], token)
                    kind = "node"
                entity = item
                index += 1
                continue

            if isinstance(token, int):
                raise InvalidPathError(path, f"{format_path(tokens[:index])} is not a list")

            if kind == "step":
                if token == "nodes":
                    kind, entity = "nodes", entity.nodes
                elif token == "fields":
                    kind, entity = "fields", entity.fields
                elif token in _STEP_ATTRS:
                    return self._walk_value(getattr(entity, token), tokens, index + 1, runtime)
                else:
                    raise InvalidPathError(path, f"steps have no attribute {token!r}")
            elif kind == "node":
                value = self._node_attribute(path, entity, token)
                if value is _DESCEND_TRUE or value is _DESCEND_FALSE:
                    kind = "nodes"
                    entity = entity.true_nodes if value is _DESCEND_TRUE else entity.false_nodes
                else:
                    return self._walk_value(value, tokens, index + 1, runtime)
            elif kind == "field":
                return self._walk_value(
                    self._field_attribute(path, entity, token), tokens, index + 1, runtime
                )
            elif kind == "trigger":
                if token not in _TRIGGER_ATTRS:
                    raise InvalidPathError(path, f"triggers have no attribute {token!r}")
                return self._walk_value(getattr(entity, token), tokens, index + 1, runtime)
            index += 1

        return self._materialize(entity)

    def _node_location(
        self,
        parent: Optional[NodeLocation],
        step_index: int,
        list_name: PathToken,
        index: int,
    ) -> NodeLocation:
        if list_name == "nodes":
            return NodeLocation(step_index, index)
        branch = "true" if list_name == "trueNodes" else "false"
        if parent is None:
            raise InvalidPathError(
                format_path((list_name, index)), "branch list outside a conditional node"
            )
        return parent.child(branch, index)

    def _node_attribute(self, path: str, node: Node, token: str) -> Any:
        if token in ("output", "status"):
            return UNRESOLVED
        if isinstance(node, ConditionalNode):
            if token == "trueNodes":
                return _DESCEND_TRUE
            if token == "falseNodes":
                return _DESCEND_FALSE
            if token in _CONDITIONAL_ATTRS:
                return node.condition
        if token in _NODE_ATTRS:
            return getattr(node, token)
        raise InvalidPathError(path, f"nodes have no attribute {token!r}")

    def _field_attribute(self, path: str, step_field: StepField, token: str) -> Any:
        if token == "value":
            if step_field.default_value is None:
                return UNRESOLVED
            return step_field.default_value
        if token in _FIELD_ATTRS:
            return getattr(step_field, _FIELD_ATTRS[token])
        raise InvalidPathError(path, f"fields have no attribute {token!r}")

    def _walk_value(
        self,
        value: Any,
        tokens: Sequence[PathToken],
        start: int,
        runtime: Mapping[str, Any],
    ) -> Any:
        for index in range(start, len(tokens)):
            prefix = format_path(tokens[: index + 1])
            if prefix in runtime:
                value = runtime[prefix]
                continue
            if value is UNRESOLVED:
                continue
            value = _child_value(value, tokens[index])
        return value

    def _materialize(self, entity: Any) -> Any:
        if isinstance(entity, (Step, StepField, Trigger, Node)):
            return entity.model_dump(by_alias=True, mode="json")
        if isinstance(entity, list):
            return [self._materialize(item) for item in entity]
        return entity

    # -- public helpers --------------------------------------------------

    def lookup(self, path: str, variables: Optional[Mapping[str, Any]] = None) -> Variable:
        value = self.resolve(path, variables)
        return Variable(path=canonical_path(path), value=value, type=value_type(value))

    def resolve_token(
        self, token: TokenReference, variables: Optional[Mapping[str, Any]] = None
    ) -> Any:
        return token.apply(self.resolve(token.path, variables))

    def resolve_value(self, value: Any, variables: Optional[Mapping[str, Any]] = None) -> Any:
        """Return a copy of ``value`` with every token substituted."""
        if isinstance(value, str):
            return self._resolve_string(value, variables)
        if isinstance(value, Mapping):
            return {key: self.resolve_value(item, variables) for key, item in value.items()}
        if isinstance(value, list):
            return [self.resolve_value(item, variables) for item in value]
        if isinstance(value, tuple):
            return tuple(self.resolve_value(item, variables) for item in value)
        return value

    def resolve_config(
        self, config: Mapping[str, Any], variables: Optional[Mapping[str, Any]] = None
    ) -> dict:
        return self.resolve_value(dict(config), variables)

    def _resolve_string(self, text: str, variables: Optional[Mapping[str, Any]]) -> Any:
        matches = list(TOKEN_PATTERN.finditer(text))
        if not matches:
            return text
        if len(matches) == 1 and matches[0].group(0) == text.strip():
            return self._required(parse_token(matches[0].group(0)), variables)

        pieces: List[str] = []
        cursor = 0
        for match in matches:
            pieces.append(text[cursor : match.start()])
            pieces.append(stringify(self._required(parse_token(match.group(0)), variables)))
            cursor = match.end()
        pieces.append(text[cursor:])
        return "".join(pieces)

    def _required(self, token: TokenReference, variables: Optional[Mapping[str, Any]]) -> Any:
        value = self.resolve_token(token, variables)
        if value is UNRESOLVED:
            raise UnresolvedVariableError(token.path)
        return value

    def available_paths(self, variables: Optional[Mapping[str, Any]] = None) -> List[Variable]:
        """Paths a variable picker can offer, with their current values."""
        paths: List[str] = []
        for index, _ in enumerate(self.graph.triggers):
            paths.extend(f"triggers[{index}].{attr}" for attr in ("id", "type", "label"))
        for step_index, step in enumerate(self.graph.steps):
            paths.extend(f"steps[{step_index}].{attr}" for attr in _STEP_ATTRS)
            for field_index, _ in enumerate(step.fields):
                base = f"steps[{step_index}].fields[{field_index}]"
                paths.extend((f"{base}.value", f"{base}.label"))
        for location, _ in self.graph.iter_nodes():
            paths.extend(
                f"{location.path}.{attr}" for attr in ("id", "type", "output", "status")
            )
        for key in (variables or {}):
            if key.split(".")[0].split("[")[0] in ("trigger", "vars") and key not in paths:
                paths.append(key)
        return [self.lookup(path, variables) for path in paths]


_DESCEND_TRUE = object()
_DESCEND_FALSE = object()


def resolve(path: str, graph: WorkflowGraph, variables: Optional[Mapping[str, Any]] = None) -> Any:
    return VariableResolver(graph).resolve(path, variables)


def resolve_config(
    config: Mapping[str, Any],
    graph: WorkflowGraph,
    variables: Optional[Mapping[str, Any]] = None,
) -> dict:
    return VariableResolver(graph).resolve_config(config, variables)
