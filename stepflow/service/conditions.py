"""Condition evaluation for conditional nodes.

A conditional node is decided by its ``condition`` string when it has one,
otherwise by its structured ``condition_groups``. Every group must hold; the
conditions inside a group are joined by the group's ``AND``/``OR``.
"""

from __future__ import annotations

import json
import math
import re
from datetime import datetime
from functools import lru_cache
from typing import Any, Callable, Dict, Mapping, Optional

from stepflow.graph.models import Condition, ConditionalNode, ConditionGroup
from stepflow.logging import get_logger
from stepflow.service.errors import UnresolvedVariableError
from stepflow.service.expressions import (
    CompiledCondition,
    ExpressionError,
    compile_condition,
    is_truthy,
)
from stepflow.service.transforms import UNRESOLVED, stringify
from stepflow.service.variables import VariableResolver, parse_token

logger = get_logger(__name__)

_ORDERING = {"greater_than", "greater_than_equals", "less_than", "less_than_equals"}


@lru_cache(maxsize=512)
def _compiled(text: str) -> CompiledCondition:
    return compile_condition(text)


def evaluate_condition_string(
    text: str,
    resolver: VariableResolver,
    variables: Optional[Mapping[str, Any]] = None,
) -> bool:
    """Evaluate a condition string to a boolean.

    A path that has not been produced yet, such as the output of a node in
    an untaken branch, reads as ``null``. Evaluation faults such as
    dividing by zero are logged and count as false.
    """
    compiled = _compiled(text)

    def _lookup(reference: str) -> Any:
        if reference.startswith("{{"):
            token = parse_token(reference)
            value = resolver.resolve_token(token, variables)
            path = token.path
        else:
            value = resolver.resolve(reference, variables)
            path = reference
        if value is UNRESOLVED:
            logger.debug("condition_reference_unresolved", condition=text, path=path)
            return None
        return value

    try:
        result = compiled.evaluate(_lookup)
    except (ExpressionError, TypeError, ArithmeticError) as exc:
        logger.warning("condition_evaluation_failed", condition=text, error=str(exc))
        return False
    return is_truthy(result)


def _resolve_operand(
    raw: Any, resolver: VariableResolver, variables: Optional[Mapping[str, Any]]
) -> Any:
    try:
        return resolver.resolve_value(raw, variables)
    except UnresolvedVariableError:
        return UNRESOLVED


def _coerce(value: Any, data_type: str) -> Any:
    if value is None or value is UNRESOLVED:
        return value
    try:
        if data_type == "number":
            if isinstance(value, bool):
                return int(value)
            if isinstance(value, (int, float)):
                return value
            return float(str(value).strip())
        if data_type == "boolean":
            if isinstance(value, str):
                return value.strip().lower() in {"true", "1", "yes", "on"}
            return is_truthy(value)
        if data_type == "string":
            return stringify(value)
        if data_type == "date_time":
            if isinstance(value, datetime):
                return value
            text = str(value).strip()
            if text.endswith("Z"):
                text = text[:-1] + "+00:00"
            return datetime.fromisoformat(text)
        if data_type in ("array", "object") and isinstance(value, str):
            return json.loads(value)
    except (TypeError, ValueError) as exc:
        logger.warning("condition_operand_coercion_failed", data_type=data_type, error=str(exc))
    return value


def _is_empty(value: Any) -> bool:
    if value is None or value is UNRESOLVED:
        return True
    if isinstance(value, (str, list, tuple, dict)):
        return len(value) == 0
    return False


def _contains(container: Any, item: Any) -> bool:
    if isinstance(container, str):
        return stringify(item) in container
    if isinstance(container, (list, tuple)):
        return item in container
    if isinstance(container, dict):
        return item in container
    return False


def _members(value: Any) -> list:
    if isinstance(value, (list, tuple)):
        return list(value)
    if isinstance(value, str):
        return [part.strip() for part in value.split(",")]
    return [value]


def _regex(left: Any, pattern: Any) -> bool:
    try:
        return re.search(stringify(pattern), stringify(left)) is not None
    except re.error as exc:
        logger.warning("condition_invalid_regex", pattern=stringify(pattern), error=str(exc))
        return False


def _order(op: str, left: Any, right: Any) -> bool:
    if left is None or right is None:
        return False
    if any(isinstance(v, float) and math.isnan(v) for v in (left, right)):
        return False
    try:
        if op == "greater_than":
            return left > right
        if op == "greater_than_equals":
            return left >= right
        if op == "less_than":
            return left < right
        return left <= right
    except TypeError as exc:
        logger.warning(
            "condition_incomparable_values",
            operator=op,
            left_type=type(left).__name__,
            right_type=type(right).__name__,
            error=str(exc),
        )
        return False


def _has_length(value: Any, expected: Any) -> bool:
    if not isinstance(value, (str, list, tuple, dict)):
        return False
    try:
        return len(value) == int(float(stringify(expected)))
    except ValueError:
        return False


_OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "equals": lambda a, b: a == b,
    "not_equals": lambda a, b: a != b,
    "exists": lambda a, b: a is not None and a is not UNRESOLVED,
    "not_exists": lambda a, b: a is None or a is UNRESOLVED,
    "is_empty": lambda a, b: _is_empty(a),
    "is_not_empty": lambda a, b: not _is_empty(a),
    "contains": _contains,
    "not_contains": lambda a, b: not _contains(a, b),
    "starts_with": lambda a, b: a is not None and stringify(a).startswith(stringify(b)),
    "not_starts_with": lambda a, b: a is None or not stringify(a).startswith(stringify(b)),
    "ends_with": lambda a, b: a is not None and stringify(a).endswith(stringify(b)),
    "not_ends_with": lambda a, b: a is None or not stringify(a).endswith(stringify(b)),
    "matches_regex": _regex,
    "not_matches_regex": lambda a, b: not _regex(a, b),
    "includes": lambda a, b: a in _members(b),
    "not_includes": lambda a, b: a not in _members(b),
    "has_length": _has_length,
    "has_property": lambda a, b: isinstance(a, dict) and stringify(b) in a,
    "not_has_property": lambda a, b: not (isinstance(a, dict) and stringify(b) in a),
}


def evaluate_condition(
    condition: Condition,
    resolver: VariableResolver,
    variables: Optional[Mapping[str, Any]] = None,
    *,
    convert_types: bool = False,
) -> bool:
    left = _resolve_operand(condition.left_operand, resolver, variables)
    right = _resolve_operand(condition.right_operand, resolver, variables)
    operator = condition.operator

    if operator in ("exists", "not_exists", "is_empty", "is_not_empty"):
        return _OPERATORS[operator](left, right)

    if left is UNRESOLVED:
        left = None
    if right is UNRESOLVED:
        right = None

    if operator in _ORDERING:
        data_type = condition.data_type if condition.data_type in ("date_time", "string") else "number"
        return _order(operator, _coerce(left, data_type), _coerce(right, data_type))

    if convert_types:
        left = _coerce(left, condition.data_type)
        right = _coerce(right, condition.data_type)
    try:
        return bool(_OPERATORS[operator](left, right))
    except (TypeError, ValueError, OverflowError) as exc:
        logger.warning(
            "condition_operator_failed",
            operator=operator,
            left_type=type(left).__name__,
            right_type=type(right).__name__,
            error=str(exc),
        )
        return False


def evaluate_group(
    group: ConditionGroup,
    resolver: VariableResolver,
    variables: Optional[Mapping[str, Any]] = None,
) -> bool:
    if not group.conditions:
        return True
    results = (
        evaluate_condition(c, resolver, variables, convert_types=group.convert_types)
        for c in group.conditions
    )
    if group.logical_operator == "OR":
        return any(results)
    return all(results)


def evaluate_conditional(
    node: ConditionalNode,
    resolver: VariableResolver,
    variables: Optional[Mapping[str, Any]] = None,
) -> bool:
    """Decide which branch of ``node`` runs."""
    if node.condition and node.condition.strip():
        return evaluate_condition_string(node.condition, resolver, variables)
    return all(evaluate_group(group, resolver, variables) for group in node.condition_groups)
