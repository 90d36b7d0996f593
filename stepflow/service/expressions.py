"""Safe evaluation of condition strings.

A condition is a small expression over variable paths and literals::

    steps[0].nodes[0].output.status == 200 and vars.retries < 3

Paths (and ``{{ token }}`` references) are swapped for placeholder names
before parsing, so the AST allowlist never has to permit attribute access.
``===``, ``!==``, ``&&``, ``||`` and ``!`` are accepted as aliases because the
authoring UI shows JavaScript-like examples.
"""

from __future__ import annotations

import ast
import math
import operator
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Sequence

from stepflow.logging import get_logger
from stepflow.service.transforms import UNRESOLVED

logger = get_logger(__name__)


class ExpressionError(ValueError):
    """The condition text is not a permitted expression."""


_BIN_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.Mod: operator.mod,
    ast.FloorDiv: operator.floordiv,
}

_CMP_OPS = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
}

_LITERAL_NAMES = {"true": True, "false": False, "null": None}

_OPERATOR_ALIASES = {"===": " == ", "!==": " != ", "&&": " and ", "||": " or ", "!": " not "}

_SCAN = re.compile(
    r"""
    (?P<string>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
    |(?P<token>\{\{.*?\}\})
    |(?P<path>(?<![\w.])(?:steps|triggers|trigger|vars)\b(?:\[\d+\])*(?:\.[A-Za-z_]\w*(?:\[\d+\])*)*)
    |(?P<alias>===|!==|&&|\|\||!(?!=))
    """,
    re.VERBOSE | re.DOTALL,
)

_MAX_RECURSION_DEPTH = 100

_REJECTED_NODES = (
    ast.Attribute,
    ast.Call,
    ast.Lambda,
    ast.ListComp,
    ast.SetComp,
    ast.DictComp,
    ast.GeneratorExp,
    ast.Await,
    ast.Yield,
    ast.YieldFrom,
    ast.NamedExpr,
    ast.Starred,
    ast.JoinedStr,
)


def is_truthy(value: Any) -> bool:
    """Truthiness shared by conditions and branch selection.

    ``None``, ``UNRESOLVED``, ``False``, zero, NaN and the empty string are
    false. Everything else is true, including empty lists and objects.
    """
    if value is None or value is UNRESOLVED or value is False:
        return False
    if isinstance(value, bool):
        return True
    if isinstance(value, (int, float)):
        return not (value == 0 or (isinstance(value, float) and math.isnan(value)))
    if isinstance(value, str):
        return value != ""
    return True


@dataclass(frozen=True)
class CompiledCondition:
    source: str
    tree: ast.Expression
    # placeholder name -> path or raw ``{{ token }}`` text
    references: Dict[str, str] = field(default_factory=dict)

    def evaluate(self, lookup: Callable[[str], Any]) -> Any:
        """Evaluate with ``lookup`` resolving each reference on first use."""
        cache: Dict[str, Any] = {}

        def _name(name: str) -> Any:
            if name in _LITERAL_NAMES:
                return _LITERAL_NAMES[name]
            if name not in self.references:
                raise ExpressionError(f"unknown name {name}")
            if name not in cache:
                cache[name] = lookup(self.references[name])
            return cache[name]

        return _eval_node(self.tree, _name)


def compile_condition(text: str) -> CompiledCondition:
    """Parse ``text`` and check it against the allowlist."""
    if not isinstance(text, str) or not text.strip():
        raise ExpressionError("condition is empty")

    references: Dict[str, str] = {}

    def _replace(match: re.Match) -> str:
        kind = match.lastgroup
        if kind == "string":
            return match.group(0)
        if kind == "alias":
            return _OPERATOR_ALIASES[match.group(0)]
        name = f"__ref{len(references)}"
        references[name] = match.group(0)
        return f" {name} "

    rewritten = _SCAN.sub(_replace, text).strip()
    try:
        tree = ast.parse(rewritten, mode="eval")
    except SyntaxError as exc:
        raise ExpressionError(f"invalid expression: {exc.msg}") from exc

    for node in ast.walk(tree):
        if isinstance(node, _REJECTED_NODES):
            raise ExpressionError(f"disallowed syntax in expression: {type(node).__name__}")
        if isinstance(node, ast.Name) and node.id not in references and node.id not in _LITERAL_NAMES:
            raise ExpressionError(f"unknown name {node.id}")
    return CompiledCondition(source=text, tree=tree, references=references)


def _compare(op_node: ast.cmpop, left: Any, right: Any) -> bool:
    op = _CMP_OPS.get(type(op_node))
    if op is None:
        raise ExpressionError("unsupported comparator")
    try:
        return bool(op(left, right))
    except TypeError as exc:
        logger.warning(
            "condition_incomparable_values",
            comparator=type(op_node).__name__,
            left_type=type(left).__name__,
            right_type=type(right).__name__,
            error=str(exc),
        )
        return False


def _eval_node(node: ast.AST, names: Callable[[str], Any], _depth: int = 0) -> Any:
    if _depth > _MAX_RECURSION_DEPTH:
        raise ExpressionError("expression too deeply nested")

    if isinstance(node, ast.Expression):
        return _eval_node(node.body, names, _depth + 1)

    if isinstance(node, ast.Constant):
        return node.value

    if isinstance(node, ast.Name):
        return names(node.id)

    if isinstance(node, ast.BoolOp):
        if isinstance(node.op, ast.And):
            result = True
            for value in node.values:
                result = is_truthy(_eval_node(value, names, _depth + 1))
                if not result:
                    break
            return result
        if isinstance(node.op, ast.Or):
            result = False
            for value in node.values:
                result = is_truthy(_eval_node(value, names, _depth + 1))
                if result:
                    break
            return result
        raise ExpressionError("unsupported boolean operator")

    if isinstance(node, ast.UnaryOp):
        operand = _eval_node(node.operand, names, _depth + 1)
        if isinstance(node.op, ast.Not):
            return not is_truthy(operand)
        if isinstance(node.op, ast.USub):
            return -operand
        if isinstance(node.op, ast.UAdd):
            return +operand
        raise ExpressionError("unsupported unary operator")

    if isinstance(node, ast.BinOp):
        op = _BIN_OPS.get(type(node.op))
        if op is None:
            raise ExpressionError("unsupported binary operator")
        return op(
            _eval_node(node.left, names, _depth + 1),
            _eval_node(node.right, names, _depth + 1),
        )

    if isinstance(node, ast.Compare):
        left = _eval_node(node.left, names, _depth + 1)
        for op_node, comparator in zip(node.ops, node.comparators):
            right = _eval_node(comparator, names, _depth + 1)
            if not _compare(op_node, left, right):
                return False
            left = right
        return True

    if isinstance(node, ast.Subscript):
        target = _eval_node(node.value, names, _depth + 1)
        index = _eval_node(node.slice, names, _depth + 1)
        if not isinstance(target, (Mapping, Sequence)):
            return None
        try:
            return target[index]
        except (KeyError, IndexError, TypeError):
            return None

    if isinstance(node, (ast.Tuple, ast.List)):
        return [_eval_node(elt, names, _depth + 1) for elt in node.elts]

    if isinstance(node, ast.IfExp):
        if is_truthy(_eval_node(node.test, names, _depth + 1)):
            return _eval_node(node.body, names, _depth + 1)
        return _eval_node(node.orelse, names, _depth + 1)

    raise ExpressionError(f"unsupported expression node: {type(node).__name__}")
