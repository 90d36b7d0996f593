from __future__ import annotations

from typing import Any, Dict, List, Mapping

from jsonschema import Draft202012Validator
from pydantic import ValidationError

from stepflow.graph.models import (
    CONDITION_OPERATORS,
    ConditionalNode,
    RedirectKind,
    WorkflowGraph,
)
from stepflow.logging import get_logger
from stepflow.service.errors import GraphIntegrityError
from stepflow.service.expressions import ExpressionError, compile_condition

logger = get_logger(__name__)

_REDIRECT_SCHEMA: Dict[str, Any] = {
    "anyOf": [
        {"type": "null"},
        {"type": "string", "pattern": r"^(|\s*[eE][nN][dD]\s*|\s*\d+-\d+\s*)$"},
    ]
}

_WORKFLOW_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "$defs": {
        "node": {
            "type": "object",
            "properties": {
                "id": {"type": "string"},
                "type": {"type": "string", "minLength": 1},
                "label": {"type": "string"},
                "enabled": {"type": "boolean"},
                "config": {"type": "object"},
                "condition": {"type": ["string", "null"]},
                "trueNodes": {"type": "array", "items": {"$ref": "#/$defs/node"}},
                "falseNodes": {"type": "array", "items": {"$ref": "#/$defs/node"}},
                "redirectOnTrue": {"$ref": "#/$defs/redirect"},
                "redirectOnFalse": {"$ref": "#/$defs/redirect"},
            },
            "required": ["type"],
        },
        "redirect": _REDIRECT_SCHEMA,
        "step": {
            "type": "object",
            "properties": {
                "id": {"type": "string"},
                "title": {"type": "string"},
                "fields": {"type": "array", "items": {"type": "object"}},
                "elements": {"type": "array", "items": {"type": "object"}},
                "nodes": {"type": "array", "items": {"$ref": "#/$defs/node"}},
            },
        },
    },
    "properties": {
        "id": {"type": "string"},
        "name": {"type": "string"},
        "triggers": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "id": {"type": "string", "minLength": 1},
                    "type": {"type": "string"},
                    "config": {"type": "object"},
                },
                "required": ["id"],
            },
        },
        "steps": {"type": "array", "items": {"$ref": "#/$defs/step"}},
        "containers": {"type": "array", "items": {"$ref": "#/$defs/step"}},
    },
}


def _format_schema_error(error) -> str:
    where = "/".join(str(part) for part in error.absolute_path)
    return f"{where or '<root>'}: {error.message}"


def validate_workflow_document(doc: Any) -> None:
    """Check the raw document shape before building models."""
    validator = Draft202012Validator(_WORKFLOW_SCHEMA)
    errors = sorted(validator.iter_errors(doc), key=lambda e: list(e.absolute_path))
    if errors:
        raise GraphIntegrityError(
            [_format_schema_error(e) for e in errors],
            message="workflow document failed schema validation",
        )


def load_workflow(doc: Mapping[str, Any] | WorkflowGraph) -> WorkflowGraph:
    """Build a ``WorkflowGraph`` from an authoring document.

    Schema violations and model validation errors are reported together in a
    single ``GraphIntegrityError``. Redirect strings are parsed here, so a
    malformed target never reaches the engine.
    """
    if isinstance(doc, WorkflowGraph):
        return doc
    validate_workflow_document(doc)
    try:
        graph = WorkflowGraph.model_validate(doc)
    except ValidationError as exc:
        issues = []
        for err in exc.errors():
            where = ".".join(str(part) for part in err.get("loc", ()))
            issues.append(f"{where or '<root>'}: {err.get('msg')}")
        raise GraphIntegrityError(issues, message="workflow document is invalid") from exc
    logger.debug(
        "workflow_loaded",
        workflow_id=graph.id,
        steps=len(graph.steps),
        triggers=len(graph.triggers),
    )
    return graph


def check_graph_integrity(graph: WorkflowGraph) -> List[str]:
    """Return every structural issue found in ``graph``; empty when sound."""
    issues: List[str] = []
    seen_triggers: set[str] = set()
    for trigger in graph.triggers:
        if trigger.id in seen_triggers:
            issues.append(f"duplicate trigger id {trigger.id!r}")
        seen_triggers.add(trigger.id)

    for location, node in graph.iter_nodes():
        if not isinstance(node, ConditionalNode):
            continue
        where = location.path
        if not node.has_condition:
            issues.append(f"{where}: conditional node has no condition")
        if node.condition and node.condition.strip():
            try:
                compile_condition(node.condition)
            except ExpressionError as exc:
                issues.append(f"{where}: invalid condition {node.condition!r}: {exc}")
        for group in node.condition_groups:
            for condition in group.conditions:
                if condition.operator not in CONDITION_OPERATORS:
                    issues.append(
                        f"{where}: unknown condition operator {condition.operator!r}"
                    )
        for label, target in (
            ("redirectOnTrue", node.redirect_on_true),
            ("redirectOnFalse", node.redirect_on_false),
        ):
            if target.kind is not RedirectKind.GOTO:
                continue
            if not graph.has_position(target.step_index, target.node_index):
                issues.append(
                    f"{where}: {label} target {target.encode()} is outside the workflow"
                )
    return issues
