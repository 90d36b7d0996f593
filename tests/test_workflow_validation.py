"""Tests for document loading and structural integrity checks."""

from __future__ import annotations

import pytest

from stepflow.graph.models import WorkflowGraph
from stepflow.graph.validation import (
    check_graph_integrity,
    load_workflow,
    validate_workflow_document,
)
from stepflow.service.errors import GraphIntegrityError


def _doc(nodes, *more_steps):
    return {
        "triggers": [{"id": "t1"}],
        "steps": [{"nodes": nodes}, *({"nodes": extra} for extra in more_steps)],
    }


class TestDocumentSchema:
    def test_valid_document_passes(self):
        validate_workflow_document(_doc([{"type": "http", "config": {}}]))

    def test_missing_node_type_reported(self):
        with pytest.raises(GraphIntegrityError) as excinfo:
            validate_workflow_document(_doc([{"id": "x"}]))
        assert any("type" in issue for issue in excinfo.value.issues)

    def test_every_violation_listed(self):
        doc = {"triggers": [{"type": "manual"}], "steps": [{"nodes": [{"type": 3}]}]}
        with pytest.raises(GraphIntegrityError) as excinfo:
            validate_workflow_document(doc)
        assert len(excinfo.value.issues) >= 2
        assert excinfo.value.error_code == "graph_integrity"

    def test_bad_redirect_string_in_node(self):
        with pytest.raises(GraphIntegrityError):
            validate_workflow_document(
                _doc([{"type": "conditional", "condition": "true", "redirectOnTrue": "soon"}])
            )


class TestLoadWorkflow:
    def test_returns_graph(self):
        graph = load_workflow(_doc([{"type": "http"}]))
        assert isinstance(graph, WorkflowGraph)

    def test_graph_passes_through(self):
        graph = load_workflow(_doc([{"type": "http"}]))
        assert load_workflow(graph) is graph

    def test_redirect_inside_config_is_a_load_error(self):
        doc = _doc(
            [{"type": "conditional", "config": {"condition": "true", "redirectOnFalse": "x-1"}}]
        )
        with pytest.raises(GraphIntegrityError) as excinfo:
            load_workflow(doc)
        assert "redirect" in str(excinfo.value).lower()

    def test_unknown_operator_is_a_load_error(self):
        doc = _doc(
            [
                {
                    "type": "if",
                    "config": {
                        "conditionGroups": [
                            {"conditions": [{"leftOperand": "a", "operator": "roughly"}]}
                        ]
                    },
                }
            ]
        )
        with pytest.raises(GraphIntegrityError):
            load_workflow(doc)


class TestGraphIntegrity:
    def test_sound_graph_has_no_issues(self):
        graph = load_workflow(
            _doc(
                [{"type": "conditional", "condition": "true", "redirectOnTrue": "1-0"}],
                [{"type": "http"}],
            )
        )
        assert check_graph_integrity(graph) == []

    def test_goto_outside_graph(self):
        graph = load_workflow(
            _doc([{"type": "conditional", "condition": "true", "redirectOnTrue": "3-0"}])
        )
        issues = check_graph_integrity(graph)
        assert len(issues) == 1
        assert "redirectOnTrue" in issues[0]
        assert "3-0" in issues[0]

    def test_goto_past_last_node_of_step(self):
        graph = load_workflow(
            _doc([{"type": "conditional", "condition": "true", "redirectOnFalse": "0-1"}])
        )
        assert check_graph_integrity(graph)

    def test_nested_branches_checked(self):
        graph = load_workflow(
            _doc(
                [
                    {
                        "type": "conditional",
                        "condition": "true",
                        "trueNodes": [{"type": "conditional"}],
                    }
                ]
            )
        )
        issues = check_graph_integrity(graph)
        assert issues == ["steps[0].nodes[0].trueNodes[0]: conditional node has no condition"]

    def test_invalid_condition_syntax(self):
        graph = load_workflow(_doc([{"type": "conditional", "condition": "steps[0] ==="}]))
        issues = check_graph_integrity(graph)
        assert issues and "invalid condition" in issues[0]

    def test_disallowed_condition_syntax(self):
        graph = load_workflow(
            _doc([{"type": "conditional", "condition": "__import__('os')"}])
        )
        assert check_graph_integrity(graph)

    def test_duplicate_trigger_ids(self):
        doc = _doc([{"type": "http"}])
        doc["triggers"] = [{"id": "t1"}, {"id": "t1"}]
        graph = load_workflow(doc)
        assert check_graph_integrity(graph) == ["duplicate trigger id 't1'"]
