from __future__ import annotations

import math

import pytest

from stepflow.service.expressions import ExpressionError, compile_condition, is_truthy
from stepflow.service.transforms import UNRESOLVED


def _eval(text, values=None):
    values = values or {}
    return compile_condition(text).evaluate(lambda ref: values[ref])


class TestTruthiness:
    @pytest.mark.parametrize("value", [None, UNRESOLVED, False, 0, 0.0, math.nan, ""])
    def test_falsy_values(self, value):
        assert is_truthy(value) is False

    @pytest.mark.parametrize("value", [True, 1, -0.5, "0", "false", [], {}, [0], {"a": None}])
    def test_truthy_values(self, value):
        assert is_truthy(value) is True


class TestCompile:
    def test_paths_become_references(self):
        compiled = compile_condition("steps[0].nodes[0].output.status == 200 and vars.ok")
        assert sorted(compiled.references.values()) == [
            "steps[0].nodes[0].output.status",
            "vars.ok",
        ]

    def test_tokens_become_references(self):
        compiled = compile_condition("{{ trigger.data.count | number }} > 3")
        assert list(compiled.references.values()) == ["{{ trigger.data.count | number }}"]

    def test_paths_inside_strings_are_left_alone(self):
        compiled = compile_condition("vars.label == 'steps[0].nodes[0]'")
        assert list(compiled.references.values()) == ["vars.label"]

    @pytest.mark.parametrize(
        "text",
        [
            "",
            "vars.x ==",
            "(lambda: 1)()",
            "__import__('os').system('true')",
            "vars.x.__class__ and foo",
            "[x for x in vars.items]",
            "len(vars.items) > 1",
            "unknown_name == 1",
            "vars.x := 3",
        ],
    )
    def test_rejected(self, text):
        with pytest.raises(ExpressionError):
            compile_condition(text)


class TestEvaluate:
    def test_comparison_and_logic(self):
        values = {"steps[0].nodes[0].output.status": 200, "vars.retries": 1}
        assert _eval("steps[0].nodes[0].output.status == 200 and vars.retries < 3", values) is True
        assert _eval("steps[0].nodes[0].output.status != 200 or vars.retries >= 3", values) is False

    def test_javascript_style_aliases(self):
        values = {"vars.a": 1, "vars.b": "x"}
        assert _eval("vars.a === 1 && vars.b !== 'y'", values) is True
        assert _eval("!(vars.a === 1) || false", values) is False

    def test_lowercase_literals(self):
        assert _eval("true and not false") is True
        assert _eval("vars.x == null", {"vars.x": None}) is True

    def test_arithmetic_and_membership(self):
        values = {"vars.items": ["a", "b"], "vars.n": 7}
        assert _eval("'a' in vars.items and vars.n % 2 == 1", values) is True
        assert _eval("vars.n // 2 + -1 == 2", values) is True
        assert _eval("'c' not in vars.items", values) is True

    def test_subscript_on_values(self):
        values = {"vars.map": {"k": 5}}
        assert _eval("vars.map['k'] == 5", values) is True
        assert _eval("vars.map['missing'] == null", values) is True

    def test_incomparable_values_are_false(self):
        assert _eval("vars.x > 3", {"vars.x": "abc"}) is False

    def test_references_resolved_lazily(self):
        seen = []

        def lookup(ref):
            seen.append(ref)
            return False

        compile_condition("vars.a and vars.b").evaluate(lookup)
        assert seen == ["vars.a"]
