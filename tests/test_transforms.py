from __future__ import annotations

import math

import pytest

from stepflow.service.transforms import (
    UNRESOLVED,
    get_transformation,
    list_transformations,
    parse_argument,
    register_transformation,
    stringify,
)
from stepflow.service.variables import parse_token


def _apply(text, value):
    return parse_token(text).apply(value)


class TestBuiltins:
    @pytest.mark.parametrize(
        "token, value, expected",
        [
            ("{{ x | uppercase }}", "abc", "ABC"),
            ("{{ x | lowercase }}", "AbC", "abc"),
            ("{{ x | capitalize }}", "hello wORLD", "Hello World"),
            ("{{ x | trim }}", "  pad  ", "pad"),
            ("{{ x | truncate:5 }}", "Hello world", "Hello..."),
            ("{{ x | truncate:50 }}", "short", "short"),
            ("{{ x | round:2 }}", 3.14159, 3.14),
            ("{{ x | round }}", "2.6", 3),
            ("{{ x | abs }}", -4, 4),
            ('{{ x | join:" / " }}', ["a", "b"], "a / b"),
            ("{{ x | join }}", [1, 2], "1, 2"),
            ("{{ x | first }}", [7, 8], 7),
            ("{{ x | last }}", [7, 8], 8),
            ("{{ x | first }}", [], None),
            ("{{ x | length }}", "four", 4),
            ("{{ x | length }}", 12, 0),
            ("{{ x | json }}", {"a": 1}, '{"a":1}'),
            ("{{ x | number }}", "42", 42),
            ("{{ x | number }}", "4.5", 4.5),
            ("{{ x | string }}", False, "false"),
            ('{{ x | default:"none" }}', "", "none"),
            ('{{ x | default:"none" }}', 0, 0),
            ("{{ x | urlEncode }}", "a b&c", "a%20b%26c"),
            ("{{ x | base64 }}", "hello", "aGVsbG8="),
            ("{{ x | dateFormat }}", "2024-12-13T10:00:00Z", "12/13/2024"),
            ('{{ x | dateFormat:"YYYY-MM-DD" }}', "2024-02-03", "2024-02-03"),
            ('{{ x | dateFormat:"%H:%M" }}', "2024-02-03T04:05:00", "04:05"),
            ("{{ x | trim | uppercase | truncate:3 }}", "  abcdef ", "ABC..."),
        ],
    )
    def test_transformation(self, token, value, expected):
        assert _apply(token, value) == expected

    def test_number_of_garbage_is_nan(self):
        assert math.isnan(_apply("{{ x | number }}", "abc"))

    def test_bad_date_passes_through(self):
        assert _apply("{{ x | dateFormat }}", "not a date") == "not a date"

    def test_failure_returns_value_unchanged(self):
        assert _apply("{{ x | round }}", "abc") == "abc"

    def test_unresolved_passes_through_except_default(self):
        assert _apply("{{ x | uppercase }}", UNRESOLVED) is UNRESOLVED
        assert _apply("{{ x | default:5 }}", UNRESOLVED) == 5


class TestRegistry:
    def test_builtins_listed(self):
        names = [t.name for t in list_transformations()]
        assert "uppercase" in names and "base64" in names
        assert names == sorted(names)

    def test_register_custom(self):
        register_transformation("double", lambda value: value * 2)
        assert _apply("{{ x | double }}", 4) == 8
        assert get_transformation("double") is not None


class TestHelpers:
    @pytest.mark.parametrize(
        "raw, expected",
        [('"a:b"', "a:b"), ("'x'", "x"), ("10", 10), ("2.5", 2.5), ("true", True), ("null", None), ("abc", "abc")],
    )
    def test_parse_argument(self, raw, expected):
        assert parse_argument(raw) == expected

    def test_stringify(self):
        assert stringify(None) == "null"
        assert stringify(3.0) == "3"
        assert stringify([1, "a"]) == '[1,"a"]'

    def test_unresolved_is_falsy_singleton(self):
        assert not UNRESOLVED
        assert UNRESOLVED is type(UNRESOLVED)()
        assert UNRESOLVED is not None
