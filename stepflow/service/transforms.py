"""Pipe transformations applied to resolved variable values.

``{{ steps[0].fields[0].value | trim | truncate:20 }}`` resolves the path and
then feeds the value through each named transformation in order. Arguments
follow a colon and may be quoted.
"""

from __future__ import annotations

import base64
import json
import math
import threading
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence
from urllib.parse import quote

from stepflow.logging import get_logger

logger = get_logger(__name__)


class _Unresolved:
    """Marker for a value that has not been produced yet in the current run."""

    _instance: Optional["_Unresolved"] = None

    def __new__(cls) -> "_Unresolved":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "UNRESOLVED"

    def __copy__(self) -> "_Unresolved":
        return self

    def __deepcopy__(self, memo: Dict[int, Any]) -> "_Unresolved":
        return self


UNRESOLVED = _Unresolved()


def stringify(value: Any) -> str:
    """Render a value for interpolation into a larger string."""
    if isinstance(value, str):
        return value
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, default=str, separators=(",", ":"))
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _to_number(value: Any) -> float | int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return value
    number = float(str(value).strip())
    if number.is_integer() and "." not in str(value) and "e" not in str(value).lower():
        return int(number)
    return number


def _uppercase(value: Any) -> str:
    return stringify(value).upper()


def _lowercase(value: Any) -> str:
    return stringify(value).lower()


def _capitalize(value: Any) -> str:
    return " ".join(word[:1].upper() + word[1:].lower() for word in stringify(value).split(" "))


def _trim(value: Any) -> str:
    return stringify(value).strip()


def _truncate(value: Any, length: Any = 50) -> str:
    text = stringify(value)
    limit = int(length)
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


def _round(value: Any, decimals: Any = 0) -> float | int:
    places = int(decimals)
    rounded = round(float(_to_number(value)), places)
    return int(rounded) if places <= 0 else rounded


def _abs(value: Any) -> float | int:
    return abs(_to_number(value))


def _join(value: Any, separator: Any = ", ") -> str:
    if isinstance(value, (list, tuple)):
        return str(separator).join(stringify(item) for item in value)
    return stringify(value)


def _first(value: Any) -> Any:
    if isinstance(value, (list, tuple)):
        return value[0] if value else None
    return value


def _last(value: Any) -> Any:
    if isinstance(value, (list, tuple)):
        return value[-1] if value else None
    return value


def _length(value: Any) -> int:
    if isinstance(value, (list, tuple, str, dict)):
        return len(value)
    return 0


def _parse_datetime(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return datetime.fromisoformat(text)
        except ValueError:
            return None
    return None


def _date_format(value: Any, fmt: Any = "MM/DD/YYYY") -> Any:
    moment = _parse_datetime(value)
    if moment is None:
        return value
    pattern = str(fmt)
    if "%" in pattern:
        return moment.strftime(pattern)
    return (
        pattern.replace("YYYY", f"{moment.year:04d}")
        .replace("MM", f"{moment.month:02d}")
        .replace("DD", f"{moment.day:02d}")
    )


def _json(value: Any) -> str:
    return json.dumps(value, default=str, separators=(",", ":"))


def _number(value: Any) -> float | int:
    try:
        return _to_number(value)
    except (TypeError, ValueError):
        return math.nan


def _string(value: Any) -> str:
    return stringify(value)


def _default(value: Any, fallback: Any = "") -> Any:
    if value is None or value is UNRESOLVED or value == "":
        return fallback
    return value


def _url_encode(value: Any) -> str:
    return quote(stringify(value), safe="-_.!~*'()")


def _base64(value: Any) -> str:
    return base64.b64encode(stringify(value).encode("utf-8")).decode("ascii")


@dataclass(frozen=True)
class Transformation:
    name: str
    func: Callable[..., Any]
    description: str = ""
    # Only transformations that accept a missing value see UNRESOLVED
    accepts_unresolved: bool = False

    def apply(self, value: Any, args: Sequence[Any] = ()) -> Any:
        if value is UNRESOLVED and not self.accepts_unresolved:
            return value
        try:
            return self.func(value, *args)
        except (TypeError, ValueError, OverflowError, IndexError, UnicodeError) as exc:
            logger.warning(
                "transformation_failed",
                transformation=self.name,
                error=str(exc),
            )
            return value


_BUILTINS = [
    Transformation("uppercase", _uppercase, "Convert text to upper case"),
    Transformation("lowercase", _lowercase, "Convert text to lower case"),
    Transformation("capitalize", _capitalize, "Capitalize each word"),
    Transformation("trim", _trim, "Strip surrounding whitespace"),
    Transformation("truncate", _truncate, "Cut text to N characters and add an ellipsis"),
    Transformation("round", _round, "Round a number to N decimal places"),
    Transformation("abs", _abs, "Absolute value"),
    Transformation("join", _join, "Join list items with a separator"),
    Transformation("first", _first, "First list item"),
    Transformation("last", _last, "Last list item"),
    Transformation("length", _length, "Length of a string, list or object"),
    Transformation("dateFormat", _date_format, "Format a date (YYYY/MM/DD tokens or strftime)"),
    Transformation("json", _json, "Encode as JSON"),
    Transformation("number", _number, "Convert to a number"),
    Transformation("string", _string, "Convert to a string"),
    Transformation("default", _default, "Fallback for null, empty or missing values", True),
    Transformation("urlEncode", _url_encode, "Percent-encode for use in a URL"),
    Transformation("base64", _base64, "Base64-encode the UTF-8 text"),
]

_lock = threading.Lock()
_transformations: Dict[str, Transformation] = {t.name: t for t in _BUILTINS}


def register_transformation(
    name: str,
    func: Callable[..., Any],
    *,
    description: str = "",
    accepts_unresolved: bool = False,
) -> None:
    """Add or replace a named transformation."""
    global _transformations
    with _lock:
        updated = dict(_transformations)
        updated[name] = Transformation(name, func, description, accepts_unresolved)
        _transformations = updated


def get_transformation(name: str) -> Optional[Transformation]:
    return _transformations.get(name)


def list_transformations() -> List[Transformation]:
    return sorted(_transformations.values(), key=lambda t: t.name)


def reset_transformations() -> None:
    """Restore the built-in set; used by tests that register extras."""
    global _transformations
    with _lock:
        _transformations = {t.name: t for t in _BUILTINS}


def parse_argument(raw: str) -> Any:
    """Decode a pipe argument: quoted text stays text, bare numbers become numbers."""
    text = raw.strip()
    if len(text) >= 2 and text[0] == text[-1] and text[0] in {'"', "'"}:
        return text[1:-1]
    lowered = text.lower()
    if lowered in {"true", "false"}:
        return lowered == "true"
    if lowered == "null":
        return None
    try:
        return _to_number(text)
    except ValueError:
        return text
