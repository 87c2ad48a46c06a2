"""
Value helpers shared by the template interpreter and the skip-condition
evaluator: dot/bracket path resolution, truthiness, loose comparisons and
text formatting.

Paths: "name", "order.status", "items[2].title", "matrix[0][1]".
"""
from __future__ import annotations

import json
import math
import re
from collections.abc import Mapping
from decimal import Decimal
from typing import Any, Optional

_PART_PATTERN = re.compile(r"^(\w*)((?:\[\d+\])*)$")
_INDEX_PATTERN = re.compile(r"\[(\d+)\]")


# ──────────────────────────────────────────────────────────────
#  Path resolution
# ──────────────────────────────────────────────────────────────

def split_path(path: str) -> list[str]:
    """Split "user.items[0].name" into ["user", "items[0]", "name"]."""
    parts: list[str] = []
    current = ""
    i = 0
    while i < len(path):
        ch = path[i]
        if ch == ".":
            if current:
                parts.append(current)
                current = ""
        elif ch == "[":
            end = path.find("]", i)
            if end == -1:
                current += path[i:]
                break
            current += path[i:end + 1]
            i = end
        else:
            current += ch
        i += 1
    if current:
        parts.append(current)
    return parts


def resolve_path(data: Any, path: str) -> tuple[bool, Any]:
    """(found, value). `found` tells a missing path apart from a stored None."""
    if data is None or not path:
        return False, None

    current = data
    for part in split_path(path):
        m = _PART_PATTERN.match(part)
        if m is None:
            return False, None
        field, indexes = m.group(1), m.group(2)

        if field:
            if not isinstance(current, Mapping) or field not in current:
                return False, None
            current = current[field]

        for raw in _INDEX_PATTERN.findall(indexes):
            index = int(raw)
            if not isinstance(current, (list, tuple)) or index >= len(current):
                return False, None
            current = current[index]

    return True, current


def get_nested_value(data: Any, path: str) -> Any:
    """Resolve a dot/bracket path; None when any segment is missing."""
    found, value = resolve_path(data, path)
    return value if found else None


# ──────────────────────────────────────────────────────────────
#  Comparisons
# ──────────────────────────────────────────────────────────────

def strip_quotes(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        return value[1:-1]
    return value


def is_truthy(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value not in ("", "false", "0")
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, (list, tuple, Mapping)):
        return len(value) > 0
    return True


def parse_number(value: Any) -> Optional[float]:
    """Numeric view of a value, or None. Booleans are never numbers here."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def compare_equal(value: Any, compare_value: str) -> bool:
    if value is None:
        return compare_value in ("", "null", "nil")
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        other = parse_number(compare_value)
        if other is not None:
            return float(value) == other
    return format_value(value) == compare_value


def compare_ordered(value: Any, compare_value: str) -> int:
    """-1 / 0 / 1. Numeric when both sides parse, lexical string comparison otherwise."""
    left = parse_number(value)
    right = parse_number(compare_value)
    if left is None or right is None:
        left_s = format_value(value)
        return (left_s > compare_value) - (left_s < compare_value)
    return (left > right) - (left < right)


# ──────────────────────────────────────────────────────────────
#  Formatting
# ──────────────────────────────────────────────────────────────

def format_value(value: Any) -> str:
    """
    Text form of a value for template output.

    Integral floats drop their trailing zeros (3.0 → "3"), booleans render
    as true/false, lists of scalars are comma-joined and anything holding
    a mapping is JSON.
    """
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return _format_float(value)
    if isinstance(value, Mapping):
        return json.dumps(dict(value), default=str, ensure_ascii=False)
    if isinstance(value, (list, tuple)):
        if any(isinstance(v, (Mapping, list, tuple)) for v in value):
            return json.dumps(list(value), default=str, ensure_ascii=False)
        return ", ".join(format_value(v) for v in value)
    return str(value)


def _format_float(value: float) -> str:
    if not math.isfinite(value):
        return repr(value)
    if value == int(value):
        return str(int(value))
    text = repr(value)
    if "e" in text or "E" in text:
        text = format(Decimal(text), "f")
    return text

