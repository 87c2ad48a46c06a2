"""
Template Interpreter — renders dynamic text for flow messages.

Syntax:
  {{name}}, {{order.status}}, {{items[2].title}}     variable substitution
  {{if cond}}...{{else}}...{{endif}}                conditional block
  {{for item in items}}...{{endfor}}                loop (item, item_index bound)

Processing order is fixed: loops → conditionals → variables.

Conditions are `<path> [== | != | > | < | >= | <=] <literal>`; a bare path
is a truthy check. Ordered comparisons are numeric when both sides parse
as numbers, lexical otherwise.

Everything here is pure and synchronous: no I/O, no shared state, safe to
call from any number of concurrent handlers.
"""
from __future__ import annotations

import json
import re
from collections.abc import Mapping
from typing import Any, Optional

from utils.values import (
    compare_equal,
    compare_ordered,
    format_value,
    get_nested_value,
    is_truthy,
    resolve_path,
    strip_quotes,
)

MAX_LOOP_ITERATIONS = 50

_PATH = r"[A-Za-z_]\w*(?:\.[A-Za-z_]\w*|\[\d+\])*"

FOR_LOOP_PATTERN = re.compile(
    r"\{\{for\s+(\w+)\s+in\s+(" + _PATH + r")\s*\}\}([\s\S]*?)\{\{endfor\}\}"
)
# Body may not contain another {{if so the innermost block is expanded first.
IF_ELSE_PATTERN = re.compile(
    r"\{\{if\s+([^}]+)\}\}((?:(?!\{\{if\s)[\s\S])*?)\{\{endif\}\}"
)
VARIABLE_PATTERN = re.compile(r"\{\{(" + _PATH + r")\}\}")
CONDITION_PATTERN = re.compile(
    r"^(" + _PATH + r")\s*(==|!=|>=|<=|>|<)?\s*(.*)$", re.DOTALL
)

_ELSE = "{{else}}"


# ──────────────────────────────────────────────────────────────
#  Public API
# ──────────────────────────────────────────────────────────────

def render(
    template: str,
    data: Optional[Mapping[str, Any]] = None,
    max_loop_iterations: int = MAX_LOOP_ITERATIONS,
) -> str:
    """Render a template string against data (loops, then conditionals, then variables)."""
    if not template:
        return ""
    if "{{" not in template:
        return template

    data = data if data is not None else {}
    blocks: list[str] = []
    result = process_for_loops(template, data, max_loop_iterations, blocks)
    result = process_conditionals(result, data)
    result = process_variables(result, data)
    return _restore_blocks(result, blocks)


def process_for_loops(
    template: str,
    data: Mapping[str, Any],
    max_iterations: int = MAX_LOOP_ITERATIONS,
    blocks: Optional[list[str]] = None,
) -> str:
    """
    Expand every {{for item in path}}...{{endfor}} block.

    With `blocks`, each expansion is parked there and replaced by a token,
    so the later passes never see text that came from loop data.
    """
    result = template
    pos = 0

    while True:
        match = FOR_LOOP_PATTERN.search(result, pos)
        if match is None:
            break

        item_var, array_path, body = match.group(1), match.group(2), match.group(3)
        items = get_nested_value(data, array_path)

        parts: list[str] = []
        if isinstance(items, (list, tuple)):
            for i, item in enumerate(items[:max_iterations]):
                loop_data = dict(data)
                loop_data[item_var] = item
                loop_data[f"{item_var}_index"] = i
                rendered = process_conditionals(body, loop_data)
                rendered = process_variables(rendered, loop_data)
                parts.append(rendered)

        output = "".join(parts)
        if blocks is not None:
            blocks.append(output)
            output = _block_token(len(blocks) - 1)
        result = result[:match.start()] + output + result[match.end():]
        pos = match.start() + len(output)

    return result


def _block_token(index: int) -> str:
    return f"\x00loop{index}\x00"


_BLOCK_TOKEN_PATTERN = re.compile(r"\x00loop(\d+)\x00")


def _restore_blocks(text: str, blocks: list[str]) -> str:
    if not blocks:
        return text
    return _BLOCK_TOKEN_PATTERN.sub(lambda m: blocks[int(m.group(1))], text)


def process_conditionals(template: str, data: Mapping[str, Any]) -> str:
    """Resolve {{if}}...{{else}}...{{endif}} blocks, innermost first."""
    result = template

    while True:
        match = IF_ELSE_PATTERN.search(result)
        if match is None:
            break

        condition = match.group(1).strip()
        body = match.group(2)
        if_part, sep, else_part = body.partition(_ELSE)
        if not sep:
            else_part = ""

        output = if_part if evaluate_condition(condition, data) else else_part
        result = result[:match.start()] + output + result[match.end():]

    return result


def process_variables(template: str, data: Mapping[str, Any]) -> str:
    """Substitute {{path}} placeholders. Unresolved paths keep their placeholder."""

    def replacer(match: re.Match) -> str:
        found, value = resolve_path(data, match.group(1))
        if not found:
            return match.group(0)
        return format_value(value)

    return VARIABLE_PATTERN.sub(replacer, template)


# ──────────────────────────────────────────────────────────────
#  Conditions
# ──────────────────────────────────────────────────────────────

def evaluate_condition(condition: str, data: Mapping[str, Any]) -> bool:
    """
    Evaluate a single template condition.

    "vip"                   truthy check
    "status == 'vip'"       string equality (quotes optional)
    "age > 18"              numeric when both sides parse, lexical otherwise
    """
    match = CONDITION_PATTERN.match(condition.strip())
    if match is None:
        return False

    path, operator, compare_value = match.group(1), match.group(2), match.group(3).strip()
    value = get_nested_value(data, path)

    if not operator:
        if compare_value:
            return False
        return is_truthy(value)

    compare_value = strip_quotes(compare_value)

    if operator == "==":
        return compare_equal(value, compare_value)
    if operator == "!=":
        return not compare_equal(value, compare_value)

    cmp = compare_ordered(value, compare_value)
    if operator == ">":
        return cmp > 0
    if operator == "<":
        return cmp < 0
    if operator == ">=":
        return cmp >= 0
    if operator == "<=":
        return cmp <= 0
    return False


# ──────────────────────────────────────────────────────────────
#  API response helpers
# ──────────────────────────────────────────────────────────────

def extract_response_mapping(
    response: Mapping[str, Any],
    mapping: Mapping[str, str],
) -> dict[str, Any]:
    """Pull values out of an API response: {session_key: "json.path"} → {session_key: value}."""
    result: dict[str, Any] = {}
    for key, path in mapping.items():
        value = get_nested_value(response, path)
        if value is not None:
            result[key] = value
    return result


def extract_json_path(data: Any, path: str) -> str:
    """Text at a dotted path of a JSON document; complex values come back JSON-encoded."""
    value = get_nested_value(data, path)
    if value is None:
        return ""
    if isinstance(value, (Mapping, list, tuple)):
        return json.dumps(value, default=str, ensure_ascii=False)
    return format_value(value)
