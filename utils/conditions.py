"""
Skip-condition evaluator — boolean expressions over session data.

    plan == 'premium'
    age >= 18 AND country == "NG"
    (status == active OR status == trial) and has_card

Parentheses are reduced innermost-first, each group replaced by the
literal true/false. AND binds tighter than OR; both keywords are
case-insensitive, and neither is special inside a quoted literal
(`name == 'Tom and Jerry'`), nor are parentheses. A bare path is a
truthy check. Anything malformed (unbalanced parentheses, unknown syntax)
evaluates to False.
"""
from __future__ import annotations

import operator as op
import re
from collections.abc import Mapping
from typing import Any, Optional

from utils.values import compare_equal, compare_ordered, get_nested_value, is_truthy, strip_quotes


OPERATORS: dict[str, Any] = {
    "==": lambda a, b: compare_equal(a, b),
    "!=": lambda a, b: not compare_equal(a, b),
    ">": lambda a, b: op.gt(compare_ordered(a, b), 0),
    "<": lambda a, b: op.lt(compare_ordered(a, b), 0),
    ">=": lambda a, b: op.ge(compare_ordered(a, b), 0),
    "<=": lambda a, b: op.le(compare_ordered(a, b), 0),
}

SINGLE_CONDITION_PATTERN = re.compile(r"^(.+?)\s*(==|!=|>=|<=|>|<)\s*(.*)$", re.DOTALL)
PATH_PATTERN = re.compile(r"^[A-Za-z_]\w*(?:\.[A-Za-z_]\w*|\[\d+\])*$")

QUOTED_PATTERN = re.compile(r"'[^']*'|\"[^\"]*\"")
_PLACEHOLDER = re.compile(r"\x00(\d+)\x00")

_OR = re.compile(r"\s+or\s+", re.IGNORECASE)
_AND = re.compile(r"\s+and\s+", re.IGNORECASE)


def evaluate_expression(expression: str, data: Mapping[str, Any]) -> bool:
    """Evaluate a full skip-condition. Empty expressions are False."""
    expr = (expression or "").strip()
    if not expr:
        return False

    # Quoted literals are opaque: no and / or / parentheses inside them
    expr, literals = mask_quoted(expr)

    while "(" in expr:
        start = expr.rfind("(")
        end = expr.find(")", start)
        if end == -1:
            break
        inner = expr[start + 1:end]
        literal = "true" if evaluate_logical(inner, data, literals) else "false"
        expr = expr[:start] + literal + expr[end + 1:]

    return evaluate_logical(expr, data, literals)


def mask_quoted(expression: str) -> tuple[str, list[str]]:
    """Swap quoted literals for numbered placeholders; returns the masked text and the literals."""
    literals: list[str] = []

    def replacer(match: re.Match) -> str:
        literals.append(match.group(0))
        return f"\x00{len(literals) - 1}\x00"

    return QUOTED_PATTERN.sub(replacer, expression), literals


def unmask_quoted(expression: str, literals: list[str]) -> str:
    if not literals:
        return expression
    return _PLACEHOLDER.sub(lambda m: literals[int(m.group(1))], expression)


def evaluate_logical(expression: str, data: Mapping[str, Any], literals: Optional[list[str]] = None) -> bool:
    """OR of AND-groups of single conditions, no parentheses."""
    literals = literals or []
    for or_part in split_by_logic_operator(expression, _OR):
        and_parts = split_by_logic_operator(or_part, _AND)
        if and_parts and all(evaluate_single_condition(unmask_quoted(p, literals), data) for p in and_parts):
            return True
    return False


def split_by_logic_operator(expression: str, pattern: re.Pattern) -> list[str]:
    return [part.strip() for part in pattern.split(expression.strip())]


def evaluate_single_condition(condition: str, data: Mapping[str, Any]) -> bool:
    cond = condition.strip()
    lowered = cond.lower()
    if lowered == "true":
        return True
    if lowered == "false" or not cond:
        return False

    match = SINGLE_CONDITION_PATTERN.match(cond)
    if match is None:
        if PATH_PATTERN.match(cond):
            return is_truthy(get_nested_value(data, cond))
        return False

    path, operator, expected = match.group(1).strip(), match.group(2), match.group(3).strip()
    if not PATH_PATTERN.match(path):
        return False

    fn = OPERATORS.get(operator)
    if fn is None:
        return False
    return fn(get_nested_value(data, path), strip_quotes(expected))
