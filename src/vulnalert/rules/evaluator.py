"""Condition evaluation for alert rules.

Pure and synchronous: given a vulnerability and a rule's clauses, decide
whether every clause matches. A missing field, an unexpected shape or a
non-numeric value for a numeric operator is a non-match, never an error.

Usage::

    result = evaluate(vuln, rule.conditions)
    if result.matched:
        ...  # result.matched_clauses explains why
"""

from __future__ import annotations

import logging
import math
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, Field

from vulnalert.models import Condition, ConditionField, ConditionOperator, Vulnerability

logger = logging.getLogger(__name__)

_TRUE_STRINGS = frozenset({"true", "yes", "1"})
_FALSE_STRINGS = frozenset({"false", "no", "0"})


class EvaluationResult(BaseModel):
    """Outcome of evaluating one rule's clauses against one vulnerability."""

    matched: bool
    matched_clauses: list[Condition] = Field(default_factory=list)


def evaluate(
    vulnerability: Vulnerability | Mapping[str, Any],
    conditions: list[Condition],
) -> EvaluationResult:
    """Evaluate AND-ed clauses against a vulnerability.

    An empty clause list matches nothing. ``matched_clauses`` lists every
    clause that held, even when the overall result is a non-match.
    """
    if not conditions:
        return EvaluationResult(matched=False)

    matched_clauses: list[Condition] = []
    for clause in conditions:
        if _clause_matches(vulnerability, clause):
            matched_clauses.append(clause)

    return EvaluationResult(
        matched=len(matched_clauses) == len(conditions),
        matched_clauses=matched_clauses,
    )


def _clause_matches(vulnerability: Vulnerability | Mapping[str, Any], clause: Condition) -> bool:
    actual = get_field(vulnerability, clause.field)
    if actual is None:
        return False
    try:
        return _OPERATORS[clause.operator](actual, clause.value)
    except (TypeError, ValueError, AttributeError) as exc:
        logger.debug(
            "Clause %s %s %r not evaluable against %r: %s",
            clause.field, clause.operator, clause.value, actual, exc,
        )
        return False


def get_field(vulnerability: Vulnerability | Mapping[str, Any], field: ConditionField) -> Any:
    """Read a condition field from a model or a snake/camelCase mapping."""
    if isinstance(vulnerability, Vulnerability):
        return getattr(vulnerability, field.value, None)
    if field.value in vulnerability:
        return vulnerability[field.value]
    return vulnerability.get(_camel(field.value))


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


# ------------------------------------------------------------------
# Operators
# ------------------------------------------------------------------


def _equals(actual: Any, expected: Any) -> bool:
    if isinstance(actual, list | tuple | set):
        return any(_scalar_equals(item, expected) for item in actual)
    return _scalar_equals(actual, expected)


def _in(actual: Any, expected: Any) -> bool:
    if not isinstance(expected, list | tuple | set | frozenset):
        return False
    candidates = actual if isinstance(actual, list | tuple | set) else [actual]
    return any(_scalar_equals(a, e) for a in candidates for e in expected)


def _contains(actual: Any, expected: Any) -> bool:
    needles = expected if isinstance(expected, list | tuple | set) else [expected]
    if isinstance(actual, str):
        haystack = actual.lower()
        return any(str(n).lower() in haystack for n in needles if n is not None)
    if isinstance(actual, list | tuple | set):
        return any(_scalar_equals(item, n) for item in actual for n in needles)
    return False


def _gte(actual: Any, expected: Any) -> bool:
    lhs, rhs = _as_float(actual), _as_float(expected)
    if lhs is None or rhs is None:
        return False
    return lhs >= rhs


def _lte(actual: Any, expected: Any) -> bool:
    lhs, rhs = _as_float(actual), _as_float(expected)
    if lhs is None or rhs is None:
        return False
    return lhs <= rhs


_OPERATORS = {
    ConditionOperator.EQUALS: _equals,
    ConditionOperator.IN: _in,
    ConditionOperator.CONTAINS: _contains,
    ConditionOperator.GTE: _gte,
    ConditionOperator.LTE: _lte,
}


# ------------------------------------------------------------------
# Coercion helpers
# ------------------------------------------------------------------


def _scalar_equals(actual: Any, expected: Any) -> bool:
    if actual is None or expected is None:
        return False
    if isinstance(actual, bool) or isinstance(expected, bool):
        a, e = _as_bool(actual), _as_bool(expected)
        return a is not None and a == e
    if isinstance(actual, str) and isinstance(expected, str):
        return actual.strip().lower() == expected.strip().lower()
    a_num, e_num = _as_float(actual), _as_float(expected)
    if a_num is not None and e_num is not None:
        return a_num == e_num
    return str(actual).strip().lower() == str(expected).strip().lower()


def _as_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number):
        return None
    return number


def _as_bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    return None
