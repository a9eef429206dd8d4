"""
Condition Evaluator -- declarative ``field operator value`` tests.

Pure functions evaluating a ``Condition`` against an arbitrary nested data
bag.  The operator set is closed (``Operator``) and matched exhaustively;
an operator added to the enum without a branch here fails loudly in tests
rather than silently returning False at runtime.

**Never raises on data.**  Comparisons between incompatible operands return
False:

* ``gt`` / ``lt`` / ``gte`` / ``lte`` need two real numbers (booleans are
  not numbers).
* ``contains`` is a substring test on string/number operands, or a
  membership test when the value is a list.
* ``in`` / ``not_in`` need a list, tuple or set target.
* ``exists`` is True iff the value is not None.

A dotted field path that does not resolve makes the condition False for
every operator, ``neq`` and ``not_in`` included.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

from careflow.models import Condition, Operator


class _Missing:
    """Sentinel for a path that does not resolve."""

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "MISSING"


MISSING: Any = _Missing()


def resolve_path(data: Any, path: str) -> Any:
    """Resolve a dotted path (``a.b.c``) into nested mappings.

    Integer segments index into lists (``readings.0.value``).  Returns
    ``MISSING`` as soon as a segment cannot be followed.
    """
    current = data
    for segment in path.split("."):
        if isinstance(current, Mapping):
            if segment not in current:
                return MISSING
            current = current[segment]
        elif isinstance(current, Sequence) and not isinstance(current, (str, bytes)):
            try:
                current = current[int(segment)]
            except (ValueError, IndexError):
                return MISSING
        else:
            return MISSING
    return current


def evaluate(value: Any, operator: Operator | str, target: Any) -> bool:
    """Compare ``value`` against ``target`` with ``operator``.

    Args:
        value: The resolved field value (``MISSING`` is treated as absent).
        operator: An ``Operator`` or its string value.
        target: The comparison target from the condition.

    Returns:
        The comparison result.  Unknown operator strings return False.
    """
    try:
        op = Operator(operator)
    except ValueError:
        return False

    if value is MISSING:
        return False

    if op is Operator.EXISTS:
        return value is not None
    if op is Operator.EQ:
        return _equals(value, target)
    if op is Operator.NEQ:
        return not _equals(value, target)
    if op in (Operator.GT, Operator.LT, Operator.GTE, Operator.LTE):
        if not (_is_number(value) and _is_number(target)):
            return False
        if op is Operator.GT:
            return value > target
        if op is Operator.LT:
            return value < target
        if op is Operator.GTE:
            return value >= target
        return value <= target
    if op is Operator.CONTAINS:
        return _contains(value, target)
    if op is Operator.IN:
        return _is_collection(target) and any(_equals(value, t) for t in target)
    if op is Operator.NOT_IN:
        return _is_collection(target) and not any(_equals(value, t) for t in target)

    raise AssertionError(f"Unhandled operator: {op}")


def evaluate_condition(condition: Condition, data: Mapping[str, Any]) -> bool:
    """Evaluate one condition against a data bag."""
    return evaluate(resolve_path(data, condition.field), condition.operator, condition.value)


def evaluate_all(conditions: Sequence[Condition], data: Mapping[str, Any]) -> bool:
    """True when every condition matches.  An empty list matches."""
    return all(evaluate_condition(c, data) for c in conditions)


def first_match(conditions: Sequence[Condition], data: Mapping[str, Any]) -> Condition | None:
    """Return the first matching condition in declaration order."""
    for condition in conditions:
        if evaluate_condition(condition, data):
            return condition
    return None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _is_number(v: Any) -> bool:
    return isinstance(v, (int, float)) and not isinstance(v, bool)


def _is_collection(v: Any) -> bool:
    return isinstance(v, (list, tuple, set, frozenset))


def _equals(a: Any, b: Any) -> bool:
    # 1 == True in Python; a data bag saying ``true`` must not match ``1``.
    if isinstance(a, bool) or isinstance(b, bool):
        return isinstance(a, bool) and isinstance(b, bool) and a is b
    return a == b


def _contains(value: Any, target: Any) -> bool:
    if isinstance(value, (list, tuple, set, frozenset)):
        return any(_equals(item, target) for item in value)
    if isinstance(value, (str, int, float)) and isinstance(target, (str, int, float)):
        return str(target) in str(value)
    return False
