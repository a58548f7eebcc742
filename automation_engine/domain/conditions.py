"""
Condition evaluation for branch steps.
"""

from datetime import date, datetime, timezone
from typing import Any, Dict, Optional

from .enums import ConditionOperator

MISSING = object()


class ConditionError(ValueError):
    """Raised when a condition cannot be evaluated against the given value."""


def get_nested(data: Dict[str, Any], path: str) -> Any:
    """Get a nested value from a dict using dot notation, or MISSING."""
    value: Any = data
    for key in path.split("."):
        if isinstance(value, dict) and key in value:
            value = value[key]
        else:
            return MISSING
    return value


def _as_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            raise ConditionError(f"'{value}' is not an ISO date")
    else:
        raise ConditionError(f"{value!r} is not a date")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def evaluate(
    operator: ConditionOperator,
    actual: Any,
    expected: Any,
    now: Optional[datetime] = None,
) -> bool:
    """
    Apply ``operator`` to the resolved field value.

    ``actual`` is MISSING when the field does not exist. Only EXISTS and
    NOT_EXISTS treat a missing field specially; for every other operator a
    missing field behaves like None.
    """
    if operator == ConditionOperator.EXISTS:
        return actual is not MISSING and actual is not None
    if operator == ConditionOperator.NOT_EXISTS:
        return actual is MISSING or actual is None

    if actual is MISSING:
        actual = None

    if operator == ConditionOperator.EQUALS:
        return actual == expected
    if operator == ConditionOperator.NOT_EQUALS:
        return actual != expected
    if operator in (ConditionOperator.CONTAINS, ConditionOperator.NOT_CONTAINS):
        found = expected in actual if actual else False
        return found if operator == ConditionOperator.CONTAINS else not found
    if operator in (ConditionOperator.GREATER_THAN, ConditionOperator.LESS_THAN):
        if actual is None:
            return False
        try:
            if operator == ConditionOperator.GREATER_THAN:
                return actual > expected
            return actual < expected
        except TypeError:
            raise ConditionError(
                f"Cannot compare {type(actual).__name__} with {type(expected).__name__}"
            )
    if operator == ConditionOperator.DATE_PASSED:
        if actual is None:
            return False
        now = now or datetime.now(timezone.utc)
        return _as_datetime(actual) <= now

    raise ConditionError(f"Unsupported operator: {operator}")
