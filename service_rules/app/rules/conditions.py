"""
Leaf condition predicates and field resolution.

Field paths are dotted (``data.content``, ``metadata.status``,
``resource.state``). A leading ``context.`` is ignored. The roots
``resource``, ``workflow``, ``activity``, ``metadata`` and ``timestamp`` map
onto the context; ``data`` and ``state`` are shortcuts into the resource. Any
other first segment is looked up in the metadata first and then in the
resource data.

Predicates never raise. A value that cannot be compared (for example a
non-numeric string in a numeric comparison) makes the predicate false.
"""

import json
import math
from typing import Dict, Any, Optional, List, NamedTuple

from .errors import MALFORMED_CONDITION, UNRESOLVED_FIELD
from .models import MISSING, ConditionType, RuleCondition, RuleContext


NAN = float("nan")

FIELD_CONDITIONS = (
    ConditionType.FIELD_EXISTS,
    ConditionType.FIELD_EQUALS,
    ConditionType.FIELD_GREATER_THAN,
    ConditionType.FIELD_LESS_THAN,
    ConditionType.FIELD_CONTAINS,
)


class ConditionOutcome(NamedTuple):
    """Outcome of a single leaf predicate."""
    passed: bool
    reason: str
    details: Dict[str, Any]
    error: Optional[str] = None
    error_code: Optional[str] = None


def _split_path(path: str) -> List[str]:
    parts = [part for part in path.strip().split(".")]
    if len(parts) > 1 and parts[0] == "context":
        parts = parts[1:]
    return parts


def _step(current: Any, part: str) -> Any:
    if current is None or current is MISSING:
        return MISSING
    if isinstance(current, dict):
        return current[part] if part in current else MISSING
    if isinstance(current, (list, tuple)):
        try:
            index = int(part)
        except ValueError:
            return MISSING
        if -len(current) <= index < len(current):
            return current[index]
    return MISSING


def resolve_field(path: Optional[str], context: RuleContext) -> Any:
    """Resolve a dotted field path against the context.

    Returns :data:`MISSING` when any segment does not exist, which is
    distinct from a value that exists and is ``None``.
    """
    if not path or not isinstance(path, str):
        return MISSING
    parts = _split_path(path)
    if any(part == "" for part in parts):
        return MISSING

    head, rest = parts[0], parts[1:]
    resource = context.resource
    if head == "resource":
        current: Any = {"id": resource.id, "state": resource.state, "data": resource.data}
    elif head == "data":
        current = resource.data
    elif head == "state":
        current = resource.state
    elif head == "workflow":
        current = context.workflow
    elif head == "activity":
        current = context.activity
    elif head == "metadata":
        current = context.metadata
    elif head == "timestamp":
        current = context.timestamp
    elif head in context.metadata:
        current = context.metadata[head]
    elif head in resource.data:
        current = resource.data[head]
    else:
        return MISSING

    for part in rest:
        current = _step(current, part)
        if current is MISSING:
            return MISSING
    return current


def to_number(value: Any) -> float:
    """Coerce a value to a float; NaN when it has no numeric reading."""
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        try:
            return float(value)
        except OverflowError:
            return math.inf if value > 0 else -math.inf
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return NAN
        try:
            return float(text)
        except ValueError:
            return NAN
    return NAN


def to_text(value: Any) -> str:
    """Coerce a value to text for containment checks."""
    if value is MISSING or value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, str):
        return value
    if isinstance(value, (list, tuple)):
        return ",".join(to_text(item) for item in value)
    if isinstance(value, dict):
        return json.dumps(value, sort_keys=True, default=str)
    return str(value)


def values_equal(actual: Any, expected: Any) -> bool:
    """Strict equality: no cross-type coercion, booleans are not numbers."""
    if actual is MISSING or expected is MISSING:
        return False
    if isinstance(actual, bool) or isinstance(expected, bool):
        return isinstance(actual, bool) and isinstance(expected, bool) and actual == expected
    if isinstance(actual, (int, float)) and isinstance(expected, (int, float)):
        return actual == expected
    if isinstance(actual, dict) and isinstance(expected, dict):
        return actual.keys() == expected.keys() and all(
            values_equal(actual[key], expected[key]) for key in actual
        )
    if isinstance(actual, (list, tuple)) and isinstance(expected, (list, tuple)):
        return len(actual) == len(expected) and all(
            values_equal(a, e) for a, e in zip(actual, expected)
        )
    if type(actual) is not type(expected) and not (
        isinstance(actual, str) and isinstance(expected, str)
    ):
        return False
    return actual == expected


def _show(value: Any) -> str:
    if value is MISSING:
        return "undefined"
    if value is None:
        return "null"
    return repr(value)


def _exists(field: str, actual: Any) -> ConditionOutcome:
    details = {"field": field, "exists": actual is not MISSING and actual is not None}
    if actual is MISSING:
        return ConditionOutcome(False, f"Field '{field}' is undefined", details)
    if actual is None:
        return ConditionOutcome(False, f"Field '{field}' is null", details)
    return ConditionOutcome(True, f"Field '{field}' exists", details)


def _equals(field: str, actual: Any, expected: Any) -> ConditionOutcome:
    passed = values_equal(actual, expected)
    details = {"field": field, "actual": actual if actual is not MISSING else None, "expected": expected}
    if passed:
        return ConditionOutcome(True, f"Field '{field}' equals {_show(expected)}", details)
    return ConditionOutcome(
        False, f"Field '{field}' is {_show(actual)}, expected {_show(expected)}", details
    )


def _compare(field: str, actual: Any, threshold: Any, greater: bool) -> ConditionOutcome:
    number = to_number(actual)
    bound = to_number(threshold)
    details = {"field": field, "actual": number, "threshold": bound}
    symbol = ">" if greater else "<"
    if math.isnan(number):
        return ConditionOutcome(False, f"Field '{field}' is not numeric ({_show(actual)})", details)
    if math.isnan(bound):
        return ConditionOutcome(False, f"Threshold {_show(threshold)} is not numeric", details)
    passed = number > bound if greater else number < bound
    verdict = "is" if passed else "is not"
    return ConditionOutcome(passed, f"Field '{field}' ({number:g}) {verdict} {symbol} {bound:g}", details)


def _contains(field: str, actual: Any, needle: Any) -> ConditionOutcome:
    haystack = to_text(actual)
    fragment = to_text(needle)
    passed = fragment in haystack
    details = {"field": field, "value": haystack, "substring": fragment}
    verdict = "contains" if passed else "does not contain"
    return ConditionOutcome(passed, f"Field '{field}' {verdict} '{fragment}'", details)


def evaluate_condition(condition: RuleCondition, context: RuleContext,
                       strict: bool = False) -> ConditionOutcome:
    """Evaluate a field predicate leaf against the context."""
    condition_type = condition.type
    if condition_type not in FIELD_CONDITIONS:
        return ConditionOutcome(
            False,
            f"Unsupported condition type '{getattr(condition_type, 'value', condition_type)}'",
            {"type": getattr(condition_type, "value", condition_type)},
            error=f"Unsupported condition type '{getattr(condition_type, 'value', condition_type)}'",
            error_code=MALFORMED_CONDITION,
        )

    field = condition.field
    if not field or not isinstance(field, str) or not field.strip():
        message = f"{condition_type.value} condition is missing its field name"
        return ConditionOutcome(False, message, {"type": condition_type.value},
                                error=message, error_code=MALFORMED_CONDITION)

    actual = resolve_field(field, context)

    if condition_type == ConditionType.FIELD_EXISTS:
        return _exists(field, actual)

    if condition_type == ConditionType.FIELD_EQUALS:
        outcome = _equals(field, actual, condition.value)
    elif condition_type == ConditionType.FIELD_GREATER_THAN:
        outcome = _compare(field, actual, condition.value, greater=True)
    elif condition_type == ConditionType.FIELD_LESS_THAN:
        outcome = _compare(field, actual, condition.value, greater=False)
    else:
        outcome = _contains(field, actual, condition.value)

    if strict and actual is MISSING:
        message = f"Field '{field}' could not be resolved"
        return outcome._replace(passed=False, error=message, error_code=UNRESOLVED_FIELD)
    return outcome
