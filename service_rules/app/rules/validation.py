"""
Rule definition validation.

Errors are structural defects that block create/update and evaluation.
Warnings are reported but never block.
"""

import math
from typing import Container, List, Optional

from .conditions import to_number
from .models import (
    Rule, RuleType, ConditionType, CompositeOperator, RuleValidationResult,
)
from .script import validate_expression


def _validate_condition(rule: Rule, errors: List[str], warnings: List[str]):
    condition = rule.condition
    if condition is None or (isinstance(condition, str) and not condition.strip()):
        errors.append(f"Rule '{rule.name}' requires a condition")
        return

    if isinstance(condition, str):
        problem = validate_expression(condition)
        if problem:
            errors.append(f"Rule '{rule.name}' has an invalid expression: {problem}")
        return

    if not isinstance(condition.type, ConditionType):
        errors.append(f"Rule '{rule.name}' has unknown condition type '{condition.type}'")
        return

    if condition.type == ConditionType.SCRIPT:
        problem = validate_expression(condition.expression or "")
        if problem:
            errors.append(f"Rule '{rule.name}' has an invalid expression: {problem}")
        return

    if not condition.field or not str(condition.field).strip():
        warnings.append(f"Rule '{rule.name}' condition {condition.type.value} has no field and will always fail")
    if condition.type in (ConditionType.FIELD_GREATER_THAN, ConditionType.FIELD_LESS_THAN):
        if math.isnan(to_number(condition.value)):
            warnings.append(f"Rule '{rule.name}' threshold {condition.value!r} is not numeric and will always fail")


def _validate_node(rule: Rule, deep: bool, evaluators: Optional[Container[str]],
                   min_priority: int, max_priority: int,
                   errors: List[str], warnings: List[str]) -> int:
    count = 1

    if not rule.name or not str(rule.name).strip():
        errors.append("Rule name is required")

    if not isinstance(rule.priority, int) or isinstance(rule.priority, bool):
        errors.append(f"Rule '{rule.name}' priority must be an integer")
    elif not min_priority <= rule.priority <= max_priority:
        warnings.append(
            f"Rule '{rule.name}' priority {rule.priority} is outside the recommended range "
            f"{min_priority}-{max_priority}"
        )

    if not isinstance(rule.type, RuleType):
        errors.append(f"Invalid rule type: {rule.type}")
        return count

    if rule.type in (RuleType.SIMPLE, RuleType.JAVASCRIPT):
        _validate_condition(rule, errors, warnings)
        if rule.rules:
            warnings.append(f"Rule '{rule.name}' is not composite; its child rules are ignored")

    elif rule.type == RuleType.COMPOSITE:
        operator = rule.operator
        if operator is None:
            errors.append(f"Composite rule '{rule.name}' requires an operator")
        elif not isinstance(operator, CompositeOperator):
            errors.append(f"Composite rule '{rule.name}' has invalid operator '{operator}'")

        if operator == CompositeOperator.NOT:
            if not rule.rules:
                errors.append(f"NOT rule '{rule.name}' requires exactly one child rule")
            elif len(rule.rules) > 1:
                warnings.append(
                    f"NOT rule '{rule.name}' only evaluates its first child; "
                    f"{len(rule.rules) - 1} extra child rule(s) are ignored"
                )
        elif not rule.rules:
            errors.append(f"Composite rule '{rule.name}' requires at least one child rule")

        for child in rule.rules:
            if deep:
                count += _validate_node(child, deep, evaluators, min_priority, max_priority,
                                        errors, warnings)
            else:
                count += 1

    elif rule.type == RuleType.CUSTOM:
        if evaluators is not None and rule.custom_evaluator_name not in evaluators:
            errors.append(
                f"Custom rule '{rule.name}' has no registered evaluator '{rule.custom_evaluator_name}'"
            )
        if rule.condition is not None:
            warnings.append(f"Custom rule '{rule.name}' ignores its condition")

    return count


def validate_rule(rule: Rule, deep: bool = True, evaluators: Optional[Container[str]] = None,
                  min_priority: int = 0, max_priority: int = 1000) -> RuleValidationResult:
    """Validate a rule definition.

    Args:
        rule: Rule to check
        deep: Also check every embedded child rule
        evaluators: Names of available custom evaluators; when None custom
            rules are not checked for a registered evaluator
        min_priority: Lowest recommended priority
        max_priority: Highest recommended priority
    """
    errors: List[str] = []
    warnings: List[str] = []
    count = _validate_node(rule, deep, evaluators, min_priority, max_priority, errors, warnings)
    return RuleValidationResult(valid=not errors, errors=errors, warnings=warnings, rule_count=count)


def structural_errors(rule: Rule) -> List[str]:
    """Errors that make a rule tree impossible to evaluate."""
    return validate_rule(rule, deep=True).errors


__all__ = ["validate_rule", "structural_errors"]
