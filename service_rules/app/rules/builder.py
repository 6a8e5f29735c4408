"""
Helpers for building rule definitions.
"""

from typing import Any, List, Optional

from .models import Rule, RuleType, RuleCondition, ConditionType, CompositeOperator


def _leaf(name: str, condition_type: ConditionType, field: str, value: Any = None,
          description: Optional[str] = None, **kwargs) -> Rule:
    return Rule(
        name=name,
        type=RuleType.SIMPLE,
        condition=RuleCondition(type=condition_type, field=field, value=value),
        description=description,
        **kwargs,
    )


def field_exists(name: str, field: str, description: Optional[str] = None, **kwargs) -> Rule:
    """Rule passing when ``field`` resolves to a value other than null."""
    return _leaf(name, ConditionType.FIELD_EXISTS, field, description=description, **kwargs)


def field_equals(name: str, field: str, value: Any, description: Optional[str] = None, **kwargs) -> Rule:
    return _leaf(name, ConditionType.FIELD_EQUALS, field, value, description, **kwargs)


def field_greater_than(name: str, field: str, threshold: float, description: Optional[str] = None,
                       **kwargs) -> Rule:
    return _leaf(name, ConditionType.FIELD_GREATER_THAN, field, threshold, description, **kwargs)


def field_less_than(name: str, field: str, threshold: float, description: Optional[str] = None,
                    **kwargs) -> Rule:
    return _leaf(name, ConditionType.FIELD_LESS_THAN, field, threshold, description, **kwargs)


def field_contains(name: str, field: str, substring: str, description: Optional[str] = None,
                   **kwargs) -> Rule:
    return _leaf(name, ConditionType.FIELD_CONTAINS, field, substring, description, **kwargs)


def script_rule(name: str, expression: str, description: Optional[str] = None, **kwargs) -> Rule:
    """Simple rule with a textual predicate."""
    return Rule(name=name, type=RuleType.SIMPLE, condition=expression, description=description, **kwargs)


def javascript_rule(name: str, expression: str, description: Optional[str] = None, **kwargs) -> Rule:
    """Rule written with JavaScript operators; runs in the same restricted interpreter."""
    return Rule(name=name, type=RuleType.JAVASCRIPT, condition=expression, description=description, **kwargs)


def composite_rule(name: str, operator: CompositeOperator, rules: List[Rule],
                   description: Optional[str] = None, **kwargs) -> Rule:
    return Rule(
        name=name,
        type=RuleType.COMPOSITE,
        operator=operator,
        rules=list(rules),
        description=description,
        **kwargs,
    )


def and_rule(name: str, rules: List[Rule], description: Optional[str] = None, **kwargs) -> Rule:
    return composite_rule(name, CompositeOperator.AND, rules, description, **kwargs)


def or_rule(name: str, rules: List[Rule], description: Optional[str] = None, **kwargs) -> Rule:
    return composite_rule(name, CompositeOperator.OR, rules, description, **kwargs)


def not_rule(name: str, rule: Rule, description: Optional[str] = None, **kwargs) -> Rule:
    return composite_rule(name, CompositeOperator.NOT, [rule], description, **kwargs)


def custom_rule(name: str, evaluator_name: Optional[str] = None, description: Optional[str] = None,
                **kwargs) -> Rule:
    """Rule delegating to a registered custom evaluator (defaults to the rule name)."""
    return Rule(name=name, type=RuleType.CUSTOM, evaluator_name=evaluator_name,
                description=description, **kwargs)


class CommonRules:
    """Frequently used validation rules."""

    @staticmethod
    def required(field: str) -> Rule:
        return field_exists(f"required_{field}", field, f"{field} is required")

    @staticmethod
    def min_value(field: str, minimum: float) -> Rule:
        return or_rule(
            f"min_{field}",
            [
                field_greater_than(f"{field}_above_min", field, minimum),
                field_equals(f"{field}_at_min", field, minimum),
            ],
            f"{field} must be at least {minimum}",
        )

    @staticmethod
    def max_value(field: str, maximum: float) -> Rule:
        return or_rule(
            f"max_{field}",
            [
                field_less_than(f"{field}_below_max", field, maximum),
                field_equals(f"{field}_at_max", field, maximum),
            ],
            f"{field} must be at most {maximum}",
        )

    @staticmethod
    def non_empty(field: str) -> Rule:
        return and_rule(
            f"non_empty_{field}",
            [
                field_exists(f"{field}_exists", field, f"{field} exists"),
                not_rule(
                    f"{field}_not_empty",
                    field_equals(f"{field}_empty", field, "", f"{field} is empty"),
                    f"{field} is not empty",
                ),
            ],
            f"{field} must not be empty",
        )

    @staticmethod
    def email_format(field: str) -> Rule:
        return field_contains(f"email_{field}", field, "@", f"{field} must be a valid email")


def common_rule_set() -> List[Rule]:
    """Preset rules for content, approval, priority and deployment workflows."""
    return [
        # Content
        field_exists("has_content", "content", category="content"),
        field_exists("has_title", "title", category="content"),
        field_exists("has_description", "description", category="content"),
        # Approval
        field_exists("has_reviewer", "reviewer", category="approval"),
        field_exists("has_approver", "approver", category="approval"),
        field_equals("status_approved", "status", "approved", category="approval"),
        field_equals("status_rejected", "status", "rejected", category="approval"),
        field_equals("status_pending", "status", "pending", category="approval"),
        # Priority
        field_greater_than("high_priority", "priority", 5, category="priority"),
        field_greater_than("critical_priority", "priority", 8, category="priority"),
        field_equals("emergency_flag", "emergency", True, category="priority"),
        # Testing and deployment
        field_equals("tests_passed", "test_status", "passed", category="deployment"),
        field_equals("tests_failed", "test_status", "failed", category="deployment"),
        field_equals("security_approved", "security_status", "approved", category="deployment"),
        field_equals("security_flagged", "security_status", "flagged", category="deployment"),
        # Users and permissions
        field_exists("has_assignee", "assignee", category="permissions"),
        field_exists("has_creator", "creator", category="permissions"),
        field_equals("admin_override", "admin_override", True, category="permissions"),
    ]
