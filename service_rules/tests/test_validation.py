"""
Unit tests for rule definition validation.
"""

import pytest

from service_rules.app.rules.builder import (
    and_rule, not_rule, custom_rule, field_exists, field_greater_than, script_rule,
)
from service_rules.app.rules.models import Rule, RuleCondition, RuleType, CompositeOperator
from service_rules.app.rules.validation import validate_rule, structural_errors


class TestValidateRule:
    """Test cases for validate_rule."""

    def test_valid_tree(self):
        rule = and_rule("both", [field_exists("a", "data.a"), field_exists("b", "data.b")])

        result = validate_rule(rule)

        assert result.valid is True
        assert result.errors == []
        assert result.rule_count == 3

    def test_shallow_validation_counts_children(self):
        rule = and_rule("both", [field_exists("a", "data.a"), Rule(name="broken", type="simple")])

        shallow = validate_rule(rule, deep=False)
        deep = validate_rule(rule, deep=True)

        assert shallow.valid is True
        assert shallow.rule_count == 3
        assert deep.valid is False

    def test_name_required(self):
        result = validate_rule(Rule(name="", condition="data.a == 1"))

        assert "Rule name is required" in result.errors

    def test_invalid_type(self):
        result = validate_rule(Rule(name="odd", type="regex"))

        assert result.errors == ["Invalid rule type: regex"]

    def test_leaf_requires_condition(self):
        result = validate_rule(Rule(name="empty", type=RuleType.SIMPLE))

        assert result.errors == ["Rule 'empty' requires a condition"]

    def test_unknown_condition_type(self):
        rule = Rule(name="odd", condition=RuleCondition(type="FieldMatches", field="x"))

        assert "unknown condition type" in validate_rule(rule).errors[0]

    def test_invalid_expression(self):
        result = validate_rule(script_rule("scripted", "len(data.tags) > 1"))

        assert result.valid is False
        assert "invalid expression" in result.errors[0]

    def test_composite_operator_required(self):
        rule = Rule(name="combo", type=RuleType.COMPOSITE, rules=[field_exists("a", "data.a")])

        assert validate_rule(rule).errors == ["Composite rule 'combo' requires an operator"]

    def test_composite_invalid_operator(self):
        rule = Rule(name="combo", type=RuleType.COMPOSITE, operator="XOR",
                    rules=[field_exists("a", "data.a")])

        assert "invalid operator 'XOR'" in validate_rule(rule).errors[0]

    def test_composite_requires_children(self):
        rule = Rule(name="combo", type=RuleType.COMPOSITE, operator=CompositeOperator.OR)

        assert validate_rule(rule).errors == ["Composite rule 'combo' requires at least one child rule"]

    def test_not_requires_one_child(self):
        rule = Rule(name="negated", type=RuleType.COMPOSITE, operator=CompositeOperator.NOT)

        assert validate_rule(rule).errors == ["NOT rule 'negated' requires exactly one child rule"]

    def test_not_with_extra_children_warns(self):
        rule = Rule(name="negated", type=RuleType.COMPOSITE, operator=CompositeOperator.NOT,
                    rules=[field_exists("a", "data.a"), field_exists("b", "data.b")])

        result = validate_rule(rule)

        assert result.valid is True
        assert "only evaluates its first child" in result.warnings[0]

    def test_priority_band_warns(self):
        result = validate_rule(field_exists("a", "data.a", priority=5000))

        assert result.valid is True
        assert "outside the recommended range" in result.warnings[0]

    def test_priority_must_be_integer(self):
        result = validate_rule(field_exists("a", "data.a", priority="high"))

        assert result.errors == ["Rule 'a' priority must be an integer"]

    def test_missing_field_and_threshold_warn(self):
        rule = Rule(name="odd", condition=RuleCondition(type="FieldGreaterThan", value="ten"))

        result = validate_rule(rule)

        assert result.valid is True
        assert len(result.warnings) == 2

    def test_numeric_threshold_is_fine(self):
        assert validate_rule(field_greater_than("big", "data.amount", "100")).warnings == []

    def test_custom_rule_evaluator_check(self):
        rule = custom_rule("approve")

        assert validate_rule(rule).valid is True
        assert validate_rule(rule, evaluators={"approve"}).valid is True
        assert validate_rule(rule, evaluators=set()).valid is False

    def test_custom_rule_condition_warns(self):
        rule = custom_rule("approve", condition="data.a == 1")

        assert "ignores its condition" in validate_rule(rule).warnings[0]

    def test_leaf_with_children_warns(self):
        rule = field_exists("a", "data.a", rules=[field_exists("b", "data.b")])

        assert "child rules are ignored" in validate_rule(rule).warnings[0]

    @pytest.mark.parametrize("rule,expected", [
        (not_rule("ok", field_exists("a", "data.a")), []),
        (Rule(name="empty", type=RuleType.COMPOSITE, operator="AND"),
         ["Composite rule 'empty' requires at least one child rule"]),
    ])
    def test_structural_errors(self, rule, expected):
        assert structural_errors(rule) == expected
