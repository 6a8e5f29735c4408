"""
Unit tests for the restricted expression interpreter.
"""

import pytest

from service_rules.app.rules.models import RuleContext
from service_rules.app.rules.script import (
    ScriptRuntimeError, ScriptSyntaxError,
    compile_expression, evaluate_expression, evaluate_script, normalize_expression,
    validate_expression,
)


@pytest.fixture
def context():
    """Create evaluation context."""
    return RuleContext.create(
        data={"content": "hello world", "score": 7, "tags": ["a", "b"], "count": "3"},
        metadata={"status": "unclassified", "priority": 9, "reviewer": None},
        state="draft",
    )


class TestNormalizeExpression:
    """Test cases for JavaScript operator rewriting."""

    def test_operators_and_literals(self):
        normalized = normalize_expression("a === 1 && b !== null || !c")

        assert normalized == "a  ==  1  and  b  !=  None  or   not c"

    def test_string_literals_untouched(self):
        normalized = normalize_expression("data.content == 'a && !b || true'")

        assert normalized.endswith("'a && !b || true'")

    def test_not_equal_preserved(self):
        assert "!=" in normalize_expression("x != 1")


class TestEvaluateScript:
    """Test cases for evaluate_script."""

    @pytest.mark.parametrize("expression,expected", [
        ("data.score > 5", True),
        ("data.score > 5 && metadata.status === 'unclassified'", True),
        ("data.score > 5 and metadata.status == 'done'", False),
        ("metadata.priority >= 9 or data.score < 0", True),
        ("'world' in data.content", True),
        ("'c' in data.tags", False),
        ("data.count * 2 == 6", True),
        ("data.score % 4 == 3", True),
        ("-data.score < 0", True),
        ("not metadata.reviewer", True),
        ("metadata.reviewer === null", True),
        ("data.missing === undefined", True),
        ("status == 'unclassified'", True),
        ("state == 'draft'", True),
        ("data.tags[0] == 'a'", True),
        ("metadata['status'] == 'unclassified'", True),
        ("'high' if metadata.priority > 8 else 'low'", True),
        ("1 < data.score < 10", True),
        ("data.content + '!' == 'hello world!'", True),
    ])
    def test_expressions(self, context, expression, expected):
        assert evaluate_script(expression, context) is expected

    def test_non_numeric_comparison_fails_closed(self, context):
        assert evaluate_script("data.content > 3", context) is False
        assert evaluate_script("data.content < 3", context) is False

    def test_raw_value(self, context):
        assert evaluate_expression("data.score + 1", context) == 8.0

    def test_division_by_zero_is_runtime_error(self, context):
        with pytest.raises(ScriptRuntimeError):
            evaluate_script("data.score / 0 > 1", context)

    def test_attribute_on_literal_is_runtime_error(self, context):
        with pytest.raises(ScriptRuntimeError):
            evaluate_script("'abc'.upper", context)


class TestCompileExpression:
    """Test cases for expression checking."""

    @pytest.mark.parametrize("expression", [
        "__import__('os').system('ls')",
        "len(data.tags) > 1",
        "[x for x in data.tags]",
        "lambda: 1",
        "data.__class__",
        "_secret == 1",
        "data.tags[data.score]",
        "{'a': 1}",
        "x := 1",
    ])
    def test_disallowed_constructs(self, expression):
        with pytest.raises(ScriptSyntaxError):
            compile_expression(expression)

    def test_syntax_error(self):
        with pytest.raises(ScriptSyntaxError):
            compile_expression("data.score >")

    def test_empty_expression(self):
        with pytest.raises(ScriptSyntaxError):
            compile_expression("   ")

    def test_overlong_expression(self):
        with pytest.raises(ScriptSyntaxError):
            compile_expression("1 == 1 and " * 1000 + "True")

    def test_validate_expression(self):
        assert validate_expression("data.score > 1") is None
        assert "Disallowed" in validate_expression("len(data.tags)")

    def test_compiled_tree_is_cached(self):
        assert compile_expression("data.a == 1") is compile_expression("data.a == 1")
