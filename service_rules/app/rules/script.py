"""
Restricted expression interpreter for scripted conditions.

Expressions are parsed with :mod:`ast` and checked against a node whitelist
before they are walked by a small tree interpreter. Nothing is passed to
``eval``: there are no calls, no comprehensions, no assignments and no access
to private attributes. Field references (``data.content``,
``metadata["status"]``, bare ``status``) resolve through the same field
resolution as the leaf predicates.

The common JavaScript spellings are accepted and rewritten before parsing:
``===``/``!==``, ``&&``/``||``/``!``, ``true``/``false`` and
``null``/``undefined``.
"""

import ast
import math
import re
from functools import lru_cache
from typing import Any, List, Optional

from .conditions import resolve_field, to_number, to_text, values_equal
from .models import MISSING, RuleContext


MAX_EXPRESSION_LENGTH = 4096

_STRING_LITERAL = re.compile(r"""("(?:[^"\\\n]|\\.)*"|'(?:[^'\\\n]|\\.)*')""")

_JS_REWRITES = (
    (re.compile(r"!=="), " != "),
    (re.compile(r"==="), " == "),
    (re.compile(r"&&"), " and "),
    (re.compile(r"\|\|"), " or "),
    (re.compile(r"!(?!=)"), " not "),
    (re.compile(r"\btrue\b"), "True"),
    (re.compile(r"\bfalse\b"), "False"),
    (re.compile(r"\b(?:null|undefined)\b"), "None"),
)

_ALLOWED_NODES = (
    ast.Expression, ast.BoolOp, ast.BinOp, ast.UnaryOp, ast.IfExp,
    ast.Compare, ast.Name, ast.Load, ast.Constant, ast.Tuple, ast.List,
    ast.Subscript, ast.Attribute, ast.And, ast.Or, ast.Not, ast.In, ast.NotIn,
    ast.Is, ast.IsNot, ast.Eq, ast.NotEq, ast.Lt, ast.LtE, ast.Gt, ast.GtE,
    ast.Add, ast.Sub, ast.Mult, ast.Div, ast.Mod, ast.USub, ast.UAdd,
)


class ScriptError(Exception):
    """Base class for script condition failures."""


class ScriptSyntaxError(ScriptError):
    """Expression cannot be parsed or uses a construct that is not allowed."""


class ScriptRuntimeError(ScriptError):
    """Expression failed while being evaluated."""


def normalize_expression(source: str) -> str:
    """Rewrite JavaScript operators and literals outside of string literals."""
    pieces = _STRING_LITERAL.split(source)
    for index in range(0, len(pieces), 2):
        code = pieces[index]
        for pattern, replacement in _JS_REWRITES:
            code = pattern.sub(replacement, code)
        pieces[index] = code
    return "".join(pieces).strip()


@lru_cache(maxsize=512)
def _compile(normalized: str) -> ast.Expression:
    try:
        tree = ast.parse(normalized, mode="eval")
    except SyntaxError as e:
        raise ScriptSyntaxError(f"Invalid expression syntax: {e.msg}") from e

    for node in ast.walk(tree):
        if not isinstance(node, _ALLOWED_NODES):
            raise ScriptSyntaxError(f"Disallowed expression construct: {type(node).__name__}")
        if isinstance(node, ast.Name) and node.id.startswith("_"):
            raise ScriptSyntaxError(f"Access to '{node.id}' is not allowed")
        if isinstance(node, ast.Attribute) and node.attr.startswith("_"):
            raise ScriptSyntaxError(f"Access to '{node.attr}' is not allowed")
        if isinstance(node, ast.Subscript):
            key = node.slice
            if not (isinstance(key, ast.Constant) and isinstance(key.value, (str, int))
                    and not isinstance(key.value, bool)):
                raise ScriptSyntaxError("Only constant string or integer subscripts are allowed")
    return tree


def compile_expression(source: str) -> ast.Expression:
    """Parse and check an expression, raising :class:`ScriptSyntaxError`."""
    if not isinstance(source, str) or not source.strip():
        raise ScriptSyntaxError("Expression is empty")
    if len(source) > MAX_EXPRESSION_LENGTH:
        raise ScriptSyntaxError(f"Expression exceeds {MAX_EXPRESSION_LENGTH} characters")
    return _compile(normalize_expression(source))


def validate_expression(source: str) -> Optional[str]:
    """Return a syntax error message, or None when the expression is valid."""
    try:
        compile_expression(source)
    except ScriptSyntaxError as e:
        return str(e)
    return None


def truthy(value: Any) -> bool:
    if value is MISSING or value is None:
        return False
    if isinstance(value, float) and math.isnan(value):
        return False
    return bool(value)


class _Interpreter:
    """Walks a checked expression tree against one context."""

    def __init__(self, context: RuleContext):
        self.context = context

    def visit(self, node: ast.AST) -> Any:
        handler = getattr(self, f"_eval_{type(node).__name__}", None)
        if handler is None:
            raise ScriptRuntimeError(f"Unsupported construct: {type(node).__name__}")
        return handler(node)

    def _eval_Expression(self, node: ast.Expression) -> Any:
        return self.visit(node.body)

    def _eval_Constant(self, node: ast.Constant) -> Any:
        return node.value

    def _eval_List(self, node: ast.List) -> Any:
        return [self.visit(element) for element in node.elts]

    _eval_Tuple = _eval_List

    def _path(self, node: ast.AST) -> Optional[List[str]]:
        if isinstance(node, ast.Name):
            return [node.id]
        if isinstance(node, ast.Attribute):
            parent = self._path(node.value)
            return parent + [node.attr] if parent is not None else None
        if isinstance(node, ast.Subscript) and isinstance(node.slice, ast.Constant):
            parent = self._path(node.value)
            return parent + [str(node.slice.value)] if parent is not None else None
        return None

    def _field(self, node: ast.AST) -> Any:
        path = self._path(node)
        if path is None:
            raise ScriptRuntimeError("Field access must start from a name")
        value = resolve_field(".".join(path), self.context)
        # undefined and null are interchangeable inside expressions
        return None if value is MISSING else value

    _eval_Name = _field
    _eval_Attribute = _field
    _eval_Subscript = _field

    def _eval_BoolOp(self, node: ast.BoolOp) -> Any:
        result: Any = None
        for operand in node.values:
            result = self.visit(operand)
            if isinstance(node.op, ast.And) and not truthy(result):
                return result
            if isinstance(node.op, ast.Or) and truthy(result):
                return result
        return result

    def _eval_UnaryOp(self, node: ast.UnaryOp) -> Any:
        operand = self.visit(node.operand)
        if isinstance(node.op, ast.Not):
            return not truthy(operand)
        number = to_number(operand)
        return -number if isinstance(node.op, ast.USub) else number

    def _eval_IfExp(self, node: ast.IfExp) -> Any:
        return self.visit(node.body) if truthy(self.visit(node.test)) else self.visit(node.orelse)

    def _eval_BinOp(self, node: ast.BinOp) -> Any:
        left = self.visit(node.left)
        right = self.visit(node.right)
        if isinstance(node.op, ast.Add) and (isinstance(left, str) or isinstance(right, str)):
            return to_text(left) + to_text(right)
        a, b = to_number(left), to_number(right)
        if isinstance(node.op, ast.Add):
            return a + b
        if isinstance(node.op, ast.Sub):
            return a - b
        if isinstance(node.op, ast.Mult):
            return a * b
        if b == 0:
            raise ScriptRuntimeError("Division by zero")
        if isinstance(node.op, ast.Div):
            return a / b
        return math.fmod(a, b)

    def _eval_Compare(self, node: ast.Compare) -> bool:
        left = self.visit(node.left)
        for op, comparator in zip(node.ops, node.comparators):
            right = self.visit(comparator)
            if not self._compare(op, left, right):
                return False
            left = right
        return True

    def _compare(self, op: ast.cmpop, left: Any, right: Any) -> bool:
        if isinstance(op, ast.Eq):
            return values_equal(left, right)
        if isinstance(op, ast.NotEq):
            return not values_equal(left, right)
        if isinstance(op, ast.Is):
            return left is right
        if isinstance(op, ast.IsNot):
            return left is not right
        if isinstance(op, (ast.In, ast.NotIn)):
            contained = self._contains(right, left)
            return contained if isinstance(op, ast.In) else not contained

        if isinstance(left, str) and isinstance(right, str):
            a, b = left, right
        else:
            a, b = to_number(left), to_number(right)
            if math.isnan(a) or math.isnan(b):
                return False
        if isinstance(op, ast.Lt):
            return a < b
        if isinstance(op, ast.LtE):
            return a <= b
        if isinstance(op, ast.Gt):
            return a > b
        return a >= b

    @staticmethod
    def _contains(container: Any, item: Any) -> bool:
        if isinstance(container, str):
            return to_text(item) in container
        if isinstance(container, (list, tuple)):
            return any(values_equal(element, item) for element in container)
        if isinstance(container, dict):
            return isinstance(item, str) and item in container
        return False


def evaluate_expression(source: str, context: RuleContext) -> Any:
    """Evaluate an expression and return its raw value."""
    tree = compile_expression(source)
    try:
        return _Interpreter(context).visit(tree)
    except ScriptError:
        raise
    except (TypeError, ValueError, OverflowError, RecursionError) as e:
        raise ScriptRuntimeError(f"Expression failed: {e}") from e


def evaluate_script(source: str, context: RuleContext) -> bool:
    """Evaluate an expression as a boolean predicate."""
    return truthy(evaluate_expression(source, context))
