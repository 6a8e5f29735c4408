"""
Local, advisory rule evaluation for immediate feedback.

The mirror evaluates leaf field predicates and AND/OR/NOT composition
without touching the rule registry, the result cache or custom evaluators.
Custom and scripted rules are refused. Every result it produces is marked
non-authoritative; call sites that gate an irreversible action must use the
engine instead, and ``assert_authoritative()`` enforces that.

The mirror evaluates every child of AND/OR so the caller sees feedback for
all of them. It may disagree with the engine, for example on rules that
depend on custom evaluators.
"""

import time
from typing import Dict, Any, Optional, List

from shared.logging import get_logger
from ..rules.conditions import evaluate_condition
from ..rules.errors import MALFORMED_CONDITION, UNSUPPORTED_RULE
from ..rules.models import (
    Rule, RuleType, RuleCondition, ConditionType, CompositeOperator, RuleContext, RuleResult,
)


class ClientMirror:
    """Advisory evaluator for latency-sensitive callers."""

    def __init__(self, strict_mode: bool = False, disabled_rules_pass: bool = True):
        self.logger = get_logger("rules.mirror")
        self.strict_mode = strict_mode
        self.disabled_rules_pass = disabled_rules_pass

    def evaluate_rule(self, rule: Rule, context: RuleContext) -> RuleResult:
        """Evaluate a rule locally. The result is never authoritative."""
        start = time.perf_counter()
        result = self._evaluate(rule, context)
        result.execution_time_ms = (time.perf_counter() - start) * 1000
        return result

    def evaluate_rules(self, rules: List[Rule], context: RuleContext) -> List[RuleResult]:
        return [self.evaluate_rule(rule, context) for rule in rules]

    def all_rules_pass(self, rules: List[Rule], context: RuleContext) -> bool:
        return all(result.passed for result in self.evaluate_rules(rules, context))

    def any_rule_passes(self, rules: List[Rule], context: RuleContext) -> bool:
        return any(result.passed for result in self.evaluate_rules(rules, context))

    def evaluate_data(self, rule: Rule, data: Dict[str, Any],
                      metadata: Optional[Dict[str, Any]] = None) -> RuleResult:
        """Evaluate against bare resource data and metadata."""
        return self.evaluate_rule(rule, RuleContext.create(data=data, metadata=metadata))

    def _result(self, rule: Rule, passed: bool, reason: str, **kwargs) -> RuleResult:
        return RuleResult(rule=rule, passed=passed, reason=reason, authoritative=False, **kwargs)

    def _refuse(self, rule: Rule, what: str) -> RuleResult:
        message = f"{what} rule '{rule.name}' requires authoritative evaluation"
        self.logger.debug("Mirror refused rule", rule=rule.name, kind=what)
        return self._result(rule, False, message, error=message, error_code=UNSUPPORTED_RULE)

    def _evaluate(self, rule: Rule, context: RuleContext) -> RuleResult:
        if not rule.enabled:
            return self._result(rule, self.disabled_rules_pass, f"Rule '{rule.name}' is disabled",
                                details={"disabled": True})

        if rule.type == RuleType.CUSTOM:
            return self._refuse(rule, "Custom")
        if rule.type == RuleType.JAVASCRIPT:
            return self._refuse(rule, "Scripted")
        if rule.type == RuleType.COMPOSITE:
            return self._evaluate_composite(rule, context)
        if rule.type != RuleType.SIMPLE:
            message = f"Unknown rule type '{rule.type}'"
            return self._result(rule, False, message, error=message, error_code=MALFORMED_CONDITION)

        condition = rule.condition
        if isinstance(condition, str) or (
            isinstance(condition, RuleCondition) and condition.type == ConditionType.SCRIPT
        ):
            return self._refuse(rule, "Scripted")
        if condition is None:
            message = f"Rule '{rule.name}' has no condition"
            return self._result(rule, False, message, error=message, error_code=MALFORMED_CONDITION)

        outcome = evaluate_condition(condition, context, strict=self.strict_mode)
        return self._result(rule, outcome.passed, outcome.reason, details=outcome.details,
                            error=outcome.error, error_code=outcome.error_code)

    def _evaluate_composite(self, rule: Rule, context: RuleContext) -> RuleResult:
        if not rule.rules:
            message = f"Composite rule '{rule.name}' has no child rules"
            return self._result(rule, False, message, error=message, error_code=MALFORMED_CONDITION)

        operator = rule.operator
        if operator == CompositeOperator.NOT:
            child = self._evaluate(rule.rules[0], context)
            passed = not child.passed
            verdict = "passed" if passed else "failed"
            child_verdict = "errored" if child.error else ("passed" if child.passed else "failed")
            return self._result(rule, passed, f"NOT {verdict}: rule '{child.rule_name}' {child_verdict}",
                                sub_results=[child], details={"operator": "NOT"})

        sub_results = [self._evaluate(child, context) for child in rule.rules]
        passed_count = sum(1 for result in sub_results if result.passed)
        details = {"operator": getattr(operator, "value", operator), "passed": passed_count,
                   "total": len(sub_results)}

        if operator == CompositeOperator.AND:
            passed = passed_count == len(sub_results)
            failing = [result.rule_name for result in sub_results if not result.passed]
            reason = (f"All {len(sub_results)} rules passed" if passed
                      else f"AND failed at rule(s): {', '.join(repr(name) for name in failing)}")
        elif operator == CompositeOperator.OR:
            passed = passed_count > 0
            reason = (f"{passed_count} of {len(sub_results)} rules passed" if passed
                      else f"None of {len(sub_results)} rules passed")
        else:
            message = f"Composite rule '{rule.name}' has invalid operator '{operator}'"
            return self._result(rule, False, message, error=message, error_code=MALFORMED_CONDITION,
                                sub_results=sub_results)

        return self._result(rule, passed, reason, details=details, sub_results=sub_results)
