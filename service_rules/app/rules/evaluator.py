"""
Recursive condition tree evaluator.
"""

import time
from typing import Optional, List

from shared.logging import get_logger
from ..evaluators.registry import CustomEvaluatorRegistry
from .conditions import evaluate_condition
from .errors import (
    RuleEvaluationError, RuleTimeoutError,
    MALFORMED_CONDITION, SCRIPT_ERROR, EVALUATOR_ERROR, EVALUATOR_TIMEOUT,
)
from .models import (
    Rule, RuleType, RuleCondition, ConditionType, CompositeOperator,
    RuleContext, RuleResult, EvaluationOptions,
)
from .script import ScriptError, evaluate_script


class ConditionEvaluator:
    """Evaluates a rule tree against a context.

    Per-node failures never raise: they are recorded on the node's result
    and folded into the parent according to AND/OR/NOT. The exceptions are a
    top-level custom rule with no evaluator (:class:`RuleEvaluationError`)
    and a top-level custom rule that times out (:class:`RuleTimeoutError`).

    The timeout bounds the whole evaluation, so a composite with several
    custom children still settles within it.
    """

    def __init__(self, registry: CustomEvaluatorRegistry, strict_mode: bool = False,
                 disabled_rules_pass: bool = True):
        self.logger = get_logger("rules.evaluator")
        self.registry = registry
        self.strict_mode = strict_mode
        self.disabled_rules_pass = disabled_rules_pass

    async def evaluate(self, rule: Rule, context: RuleContext,
                       options: Optional[EvaluationOptions] = None) -> RuleResult:
        """Evaluate a rule and all its children."""
        options = options or EvaluationOptions()
        # Unset or non-positive timeouts fall back to the configured default
        timeout = options.timeout if options.timeout and options.timeout > 0 else self.registry.default_timeout
        deadline = time.monotonic() + timeout
        return await self._evaluate(rule, context, options, deadline, depth=0)

    async def _evaluate(self, rule: Rule, context: RuleContext, options: EvaluationOptions,
                        deadline: float, depth: int) -> RuleResult:
        start = time.perf_counter()

        if not rule.enabled:
            verdict = "passes" if self.disabled_rules_pass else "fails"
            result = RuleResult(
                rule=rule,
                passed=self.disabled_rules_pass,
                reason=f"Rule '{rule.name}' is disabled and {verdict} by policy",
                details={"disabled": True},
            )
        elif rule.type == RuleType.COMPOSITE:
            result = await self._evaluate_composite(rule, context, options, deadline, depth)
        elif rule.type == RuleType.CUSTOM:
            result = await self._evaluate_custom(rule, context, options, deadline, depth)
        elif rule.type in (RuleType.SIMPLE, RuleType.JAVASCRIPT):
            result = self._evaluate_leaf(rule, context)
        else:
            result = self._malformed(rule, f"Unknown rule type '{rule.type}'")

        result.execution_time_ms = (time.perf_counter() - start) * 1000
        return result

    def _malformed(self, rule: Rule, message: str) -> RuleResult:
        return RuleResult(rule=rule, passed=False, reason=message, error=message,
                          error_code=MALFORMED_CONDITION)

    def _evaluate_leaf(self, rule: Rule, context: RuleContext) -> RuleResult:
        condition = rule.condition
        if condition is None or (isinstance(condition, str) and not condition.strip()):
            return self._malformed(rule, f"Rule '{rule.name}' has no condition")

        if isinstance(condition, str):
            return self._evaluate_script(rule, condition, context)
        if isinstance(condition, RuleCondition) and condition.type == ConditionType.SCRIPT:
            if not condition.expression:
                return self._malformed(rule, f"Rule '{rule.name}' script condition has no expression")
            return self._evaluate_script(rule, condition.expression, context)

        outcome = evaluate_condition(condition, context, strict=self.strict_mode)
        return RuleResult(
            rule=rule,
            passed=outcome.passed,
            reason=outcome.reason,
            details=outcome.details,
            error=outcome.error,
            error_code=outcome.error_code,
        )

    def _evaluate_script(self, rule: Rule, expression: str, context: RuleContext) -> RuleResult:
        try:
            passed = evaluate_script(expression, context)
        except ScriptError as e:
            return RuleResult(
                rule=rule,
                passed=False,
                reason=f"Expression could not be evaluated: {e}",
                details={"expression": expression},
                error=str(e),
                error_code=SCRIPT_ERROR,
            )
        verdict = "true" if passed else "false"
        return RuleResult(
            rule=rule,
            passed=passed,
            reason=f"Expression evaluated to {verdict}",
            details={"expression": expression},
        )

    async def _evaluate_composite(self, rule: Rule, context: RuleContext, options: EvaluationOptions,
                                  deadline: float, depth: int) -> RuleResult:
        children = rule.rules
        if not children:
            return self._malformed(rule, f"Composite rule '{rule.name}' has no child rules")

        operator = rule.operator
        sub_results: List[RuleResult] = []

        if operator == CompositeOperator.NOT:
            # Only the first child takes part
            child = children[0]
            child_result = await self._evaluate(child, context, options, deadline, depth + 1)
            sub_results.append(child_result)
            details = {"operator": "NOT", "evaluated": 1, "total": len(children)}
            if child_result.error:
                reason = f"NOT passed: rule '{child.name}' errored: {child_result.error}"
            elif child_result.passed:
                reason = f"NOT failed: rule '{child.name}' passed"
            else:
                reason = f"NOT passed: rule '{child.name}' failed: {child_result.reason}"
            return RuleResult(rule=rule, passed=not child_result.passed, reason=reason,
                              details=details, sub_results=sub_results)

        if operator not in (CompositeOperator.AND, CompositeOperator.OR):
            return self._malformed(rule, f"Composite rule '{rule.name}' has invalid operator '{operator}'")

        stop_on = operator == CompositeOperator.OR
        for child in children:
            child_result = await self._evaluate(child, context, options, deadline, depth + 1)
            sub_results.append(child_result)
            if child_result.passed == stop_on:
                break

        details = {"operator": operator.value, "evaluated": len(sub_results), "total": len(children)}
        last = sub_results[-1]

        if operator == CompositeOperator.AND:
            if not last.passed:
                reason = f"AND failed at rule '{last.rule_name}': {last.reason}"
                return RuleResult(rule=rule, passed=False, reason=reason,
                                  details=details, sub_results=sub_results)
            reason = f"All {len(children)} rules passed"
            return RuleResult(rule=rule, passed=True, reason=reason,
                              details=details, sub_results=sub_results)

        if last.passed:
            reason = f"OR passed at rule '{last.rule_name}': {last.reason}"
            return RuleResult(rule=rule, passed=True, reason=reason,
                              details=details, sub_results=sub_results)
        reason = f"None of {len(children)} rules passed"
        return RuleResult(rule=rule, passed=False, reason=reason,
                          details=details, sub_results=sub_results)

    async def _evaluate_custom(self, rule: Rule, context: RuleContext, options: EvaluationOptions,
                               deadline: float, depth: int) -> RuleResult:
        name = rule.custom_evaluator_name
        override = options.custom_evaluators.get(name) or options.custom_evaluators.get(rule.name)

        if override is None and name not in self.registry:
            message = f"No custom evaluator registered for rule '{rule.name}'"
            if depth == 0:
                raise RuleEvaluationError(rule.name, message)
            return RuleResult(rule=rule, passed=False, reason=message, error=message,
                              error_code=EVALUATOR_ERROR, details={"evaluator": name})

        remaining = max(0.0, deadline - time.monotonic())
        try:
            passed = await self.registry.run(name, context, timeout=remaining,
                                             evaluator=override, rule_name=rule.name)
        except RuleTimeoutError as e:
            if depth == 0:
                raise
            return RuleResult(rule=rule, passed=False, reason=e.message, error=e.message,
                              error_code=EVALUATOR_TIMEOUT,
                              details={"evaluator": name, "timeout": e.timeout})
        except RuleEvaluationError as e:
            return RuleResult(rule=rule, passed=False, reason=e.message, error=e.message,
                              error_code=EVALUATOR_ERROR, details={"evaluator": name})

        verdict = "passed" if passed else "failed"
        return RuleResult(rule=rule, passed=passed, reason=f"Custom evaluator '{name}' {verdict}",
                          details={"evaluator": name})
