"""
Sequencing of several rule evaluations against one context.
"""

import asyncio
import time
from typing import List, Optional, Union, Callable, Awaitable

from shared.errors import RuleGateException
from shared.logging import get_logger
from .models import (
    Rule, RuleContext, EvaluationOptions, RuleEvaluationResult,
    BatchEvaluationInput, BatchEvaluationResult,
)


SingleEvaluation = Callable[[Union[str, Rule], RuleContext, EvaluationOptions], Awaitable[RuleEvaluationResult]]


class BatchCoordinator:
    """Runs rule lists sequentially and independent batches concurrently.

    ``evaluate_one`` performs one authoritative evaluation (normally
    :meth:`RulesEngine.evaluate_rule`) and is injected so the coordinator
    shares the engine's cache, statistics and metrics.
    """

    def __init__(self, evaluate_one: SingleEvaluation, max_concurrency: int = 4):
        self.logger = get_logger("rules.batch")
        self._evaluate_one = evaluate_one
        self.max_concurrency = max(1, max_concurrency)

    async def evaluate_many(self, rules: List[Union[str, Rule]], context: RuleContext,
                            options: Optional[EvaluationOptions] = None) -> RuleEvaluationResult:
        """Evaluate rules in order against one context.

        With ``stop_on_failure`` evaluation halts at the first rule that
        fails or errors. The aggregate passes only when no rule raised and
        every evaluated rule passed.
        """
        options = options or EvaluationOptions()
        start = time.perf_counter()
        results = []
        errors: List[str] = []
        failures = 0
        rules_evaluated = 0
        rules_passed = 0

        for rule in rules:
            rule_name = rule if isinstance(rule, str) else rule.name
            try:
                outcome = await self._evaluate_one(rule, context, options)
            except RuleGateException as e:
                failures += 1
                errors.append(f"Failed to evaluate rule '{rule_name}': {e.message}")
                self.logger.warning("Rule evaluation failed in batch", rule=rule_name, error=e.message)
                if options.stop_on_failure:
                    break
                continue

            results.extend(outcome.results)
            errors.extend(outcome.errors)
            rules_evaluated += outcome.rules_evaluated
            rules_passed += outcome.rules_passed

            if options.stop_on_failure and (not outcome.passed or outcome.errors):
                self.logger.debug("Stopping batch at failing rule", rule=rule_name)
                break

        return RuleEvaluationResult(
            passed=failures == 0 and rules_passed == rules_evaluated,
            results=results,
            errors=errors,
            evaluation_time_ms=(time.perf_counter() - start) * 1000,
            rules_evaluated=rules_evaluated,
            rules_passed=rules_passed,
        )

    async def evaluate_batch(self, batches: List[BatchEvaluationInput]) -> BatchEvaluationResult:
        """Evaluate independent batches; one failing batch never aborts the rest."""
        start = time.perf_counter()
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def _run(batch: BatchEvaluationInput) -> RuleEvaluationResult:
            async with semaphore:
                return await self.evaluate_many(batch.rules, batch.context, batch.options)

        outcomes = await asyncio.gather(*[_run(batch) for batch in batches], return_exceptions=True)

        results: List[RuleEvaluationResult] = []
        errors: List[str] = []
        successful = 0
        for index, (batch, outcome) in enumerate(zip(batches, outcomes)):
            if isinstance(outcome, BaseException):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                message = f"Batch {index} ({', '.join(batch.rule_names)}) failed: {outcome}"
                self.logger.error("Batch evaluation failed", batch=index, error=str(outcome))
                errors.append(message)
                # Keep result positions aligned with the input batches
                results.append(RuleEvaluationResult(passed=False, errors=[message]))
                continue
            results.append(outcome)
            successful += 1

        failed = len(batches) - successful
        self.logger.info(
            "Batch evaluation completed",
            batches=len(batches),
            successful=successful,
            failed=failed,
        )
        return BatchEvaluationResult(
            success=failed == 0,
            results=results,
            successful=successful,
            failed=failed,
            total_time_ms=(time.perf_counter() - start) * 1000,
            errors=errors,
        )
