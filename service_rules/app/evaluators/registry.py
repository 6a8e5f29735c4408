"""
Custom evaluator registry for the rules service.
"""

import asyncio
import inspect
from typing import Dict, Optional, List, Set

from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..rules.errors import RuleEvaluationError, RuleTimeoutError, RuleValidationError
from ..rules.models import RuleContext, RuleEvaluator


class CustomEvaluatorRegistry:
    """Named custom evaluators, scoped to a single engine instance.

    Evaluators take a :class:`RuleContext` and return a boolean, either
    directly or through an awaitable. Awaitables race a timeout; when the
    timeout wins the caller gets :class:`RuleTimeoutError` and the pending
    work is left to finish on its own, its result discarded. With
    ``cancel_on_timeout`` the pending task is cancelled instead, which only
    helps evaluators that reach an ``await``.

    Synchronous evaluators run inline on the event loop and cannot be
    interrupted, so they must be fast. Registered evaluators should be
    idempotent: an abandoned evaluation may still complete its side effects.
    """

    def __init__(self, default_timeout: float = 30.0, cancel_on_timeout: bool = False,
                 metrics: Optional[MetricsCollector] = None):
        self.logger = get_logger("rules.evaluators")
        self.default_timeout = default_timeout
        self.cancel_on_timeout = cancel_on_timeout
        self.metrics = metrics
        self._evaluators: Dict[str, RuleEvaluator] = {}
        self._abandoned: Set[asyncio.Future] = set()

    def register(self, name: str, evaluator: RuleEvaluator):
        """Register an evaluator, replacing any existing one with the same name."""
        if not name or not isinstance(name, str):
            raise RuleValidationError("Evaluator name is required")
        if not callable(evaluator):
            raise RuleValidationError(f"Evaluator '{name}' is not callable", rule_name=name)

        replaced = name in self._evaluators
        self._evaluators[name] = evaluator
        self.logger.info("Custom evaluator registered", evaluator=name, replaced=replaced)

    def unregister(self, name: str) -> bool:
        """Remove an evaluator. Returns False if it was not registered."""
        if self._evaluators.pop(name, None) is None:
            return False
        self.logger.info("Custom evaluator unregistered", evaluator=name)
        return True

    def get(self, name: str) -> Optional[RuleEvaluator]:
        """Get an evaluator by name."""
        return self._evaluators.get(name)

    def names(self) -> List[str]:
        return sorted(self._evaluators)

    def clear(self):
        self._evaluators.clear()

    def __contains__(self, name: object) -> bool:
        return name in self._evaluators

    def __len__(self) -> int:
        return len(self._evaluators)

    @property
    def abandoned_count(self) -> int:
        """Timed-out evaluations that are still running."""
        return len(self._abandoned)

    async def run(self, name: str, context: RuleContext, timeout: Optional[float] = None,
                  evaluator: Optional[RuleEvaluator] = None, rule_name: Optional[str] = None) -> bool:
        """Run an evaluator against a context under a timeout.

        ``evaluator`` overrides the registered function for this call only.
        """
        rule_name = rule_name or name
        func = evaluator or self._evaluators.get(name)
        if func is None:
            raise RuleEvaluationError(rule_name, f"No custom evaluator registered for '{name}'")

        bound = self.default_timeout if timeout is None else timeout

        try:
            outcome = func(context)
        except Exception as e:
            self.logger.warning("Custom evaluator raised", evaluator=name, rule=rule_name, error=str(e))
            raise RuleEvaluationError(rule_name, f"Custom evaluator '{name}' failed: {e}", cause=e) from e

        if not inspect.isawaitable(outcome):
            return bool(outcome)

        task = asyncio.ensure_future(outcome)
        try:
            done, _ = await asyncio.wait({task}, timeout=bound)
        except asyncio.CancelledError:
            self._abandon(name, task)
            raise

        if task not in done:
            self._abandon(name, task)
            if self.metrics:
                self.metrics.increment_counter("custom_evaluator_timeouts_total", evaluator=name)
            self.logger.warning(
                "Custom evaluator timed out",
                evaluator=name,
                rule=rule_name,
                timeout=bound,
                cancelled=self.cancel_on_timeout,
            )
            raise RuleTimeoutError(rule_name, bound)

        if task.cancelled():
            raise RuleEvaluationError(rule_name, f"Custom evaluator '{name}' was cancelled")

        error = task.exception()
        if error is not None:
            self.logger.warning("Custom evaluator raised", evaluator=name, rule=rule_name, error=str(error))
            raise RuleEvaluationError(
                rule_name, f"Custom evaluator '{name}' failed: {error}", cause=error
            ) from error

        return bool(task.result())

    def cancel_abandoned(self) -> int:
        """Cancel every timed-out evaluation that is still running."""
        pending = [task for task in self._abandoned if not task.done()]
        for task in pending:
            task.cancel()
        return len(pending)

    def _abandon(self, name: str, task: asyncio.Future):
        if self.cancel_on_timeout:
            task.cancel()
        self._abandoned.add(task)

        def _discard(finished: asyncio.Future):
            self._abandoned.discard(finished)
            if finished.cancelled():
                self.logger.debug("Abandoned custom evaluator cancelled", evaluator=name)
            elif finished.exception() is not None:
                self.logger.warning(
                    "Abandoned custom evaluator failed after timeout",
                    evaluator=name,
                    error=str(finished.exception()),
                )
            else:
                self.logger.debug(
                    "Abandoned custom evaluator result discarded",
                    evaluator=name,
                    result=bool(finished.result()),
                )

        task.add_done_callback(_discard)
