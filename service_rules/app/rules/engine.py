"""
Rule evaluation engine for the rules service.
"""

import time
from datetime import datetime, timezone
from typing import Dict, Any, Optional, List, Union

from shared.config import ServiceConfig, get_config
from shared.errors import RuleGateException, ServiceError
from shared.logging import configure_logging, get_logger, set_request_id, rule_context
from shared.metrics import MetricsCollector
from ..cache.result_cache import ResultCache
from ..client.mirror import ClientMirror
from ..evaluators.registry import CustomEvaluatorRegistry
from ..persistence.base import RuleRegistry
from ..persistence.memory import InMemoryRuleRegistry
from .batch import BatchCoordinator
from .builder import common_rule_set
from .errors import RuleValidationError, EVALUATOR_TIMEOUT
from .evaluator import ConditionEvaluator
from .models import (
    Rule, RuleContext, RuleResult, RuleEvaluationResult, BatchEvaluationResult,
    BatchEvaluationInput, EvaluationOptions, RuleEvaluator, RuleCreateRequest,
    RuleUpdateRequest, RuleSearchOptions, RuleValidationResult, PaginatedResult, RuleStats,
)
from .store import RuleStore
from .validation import structural_errors


class RulesEngine:
    """Authoritative rule evaluation.

    Composes the rule store, condition evaluator, custom evaluator registry,
    result cache and batch coordinator for one tenant or caller. Nothing is
    shared between engine instances.
    """

    def __init__(self, registry: Optional[RuleRegistry] = None, config: Optional[ServiceConfig] = None,
                 metrics: Optional[MetricsCollector] = None):
        self.config = config or get_config()
        self.logger = get_logger("rules.engine")
        self.metrics = metrics
        self.registry = registry or InMemoryRuleRegistry()

        self.evaluators = CustomEvaluatorRegistry(
            default_timeout=self.config.evaluation_timeout_seconds,
            cancel_on_timeout=self.config.cancel_on_timeout,
            metrics=metrics,
        )
        self.result_cache = ResultCache(
            ttl_seconds=self.config.cache_ttl_seconds,
            max_entries=self.config.cache_size,
            eviction=self.config.cache_eviction,
            metrics=metrics,
        )
        self.store = RuleStore(self.registry, self.config, self.evaluators, self.result_cache)
        self.evaluator = ConditionEvaluator(
            self.evaluators,
            strict_mode=self.config.strict_mode,
            disabled_rules_pass=self.config.disabled_rules_pass,
        )
        self.batch = BatchCoordinator(self._evaluate_rule, max_concurrency=self.config.max_batch_concurrency)
        self.mirror = ClientMirror(
            strict_mode=self.config.strict_mode,
            disabled_rules_pass=self.config.disabled_rules_pass,
        )

        self._started_at = datetime.now(timezone.utc)
        self._evaluations = 0
        self._failures = 0
        self._disposed = False

    def _ensure_active(self):
        if self._disposed:
            raise ServiceError("Rules engine has been disposed", code="ENGINE_DISPOSED")

    # Rule management

    async def create_rule(self, data: Union[RuleCreateRequest, Dict[str, Any], Rule],
                          validate: bool = True) -> Rule:
        """Create a rule."""
        self._ensure_active()
        set_request_id()
        return await self.store.create(data, validate=validate)

    async def get_rule(self, name: str) -> Rule:
        """Get a rule by name."""
        self._ensure_active()
        return await self.store.get(name)

    async def update_rule(self, name: str, data: Union[RuleUpdateRequest, Dict[str, Any]],
                          validate: bool = True) -> Rule:
        """Update a rule."""
        self._ensure_active()
        set_request_id()
        return await self.store.update(name, data, validate=validate)

    async def delete_rule(self, name: str, force: bool = False) -> bool:
        """Delete a rule."""
        self._ensure_active()
        set_request_id()
        return await self.store.delete(name, force=force)

    async def list_rules(self, options: Optional[Union[RuleSearchOptions, Dict[str, Any]]] = None) -> PaginatedResult:
        self._ensure_active()
        return await self.store.list(options)

    async def search_rules(self, options: Union[RuleSearchOptions, Dict[str, Any]]) -> PaginatedResult:
        self._ensure_active()
        return await self.store.search(options)

    async def get_dependents(self, name: str) -> List[str]:
        self._ensure_active()
        return await self.store.get_dependents(name)

    def validate_rule(self, rule: Union[Rule, Dict[str, Any]], deep: bool = True) -> RuleValidationResult:
        """Validate a rule definition without storing it."""
        return self.store.validate(Rule.coerce(rule), deep=deep)

    async def load_common_rules(self) -> List[Rule]:
        """Create the preset rules that do not exist yet."""
        self._ensure_active()
        created = []
        for rule in common_rule_set():
            if await self.store.exists(rule.name):
                continue
            created.append(await self.store.create(rule))
        self.logger.info("Common rules loaded", created=len(created))
        return created

    # Custom evaluators

    def register_evaluator(self, name: str, evaluator: RuleEvaluator):
        """Register a custom evaluator on this engine."""
        self._ensure_active()
        self.evaluators.register(name, evaluator)

    def unregister_evaluator(self, name: str) -> bool:
        return self.evaluators.unregister(name)

    # Evaluation

    async def evaluate_rule(self, rule: Union[str, Rule], context: RuleContext,
                            options: Optional[EvaluationOptions] = None) -> RuleEvaluationResult:
        """Evaluate a stored rule by name, or an unsaved rule definition."""
        self._ensure_active()
        set_request_id()
        return await self._evaluate_rule(rule, context, options or EvaluationOptions())

    async def _evaluate_rule(self, rule: Union[str, Rule], context: RuleContext,
                             options: EvaluationOptions) -> RuleEvaluationResult:
        with rule_context(rule if isinstance(rule, str) else rule.name):
            return await self._evaluate_in_context(rule, context, options)

    async def _evaluate_in_context(self, rule: Union[str, Rule], context: RuleContext,
                                   options: EvaluationOptions) -> RuleEvaluationResult:
        start = time.perf_counter()
        stored = isinstance(rule, str)
        rule_name = rule if stored else rule.name
        # Unsaved definitions and per-call evaluator overrides bypass the cache
        use_cache = (stored and options.use_cache and self.config.enable_cache
                     and not options.custom_evaluators)

        self.logger.debug("Evaluating rule", rule=rule_name)

        if use_cache:
            cached = self.result_cache.get(rule_name, context)
            if cached is not None:
                self.logger.debug("Rule evaluation found in cache", rule=rule_name)
                return cached

        definition = await self.store.get(rule_name) if stored else rule

        if not definition.enabled:
            return self._disabled_result(definition, start)

        errors = structural_errors(definition)
        if errors:
            raise RuleValidationError(
                f"Rule '{rule_name}' cannot be evaluated: {'; '.join(errors)}",
                errors=errors,
                rule_name=rule_name,
            )

        try:
            node = await self.evaluator.evaluate(definition, context, options)
        except RuleGateException as e:
            self._failures += 1
            if self.metrics:
                self.metrics.record_error(e.code)
            self.logger.error("Failed to evaluate rule", rule=rule_name, code=e.code, error=e.message)
            raise

        result = RuleEvaluationResult(
            passed=node.passed,
            results=[node],
            errors=node.collect_errors(),
            evaluation_time_ms=(time.perf_counter() - start) * 1000,
            rules_evaluated=1,
            rules_passed=1 if node.passed else 0,
        )

        # Timed-out results are not cached so a retry re-runs the evaluator
        if use_cache and not node.has_error_code(EVALUATOR_TIMEOUT):
            self.result_cache.set(rule_name, context, result)

        self._evaluations += 1
        if stored:
            self.store.record_evaluation(rule_name, node.passed, node.execution_time_ms)
        if self.metrics:
            self.metrics.record_rule_evaluation(
                getattr(definition.type, "value", str(definition.type)),
                node.passed,
                result.evaluation_time_ms / 1000,
            )

        self.logger.debug(
            "Rule evaluation completed",
            rule=rule_name,
            passed=result.passed,
            errors=len(result.errors),
            evaluation_time_ms=round(result.evaluation_time_ms, 3),
        )
        return result

    def _disabled_result(self, rule: Rule, start: float) -> RuleEvaluationResult:
        passed = self.config.disabled_rules_pass
        self.logger.debug("Rule is disabled, skipping evaluation", rule=rule.name, passed=passed)
        node = RuleResult(
            rule=rule,
            passed=passed,
            reason=f"Rule '{rule.name}' is disabled",
            details={"disabled": True},
        )
        return RuleEvaluationResult(
            passed=passed,
            results=[node],
            evaluation_time_ms=(time.perf_counter() - start) * 1000,
            # A passing disabled rule counts as not evaluated
            rules_evaluated=0 if passed else 1,
            rules_passed=0,
        )

    async def evaluate_rules(self, rules: List[Union[str, Rule]], context: RuleContext,
                             options: Optional[EvaluationOptions] = None) -> RuleEvaluationResult:
        """Evaluate rules sequentially against one context."""
        self._ensure_active()
        set_request_id()
        self.logger.debug("Evaluating multiple rules", rule_count=len(rules))
        return await self.batch.evaluate_many(rules, context, options)

    async def evaluate_batch(self, batches: List[BatchEvaluationInput]) -> BatchEvaluationResult:
        """Evaluate independent batches of rules."""
        self._ensure_active()
        set_request_id()
        return await self.batch.evaluate_batch(batches)

    def evaluate_locally(self, rule: Rule, context: RuleContext) -> RuleResult:
        """Advisory evaluation through the client mirror."""
        return self.mirror.evaluate_rule(rule, context)

    # Statistics and lifecycle

    async def get_stats(self) -> RuleStats:
        self._ensure_active()
        return await self.store.get_stats()

    def get_engine_health(self) -> Dict[str, Any]:
        """Health summary of the engine and its caches."""
        cache_stats = self.result_cache.get_cache_stats()
        return {
            "status": "disposed" if self._disposed else "healthy",
            "started_at": self._started_at.isoformat(),
            "uptime_seconds": (datetime.now(timezone.utc) - self._started_at).total_seconds(),
            "evaluations": self._evaluations,
            "failures": self._failures,
            "cache_enabled": self.config.enable_cache,
            "result_cache": cache_stats,
            "cached_rules": self.store.cached_rule_count,
            "custom_evaluators": len(self.evaluators),
            "abandoned_evaluations": self.evaluators.abandoned_count,
            "strict_mode": self.config.strict_mode,
        }

    def reset(self):
        """Clear caches, statistics and inline evaluators."""
        self.store.reset()
        self.result_cache.reset_stats()
        self._evaluations = 0
        self._failures = 0
        self.logger.info("Rules engine reset")

    def dispose(self):
        """Release the engine. Further calls raise ServiceError."""
        if self._disposed:
            return
        self.store.reset()
        self.evaluators.clear()
        cancelled = self.evaluators.cancel_abandoned()
        self._disposed = True
        self.logger.info("Rules engine disposed", cancelled_evaluations=cancelled)


def create_rules_engine(registry: Optional[RuleRegistry] = None, config: Optional[ServiceConfig] = None,
                        metrics: Optional[MetricsCollector] = None, configure: bool = True) -> RulesEngine:
    """Build an engine, configuring structured logging for the service."""
    config = config or get_config()
    if configure:
        configure_logging(config.service_name, config.log_level, json_logs=config.env != "local")
    return RulesEngine(registry=registry, config=config, metrics=metrics)
