"""
Rule definition store.

Wraps the rule registry collaborator with validation, dependency checks,
a rule definition cache and invalidation of cached evaluation results.
"""

import copy
from collections import Counter, OrderedDict
from datetime import datetime, timedelta, timezone
from typing import Dict, Any, Optional, List, Union, Iterable

from pydantic import ValidationError as PydanticValidationError

from shared.config import ServiceConfig
from shared.errors import ValidationError
from shared.logging import get_logger
from shared.retry import RetryConfig, retry_on_exception
from ..cache.result_cache import ResultCache
from ..evaluators.registry import CustomEvaluatorRegistry
from ..persistence.base import RuleRegistry
from .errors import (
    RuleValidationError, RuleNotFoundError, RuleDependencyError, RegistryError,
)
from .models import (
    Rule, RuleType, RuleCreateRequest, RuleUpdateRequest, RuleSearchOptions,
    RuleValidationResult, RuleEvaluationStats, RuleWithStats, PaginatedResult, RuleStats,
)
from .validation import validate_rule


_SORT_FIELDS = {
    "name": lambda rule, stats: rule.name,
    "priority": lambda rule, stats: rule.priority,
    "type": lambda rule, stats: getattr(rule.type, "value", rule.type),
    "category": lambda rule, stats: rule.category or "",
    "created_at": lambda rule, stats: rule.created_at or datetime.min.replace(tzinfo=timezone.utc),
    "updated_at": lambda rule, stats: rule.updated_at or datetime.min.replace(tzinfo=timezone.utc),
    "evaluations": lambda rule, stats: stats.evaluations if stats else 0,
    "success_rate": lambda rule, stats: stats.success_rate if stats else 0.0,
}
_SORT_ALIASES = {"createdAt": "created_at", "updatedAt": "updated_at", "successRate": "success_rate"}


def _pydantic_errors(error: PydanticValidationError) -> List[str]:
    return [
        f"{'.'.join(str(part) for part in item['loc']) or 'request'}: {item['msg']}"
        for item in error.errors()
    ]


class RuleStore:
    """CRUD over rule definitions with validation and dependency tracking."""

    def __init__(self, registry: RuleRegistry, config: ServiceConfig,
                 evaluators: CustomEvaluatorRegistry, result_cache: ResultCache):
        self.logger = get_logger("rules.store")
        self.registry = registry
        self.config = config
        self.evaluators = evaluators
        self.result_cache = result_cache
        self._rule_cache: "OrderedDict[str, Rule]" = OrderedDict()
        self._stats: Dict[str, RuleEvaluationStats] = {}
        # rule name -> evaluator registered inline when the rule was created
        self._owned_evaluators: Dict[str, str] = {}

        retry_config = RetryConfig(
            max_attempts=config.registry_retry_attempts,
            base_delay=config.registry_retry_base_delay,
        )

        def retry_reads(operation):
            return retry_on_exception((RegistryError,), config=retry_config, reraise=True,
                                      operation=f"registry.{operation}")

        self._fetch_remote = retry_reads("fetch")(self.registry.fetch)
        self._list_remote = retry_reads("list_all")(self.registry.list_all)
        self._dependents_remote = retry_reads("list_dependents")(self.registry.list_dependents)

    # Lookup

    async def get(self, name: str, use_cache: bool = True) -> Rule:
        """Get a rule by name, raising RuleNotFoundError if unknown."""
        if use_cache:
            cached = self._rule_cache.get(name)
            if cached is not None:
                return copy.deepcopy(cached)

        rule = await self._fetch_remote(name)
        if rule is None:
            raise RuleNotFoundError(name)
        self._cache_rule(rule)
        return rule

    async def exists(self, name: str) -> bool:
        if name in self._rule_cache:
            return True
        return await self._fetch_remote(name) is not None

    async def get_dependents(self, name: str) -> List[str]:
        """Names of composite rules embedding this rule."""
        return list(await self._dependents_remote(name))

    # Validation

    def validate(self, rule: Rule, deep: bool = True,
                 extra_evaluators: Iterable[str] = ()) -> RuleValidationResult:
        """Validate a rule against the configured priority band and known evaluators."""
        evaluators = set(self.evaluators.names()) | set(extra_evaluators)
        return validate_rule(
            rule,
            deep=deep,
            evaluators=evaluators,
            min_priority=self.config.min_priority,
            max_priority=self.config.max_priority,
        )

    def _ensure_valid(self, rule: Rule, extra_evaluators: Iterable[str] = ()):
        result = self.validate(rule, extra_evaluators=extra_evaluators)
        if not result.valid:
            self.logger.warning("Rule validation failed", name=rule.name, errors=result.errors)
            raise RuleValidationError(
                f"Rule '{rule.name}' is invalid: {'; '.join(result.errors)}",
                errors=result.errors,
                warnings=result.warnings,
                rule_name=rule.name,
            )
        if result.warnings:
            self.logger.warning("Rule validation warnings", name=rule.name, warnings=result.warnings)

    # CRUD

    async def create(self, data: Union[RuleCreateRequest, Dict[str, Any], Rule],
                     validate: bool = True) -> Rule:
        """Create a rule. Fails if a rule with the same name exists."""
        evaluator = None
        if isinstance(data, Rule):
            rule = copy.deepcopy(data)
        else:
            try:
                request = data if isinstance(data, RuleCreateRequest) else RuleCreateRequest.model_validate(data)
                rule = request.to_rule()
            except PydanticValidationError as e:
                errors = _pydantic_errors(e)
                raise RuleValidationError("Invalid rule definition", errors=errors) from e
            except TypeError as e:
                raise RuleValidationError(f"Invalid rule definition: {e}") from e
            evaluator = request.evaluator

        pending = []
        if evaluator is not None:
            if rule.type != RuleType.CUSTOM:
                raise RuleValidationError(
                    f"Rule '{rule.name}' is not a custom rule and cannot take an evaluator",
                    rule_name=rule.name,
                )
            pending.append(rule.custom_evaluator_name)

        if validate:
            self._ensure_valid(rule, extra_evaluators=pending)

        if await self._fetch_remote(rule.name) is not None:
            raise RuleValidationError(f"Rule '{rule.name}' already exists", rule_name=rule.name)

        stored = await self.registry.create(rule.to_dict())

        if evaluator is not None:
            self.evaluators.register(stored.custom_evaluator_name, evaluator)
            self._owned_evaluators[stored.name] = stored.custom_evaluator_name

        self._cache_rule(stored)
        self.result_cache.invalidate(stored.name)
        self.logger.info("Rule created", rule_id=stored.id, name=stored.name,
                         type=getattr(stored.type, "value", stored.type))
        return stored

    async def update(self, name: str, data: Union[RuleUpdateRequest, Dict[str, Any]],
                     validate: bool = True) -> Rule:
        """Update a rule. A new name re-keys the caches."""
        try:
            request = data if isinstance(data, RuleUpdateRequest) else RuleUpdateRequest.model_validate(data)
        except PydanticValidationError as e:
            raise RuleValidationError("Invalid rule update", errors=_pydantic_errors(e), rule_name=name) from e

        current = await self.get(name, use_cache=False)
        try:
            updated = request.apply_to(current)
        except TypeError as e:
            raise RuleValidationError(f"Invalid rule update: {e}", rule_name=name) from e

        if validate:
            self._ensure_valid(updated)

        new_name = updated.name
        renamed = new_name != name
        if renamed and await self._fetch_remote(new_name) is not None:
            raise RuleValidationError(f"Rule '{new_name}' already exists", rule_name=new_name)

        stored = await self.registry.update(name, request.to_payload())

        self._rule_cache.pop(name, None)
        self._cache_rule(stored)
        self.result_cache.invalidate(name)
        if renamed:
            self.result_cache.invalidate(stored.name)
            if name in self._stats:
                self._stats[stored.name] = self._stats.pop(name)
            if name in self._owned_evaluators:
                self._owned_evaluators[stored.name] = self._owned_evaluators.pop(name)

        self.logger.info("Rule updated", rule_id=stored.id, name=stored.name, previous_name=name)
        return stored

    async def delete(self, name: str, force: bool = False) -> bool:
        """Delete a rule; blocked while composite rules embed it unless forced."""
        if not await self.exists(name):
            raise RuleNotFoundError(name)

        if not force:
            dependents = await self.get_dependents(name)
            if dependents:
                self.logger.warning("Rule delete blocked by dependents", name=name, dependents=dependents)
                raise RuleDependencyError(name, dependents)

        deleted = await self.registry.delete(name, force)

        self._rule_cache.pop(name, None)
        self.result_cache.invalidate(name)
        self._stats.pop(name, None)
        owned = self._owned_evaluators.pop(name, None)
        if owned and owned not in self._owned_evaluators.values():
            self.evaluators.unregister(owned)

        self.logger.info("Rule deleted", name=name, force=force, deleted=deleted)
        return deleted

    # Listing

    async def list(self, options: Optional[Union[RuleSearchOptions, Dict[str, Any]]] = None) -> PaginatedResult:
        """List rules with filtering, sorting and pagination."""
        options = self._search_options(options)
        rules = [rule for rule in await self._list_remote() if self._matches(rule, options)]

        sort_by = _SORT_ALIASES.get(options.sort_by, options.sort_by)
        reverse = options.sort_direction == "desc"
        if sort_by is None:
            # Highest priority first
            rules.sort(key=lambda rule: (-rule.priority, rule.name))
        elif sort_by in _SORT_FIELDS:
            key = _SORT_FIELDS[sort_by]
            rules.sort(key=lambda rule: key(rule, self._stats.get(rule.name)), reverse=reverse)
        else:
            raise ValidationError(f"Unsupported sort field: {options.sort_by}", details={"sort_by": options.sort_by})

        total = len(rules)
        page = rules[options.offset:options.offset + options.limit]
        items = [
            RuleWithStats(
                rule=rule,
                stats=copy.copy(self._stats.get(rule.name, RuleEvaluationStats())) if options.include_stats else None,
            )
            for rule in page
        ]
        return PaginatedResult(
            items=items,
            total_count=total,
            has_more=options.offset + len(page) < total,
            limit=options.limit,
            offset=options.offset,
        )

    async def search(self, options: Union[RuleSearchOptions, Dict[str, Any]]) -> PaginatedResult:
        """List with statistics included unless explicitly turned off."""
        options = self._search_options(options)
        if "include_stats" not in options.model_fields_set:
            options = options.model_copy(update={"include_stats": True})
        return await self.list(options)

    def _search_options(self, options: Optional[Union[RuleSearchOptions, Dict[str, Any]]]) -> RuleSearchOptions:
        if options is None:
            return RuleSearchOptions()
        if isinstance(options, RuleSearchOptions):
            return options
        try:
            return RuleSearchOptions.model_validate(options)
        except PydanticValidationError as e:
            raise ValidationError("Invalid search options", details={"errors": _pydantic_errors(e)}) from e

    @staticmethod
    def _matches(rule: Rule, options: RuleSearchOptions) -> bool:
        rule_type = getattr(rule.type, "value", rule.type)
        if options.query:
            needle = options.query.lower()
            haystack = " ".join(filter(None, [rule.name, rule.description, rule.category])).lower()
            if needle not in haystack:
                return False
        if options.type and rule_type != options.type:
            return False
        if options.types and rule_type not in options.types:
            return False
        if options.category and rule.category != options.category:
            return False
        if options.categories and rule.category not in options.categories:
            return False
        if options.enabled is not None and rule.enabled != options.enabled:
            return False
        if options.min_priority is not None and rule.priority < options.min_priority:
            return False
        if options.max_priority is not None and rule.priority > options.max_priority:
            return False
        return True

    # Statistics

    def record_evaluation(self, name: str, passed: bool, execution_time_ms: float):
        """Record an evaluation in the rule's running statistics."""
        self._stats.setdefault(name, RuleEvaluationStats()).record(passed, execution_time_ms)

    def get_evaluation_stats(self, name: str) -> RuleEvaluationStats:
        return copy.copy(self._stats.get(name, RuleEvaluationStats()))

    async def get_stats(self) -> RuleStats:
        """Aggregate statistics over all stored rules."""
        rules = await self._list_remote()
        by_type = Counter(getattr(rule.type, "value", rule.type) for rule in rules)
        by_category = Counter(rule.category or "uncategorized" for rule in rules)
        enabled = sum(1 for rule in rules if rule.enabled)

        tracked = [(rule, self._stats[rule.name]) for rule in rules if rule.name in self._stats]
        evaluations = sum(stats.evaluations for _, stats in tracked)
        total_time = sum(stats.total_execution_time_ms for _, stats in tracked)
        most_evaluated = sorted(tracked, key=lambda item: item[1].evaluations, reverse=True)[:5]
        recent_cutoff = datetime.now(timezone.utc) - timedelta(hours=1)

        return RuleStats(
            total_rules=len(rules),
            by_type=dict(by_type),
            by_category=dict(by_category),
            enabled=enabled,
            disabled=len(rules) - enabled,
            average_evaluation_time_ms=total_time / evaluations if evaluations else 0.0,
            most_evaluated=[
                {"rule": rule.name, "evaluations": stats.evaluations}
                for rule, stats in most_evaluated
            ],
            recent_activity=sum(
                1 for _, stats in tracked
                if stats.last_evaluation and stats.last_evaluation >= recent_cutoff
            ),
        )

    # Caches

    def _cache_rule(self, rule: Rule):
        self._rule_cache.pop(rule.name, None)
        self._rule_cache[rule.name] = copy.deepcopy(rule)
        while len(self._rule_cache) > self.config.rule_cache_size:
            self._rule_cache.popitem(last=False)

    @property
    def cached_rule_count(self) -> int:
        return len(self._rule_cache)

    def clear_caches(self):
        """Drop cached rule definitions and evaluation results."""
        self._rule_cache.clear()
        self.result_cache.clear()

    def reset(self):
        """Clear caches, statistics and inline evaluators."""
        self.clear_caches()
        self._stats.clear()
        for evaluator_name in set(self._owned_evaluators.values()):
            self.evaluators.unregister(evaluator_name)
        self._owned_evaluators.clear()
