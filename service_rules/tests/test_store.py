"""
Unit tests for the rule definition store.
"""

import pytest

from shared.config import get_config
from shared.errors import ValidationError
from shared.test_helpers import test_data_factory
from service_rules.app.cache.result_cache import ResultCache
from service_rules.app.evaluators.registry import CustomEvaluatorRegistry
from service_rules.app.persistence.memory import InMemoryRuleRegistry
from service_rules.app.rules.errors import (
    RuleValidationError, RuleNotFoundError, RuleDependencyError, RegistryError,
)
from service_rules.app.rules.models import (
    RuleContext, RuleEvaluationResult, RuleCreateRequest, RuleUpdateRequest, RuleSearchOptions,
)
from service_rules.app.rules.store import RuleStore


class FlakyRegistry(InMemoryRuleRegistry):
    """Registry whose reads fail a fixed number of times."""

    def __init__(self, failures):
        super().__init__()
        self.failures = failures
        self.fetch_calls = 0

    async def fetch(self, name):
        self.fetch_calls += 1
        if self.fetch_calls <= self.failures:
            raise RegistryError("connection reset", operation="fetch")
        return await super().fetch(name)


async def _seed(store):
    for payload in test_data_factory.create_test_rules():
        await store.create(payload)


class TestRuleStore:
    """Test cases for RuleStore."""

    @pytest.fixture
    def evaluators(self):
        return CustomEvaluatorRegistry(default_timeout=0.2)

    @pytest.fixture
    def result_cache(self):
        return ResultCache()

    @pytest.fixture
    def store(self, registry, config, evaluators, result_cache):
        """Create RuleStore instance."""
        return RuleStore(registry, config, evaluators, result_cache)

    @pytest.mark.asyncio
    async def test_create_rule(self, store):
        rule = await store.create(test_data_factory.create_test_rules()[0])

        assert rule.name == "R1"
        assert rule.id is not None
        assert rule.created_at is not None
        assert await store.exists("R1") is True
        assert store.cached_rule_count == 1

    @pytest.mark.asyncio
    async def test_create_from_request_model(self, store):
        request = RuleCreateRequest(
            name="has_title",
            type="simple",
            condition={"type": "FieldExists", "field": "data.title"},
        )

        rule = await store.create(request)

        assert rule.condition.field == "data.title"

    @pytest.mark.asyncio
    async def test_create_composite_defaults_to_and(self, store):
        rule = await store.create({
            "name": "both",
            "type": "composite",
            "rules": test_data_factory.create_test_rules()[:2],
        })

        assert rule.operator.value == "AND"

    @pytest.mark.asyncio
    async def test_create_duplicate_name(self, store):
        await _seed(store)

        with pytest.raises(RuleValidationError) as exc_info:
            await store.create(test_data_factory.create_test_rules()[0])

        assert "already exists" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_create_invalid_rule(self, store, registry):
        with pytest.raises(RuleValidationError) as exc_info:
            await store.create({"name": "empty", "type": "composite", "operator": "OR", "rules": []})

        assert any("at least one child rule" in error for error in exc_info.value.errors)
        assert await registry.fetch("empty") is None

    @pytest.mark.asyncio
    async def test_create_rejects_malformed_payload(self, store):
        with pytest.raises(RuleValidationError) as exc_info:
            await store.create({"name": "no_type"})

        assert any(error.startswith("type") for error in exc_info.value.errors)

    @pytest.mark.asyncio
    async def test_create_with_warnings_succeeds(self, store):
        payload = test_data_factory.create_rule_payload(
            name="urgent",
            condition={"type": "FieldGreaterThan", "field": "priority", "value": 5},
            priority=5000,
        )

        rule = await store.create(payload)

        assert rule.priority == 5000
        assert store.validate(rule).warnings

    @pytest.mark.asyncio
    async def test_create_can_skip_validation(self, store):
        rule = await store.create({"name": "empty", "type": "composite", "rules": []}, validate=False)

        assert rule.rules == []

    @pytest.mark.asyncio
    async def test_custom_rule_requires_evaluator(self, store):
        with pytest.raises(RuleValidationError) as exc_info:
            await store.create({"name": "big_order", "type": "custom"})

        assert "no registered evaluator" in exc_info.value.errors[0]

    @pytest.mark.asyncio
    async def test_inline_evaluator_lifecycle(self, store, evaluators):
        await store.create({"name": "big_order", "type": "custom", "evaluator": lambda ctx: True})

        assert "big_order" in evaluators

        await store.delete("big_order")

        assert "big_order" not in evaluators

    @pytest.mark.asyncio
    async def test_inline_evaluator_only_for_custom_rules(self, store):
        payload = test_data_factory.create_test_rules()[0]
        payload["evaluator"] = lambda ctx: True

        with pytest.raises(RuleValidationError):
            await store.create(payload)

    @pytest.mark.asyncio
    async def test_update_rule(self, store, result_cache):
        await _seed(store)
        context = RuleContext.create(data={"content": "x"})
        result_cache.set("R1", context, RuleEvaluationResult(passed=True))

        updated = await store.update("R1", {"priority": 99, "description": "Has body text"})

        assert updated.priority == 99
        assert updated.description == "Has body text"
        assert updated.updated_at >= updated.created_at
        assert len(result_cache) == 0
        assert (await store.get("R1")).priority == 99

    @pytest.mark.asyncio
    async def test_update_with_request_model(self, store):
        await _seed(store)

        updated = await store.update("R2", RuleUpdateRequest(enabled=False))

        assert updated.enabled is False
        assert updated.condition.value == "unclassified"

    @pytest.mark.asyncio
    async def test_update_rename(self, store):
        await _seed(store)
        store.record_evaluation("R1", True, 1.5)

        renamed = await store.update("R1", {"name": "has_content"})

        assert renamed.name == "has_content"
        with pytest.raises(RuleNotFoundError):
            await store.get("R1")
        assert (await store.get("has_content")).id == renamed.id
        assert store.get_evaluation_stats("has_content").evaluations == 1
        assert store.get_evaluation_stats("R1").evaluations == 0

    @pytest.mark.asyncio
    async def test_update_rename_collision(self, store):
        await _seed(store)

        with pytest.raises(RuleValidationError):
            await store.update("R1", {"name": "R2"})

    @pytest.mark.asyncio
    async def test_update_unknown_rule(self, store):
        with pytest.raises(RuleNotFoundError):
            await store.update("missing", {"priority": 1})

    @pytest.mark.asyncio
    async def test_invalid_update_is_not_persisted(self, store):
        await _seed(store)

        with pytest.raises(RuleValidationError):
            await store.update("R3", {"rules": []})

        assert len((await store.get("R3", use_cache=False)).rules) == 2

    @pytest.mark.asyncio
    async def test_delete_blocked_by_dependents(self, store):
        await _seed(store)

        with pytest.raises(RuleDependencyError) as exc_info:
            await store.delete("R1")

        assert exc_info.value.dependents == ["R3"]
        assert await store.exists("R1") is True

    @pytest.mark.asyncio
    async def test_force_delete(self, store):
        await _seed(store)
        store.record_evaluation("R1", False, 1.0)

        assert await store.delete("R1", force=True) is True

        assert await store.exists("R1") is False
        assert await store.exists("R3") is True
        assert store.get_evaluation_stats("R1").evaluations == 0

    @pytest.mark.asyncio
    async def test_delete_unknown_rule(self, store):
        with pytest.raises(RuleNotFoundError):
            await store.delete("missing")

    @pytest.mark.asyncio
    async def test_cached_rule_is_isolated_from_callers(self, store):
        await _seed(store)

        rule = await store.get("R3")
        rule.description = "changed by caller"
        rule.rules.clear()

        cached = await store.get("R3")
        assert cached.description == "Ready for classification"
        assert [child.name for child in cached.rules] == ["R1", "R2"]

    @pytest.mark.asyncio
    async def test_get_dependents(self, store):
        await _seed(store)

        assert await store.get_dependents("R2") == ["R3"]
        assert await store.get_dependents("R3") == []

    @pytest.mark.asyncio
    async def test_list_default_sort_is_priority_desc(self, store):
        await _seed(store)

        page = await store.list()

        assert [item.rule.name for item in page.items] == ["R1", "R2", "R3"]
        assert page.total_count == 3
        assert page.has_more is False
        assert page.items[0].stats is None

    @pytest.mark.asyncio
    async def test_list_filters(self, store):
        await _seed(store)

        by_category = await store.list({"category": "classification"})
        by_type = await store.list(RuleSearchOptions(type="composite"))
        by_query = await store.list({"query": "unclassified"})
        by_priority = await store.list({"min_priority": 20, "max_priority": 60})

        assert {item.rule.name for item in by_category.items} == {"R2", "R3"}
        assert [item.rule.name for item in by_type.items] == ["R3"]
        assert [item.rule.name for item in by_query.items] == ["R2"]
        assert [item.rule.name for item in by_priority.items] == ["R2"]

    @pytest.mark.asyncio
    async def test_list_sort_and_paginate(self, store):
        await _seed(store)

        first = await store.list({"sort_by": "name", "sort_direction": "desc", "limit": 2})
        second = await store.list({"sort_by": "name", "sort_direction": "desc", "limit": 2, "offset": 2})

        assert [item.rule.name for item in first.items] == ["R3", "R2"]
        assert first.has_more is True
        assert [item.rule.name for item in second.items] == ["R1"]
        assert second.has_more is False

    @pytest.mark.asyncio
    async def test_list_sort_by_evaluations(self, store):
        await _seed(store)
        store.record_evaluation("R2", True, 1.0)
        store.record_evaluation("R2", True, 1.0)
        store.record_evaluation("R3", False, 1.0)

        page = await store.list({"sort_by": "evaluations", "sort_direction": "desc"})

        assert [item.rule.name for item in page.items] == ["R2", "R3", "R1"]

    @pytest.mark.asyncio
    async def test_list_rejects_unknown_sort_field(self, store):
        await _seed(store)

        with pytest.raises(ValidationError):
            await store.list({"sort_by": "color"})

    @pytest.mark.asyncio
    async def test_list_rejects_invalid_options(self, store):
        with pytest.raises(ValidationError):
            await store.list({"limit": 0})

    @pytest.mark.asyncio
    async def test_search_includes_stats(self, store):
        await _seed(store)
        store.record_evaluation("R1", True, 2.0)

        page = await store.search({"query": "R1"})

        assert page.items[0].stats.evaluations == 1
        assert page.items[0].stats.success_rate == 1.0

    @pytest.mark.asyncio
    async def test_get_stats(self, store):
        await _seed(store)
        store.record_evaluation("R1", True, 2.0)
        store.record_evaluation("R1", False, 4.0)
        store.record_evaluation("R3", True, 3.0)

        stats = await store.get_stats()

        assert stats.total_rules == 3
        assert stats.by_type == {"simple": 2, "composite": 1}
        assert stats.by_category == {"content": 1, "classification": 2}
        assert stats.enabled == 3
        assert stats.disabled == 0
        assert stats.average_evaluation_time_ms == 3.0
        assert stats.most_evaluated[0] == {"rule": "R1", "evaluations": 2}
        assert stats.recent_activity == 2

    @pytest.mark.asyncio
    async def test_rule_cache_is_bounded(self, registry, evaluators, result_cache):
        store = RuleStore(registry, get_config(rule_cache_size=2), evaluators, result_cache)

        await _seed(store)

        assert store.cached_rule_count == 2

    @pytest.mark.asyncio
    async def test_registry_reads_are_retried(self, config, evaluators, result_cache):
        registry = FlakyRegistry(failures=1)
        await registry.create(test_data_factory.create_test_rules()[0])
        store = RuleStore(registry, config, evaluators, result_cache)

        rule = await store.get("R1")

        assert rule.name == "R1"
        assert registry.fetch_calls == 2

    @pytest.mark.asyncio
    async def test_registry_errors_surface_after_retries(self, config, evaluators, result_cache):
        registry = FlakyRegistry(failures=5)
        store = RuleStore(registry, config, evaluators, result_cache)

        with pytest.raises(RegistryError):
            await store.get("R1")

        assert registry.fetch_calls == config.registry_retry_attempts

    @pytest.mark.asyncio
    async def test_reset(self, store, evaluators):
        await _seed(store)
        await store.create({"name": "big_order", "type": "custom", "evaluator": lambda ctx: True})
        store.record_evaluation("R1", True, 1.0)

        store.reset()

        assert store.cached_rule_count == 0
        assert store.get_evaluation_stats("R1").evaluations == 0
        assert "big_order" not in evaluators
