"""
Unit tests for shared configuration, errors, retry, logging and metrics.
"""

import os
from unittest.mock import patch, AsyncMock

import pytest
from prometheus_client import CollectorRegistry
from pydantic import ValidationError as PydanticValidationError

from shared.config import get_config
from shared.errors import RuleGateException, ValidationError, NotFoundError, ExternalServiceError
from shared.logging import (
    set_request_id, set_tenant_context, clear_context, rule_context,
    add_component_context, add_correlation_context,
    request_id_var, tenant_id_var, rule_name_var,
)
from shared.metrics import MetricsCollector
from shared.retry import RetryConfig, RetryError, retry_on_exception, _calculate_delay


class TestConfig:
    """Test cases for service configuration."""

    def test_defaults(self):
        config = get_config()

        assert config.service_name == "rules"
        assert config.cache_eviction == "fifo"
        assert config.disabled_rules_pass is True
        assert config.evaluation_timeout_seconds == 30.0

    def test_environment_overrides(self):
        with patch.dict(os.environ, {"RULES_STRICT_MODE": "true", "RULES_CACHE_EVICTION": "lru"}):
            config = get_config()

        assert config.strict_mode is True
        assert config.cache_eviction == "lru"

    def test_invalid_values_rejected(self):
        with pytest.raises(PydanticValidationError):
            get_config(evaluation_timeout_seconds=0)
        with pytest.raises(PydanticValidationError):
            get_config(cache_eviction="random")


class TestErrors:
    """Test cases for error types."""

    def test_to_response(self):
        error = ValidationError("Bad rule", details={"field": "name"})

        response = error.to_response()

        assert response.code == "VALIDATION_ERROR"
        assert response.message == "Bad rule"
        assert response.details == {"field": "name"}
        assert response.trace_id is None

    def test_hierarchy(self):
        assert isinstance(NotFoundError(), RuleGateException)
        error = ExternalServiceError("rule_registry", "timeout")
        assert error.code == "EXTERNAL_SERVICE_ERROR"
        assert error.message == "rule_registry: timeout"


class TestRetry:
    """Test cases for retry_on_exception."""

    @pytest.mark.asyncio
    async def test_retries_until_success(self):
        calls = AsyncMock(side_effect=[ConnectionError("reset"), "ok"])

        async def fetch():
            return await calls()

        wrapped = retry_on_exception((ConnectionError,), RetryConfig(max_attempts=3, base_delay=0))(fetch)

        assert await wrapped() == "ok"
        assert calls.call_count == 2

    @pytest.mark.asyncio
    async def test_exhausted_attempts_raise_retry_error(self):
        async def fetch():
            raise ConnectionError("reset")

        wrapped = retry_on_exception((ConnectionError,), RetryConfig(max_attempts=2, base_delay=0))(fetch)

        with pytest.raises(RetryError) as exc_info:
            await wrapped()
        assert exc_info.value.attempts == 2
        assert isinstance(exc_info.value.last_exception, ConnectionError)

    @pytest.mark.asyncio
    async def test_reraise_keeps_original_exception(self):
        async def fetch():
            raise ConnectionError("reset")

        wrapped = retry_on_exception((ConnectionError,), RetryConfig(max_attempts=2, base_delay=0),
                                     reraise=True)(fetch)

        with pytest.raises(ConnectionError):
            await wrapped()

    @pytest.mark.asyncio
    async def test_other_exceptions_are_not_retried(self):
        calls = AsyncMock(side_effect=KeyError("x"))

        async def fetch():
            return await calls()

        wrapped = retry_on_exception((ConnectionError,), RetryConfig(max_attempts=3, base_delay=0))(fetch)

        with pytest.raises(KeyError):
            await wrapped()
        assert calls.call_count == 1

    def test_delay_strategies(self):
        exponential = RetryConfig(base_delay=1.0, jitter=False)
        linear = RetryConfig(base_delay=1.0, jitter=False, backoff_strategy="linear")
        capped = RetryConfig(base_delay=1.0, max_delay=3.0, jitter=False)

        assert _calculate_delay(3, exponential) == 4.0
        assert _calculate_delay(3, linear) == 3.0
        assert _calculate_delay(5, capped) == 3.0


class TestLoggingContext:
    """Test cases for correlation context."""

    def test_request_and_tenant_context(self):
        request_id = set_request_id()
        set_tenant_context("tenant-1")

        assert request_id.startswith("req_")
        assert request_id_var.get() == request_id
        assert tenant_id_var.get() == "tenant-1"

        clear_context()
        assert request_id_var.get() is None
        assert tenant_id_var.get() is None

    def test_rule_context_is_scoped(self):
        with rule_context("R3"):
            assert rule_name_var.get() == "R3"
            with rule_context("R1"):
                assert rule_name_var.get() == "R1"
            assert rule_name_var.get() == "R3"

        assert rule_name_var.get() is None

    def test_correlation_processor(self):
        set_request_id("req_abc")
        with rule_context("R3"):
            event = add_correlation_context(None, "info", {"event": "Evaluating rule"})
            explicit = add_correlation_context(None, "info", {"event": "x", "rule": "R1"})
        clear_context()

        assert event["request_id"] == "req_abc"
        assert event["rule"] == "R3"
        assert explicit["rule"] == "R1"

    def test_component_processor(self):
        event = add_component_context(None, "info", {"logger": "rules.store"})

        assert event["service"] == "rules"
        assert event["component"] == "store"


class TestMetricsCollector:
    """Test cases for MetricsCollector."""

    def test_rule_evaluation_metrics(self):
        registry = CollectorRegistry()
        metrics = MetricsCollector("rules", registry=registry)

        metrics.record_rule_evaluation("simple", True, 0.01)
        metrics.record_rule_evaluation("simple", False, 0.02)
        metrics.record_error("RULE_EVALUATION_TIMEOUT")

        assert registry.get_sample_value("rule_evaluations_total",
                                         {"rule_type": "simple", "outcome": "passed"}) == 1.0
        assert registry.get_sample_value("rule_evaluation_duration_seconds_count",
                                         {"rule_type": "simple"}) == 2.0
        assert registry.get_sample_value("errors_total",
                                         {"error_type": "RULE_EVALUATION_TIMEOUT", "service": "rules"}) == 1.0

    def test_unknown_metric_is_ignored(self):
        metrics = MetricsCollector("rules", registry=CollectorRegistry())

        metrics.increment_counter("no_such_metric", label="x")

        assert metrics.get_metric("no_such_metric") is None

    def test_collectors_do_not_collide_without_registry(self):
        first = MetricsCollector("rules")
        second = MetricsCollector("rules")

        first.set_gauge("cached_results", 3)
        second.set_gauge("cached_results", 5)

        assert first.get_metric("cached_results") is not second.get_metric("cached_results")
