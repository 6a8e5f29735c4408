"""
Shared fixtures for Rules service tests.
"""

import pytest

from shared.config import get_config
from shared.test_helpers import test_data_factory
from service_rules.app.persistence.memory import InMemoryRuleRegistry
from service_rules.app.rules.engine import RulesEngine
from service_rules.app.rules.models import RuleContext


@pytest.fixture
def config():
    """Engine configuration with short timeouts and no retry delay."""
    return get_config(
        evaluation_timeout_seconds=0.2,
        registry_retry_base_delay=0,
        registry_retry_attempts=2,
    )


@pytest.fixture
def registry():
    """Create in-memory rule registry."""
    return InMemoryRuleRegistry()


@pytest.fixture
def engine(registry, config):
    """Create RulesEngine instance."""
    rules_engine = RulesEngine(registry=registry, config=config)
    yield rules_engine
    rules_engine.dispose()


@pytest.fixture
def context_a():
    """Context satisfying R3."""
    return RuleContext.from_dict(test_data_factory.create_test_contexts()["A"])


@pytest.fixture
def context_b():
    """Context failing R3 at R2."""
    return RuleContext.from_dict(test_data_factory.create_test_contexts()["B"])
