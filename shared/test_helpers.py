"""
Test helper functions and factory methods for the RuleGate rule evaluation layer.

Factories return plain payload dicts in the rule registry shape so the
shared package stays independent of the service packages.
"""

import uuid
from typing import Dict, Any, Optional, List
from datetime import datetime, timezone


class TestDataFactory:
    """Factory for creating test data."""

    __test__ = False

    @staticmethod
    def create_rule_payload(name: Optional[str] = None, rule_type: str = "simple",
                            condition: Any = None, **overrides) -> Dict[str, Any]:
        """Create a rule payload."""
        payload = {
            "name": name or f"rule_{uuid.uuid4().hex[:8]}",
            "type": rule_type,
            "condition": condition,
            "priority": 10,
            "enabled": True,
            "metadata": {},
        }
        payload.update(overrides)
        return payload

    @staticmethod
    def create_test_rules() -> List[Dict[str, Any]]:
        """Create the content review rules used across the test suite."""
        return [
            {
                "name": "R1",
                "type": "simple",
                "description": "Resource has content",
                "category": "content",
                "condition": {"type": "FieldExists", "field": "data.content"},
                "priority": 100,
                "enabled": True,
            },
            {
                "name": "R2",
                "type": "simple",
                "description": "Resource is unclassified",
                "category": "classification",
                "condition": {"type": "FieldEquals", "field": "metadata.status", "value": "unclassified"},
                "priority": 50,
                "enabled": True,
            },
            {
                "name": "R3",
                "type": "composite",
                "description": "Ready for classification",
                "category": "classification",
                "operator": "AND",
                "rules": [
                    {
                        "name": "R1",
                        "type": "simple",
                        "condition": {"type": "FieldExists", "field": "data.content"},
                    },
                    {
                        "name": "R2",
                        "type": "simple",
                        "condition": {"type": "FieldEquals", "field": "metadata.status", "value": "unclassified"},
                    },
                ],
                "priority": 10,
                "enabled": True,
            },
        ]

    @staticmethod
    def create_context_payload(data: Optional[Dict[str, Any]] = None,
                               metadata: Optional[Dict[str, Any]] = None,
                               state: str = "draft",
                               resource_id: str = "doc-1",
                               timestamp: Optional[datetime] = None) -> Dict[str, Any]:
        """Create an evaluation context payload."""
        return {
            "resource": {"id": resource_id, "state": state, "data": data or {}},
            "workflow": {"id": "wf-review", "name": "Document review"},
            "activity": {"id": "act-classify", "name": "Classify"},
            "metadata": metadata or {},
            "timestamp": (timestamp or datetime(2024, 1, 1, 12, 0, 30, tzinfo=timezone.utc)).isoformat(),
        }

    @staticmethod
    def create_test_contexts() -> Dict[str, Dict[str, Any]]:
        """Create named contexts: A satisfies R3, B fails it at R2."""
        return {
            "A": TestDataFactory.create_context_payload(
                data={"content": "x"},
                metadata={"status": "unclassified"},
            ),
            "B": TestDataFactory.create_context_payload(
                data={"content": "x"},
                metadata={"status": "done"},
            ),
        }


class TestEnvironment:
    """Test environment configuration."""

    __test__ = False

    @staticmethod
    def get_mock_config() -> Dict[str, Any]:
        """Get mock environment configuration."""
        return {
            "RULES_ENV": "test",
            "RULES_LOG_LEVEL": "debug",
            "RULES_CACHE_TTL_SECONDS": "60",
            "RULES_CACHE_SIZE": "100",
            "RULES_EVALUATION_TIMEOUT_SECONDS": "0.5",
            "RULES_STRICT_MODE": "false",
            "RULES_REGISTRY_RETRY_ATTEMPTS": "2",
            "RULES_REGISTRY_RETRY_BASE_DELAY": "0",
        }


# Global instances for easy access
test_data_factory = TestDataFactory()
test_environment = TestEnvironment()
