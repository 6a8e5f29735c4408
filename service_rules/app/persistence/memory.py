"""
In-memory rule registry.
"""

import copy
import uuid
from datetime import datetime, timezone
from typing import Dict, Any, Optional, List

from shared.logging import get_logger
from ..rules.errors import RuleNotFoundError, RuleValidationError
from ..rules.models import Rule
from .base import RuleRegistry


class InMemoryRuleRegistry(RuleRegistry):
    """Registry that keeps rule payloads in a dict.

    Payloads are copied on the way in and out, so callers never share
    mutable state with the registry.
    """

    def __init__(self):
        self.logger = get_logger("rules.registry.memory")
        self._rules: Dict[str, Dict[str, Any]] = {}

    async def fetch(self, name: str) -> Optional[Rule]:
        payload = self._rules.get(name)
        if payload is None:
            return None
        return Rule.from_dict(copy.deepcopy(payload))

    async def create(self, payload: Dict[str, Any]) -> Rule:
        name = payload.get("name")
        if not name:
            raise RuleValidationError("Rule name is required")
        if name in self._rules:
            raise RuleValidationError(f"Rule '{name}' already exists", rule_name=name)

        now = datetime.now(timezone.utc).isoformat()
        stored = copy.deepcopy(payload)
        stored["id"] = stored.get("id") or str(uuid.uuid4())
        stored["createdAt"] = now
        stored["updatedAt"] = now
        self._rules[name] = stored

        self.logger.debug("Rule stored", name=name, rule_id=stored["id"])
        return Rule.from_dict(copy.deepcopy(stored))

    async def update(self, name: str, payload: Dict[str, Any]) -> Rule:
        current = self._rules.get(name)
        if current is None:
            raise RuleNotFoundError(name)

        new_name = payload.get("name") or name
        if new_name != name and new_name in self._rules:
            raise RuleValidationError(f"Rule '{new_name}' already exists", rule_name=new_name)

        stored = copy.deepcopy(current)
        for key, value in payload.items():
            if key in ("id", "createdAt", "created_at"):
                continue
            stored[key] = copy.deepcopy(value)
        stored["name"] = new_name
        stored["updatedAt"] = datetime.now(timezone.utc).isoformat()

        del self._rules[name]
        self._rules[new_name] = stored
        return Rule.from_dict(copy.deepcopy(stored))

    async def delete(self, name: str, force: bool = False) -> bool:
        if name not in self._rules:
            return False
        del self._rules[name]
        self.logger.debug("Rule removed", name=name, force=force)
        return True

    async def list_dependents(self, name: str) -> List[str]:
        dependents = []
        for rule_name, payload in self._rules.items():
            if rule_name == name:
                continue
            if Rule.from_dict(payload).references(name):
                dependents.append(rule_name)
        return sorted(dependents)

    async def list_all(self) -> List[Rule]:
        return [Rule.from_dict(copy.deepcopy(payload)) for payload in self._rules.values()]
