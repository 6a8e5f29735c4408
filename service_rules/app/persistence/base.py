"""
Rule registry interface.

The rules service does not own rule storage. Definitions are fetched from and
persisted to a registry collaborator through this interface; payloads use
the shape produced by :meth:`Rule.to_dict`.
"""

from abc import ABC, abstractmethod
from typing import Dict, Any, Optional, List

from ..rules.models import Rule


class RuleRegistry(ABC):
    """Port for rule definition storage."""

    @abstractmethod
    async def fetch(self, name: str) -> Optional[Rule]:
        """
        Fetch a rule by name.

        Returns:
            The rule, or None when no rule has that name
        """

    @abstractmethod
    async def create(self, payload: Dict[str, Any]) -> Rule:
        """
        Persist a new rule.

        Args:
            payload: Full rule payload

        Returns:
            The stored rule with its id and timestamps assigned
        """

    @abstractmethod
    async def update(self, name: str, payload: Dict[str, Any]) -> Rule:
        """
        Apply a partial update to an existing rule.

        Args:
            name: Current rule name
            payload: Fields to change; a ``name`` key renames the rule

        Returns:
            The updated rule
        """

    @abstractmethod
    async def delete(self, name: str, force: bool = False) -> bool:
        """Delete a rule. Returns False if it did not exist."""

    @abstractmethod
    async def list_dependents(self, name: str) -> List[str]:
        """Names of composite rules that embed a rule with this name."""

    @abstractmethod
    async def list_all(self) -> List[Rule]:
        """All stored rules."""
