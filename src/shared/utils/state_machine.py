"""Explicit transition tables for status fields.

Status columns are plain strings in the database; these tables are the only
place that decides which moves are legal. Services call ``ensure_transition``
before assigning a new status.
"""

from collections.abc import Mapping
from enum import StrEnum

from src.core.exceptions import InvalidTransitionError


class StateMachine:
    """Allowed transitions for one entity's status field."""

    def __init__(self, entity: str, transitions: Mapping[StrEnum, set[StrEnum]]):
        self.entity = entity
        self._transitions = {
            str(source): {str(t) for t in targets} for source, targets in transitions.items()
        }

    def can_transition(self, current: str, target: str) -> bool:
        return str(target) in self._transitions.get(str(current), set())

    def allowed_from(self, current: str) -> set[str]:
        return set(self._transitions.get(str(current), set()))

    def ensure_transition(self, current: str, target: str) -> None:
        """Raise InvalidTransitionError unless current -> target is in the table."""
        if not self.can_transition(current, target):
            raise InvalidTransitionError(self.entity, str(current), str(target))
