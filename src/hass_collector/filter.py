"""Declarative entity filters and the default filter policy."""

from enum import Enum
from typing import List, Optional, Pattern, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, TypeAdapter

from .models import StateChangedEvent


def split_entity_id(entity_id: str) -> Optional[Tuple[str, str]]:
    """Split ``<kind>.<name>`` on the first dot; None when there is no dot."""
    kind, sep, name = entity_id.partition(".")
    if not sep:
        return None
    return kind, name


class IndividualEntityFilter(BaseModel):
    """
    A single filter rule.

    Matches when the entity kind equals ``kind`` and, if ``name`` is set, the regular
    expression finds a match anywhere in the name portion of the entity id.
    """
    model_config = ConfigDict(frozen=True)

    kind: str
    name: Optional[Pattern] = None

    def matches(self, entity_id: str) -> bool:
        parts = split_entity_id(entity_id)
        if parts is None:
            return False

        kind, name = parts
        if kind != self.kind:
            return False

        if self.name is not None:
            return self.name.search(name) is not None

        return True


_RULES_ADAPTER = TypeAdapter(List[IndividualEntityFilter])


class EntityFilter:
    """Ordered rule set; matches an event when any rule matches."""

    def __init__(self, rules: Sequence[IndividualEntityFilter] = ()):
        self._rules = tuple(rules)

    @classmethod
    def from_json(cls, raw: str) -> "EntityFilter":
        """
        Build a rule set from its JSON configuration form.

        Raises:
            pydantic.ValidationError: On malformed JSON, a missing ``kind`` or a bad pattern
        """
        return cls(_RULES_ADAPTER.validate_json(raw))

    @property
    def rules(self) -> Tuple[IndividualEntityFilter, ...]:
        return self._rules

    def matches(self, entity_id: str) -> bool:
        return any(rule.matches(entity_id) for rule in self._rules)

    def matches_event(self, event: StateChangedEvent) -> bool:
        return self.matches(event.entity_id)

    def __len__(self) -> int:
        return len(self._rules)

    def __repr__(self) -> str:
        return f"EntityFilter({list(self._rules)!r})"


class DefaultFilter(str, Enum):
    """
    Disposition for events the rule set does not mention.

    With ``deny`` the rule set is an allow-list; with ``allow`` it is a deny-list.
    """
    ALLOW = "allow"
    DENY = "deny"

    def admits(self, matched: bool) -> bool:
        if self is DefaultFilter.DENY:
            return matched
        return not matched

    def __str__(self) -> str:
        return self.value
