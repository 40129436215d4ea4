from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from ..core.models import Entity, EntityKind

if TYPE_CHECKING:
    from ..core.events import Event


class ChangeType(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    REMOVED = "removed"


@dataclass(frozen=True)
class ChangeNotice:
    kind: EntityKind
    id: str
    change_type: ChangeType


@dataclass(frozen=True)
class Change:
    """One authoritative write: ``entity`` is ``None`` for a removal."""

    kind: EntityKind
    id: str
    entity: Entity | None
    change_type: ChangeType

    @property
    def notice(self) -> ChangeNotice:
        return ChangeNotice(self.kind, self.id, self.change_type)


class MutationAction(str, Enum):
    JOIN = "join"
    LEAVE = "leave"
    SEND = "send"
    EDIT = "edit"
    DELETE = "delete"
    REACT = "react"
    MARK_READ = "mark_read"
    SUBSCRIBE = "subscribe"
    UNSUBSCRIBE = "unsubscribe"


# Given the current view of an entity (or None), return the provisional one.
Patch = Callable[[Entity | None], Entity | None]


def _never(event: Event) -> bool:
    return False


def _unsettled() -> bool:
    return False


@dataclass
class Mutation:
    kind: EntityKind
    entity_id: str
    action: MutationAction
    user_id: str
    patch: Patch
    detail: str | None = None  # e.g. the emoji of a reaction
    # correlation with a delta event, e.g. by the echoed temporary id
    matches: Callable[[Event], bool] = _never
    # whether the authoritative state already reflects the mutation
    settled: Callable[[], bool] = _unsettled

    @property
    def key(self) -> tuple[str, EntityKind, str, MutationAction, str | None]:
        return (self.user_id, self.kind, self.entity_id, self.action, self.detail)


@dataclass
class OptimisticRecord:
    local_id: str
    kind: EntityKind
    entity_id: str
    intended_mutation: MutationAction
    submitted_at: float
    expires_after: float
    confirmed: bool = False

    @property
    def deadline(self) -> float:
        return self.submitted_at + self.expires_after
