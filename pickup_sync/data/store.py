"""In-memory entity store shared by every projection."""

from __future__ import annotations

import logging
from collections import OrderedDict
from collections.abc import Callable, Iterable, Iterator
from typing import Any

from ..core.models import Entity, EntityKind
from .models import Change, ChangeNotice, ChangeType, Patch

log = logging.getLogger(__name__)

Listener = Callable[[ChangeNotice], None]


class EntityStore:
    """Canonical entity state, one map per entity kind.

    The store keeps two layers. The *base* layer holds the last authoritative
    snapshot of every entity and is written only through :meth:`apply`, which
    receives the output of the reducer or of a baseline merge. The optimistic
    layer holds provisional patches keyed by the mutation that created them;
    :meth:`get` folds them over the base. Dropping a patch therefore restores
    the exact authoritative view, including deltas that arrived meanwhile.

    Every visible change is announced to listeners as a
    :class:`~pickup_sync.data.models.ChangeNotice`.
    """

    def __init__(self, tombstone_capacity: int = 1000) -> None:
        self._base: dict[EntityKind, dict[str, Entity]] = {k: {} for k in EntityKind}
        self._patches: dict[tuple[EntityKind, str], dict[str, Patch]] = {}
        self._tombstones: OrderedDict[tuple[EntityKind, str], None] = OrderedDict()
        self._tombstone_capacity = tombstone_capacity
        self._written: dict[tuple[EntityKind, str], int] = {}
        self._sequence = 0
        self._listeners: list[Listener] = []

    # ------------------------------------------------------------------
    # Views (authoritative state plus optimistic patches)
    # ------------------------------------------------------------------
    def get(self, kind: EntityKind, entity_id: str) -> Entity | None:
        entity = self._base[kind].get(entity_id)
        for patch in self._patches.get((kind, entity_id), {}).values():
            entity = patch(entity)
        return entity

    def ids(self, kind: EntityKind) -> list[str]:
        seen = dict.fromkeys(self._base[kind])
        for patched_kind, entity_id in self._patches:
            if patched_kind is kind:
                seen.setdefault(entity_id)
        return list(seen)

    def values(self, kind: EntityKind) -> list[Entity]:
        views = (self.get(kind, entity_id) for entity_id in self.ids(kind))
        return [entity for entity in views if entity is not None]

    def is_optimistic(self, kind: EntityKind, entity_id: str) -> bool:
        return bool(self._patches.get((kind, entity_id)))

    def snapshot(self) -> dict[str, dict[str, dict[str, Any]]]:
        """Return every visible entity as plain JSON data, for comparisons."""
        return {
            kind.value: {entity.id: entity.dump() for entity in self.values(kind)}
            for kind in EntityKind
        }

    # ------------------------------------------------------------------
    # Authoritative lookups used by the reducer and the baseline merge
    # ------------------------------------------------------------------
    def get_base(self, kind: EntityKind, entity_id: str) -> Entity | None:
        return self._base[kind].get(entity_id)

    def base_values(self, kind: EntityKind) -> Iterator[Entity]:
        return iter(list(self._base[kind].values()))

    def is_tombstoned(self, kind: EntityKind, entity_id: str) -> bool:
        return (kind, entity_id) in self._tombstones

    @property
    def sequence(self) -> int:
        """Counter incremented by every authoritative write."""
        return self._sequence

    def written_at(self, kind: EntityKind, entity_id: str) -> int:
        return self._written.get((kind, entity_id), 0)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def apply(self, changes: Iterable[Change]) -> list[ChangeNotice]:
        """Write authoritative ``changes`` and notify listeners.

        A removal also records the id as deleted so that a late snapshot
        cannot bring it back.
        """
        notices: list[ChangeNotice] = []
        for change in changes:
            key = (change.kind, change.id)
            before = self.get(*key)
            if change.entity is None:
                self._base[change.kind].pop(change.id, None)
                if change.change_type is ChangeType.REMOVED:
                    self._remember_deleted(key)
            else:
                self._base[change.kind][change.id] = change.entity
            self._sequence += 1
            self._written[key] = self._sequence
            notice = self._diff(key, before)
            if notice is not None:
                notices.append(notice)
        self._emit(notices)
        return notices

    def add_patch(
        self, kind: EntityKind, entity_id: str, token: str, patch: Patch
    ) -> ChangeNotice | None:
        key = (kind, entity_id)
        before = self.get(*key)
        self._patches.setdefault(key, {})[token] = patch
        notice = self._diff(key, before)
        self._emit([notice] if notice else [])
        return notice

    def drop_patch(
        self, kind: EntityKind, entity_id: str, token: str
    ) -> ChangeNotice | None:
        key = (kind, entity_id)
        patches = self._patches.get(key)
        if not patches or token not in patches:
            return None
        before = self.get(*key)
        del patches[token]
        if not patches:
            del self._patches[key]
        notice = self._diff(key, before)
        self._emit([notice] if notice else [])
        return notice

    def touch(self, keys: Iterable[tuple[EntityKind, str]]) -> None:
        """Mark entities as confirmed by a snapshot without changing them."""
        for key in keys:
            self._sequence += 1
            self._written[key] = self._sequence

    def evict(self, kind: EntityKind, entity_ids: Iterable[str]) -> list[ChangeNotice]:
        """Forget entities no view needs any more.

        Unlike a removal this is not a deletion: a later snapshot may bring
        the entity back. Entities with pending optimistic patches are kept.
        """
        notices: list[ChangeNotice] = []
        for entity_id in entity_ids:
            if self.is_optimistic(kind, entity_id):
                continue
            if self._base[kind].pop(entity_id, None) is not None:
                self._written.pop((kind, entity_id), None)
                notices.append(ChangeNotice(kind, entity_id, ChangeType.REMOVED))
        if notices:
            log.debug("evicted %d %s entities", len(notices), kind.value)
        self._emit(notices)
        return notices

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------
    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _diff(
        self, key: tuple[EntityKind, str], before: Entity | None
    ) -> ChangeNotice | None:
        after = self.get(*key)
        if before is None and after is None:
            return None
        if before is None:
            return ChangeNotice(key[0], key[1], ChangeType.CREATED)
        if after is None:
            return ChangeNotice(key[0], key[1], ChangeType.REMOVED)
        if before == after:
            return None
        return ChangeNotice(key[0], key[1], ChangeType.UPDATED)

    def _remember_deleted(self, key: tuple[EntityKind, str]) -> None:
        self._tombstones[key] = None
        self._tombstones.move_to_end(key)
        while len(self._tombstones) > self._tombstone_capacity:
            self._tombstones.popitem(last=False)

    def _emit(self, notices: list[ChangeNotice]) -> None:
        for notice in notices:
            for listener in list(self._listeners):
                try:
                    listener(notice)
                except Exception:
                    log.exception(
                        "change listener failed for %s %s",
                        notice.kind.value,
                        notice.id,
                    )
