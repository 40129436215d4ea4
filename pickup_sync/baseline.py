"""Seeding and repairing the store from REST snapshots."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import TYPE_CHECKING

from .core.models import ChatMessage, Entity
from .data.models import Change, ChangeType
from .data.store import EntityStore
from .errors import BaselineFetchError, SyncError
from .reducer import EntityLookup, preserve_monotonic

if TYPE_CHECKING:
    from .adapters.base import SportsApi
    from .projections import Projection

log = logging.getLogger(__name__)


def merge_snapshot(lookup: EntityLookup, entities: Iterable[Entity]) -> list[Change]:
    """Compute the writes that fold a snapshot into the store.

    A snapshot is a floor, not an override: it replaces an entity only when
    the entity is absent or strictly older. Ids deleted meanwhile stay
    deleted; messages come back as tombstones so they keep their position.
    """
    changes: list[Change] = []
    for entity in entities:
        if lookup.is_tombstoned(entity.kind, entity.id):
            if not isinstance(entity, ChatMessage):
                continue
            entity = entity.tombstone()
        stored = lookup.get_base(entity.kind, entity.id)
        if stored is None:
            changes.append(Change(entity.kind, entity.id, entity, ChangeType.CREATED))
            continue
        if entity.version <= stored.version:
            continue
        merged = preserve_monotonic(stored, entity)
        if merged != stored:
            changes.append(Change(entity.kind, entity.id, merged, ChangeType.UPDATED))
    return changes


class BaselineLoader:
    """Fetch the snapshot of a projection's scope and merge it."""

    def __init__(
        self,
        store: EntityStore,
        api: SportsApi,
    ) -> None:
        self.store = store
        self.api = api

    async def load(self, projection: Projection, *, prune: bool = False) -> bool:
        """Load the baseline of ``projection``.

        Parameters
        ----------
        projection:
            The view to hydrate.
        prune:
            Repair mode used after a reconnect or an explicit refresh. For
            views whose fetch returns the whole scope, entities the view held
            that the fresh snapshot no longer has are dropped, unless they
            were written or seen in another snapshot after the request was
            issued.

        Returns
        -------
        bool
            ``False`` when the response was discarded because the projection
            was deactivated or a newer load superseded it.

        Raises
        ------
        BaselineFetchError
            If the fetch failed; the store is left untouched.

        """
        spec = projection.spec
        if spec.fetch is None:
            projection.rebuild(projection.now())
            return True

        projection.generation += 1
        generation = projection.generation
        issued = self.store.sequence
        held = projection.matched_ids()
        projection.loading = True
        projection.error = None
        log.debug("loading baseline for %s (generation %d)", projection.consumer, generation)

        try:
            entities = await spec.fetch(self.api)
        except (SyncError, ValueError) as exc:
            if generation == projection.generation:
                projection.error = exc
            raise BaselineFetchError(f"{spec.name}: {exc}") from exc
        finally:
            if generation == projection.generation:
                projection.loading = False

        if not projection.active or generation != projection.generation:
            log.debug("discarding stale baseline for %s", projection.consumer)
            return False

        changes = merge_snapshot(self.store, entities)
        projection.rebuild(projection.now())
        self.store.apply(changes)
        self.store.touch((e.kind, e.id) for e in entities)

        if prune and spec.complete:
            fresh = {e.id for e in entities if e.kind is spec.kind}
            missing = [
                entity_id
                for entity_id in held - fresh
                if self.store.written_at(spec.kind, entity_id) <= issued
            ]
            if missing:
                log.info(
                    "pruning %d %s entities missing from %s",
                    len(missing),
                    spec.kind.value,
                    spec.name,
                )
                self.store.evict(spec.kind, missing)
        return True

