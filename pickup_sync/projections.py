"""Live, filtered and sorted views over the entity store.

A :class:`Projection` holds ids only. Its ordered index of ``(sort_key, id)``
pairs is maintained incrementally: each change notice re-evaluates the one
affected entity and moves it with :mod:`bisect`, so the cost of a delta does
not depend on the size of the store. Payloads are always read from the
shared :class:`~pickup_sync.data.store.EntityStore`.
"""

from __future__ import annotations

import datetime as dt
import itertools
import logging
from bisect import bisect_left, insort
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from .core.models import ChatMessage, Entity, EntityKind, Game, Notification, utc_now
from .data.models import ChangeNotice
from .data.store import EntityStore

if TYPE_CHECKING:
    from .adapters.base import SportsApi

log = logging.getLogger(__name__)

Fetch = Callable[["SportsApi"], Awaitable[list[Entity]]]
ProjectionListener = Callable[["Projection"], None]

_counter = itertools.count(1)


@dataclass(frozen=True)
class ProjectionSpec:
    """Declaration of a view.

    Attributes
    ----------
    name:
        Human readable name, used in logs.
    kind:
        The entity kind the view lists.
    predicate:
        Membership test for one entity of ``kind``.
    sort_key:
        Ordering key; ties are broken by entity id.
    limit:
        Optional cap on :attr:`Projection.items`.
    fetch:
        Baseline fetch returning the entities of the scope. It may return
        entities of other kinds too, e.g. the series of its games.
    topic:
        Channel topic to join while the view is active.
    upcoming_only:
        Hide games that ended before the reference time of the last baseline.
    complete:
        Whether ``fetch`` returns the whole scope, which allows entities
        missing from a fresh snapshot to be pruned.

    """

    name: str
    kind: EntityKind
    predicate: Callable[[Entity], bool]
    sort_key: Callable[[Entity], Any]
    limit: int | None = None
    fetch: Fetch | None = None
    topic: str | None = None
    upcoming_only: bool = False
    complete: bool = True


class Projection:
    """One active view; see :class:`ProjectionSpec`."""

    def __init__(
        self,
        spec: ProjectionSpec,
        store: EntityStore,
        clock: Callable[[], dt.datetime] = utc_now,
    ) -> None:
        self.spec = spec
        self.store = store
        self.consumer = f"{spec.name}#{next(_counter)}"
        self.reference_time = clock()
        self.loading = False
        self.error: Exception | None = None
        self.generation = 0
        self.active = True
        self._clock = clock
        self._index: list[tuple[Any, str]] = []
        self._keys: dict[str, Any] = {}
        self._listeners: list[ProjectionListener] = []
        self._reload: Callable[[Projection], Awaitable[None]] | None = None

    def __repr__(self) -> str:
        return f"<Projection {self.consumer} items={len(self._index)}>"

    # ------------------------------------------------------------------
    @property
    def kind(self) -> EntityKind:
        return self.spec.kind

    @property
    def ids(self) -> list[str]:
        entries = self._index if self.spec.limit is None else self._index[: self.spec.limit]
        return [entity_id for _, entity_id in entries]

    @property
    def items(self) -> list[Entity]:
        views = (self.store.get(self.kind, entity_id) for entity_id in self.ids)
        return [entity for entity in views if entity is not None]

    def holds(self, entity_id: str) -> bool:
        """Whether ``entity_id`` matches the view, inside the limit or not."""
        return entity_id in self._keys

    def matched_ids(self) -> set[str]:
        return set(self._keys)

    def matches(self, entity: Entity) -> bool:
        if entity.kind is not self.kind:
            return False
        if self.spec.upcoming_only and isinstance(entity, Game):
            if entity.ends_at < self.reference_time:
                return False
        return bool(self.spec.predicate(entity))

    # ------------------------------------------------------------------
    def apply_notice(self, notice: ChangeNotice) -> bool:
        """Re-evaluate the entity named by ``notice``; return whether the view changed."""
        if notice.kind is not self.kind:
            return False
        changed = self._place(notice.id)
        if changed:
            self._emit()
        return changed

    def rebuild(self, reference_time: dt.datetime | None = None) -> None:
        """Recompute the whole index from the store."""
        if reference_time is not None:
            self.reference_time = reference_time
        self._index = []
        self._keys = {}
        for entity in self.store.values(self.kind):
            if self.matches(entity):
                key = self.spec.sort_key(entity)
                self._keys[entity.id] = key
                self._index.append((key, entity.id))
        self._index.sort()
        self._emit()

    def _place(self, entity_id: str) -> bool:
        had = entity_id in self._keys
        if had:
            entry = (self._keys.pop(entity_id), entity_id)
            position = bisect_left(self._index, entry)
            del self._index[position]
        entity = self.store.get(self.kind, entity_id)
        if entity is None or not self.matches(entity):
            return had
        key = self.spec.sort_key(entity)
        self._keys[entity_id] = key
        insort(self._index, (key, entity_id))
        return True

    # ------------------------------------------------------------------
    def on_change(self, listener: ProjectionListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def bind(self, reload: Callable[[Projection], Awaitable[None]]) -> None:
        self._reload = reload

    async def refresh(self) -> None:
        """Reload the baseline of this view."""
        if self._reload is None:
            raise RuntimeError(f"{self.consumer} is not attached to a client")
        await self._reload(self)

    def now(self) -> dt.datetime:
        return self._clock()

    def _emit(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception:
                log.exception("projection listener failed for %s", self.consumer)


class ProjectionRegistry:
    """The single store listener, routing notices to active projections."""

    def __init__(
        self, store: EntityStore, clock: Callable[[], dt.datetime] = utc_now
    ) -> None:
        self.store = store
        self._clock = clock
        self._by_kind: dict[EntityKind, list[Projection]] = {k: [] for k in EntityKind}
        self._unsubscribe = store.subscribe(self._on_notice)

    def register(self, spec: ProjectionSpec) -> Projection:
        projection = Projection(spec, self.store, self._clock)
        projection.rebuild()
        self._by_kind[spec.kind].append(projection)
        log.debug("registered projection %s", projection.consumer)
        return projection

    def unregister(self, projection: Projection) -> set[str]:
        """Deactivate ``projection``.

        Returns the ids it matched that no other active projection of the
        same kind still matches.
        """
        projection.active = False
        members = self._by_kind[projection.kind]
        if projection in members:
            members.remove(projection)
        orphaned = projection.matched_ids()
        for other in members:
            orphaned = {i for i in orphaned if not other.holds(i)}
        log.debug(
            "unregistered projection %s (%d orphaned)", projection.consumer, len(orphaned)
        )
        return orphaned

    def active(self, kind: EntityKind | None = None) -> list[Projection]:
        if kind is not None:
            return list(self._by_kind[kind])
        return [p for projections in self._by_kind.values() for p in projections]

    def close(self) -> None:
        self._unsubscribe()
        for projections in self._by_kind.values():
            for projection in projections:
                projection.active = False
            projections.clear()

    def _on_notice(self, notice: ChangeNotice) -> None:
        for projection in list(self._by_kind[notice.kind]):
            projection.apply_notice(notice)


# ----------------------------------------------------------------------
# Projection factories
# ----------------------------------------------------------------------
def _game_order(entity: Any) -> tuple[str, str]:
    return (entity.date, entity.time)


def _newest_first(entity: Any) -> float:
    return -entity.created_at.timestamp()


def _is_game(entity: Entity) -> bool:
    return isinstance(entity, Game)


def games_on_date(date: str, field_id: str | None = None) -> ProjectionSpec:
    def predicate(entity: Entity) -> bool:
        return (
            _is_game(entity)
            and entity.date == date
            and (field_id is None or entity.field_id == field_id)
        )

    async def fetch(api: SportsApi) -> list[Entity]:
        return list(await api.search_games(date=date, field_id=field_id))

    name = f"games:{date}" if field_id is None else f"games:{date}:{field_id}"
    return ProjectionSpec(
        name, EntityKind.GAME, predicate, _game_order, fetch=fetch, upcoming_only=True
    )


def games_in_city(city: str) -> ProjectionSpec:
    wanted = city.casefold()

    def predicate(entity: Entity) -> bool:
        return _is_game(entity) and (entity.city or "").casefold() == wanted

    async def fetch(api: SportsApi) -> list[Entity]:
        return list(await api.search_games(city=city))

    return ProjectionSpec(
        f"games-in:{city}",
        EntityKind.GAME,
        predicate,
        _game_order,
        fetch=fetch,
        upcoming_only=True,
    )


def games_with_friends(friend_ids: Iterable[str]) -> ProjectionSpec:
    friends = frozenset(friend_ids)

    def predicate(entity: Entity) -> bool:
        if not _is_game(entity):
            return False
        if entity.organizer_id in friends:
            return True
        return any(p.id in friends for p in entity.participants)

    async def fetch(api: SportsApi) -> list[Entity]:
        return list(await api.friends_games())

    # the server decides who counts as a friend, so its list is not our scope
    return ProjectionSpec(
        "friends-games",
        EntityKind.GAME,
        predicate,
        _game_order,
        fetch=fetch,
        upcoming_only=True,
        complete=False,
    )


def my_games(user_id: str) -> ProjectionSpec:
    def predicate(entity: Entity) -> bool:
        return _is_game(entity) and entity.membership(user_id) is not None

    async def fetch(api: SportsApi) -> list[Entity]:
        return list(await api.my_games())

    return ProjectionSpec(
        f"my-games:{user_id}",
        EntityKind.GAME,
        predicate,
        _game_order,
        fetch=fetch,
        upcoming_only=True,
    )


def series_games(series_id: str) -> ProjectionSpec:
    def predicate(entity: Entity) -> bool:
        return _is_game(entity) and entity.series_id == series_id

    async def fetch(api: SportsApi) -> list[Entity]:
        series, games = await api.get_series(series_id)
        return [series, *games]

    return ProjectionSpec(
        f"series:{series_id}",
        EntityKind.GAME,
        predicate,
        _game_order,
        fetch=fetch,
        upcoming_only=True,
    )


def messages_in_room(room_id: str, limit: int = 100) -> ProjectionSpec:
    """Newest ``limit`` messages of a room, newest first."""

    def predicate(entity: Entity) -> bool:
        return isinstance(entity, ChatMessage) and entity.room_id == room_id

    async def fetch(api: SportsApi) -> list[Entity]:
        return list(await api.list_messages(room_id, limit))

    # one page of history only, older messages are legitimately missing
    return ProjectionSpec(
        f"room:{room_id}",
        EntityKind.MESSAGE,
        predicate,
        _newest_first,
        limit=limit,
        fetch=fetch,
        topic=room_id,
        complete=False,
    )


def notifications_feed(limit: int | None = None) -> ProjectionSpec:
    async def fetch(api: SportsApi) -> list[Entity]:
        return list(await api.list_notifications())

    return ProjectionSpec(
        "notifications",
        EntityKind.NOTIFICATION,
        lambda entity: isinstance(entity, Notification),
        _newest_first,
        limit=limit,
        fetch=fetch,
        complete=False,
    )
