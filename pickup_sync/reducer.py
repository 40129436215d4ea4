"""Reducer applying delta events to the entity store."""

from __future__ import annotations

import datetime as dt
import logging
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Protocol

from pydantic import ValidationError

from .core.events import (
    EntityCreated,
    EntityUpdated,
    Event,
    GameJoined,
    GameLeft,
    MessageEdited,
    MessageNew,
    MessageReacted,
    MessageStatusChanged,
    NotificationRead,
)
from .core.models import (
    ChatMessage,
    Entity,
    EntityKind,
    Game,
    Notification,
    Participant,
    Series,
)
from .data.models import Change, ChangeNotice, ChangeType

log = logging.getLogger(__name__)


class EntityLookup(Protocol):
    """Read-only view of the authoritative store state."""

    def get_base(self, kind: EntityKind, entity_id: str) -> Entity | None: ...

    def base_values(self, kind: EntityKind) -> Iterator[Entity]: ...

    def is_tombstoned(self, kind: EntityKind, entity_id: str) -> bool: ...


@dataclass(frozen=True)
class ReduceResult:
    changes: tuple[Change, ...] = ()

    @property
    def notices(self) -> list[ChangeNotice]:
        return [change.notice for change in self.changes]


NOTHING = ReduceResult()


def reduce_event(
    lookup: EntityLookup, event: Event, *, now: dt.datetime
) -> ReduceResult:
    """Compute the store writes for one delta event.

    The function is pure: it reads the pre-event state through ``lookup`` and
    returns the writes, it never mutates anything itself. Events whose version
    is not newer than the stored entity are discarded. Deletes always apply.
    Ephemeral events (typing, presence) produce no writes.

    ``now`` is the reference time for rules that depend on it: deleting a
    series removes only those of its games that have not ended yet.
    """
    event_type = event.type
    if event_type == "entity.created":
        return _apply_created(lookup, event)
    if event_type == "entity.updated":
        return _apply_updated(lookup, event)
    if event_type == "entity.deleted":
        return _apply_deleted(lookup, event.kind, event.ids, now)
    if event_type in ("game.joined", "game.left"):
        return _apply_membership(lookup, event)
    if event_type == "message.new":
        return _apply_message_new(lookup, event)
    if event_type == "message.edited":
        return _apply_message_edited(lookup, event)
    if event_type == "message.deleted":
        return _apply_deleted(lookup, EntityKind.MESSAGE, (event.id,), now)
    if event_type == "message.reacted":
        return _apply_message_reacted(lookup, event)
    if event_type == "message.status":
        return _apply_message_status(lookup, event)
    if event_type == "notification.new":
        return _apply_upsert(lookup, event.notification, event.version)
    if event_type == "notification.read":
        return _apply_notification_read(lookup, event)
    return NOTHING


# ----------------------------------------------------------------------
# Shared rules
# ----------------------------------------------------------------------
def is_stale(stored: Entity, version: int | None) -> bool:
    return version is not None and version <= stored.version


def preserve_monotonic(stored: Entity, incoming: Entity) -> Entity:
    """Carry one-way flags from ``stored`` over to ``incoming``.

    A notification never becomes unread again, a deleted message never comes
    back, and message status never moves backwards.
    """
    if isinstance(stored, Notification) and isinstance(incoming, Notification):
        if stored.read and not incoming.read:
            return incoming.model_copy(update={"read": True})
    if isinstance(stored, ChatMessage) and isinstance(incoming, ChatMessage):
        if stored.status.rank > incoming.status.rank:
            incoming = incoming.model_copy(update={"status": stored.status})
        if stored.deleted and not incoming.deleted:
            incoming = incoming.tombstone()
    return incoming


def _write(stored: Entity | None, entity: Entity) -> ReduceResult:
    if stored is not None and stored == entity:
        return NOTHING
    change_type = ChangeType.CREATED if stored is None else ChangeType.UPDATED
    return ReduceResult((Change(entity.kind, entity.id, entity, change_type),))


def _with_version(entity: Entity, version: int | None) -> Entity:
    if version is None or version <= entity.version:
        return entity
    return entity.model_copy(update={"version": version})


# ----------------------------------------------------------------------
# Generic entity events
# ----------------------------------------------------------------------
def _apply_created(lookup: EntityLookup, event: EntityCreated) -> ReduceResult:
    return _apply_upsert(lookup, event.entity, event.version)


def _apply_upsert(
    lookup: EntityLookup, entity: Entity, version: int | None
) -> ReduceResult:
    entity = _with_version(entity, version)
    if lookup.is_tombstoned(entity.kind, entity.id):
        if not isinstance(entity, ChatMessage):
            log.debug("ignoring %s %s: already deleted", entity.kind.value, entity.id)
            return NOTHING
        entity = entity.tombstone()
    stored = lookup.get_base(entity.kind, entity.id)
    if stored is None:
        return _write(None, entity)
    if entity.version <= stored.version:
        log.debug("stale %s %s v%d", entity.kind.value, entity.id, entity.version)
        return NOTHING
    return _write(stored, preserve_monotonic(stored, entity))


def _apply_updated(lookup: EntityLookup, event: EntityUpdated) -> ReduceResult:
    stored = lookup.get_base(event.kind, event.id)
    if stored is None:
        log.debug("update for unknown %s %s", event.kind.value, event.id)
        return NOTHING
    if is_stale(stored, event.version):
        return NOTHING
    data = stored.model_dump()
    data.update(event.changes)
    data["version"] = max(stored.version, event.version or 0)
    try:
        merged = type(stored).model_validate(data)
    except ValidationError as exc:
        log.warning("dropping update for %s %s: %s", event.kind.value, event.id, exc)
        return NOTHING
    return _write(stored, preserve_monotonic(stored, merged))


def _apply_deleted(
    lookup: EntityLookup,
    kind: EntityKind,
    ids: tuple[str, ...],
    now: dt.datetime,
) -> ReduceResult:
    changes: list[Change] = []
    for entity_id in ids:
        stored = lookup.get_base(kind, entity_id)
        if stored is None:
            # nothing visible, but remember it so a late snapshot stays dead
            if not lookup.is_tombstoned(kind, entity_id):
                changes.append(Change(kind, entity_id, None, ChangeType.REMOVED))
            continue
        if isinstance(stored, ChatMessage):
            if not stored.deleted:
                changes.append(
                    Change(kind, entity_id, stored.tombstone(), ChangeType.UPDATED)
                )
            continue
        changes.append(Change(kind, entity_id, None, ChangeType.REMOVED))
        if isinstance(stored, Series):
            # games that already ended are kept
            for game_id in stored.game_ids:
                game = lookup.get_base(EntityKind.GAME, game_id)
                if isinstance(game, Game) and game.ends_at >= now:
                    changes.append(
                        Change(EntityKind.GAME, game_id, None, ChangeType.REMOVED)
                    )
    return ReduceResult(tuple(changes))


# ----------------------------------------------------------------------
# Games
# ----------------------------------------------------------------------
def with_members(
    game: Game,
    participants: tuple[Participant, ...],
    waitlist: tuple[Participant, ...],
) -> Game:
    """Return ``game`` with membership normalised to the game invariants.

    Both lists are made unique, the waitlist loses anyone who is also a
    participant, and participants beyond capacity move to the head of the
    waitlist unless the game allows overbooking while a lottery is pending.
    """
    seen: set[str] = set()
    joined: list[Participant] = []
    for member in participants:
        if member.id not in seen:
            seen.add(member.id)
            joined.append(member)
    if not game.overflow_allowed and len(joined) > game.max_players:
        overflow = joined[game.max_players :]
        joined = joined[: game.max_players]
        waitlist = tuple(overflow) + waitlist
    seen = {member.id for member in joined}
    waiting: list[Participant] = []
    for member in waitlist:
        if member.id in seen:
            continue
        seen.add(member.id)
        waiting.append(member)
    return game.model_copy(
        update={"participants": tuple(joined), "waitlist": tuple(waiting)}
    )


def seat_player(game: Game, player: Participant) -> Game | None:
    """Add ``player`` where the capacity rules put them.

    Returns ``None`` when the game is full and has nowhere to put them.
    """
    if game.membership(player.id) is not None:
        return game
    if not game.is_full or game.overflow_allowed:
        return with_members(game, game.participants + (player,), game.waitlist)
    if game.routes_to_waitlist:
        return with_members(game, game.participants, game.waitlist + (player,))
    return None


def unseat_player(game: Game, user_id: str) -> Game:
    return with_members(
        game,
        tuple(p for p in game.participants if p.id != user_id),
        tuple(p for p in game.waitlist if p.id != user_id),
    )


def _confirmed_members(
    game: Game, members: tuple[Participant, ...]
) -> tuple[Participant, ...]:
    # keep the names we already know when the server sends bare ids
    known = {p.id: p for p in game.participants + game.waitlist}
    return tuple(known.get(m.id, m) if m.name is None else m for m in members)


def _apply_membership(
    lookup: EntityLookup, event: GameJoined | GameLeft
) -> ReduceResult:
    stored = lookup.get_base(EntityKind.GAME, event.game_id)
    if not isinstance(stored, Game):
        log.debug("%s for unknown game %s", event.type, event.game_id)
        return NOTHING
    if is_stale(stored, event.version):
        return NOTHING

    game: Game | None
    if event.participants is not None or event.waitlist is not None:
        participants = (
            _confirmed_members(stored, event.participants)
            if event.participants is not None
            else stored.participants
        )
        waitlist = (
            _confirmed_members(stored, event.waitlist)
            if event.waitlist is not None
            else stored.waitlist
        )
        game = with_members(stored, participants, waitlist)
    elif event.type == "game.joined":
        game = seat_player(stored, Participant(id=event.user_id, name=event.user_name))
        if game is None:
            log.warning(
                "game %s is full without waitlist; dropping join of %s",
                event.game_id,
                event.user_id,
            )
            return NOTHING
    else:
        game = unseat_player(stored, event.user_id)

    return _write(stored, _with_version(game, event.version))


# ----------------------------------------------------------------------
# Chat messages
# ----------------------------------------------------------------------
def _apply_message_new(lookup: EntityLookup, event: MessageNew) -> ReduceResult:
    message = event.message
    temp_id = event.temp_id or message.temp_id
    if temp_id and message.temp_id != temp_id:
        message = message.model_copy(update={"temp_id": temp_id})
    result = _apply_upsert(lookup, message, event.version)
    if temp_id and temp_id != message.id:
        if lookup.get_base(EntityKind.MESSAGE, temp_id) is not None:
            # the confirmed message takes the place of its temporary copy
            replaced = Change(EntityKind.MESSAGE, temp_id, None, ChangeType.REMOVED)
            return ReduceResult(result.changes + (replaced,))
    return result


def _editable_message(
    lookup: EntityLookup, message_id: str, version: int | None
) -> ChatMessage | None:
    stored = lookup.get_base(EntityKind.MESSAGE, message_id)
    if not isinstance(stored, ChatMessage) or stored.deleted:
        return None
    if is_stale(stored, version):
        return None
    return stored


def _apply_message_edited(lookup: EntityLookup, event: MessageEdited) -> ReduceResult:
    stored = _editable_message(lookup, event.id, event.version)
    if stored is None:
        return NOTHING
    edited = stored.model_copy(update={"text": event.text, "edited": True})
    return _write(stored, _with_version(edited, event.version))


def _apply_message_reacted(
    lookup: EntityLookup, event: MessageReacted
) -> ReduceResult:
    stored = _editable_message(lookup, event.message_id, event.version)
    if stored is None:
        return NOTHING
    if event.reactions is not None:
        reactions = dict(event.reactions)
    else:
        reactions = toggled_reactions(stored, event.user_id, event.emoji, event.added)
    updated = stored.model_copy(update={"reactions": reactions})
    return _write(stored, _with_version(updated, event.version))


def toggled_reactions(
    message: ChatMessage, user_id: str, emoji: str, added: bool
) -> dict[str, tuple[str, ...]]:
    """Add or remove one (user, emoji) pair; adding twice is a no-op."""
    reactions = dict(message.reactions)
    users = reactions.get(emoji, ())
    if added and user_id not in users:
        reactions[emoji] = users + (user_id,)
    elif not added and user_id in users:
        remaining = tuple(u for u in users if u != user_id)
        if remaining:
            reactions[emoji] = remaining
        else:
            del reactions[emoji]
    return reactions


def _apply_message_status(
    lookup: EntityLookup, event: MessageStatusChanged
) -> ReduceResult:
    wanted = set(event.message_ids) if event.message_ids is not None else None
    changes: list[Change] = []
    for stored in lookup.base_values(EntityKind.MESSAGE):
        if not isinstance(stored, ChatMessage) or stored.room_id != event.room_id:
            continue
        if wanted is not None and stored.id not in wanted:
            continue
        if event.sender_id is not None and stored.sender_id != event.sender_id:
            continue
        if stored.deleted or event.status.rank <= stored.status.rank:
            continue
        updated = stored.model_copy(update={"status": event.status})
        changes.extend(_write(stored, updated).changes)
    return ReduceResult(tuple(changes))


# ----------------------------------------------------------------------
# Notifications
# ----------------------------------------------------------------------
def _apply_notification_read(
    lookup: EntityLookup, event: NotificationRead
) -> ReduceResult:
    if event.all:
        targets = list(lookup.base_values(EntityKind.NOTIFICATION))
    else:
        found = (lookup.get_base(EntityKind.NOTIFICATION, i) for i in event.ids)
        targets = [n for n in found if n is not None]
    changes: list[Change] = []
    for stored in targets:
        if isinstance(stored, Notification) and not stored.read:
            updated = stored.model_copy(update={"read": True})
            updated = _with_version(updated, event.version)
            changes.extend(_write(stored, updated).changes)
    return ReduceResult(tuple(changes))
