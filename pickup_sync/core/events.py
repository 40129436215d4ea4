"""Typed delta events pushed over the channel.

Every inbound socket event is validated into one member of the :data:`Event`
union at the channel ingress (:func:`parse_event`). Anything that fails
validation raises :class:`~pickup_sync.errors.MalformedEvent` there, so the
reducer only ever sees well-formed, exhaustively typed events.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import (
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_snake

from ..errors import MalformedEvent
from .models import (
    ChatMessage,
    Entity,
    EntityKind,
    MessageStatus,
    Notification,
    Participant,
    Version,
    WireModel,
    normalise_reactions,
    parse_entity,
)


class _Event(WireModel):
    # ``None`` marks an unversioned event; it applies only if it changes state
    version: Version | None = None


class EntityCreated(_Event):
    type: Literal["entity.created"] = "entity.created"
    kind: EntityKind
    entity: Entity

    @model_validator(mode="before")
    @classmethod
    def _build_entity(cls, data: Any) -> Any:
        if not isinstance(data, dict) or "kind" not in data:
            return data
        raw = data.get("entity", data.get("data"))
        if raw is None or isinstance(raw, Entity):
            return data
        return {**data, "entity": parse_entity(EntityKind(data["kind"]), raw)}

    @property
    def entity_id(self) -> str:
        return self.entity.id


class EntityUpdated(_Event):
    """A full or partial payload for an existing entity.

    ``changes`` is keyed by snake_case field name whatever casing arrived.
    """

    type: Literal["entity.updated"] = "entity.updated"
    kind: EntityKind
    id: str
    changes: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _collect_changes(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        raw = dict(data.get("changes", data.get("data")) or {})
        data = dict(data)
        if data.get("id") is None and raw.get("id") is not None:
            data["id"] = raw["id"]
        if data.get("version") is None:
            stamp = raw.get("version", raw.get("updatedAt"))
            if stamp is not None:
                data["version"] = stamp
        for key in ("id", "version", "updatedAt", "updated_at", "currentPlayers"):
            raw.pop(key, None)
        data["changes"] = {to_snake(key): value for key, value in raw.items()}
        return data

    @property
    def entity_id(self) -> str:
        return self.id


class EntityDeleted(_Event):
    type: Literal["entity.deleted"] = "entity.deleted"
    kind: EntityKind
    ids: tuple[str, ...]

    @model_validator(mode="before")
    @classmethod
    def _single_id(cls, data: Any) -> Any:
        if isinstance(data, dict) and "ids" not in data and "id" in data:
            return {**data, "ids": [data["id"]]}
        return data


class _MembershipEvent(_Event):
    """Participant delta for one game.

    ``participants``/``waitlist`` are the server-confirmed lists when the
    server sends them; the counters the server may send are not trusted.
    """

    game_id: str
    user_id: str
    user_name: str | None = None
    participants: tuple[Participant, ...] | None = None
    waitlist: tuple[Participant, ...] | None = None

    @model_validator(mode="before")
    @classmethod
    def _game_id_alias(cls, data: Any) -> Any:
        if isinstance(data, dict) and "gameId" not in data:
            game_id = data.get("game_id", data.get("id"))
            if game_id is not None:
                return {**data, "gameId": game_id}
        return data

    @property
    def entity_id(self) -> str:
        return self.game_id


class GameJoined(_MembershipEvent):
    type: Literal["game.joined"] = "game.joined"


class GameLeft(_MembershipEvent):
    type: Literal["game.left"] = "game.left"


class MessageNew(_Event):
    type: Literal["message.new"] = "message.new"
    message: ChatMessage
    temp_id: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _bare_message(cls, data: Any) -> Any:
        # the chat server emits the message itself as the event payload
        if isinstance(data, dict) and "message" not in data:
            body = {k: v for k, v in data.items() if k != "type"}
            data = {"type": data.get("type"), "message": body}
            if body.get("tempId") is not None:
                data["tempId"] = body["tempId"]
        return data

    @property
    def entity_id(self) -> str:
        return self.message.id


class MessageEdited(_Event):
    type: Literal["message.edited"] = "message.edited"
    id: str
    room_id: str | None = None
    text: str

    @property
    def entity_id(self) -> str:
        return self.id


class MessageDeleted(_Event):
    type: Literal["message.deleted"] = "message.deleted"
    id: str
    room_id: str | None = None

    @property
    def entity_id(self) -> str:
        return self.id


class MessageReacted(_Event):
    """A reaction toggle, or the full reaction map when ``reactions`` is set."""

    type: Literal["message.reacted"] = "message.reacted"
    message_id: str
    room_id: str | None = None
    user_id: str | None = None
    emoji: str | None = None
    added: bool = True
    reactions: dict[str, tuple[str, ...]] | None = None

    @field_validator("reactions", mode="before")
    @classmethod
    def _reaction_map(cls, value: Any) -> Any:
        return None if value is None else normalise_reactions(value)

    @model_validator(mode="after")
    def _toggle_or_map(self) -> MessageReacted:
        if self.reactions is None and (self.user_id is None or self.emoji is None):
            raise ValueError("reaction event needs userId and emoji, or reactions")
        return self

    @property
    def entity_id(self) -> str:
        return self.message_id


class MessageStatusChanged(_Event):
    """Delivery/read receipt for messages in a room.

    Without ``message_ids`` it covers every message the ``sender_id`` sent in
    the room.
    """

    type: Literal["message.status"] = "message.status"
    room_id: str
    status: MessageStatus
    sender_id: str | None = None
    message_ids: tuple[str, ...] | None = None


class Typing(_Event):
    type: Literal["typing"] = "typing"
    room_id: str | None = None
    user_id: str | None = None
    user_name: str | None = None
    is_typing: bool = True

    @model_validator(mode="before")
    @classmethod
    def _sender_aliases(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if "chatId" in data:
            data.setdefault("roomId", data["chatId"])
        if "senderId" in data:
            data.setdefault("userId", data["senderId"])
        return data


class PresenceUpdate(_Event):
    type: Literal["presence.update"] = "presence.update"
    user_id: str
    is_online: bool


class NotificationNew(_Event):
    type: Literal["notification.new"] = "notification.new"
    notification: Notification

    @model_validator(mode="before")
    @classmethod
    def _bare_notification(cls, data: Any) -> Any:
        if isinstance(data, dict) and "notification" not in data:
            body = {k: v for k, v in data.items() if k != "type"}
            return {"type": data.get("type"), "notification": body}
        return data

    @property
    def entity_id(self) -> str:
        return self.notification.id


class NotificationRead(_Event):
    type: Literal["notification.read"] = "notification.read"
    ids: tuple[str, ...] = ()
    all: bool = False


Event = Annotated[
    Union[
        EntityCreated,
        EntityUpdated,
        EntityDeleted,
        GameJoined,
        GameLeft,
        MessageNew,
        MessageEdited,
        MessageDeleted,
        MessageReacted,
        MessageStatusChanged,
        Typing,
        PresenceUpdate,
        NotificationNew,
        NotificationRead,
    ],
    Field(discriminator="type"),
]

EVENT_ADAPTER: TypeAdapter[Event] = TypeAdapter(Event)

EPHEMERAL_TYPES = frozenset({"typing", "presence.update"})

# socket event names used by the chat and notification servers
LEGACY_EVENT_NAMES = {
    "message": "message.new",
    "messageUpdated": "message.edited",
    "messageDeleted": "message.deleted",
    "messageReaction": "message.reacted",
    "messageStatusUpdate": "message.status",
    "notification": "notification.new",
    "presence:update": "presence.update",
    "typing:start": "typing",
    "typing:stop": "typing",
}

_GAME_UPDATE_ACTIONS = {"join": "game.joined", "leave": "game.left"}


def parse_event(name: str, payload: Any) -> Event:
    """Validate one raw socket event into a typed :data:`Event`.

    Raises
    ------
    MalformedEvent
        If the event name is unknown or the payload does not validate.

    """
    if not isinstance(payload, dict):
        raise MalformedEvent(f"{name}: payload is not an object")
    event_type = LEGACY_EVENT_NAMES.get(name, name)
    body = dict(payload)
    if name == "typing:start":
        body["isTyping"] = True
    elif name == "typing:stop":
        body["isTyping"] = False
    elif name == "gameUpdate":
        action = body.get("action")
        if action not in _GAME_UPDATE_ACTIONS:
            raise MalformedEvent(f"gameUpdate: unknown action {action!r}")
        event_type = _GAME_UPDATE_ACTIONS[action]
    body["type"] = event_type
    try:
        return EVENT_ADAPTER.validate_python(body)
    except (ValidationError, ValueError) as exc:
        raise MalformedEvent(f"{name}: {exc}") from exc
