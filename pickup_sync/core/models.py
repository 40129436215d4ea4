"""Entity models for the synchronised data set.

The models are implemented using :mod:`pydantic` so that REST snapshots and
socket payloads are validated once, at the boundary, and everything past it
works with typed, immutable objects. Wire payloads use camelCase keys; every
model accepts both camelCase and snake_case and dumps camelCase.

Entities are frozen. Code that needs a changed entity builds a new one with
:meth:`~pydantic.BaseModel.model_copy` or :func:`parse_entity`.
"""

from __future__ import annotations

import datetime as dt
from datetime import UTC
from enum import Enum
from typing import Annotated, Any, ClassVar, Literal

from pydantic import (
    AliasChoices,
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    ValidationInfo,
    computed_field,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

TOMBSTONE_TEXT = "[Content Removed]"


class EntityKind(str, Enum):
    GAME = "game"
    SERIES = "series"
    MESSAGE = "message"
    NOTIFICATION = "notification"


def to_version(value: Any) -> int:
    """Normalise a version marker to an integer.

    Integers pass through. Timestamps (``datetime`` or ISO-8601 strings) become
    epoch milliseconds so that sequence numbers and server timestamps compare
    the same way. ``None`` means "never versioned" and maps to ``0``.
    """
    if value is None:
        return 0
    if isinstance(value, bool):
        raise ValueError("version cannot be a boolean")
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, dt.datetime):
        stamp = value if value.tzinfo else value.replace(tzinfo=UTC)
        return int(stamp.timestamp() * 1000)
    if isinstance(value, str):
        text = value.strip()
        if text.lstrip("-").isdigit():
            return int(text)
        return to_version(dt.datetime.fromisoformat(text))
    raise ValueError(f"unsupported version value: {value!r}")


Version = Annotated[int, BeforeValidator(to_version)]


def utc_now() -> dt.datetime:
    return dt.datetime.now(tz=UTC)


def _aware(value: dt.datetime) -> dt.datetime:
    return value if value.tzinfo else value.replace(tzinfo=UTC)


class WireModel(BaseModel):
    """Common configuration for everything that crosses the wire."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="ignore",
        # the chat server hands out numeric ids
        coerce_numbers_to_str=True,
    )


class Entity(WireModel):
    """Fields shared by every synchronised entity.

    Attributes
    ----------
    id:
        Server identifier, or a client temporary id while a creation is
        optimistic.
    version:
        Monotonically non-decreasing marker used for conflict resolution.
        When a payload has no ``version`` its ``updatedAt`` timestamp is used.

    """

    kind: ClassVar[EntityKind]

    id: str
    version: Version = 0

    @model_validator(mode="before")
    @classmethod
    def _version_from_timestamp(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("version") is None:
            stamp = data.get("updatedAt", data.get("updated_at"))
            if stamp is not None:
                data = {**data, "version": stamp}
        return data

    def dump(self) -> dict[str, Any]:
        """Return the camelCase JSON form of the entity."""
        return self.model_dump(by_alias=True, mode="json")


class Participant(WireModel):
    id: str
    name: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _from_plain_id(cls, data: Any) -> Any:
        if isinstance(data, (str, int)) and not isinstance(data, bool):
            return {"id": str(data)}
        if isinstance(data, dict) and "id" not in data and "userId" in data:
            return {"id": data["userId"], "name": data.get("name")}
        return data


def _unique_members(members: tuple[Participant, ...]) -> tuple[Participant, ...]:
    seen: set[str] = set()
    unique: list[Participant] = []
    for member in members:
        if member.id in seen:
            continue
        seen.add(member.id)
        unique.append(member)
    return tuple(unique)


class Lottery(WireModel):
    enabled: bool = False
    pending: bool = False
    draw_at: dt.datetime | None = None
    allow_overbooking: bool = False


class Game(Entity):
    """A scheduled pickup game.

    ``current_players`` is always derived from ``participants``; a counter
    sent by a client or server is ignored.
    """

    kind: ClassVar[EntityKind] = EntityKind.GAME

    date: str
    time: str = "00:00"
    duration: float = 1.0
    max_players: int = 0
    participants: tuple[Participant, ...] = ()
    waitlist: tuple[Participant, ...] = ()
    lottery: Lottery = Field(default_factory=Lottery)
    waitlist_enabled: bool = False
    registration_opens_at: dt.datetime | None = None
    series_id: str | None = None
    field_id: str | None = None
    field_name: str | None = None
    city: str | None = None
    organizer_id: str | None = None
    sport: str | None = None
    title: str | None = None

    @field_validator("date", mode="before")
    @classmethod
    def _date_only(cls, value: Any) -> Any:
        if isinstance(value, dt.datetime):
            return value.date().isoformat()
        if isinstance(value, dt.date):
            return value.isoformat()
        if isinstance(value, str) and len(value) > 10 and value[10] == "T":
            return value[:10]
        return value

    @field_validator("participants")
    @classmethod
    def _unique_participants(
        cls, value: tuple[Participant, ...]
    ) -> tuple[Participant, ...]:
        return _unique_members(value)

    @field_validator("waitlist")
    @classmethod
    def _disjoint_waitlist(
        cls, value: tuple[Participant, ...], info: ValidationInfo
    ) -> tuple[Participant, ...]:
        joined = {p.id for p in info.data.get("participants", ())}
        return tuple(p for p in _unique_members(value) if p.id not in joined)

    @computed_field(alias="currentPlayers")  # type: ignore[prop-decorator]
    @property
    def current_players(self) -> int:
        return len(self.participants)

    @property
    def starts_at(self) -> dt.datetime:
        start = dt.datetime.fromisoformat(f"{self.date}T{self.time}")
        return _aware(start)

    @property
    def ends_at(self) -> dt.datetime:
        return self.starts_at + dt.timedelta(hours=self.duration)

    @property
    def overbooked(self) -> bool:
        return len(self.participants) > self.max_players

    @property
    def is_full(self) -> bool:
        return len(self.participants) >= self.max_players

    @property
    def overflow_allowed(self) -> bool:
        """Whether a full game may take more participants pending a draw."""
        return self.lottery.pending and self.lottery.allow_overbooking

    @property
    def routes_to_waitlist(self) -> bool:
        return self.waitlist_enabled or self.lottery.enabled

    def is_registration_open(self, now: dt.datetime | None = None) -> bool:
        if self.registration_opens_at is None:
            return True
        return _aware(now or utc_now()) >= _aware(self.registration_opens_at)

    def membership(self, user_id: str) -> Literal["participant", "waitlisted"] | None:
        if any(p.id == user_id for p in self.participants):
            return "participant"
        if any(p.id == user_id for p in self.waitlist):
            return "waitlisted"
        return None


class Recurrence(WireModel):
    type: Literal["WEEKLY", "CUSTOM"] = "WEEKLY"
    # 0 = Monday, as ``datetime.date.weekday``
    day_of_week: int | None = None
    dates: tuple[str, ...] = ()

    def occurs_on(self, day: dt.date) -> bool:
        if self.type == "CUSTOM":
            return day.isoformat() in self.dates
        return self.day_of_week is not None and day.weekday() == self.day_of_week


class Series(Entity):
    kind: ClassVar[EntityKind] = EntityKind.SERIES

    recurrence: Recurrence = Field(default_factory=Recurrence)
    default_time: str | None = None
    subscribers: tuple[str, ...] = ()
    game_ids: tuple[str, ...] = ()

    @field_validator("subscribers", "game_ids")
    @classmethod
    def _no_duplicates(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        return tuple(dict.fromkeys(value))


class MessageStatus(str, Enum):
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    REJECTED = "rejected"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]


_STATUS_RANK = {
    MessageStatus.SENT: 0,
    MessageStatus.DELIVERED: 1,
    MessageStatus.READ: 2,
    MessageStatus.REJECTED: 3,
}


class ChatMessage(Entity):
    """A chat message in one room.

    Deleted messages stay in place as tombstones: id, room and creation time
    are kept, the text is replaced and reactions are cleared.
    """

    kind: ClassVar[EntityKind] = EntityKind.MESSAGE

    room_id: str
    sender_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices("senderId", "sender_id", "userId", "user_id"),
        serialization_alias="senderId",
    )
    sender_name: str | None = None
    text: str = Field(
        default="",
        validation_alias=AliasChoices("text", "content"),
        serialization_alias="text",
    )
    created_at: dt.datetime = Field(
        default_factory=utc_now,
        validation_alias=AliasChoices("createdAt", "created_at", "ts"),
        serialization_alias="createdAt",
    )
    status: MessageStatus = MessageStatus.SENT
    edited: bool = Field(
        default=False,
        validation_alias=AliasChoices("edited", "isEdited", "is_edited"),
        serialization_alias="edited",
    )
    deleted: bool = Field(
        default=False,
        validation_alias=AliasChoices("deleted", "isDeleted", "is_deleted"),
        serialization_alias="deleted",
    )
    reactions: dict[str, tuple[str, ...]] = Field(default_factory=dict)
    reply_to: str | None = None
    temp_id: str | None = None

    @field_validator("room_id", "reply_to", "temp_id", mode="before")
    @classmethod
    def _reference_id(cls, value: Any) -> Any:
        if isinstance(value, dict):
            value = value.get("id")
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("reactions", mode="before")
    @classmethod
    def _reaction_map(cls, value: Any) -> Any:
        return normalise_reactions(value)

    def tombstone(self) -> ChatMessage:
        return self.model_copy(
            update={"deleted": True, "text": TOMBSTONE_TEXT, "reactions": {}}
        )

    def reacted(self, user_id: str, emoji: str) -> bool:
        return user_id in self.reactions.get(emoji, ())


def normalise_reactions(value: Any) -> dict[str, tuple[str, ...]]:
    """Build an ``emoji -> unique user ids`` map.

    Accepts the map form or the list form the chat server sends
    (``[{"emoji": ..., "userId": ...}]``).
    """
    if value is None:
        return {}
    pairs: list[tuple[str, str]] = []
    if isinstance(value, dict):
        for emoji, users in value.items():
            pairs.extend((emoji, str(u)) for u in users)
    else:
        for item in value:
            users = item.get("userIds") or [item.get("userId")]
            pairs.extend((item["emoji"], str(u)) for u in users if u is not None)
    result: dict[str, tuple[str, ...]] = {}
    for emoji, user in pairs:
        users_for = result.get(emoji, ())
        if user not in users_for:
            result[emoji] = users_for + (user,)
    return result


class Notification(Entity):
    kind: ClassVar[EntityKind] = EntityKind.NOTIFICATION

    type: str = "general"
    title: str = ""
    body: str = ""
    read: bool = False
    created_at: dt.datetime = Field(default_factory=utc_now)
    data: dict[str, Any] = Field(default_factory=dict)

    @property
    def link(self) -> str | None:
        return self.data.get("link")


ENTITY_TYPES: dict[EntityKind, type[Entity]] = {
    EntityKind.GAME: Game,
    EntityKind.SERIES: Series,
    EntityKind.MESSAGE: ChatMessage,
    EntityKind.NOTIFICATION: Notification,
}


def parse_entity(kind: EntityKind, data: Any) -> Entity:
    """Validate ``data`` as an entity of ``kind``."""
    model = ENTITY_TYPES[EntityKind(kind)]
    if isinstance(data, model):
        return data
    return model.model_validate(data)
