"""High level sync session tying the components together."""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
import uuid
from collections.abc import Callable, Coroutine
from typing import Any

from .adapters.base import SportsApi
from .baseline import BaselineLoader
from .channel import ChannelClient, ConnectionStatus, StatusHandler
from .config import Settings
from .core.events import EPHEMERAL_TYPES, Event, MessageNew
from .core.models import (
    ChatMessage,
    Entity,
    EntityKind,
    Game,
    Notification,
    Participant,
    Series,
    utc_now,
)
from .data.models import Mutation, MutationAction
from .data.store import EntityStore
from .errors import BaselineFetchError, MutationRejected
from .optimistic import OptimisticTracker
from .presence import PresenceTracker
from .projections import Projection, ProjectionListener, ProjectionRegistry, ProjectionSpec
from .reducer import reduce_event, toggled_reactions, unseat_player

log = logging.getLogger(__name__)

GAMES_TOPIC = "games"
_CLIENT = "client"


def user_topic(user_id: str) -> str:
    return f"user_{user_id}"


class SyncClient:
    """A live, locally consistent view of the user's games, chats and notifications.

    Parameters
    ----------
    api:
        REST boundary used for baselines and mutations.
    channel:
        Push channel delivering delta events.
    user_id:
        The authenticated user; optimistic patches act on their behalf.
    user_name:
        Display name used in optimistic membership and chat patches.
    settings:
        Timeouts and capacities, :class:`~pickup_sync.config.Settings` defaults
        when omitted.

    """

    def __init__(
        self,
        api: SportsApi,
        channel: ChannelClient,
        *,
        user_id: str,
        user_name: str | None = None,
        settings: Settings | None = None,
        clock: Callable[[], dt.datetime] = utc_now,
    ) -> None:
        self.settings = settings or Settings()
        self.api = api
        self.channel = channel
        self.user_id = user_id
        self.user_name = user_name
        self._clock = clock
        self.store = EntityStore(self.settings.tombstone_capacity)
        self.projections = ProjectionRegistry(self.store, clock)
        self.loader = BaselineLoader(self.store, api)
        self.tracker = OptimisticTracker(self.store, timeout=self.settings.mutation_timeout)
        self.presence = PresenceTracker(self.settings.typing_ttl)
        self._tasks: set[asyncio.Task[Any]] = set()
        self._detach: list[Callable[[], None]] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start(self) -> None:
        self._detach.append(self.channel.on("*", self.handle_event))
        self._detach.append(self.channel.on_reconnect(self._repair))
        await self.channel.join_topic(GAMES_TOPIC, _CLIENT)
        await self.channel.join_topic(user_topic(self.user_id), _CLIENT)
        await self.channel.connect()
        log.info("sync session started for user %s", self.user_id)

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        for detach in self._detach:
            detach()
        self._detach.clear()
        self.projections.close()
        await self.channel.close()

    @property
    def status(self) -> ConnectionStatus:
        return self.channel.status

    def on_status(self, handler: StatusHandler) -> Callable[[], None]:
        return self.channel.on_status(handler)

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------
    async def subscribe(
        self, spec: ProjectionSpec, listener: ProjectionListener | None = None
    ) -> Projection:
        """Activate a view and start loading its baseline in the background."""
        projection = self.projections.register(spec)
        projection.bind(self.refresh)
        if listener is not None:
            projection.on_change(listener)
        if spec.topic is not None:
            await self.channel.join_topic(spec.topic, projection.consumer)
        self._spawn(self._load(projection, prune=False))
        return projection

    async def unsubscribe(self, projection: Projection) -> None:
        orphaned = self.projections.unregister(projection)
        if projection.spec.topic is not None:
            await self.channel.leave_topic(projection.spec.topic, projection.consumer)
        self.store.evict(projection.kind, orphaned)

    async def refresh(self, projection: Projection) -> None:
        """Reload ``projection``; raises :class:`BaselineFetchError` on failure."""
        await self.loader.load(projection, prune=True)

    async def _load(self, projection: Projection, *, prune: bool) -> None:
        try:
            await self.loader.load(projection, prune=prune)
        except BaselineFetchError as exc:
            log.warning("baseline for %s failed: %s", projection.consumer, exc)

    async def _repair(self) -> None:
        projections = self.projections.active()
        log.info("refreshing %d projections after reconnect", len(projections))
        await asyncio.gather(
            *(self._load(projection, prune=True) for projection in projections)
        )

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # ------------------------------------------------------------------
    # Inbound events
    # ------------------------------------------------------------------
    def handle_event(self, event: Event) -> None:
        if event.type in EPHEMERAL_TYPES:
            self.presence.observe(event)
            return
        result = reduce_event(self.store, event, now=self._clock())
        self.store.apply(result.changes)
        self.tracker.observe(event)

    def typing_users(self, room_id: str) -> list[str]:
        return [u for u in self.presence.typing_users(room_id) if u != self.user_id]

    def is_online(self, user_id: str) -> bool:
        return self.presence.is_online(user_id)

    async def send_typing(self, room_id: str, is_typing: bool = True) -> None:
        await self.channel.emit(
            "typing", {"roomId": room_id, "userId": self.user_id, "isTyping": is_typing}
        )

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    def _base(self, kind: EntityKind, entity_id: str) -> Any:
        return self.store.get_base(kind, entity_id)

    async def join_game(self, game_id: str) -> Entity | None:
        game = self.store.get(EntityKind.GAME, game_id)
        if isinstance(game, Game) and not game.is_registration_open(self._clock()):
            raise MutationRejected(f"registration for game {game_id} is not open yet")
        me = Participant(id=self.user_id, name=self.user_name)

        def patch(current: Entity | None) -> Entity | None:
            if not isinstance(current, Game) or current.membership(me.id) is not None:
                return current
            # shown as joined until the server decides where the user goes
            return current.model_copy(
                update={"participants": current.participants + (me,)}
            )

        def settled() -> bool:
            stored = self._base(EntityKind.GAME, game_id)
            return isinstance(stored, Game) and stored.membership(me.id) is not None

        mutation = Mutation(
            EntityKind.GAME,
            game_id,
            MutationAction.JOIN,
            self.user_id,
            patch,
            settled=settled,
        )
        return await self.tracker.run(mutation, lambda: self.api.join_game(game_id))

    async def leave_game(self, game_id: str) -> Entity | None:
        def patch(current: Entity | None) -> Entity | None:
            if not isinstance(current, Game):
                return current
            return unseat_player(current, self.user_id)

        def settled() -> bool:
            stored = self._base(EntityKind.GAME, game_id)
            return isinstance(stored, Game) and stored.membership(self.user_id) is None

        mutation = Mutation(
            EntityKind.GAME,
            game_id,
            MutationAction.LEAVE,
            self.user_id,
            patch,
            settled=settled,
        )
        return await self.tracker.run(mutation, lambda: self.api.leave_game(game_id))

    async def send_message(
        self, room_id: str, text: str, *, reply_to: str | None = None
    ) -> ChatMessage | None:
        temp_id = f"temp-{uuid.uuid4().hex}"
        draft = ChatMessage(
            id=temp_id,
            room_id=room_id,
            sender_id=self.user_id,
            sender_name=self.user_name,
            text=text,
            created_at=self._clock(),
            reply_to=reply_to,
            temp_id=temp_id,
        )

        def matches(event: Event) -> bool:
            if not isinstance(event, MessageNew):
                return False
            return temp_id in (event.temp_id, event.message.temp_id)

        mutation = Mutation(
            EntityKind.MESSAGE,
            temp_id,
            MutationAction.SEND,
            self.user_id,
            lambda current: current or draft,
            detail=temp_id,
            matches=matches,
        )
        result = await self.tracker.run(
            mutation,
            lambda: self.api.send_message(
                room_id, text, temp_id=temp_id, reply_to=reply_to
            ),
        )
        if isinstance(result, ChatMessage):
            return result
        return self._message_for_temp_id(temp_id)

    def _message_for_temp_id(self, temp_id: str) -> ChatMessage | None:
        for message in self.store.base_values(EntityKind.MESSAGE):
            if isinstance(message, ChatMessage) and message.temp_id == temp_id:
                return message
        return None

    async def edit_message(self, message_id: str, text: str) -> Entity | None:
        def patch(current: Entity | None) -> Entity | None:
            if not isinstance(current, ChatMessage) or current.deleted:
                return current
            return current.model_copy(update={"text": text, "edited": True})

        def settled() -> bool:
            stored = self._base(EntityKind.MESSAGE, message_id)
            return isinstance(stored, ChatMessage) and (
                stored.deleted or stored.text == text
            )

        mutation = Mutation(
            EntityKind.MESSAGE,
            message_id,
            MutationAction.EDIT,
            self.user_id,
            patch,
            settled=settled,
        )
        return await self.tracker.run(
            mutation, lambda: self.api.edit_message(message_id, text)
        )

    async def delete_message(self, message_id: str) -> Entity | None:
        def patch(current: Entity | None) -> Entity | None:
            if not isinstance(current, ChatMessage):
                return current
            return current.tombstone()

        def settled() -> bool:
            stored = self._base(EntityKind.MESSAGE, message_id)
            return isinstance(stored, ChatMessage) and stored.deleted

        mutation = Mutation(
            EntityKind.MESSAGE,
            message_id,
            MutationAction.DELETE,
            self.user_id,
            patch,
            settled=settled,
        )
        return await self.tracker.run(
            mutation, lambda: self.api.delete_message(message_id)
        )

    async def react(
        self, message_id: str, emoji: str, added: bool | None = None
    ) -> Entity | None:
        """Add or remove a reaction; ``added=None`` toggles the current state."""
        if added is None:
            current = self.store.get(EntityKind.MESSAGE, message_id)
            added = not (
                isinstance(current, ChatMessage)
                and current.reacted(self.user_id, emoji)
            )
        wanted = added

        def patch(current: Entity | None) -> Entity | None:
            if not isinstance(current, ChatMessage) or current.deleted:
                return current
            reactions = toggled_reactions(current, self.user_id, emoji, wanted)
            return current.model_copy(update={"reactions": reactions})

        def settled() -> bool:
            stored = self._base(EntityKind.MESSAGE, message_id)
            return isinstance(stored, ChatMessage) and (
                stored.deleted or stored.reacted(self.user_id, emoji) == wanted
            )

        mutation = Mutation(
            EntityKind.MESSAGE,
            message_id,
            MutationAction.REACT,
            self.user_id,
            patch,
            detail=emoji,
            settled=settled,
        )
        return await self.tracker.run(
            mutation, lambda: self.api.react(message_id, emoji, added=wanted)
        )

    async def mark_notification_read(self, notification_id: str) -> Entity | None:
        def patch(current: Entity | None) -> Entity | None:
            if not isinstance(current, Notification):
                return current
            return current.model_copy(update={"read": True})

        def settled() -> bool:
            stored = self._base(EntityKind.NOTIFICATION, notification_id)
            return isinstance(stored, Notification) and stored.read

        mutation = Mutation(
            EntityKind.NOTIFICATION,
            notification_id,
            MutationAction.MARK_READ,
            self.user_id,
            patch,
            settled=settled,
        )
        return await self.tracker.run(
            mutation, lambda: self.api.mark_notification_read(notification_id)
        )

    async def subscribe_series(self, series_id: str) -> Entity | None:
        return await self._series_membership(series_id, subscribe=True)

    async def unsubscribe_series(self, series_id: str) -> Entity | None:
        return await self._series_membership(series_id, subscribe=False)

    async def _series_membership(self, series_id: str, *, subscribe: bool) -> Entity | None:
        def patch(current: Entity | None) -> Entity | None:
            if not isinstance(current, Series):
                return current
            subscribers = tuple(u for u in current.subscribers if u != self.user_id)
            if subscribe:
                if self.user_id in current.subscribers:
                    return current
                subscribers += (self.user_id,)
            return current.model_copy(update={"subscribers": subscribers})

        def settled() -> bool:
            stored = self._base(EntityKind.SERIES, series_id)
            return (
                isinstance(stored, Series)
                and (self.user_id in stored.subscribers) == subscribe
            )

        if subscribe:
            action = MutationAction.SUBSCRIBE
            submit = lambda: self.api.subscribe_series(series_id)  # noqa: E731
        else:
            action = MutationAction.UNSUBSCRIBE
            submit = lambda: self.api.unsubscribe_series(series_id)  # noqa: E731
        mutation = Mutation(
            EntityKind.SERIES, series_id, action, self.user_id, patch, settled=settled
        )
        return await self.tracker.run(mutation, submit)
