"""Typing indicators and online users.

This state is ephemeral: it is driven by ``typing`` and ``presence.update``
events and never written to the entity store.
"""

from __future__ import annotations

import time
from collections.abc import Callable

from .core.events import Event, PresenceUpdate, Typing


class PresenceTracker:
    def __init__(
        self, typing_ttl: float = 3.0, clock: Callable[[], float] = time.monotonic
    ) -> None:
        self.typing_ttl = typing_ttl
        self._clock = clock
        # room id -> user id -> expiry
        self._typing: dict[str, dict[str, float]] = {}
        self._online: set[str] = set()

    def observe(self, event: Event) -> bool:
        """Apply an ephemeral event; return ``False`` for anything else."""
        if isinstance(event, Typing):
            if event.room_id is None or event.user_id is None:
                return True
            room = self._typing.setdefault(event.room_id, {})
            if event.is_typing:
                room[event.user_id] = self._clock() + self.typing_ttl
            else:
                room.pop(event.user_id, None)
            return True
        if isinstance(event, PresenceUpdate):
            if event.is_online:
                self._online.add(event.user_id)
            else:
                self._online.discard(event.user_id)
            return True
        return False

    def typing_users(self, room_id: str) -> list[str]:
        """Users typing in ``room_id``; indicators expire after ``typing_ttl``."""
        room = self._typing.get(room_id)
        if not room:
            return []
        now = self._clock()
        for user_id in [u for u, expiry in room.items() if expiry <= now]:
            del room[user_id]
        return list(room)

    def is_online(self, user_id: str) -> bool:
        return user_id in self._online

    @property
    def online(self) -> frozenset[str]:
        return frozenset(self._online)
