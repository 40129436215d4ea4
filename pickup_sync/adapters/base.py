"""Interface of the REST API the sync core consumes."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Awaitable
from typing import Protocol

from ..core.models import ChatMessage, Game, Notification, Series


class TokenProvider(Protocol):
    """Async source of bearer tokens; ``refresh=True`` asks for a new one."""

    def __call__(self, *, refresh: bool = False) -> Awaitable[str]: ...


def static_token(token: str) -> TokenProvider:
    """Wrap a fixed token as a :class:`TokenProvider`."""

    async def provide(*, refresh: bool = False) -> str:
        return token

    return provide


class SportsApi(ABC):
    """Request/response boundary returning entity snapshots.

    Mutation methods return the updated entity when the server sends one and
    ``None`` for a bare success status.
    """

    @abstractmethod
    async def search_games(
        self,
        *,
        date: str | None = None,
        city: str | None = None,
        field_id: str | None = None,
    ) -> list[Game]:
        """Return games matching the given filters."""

    @abstractmethod
    async def friends_games(self) -> list[Game]:
        """Return games organised or joined by the user's friends."""

    @abstractmethod
    async def my_games(self) -> list[Game]:
        """Return games the user joined or is waitlisted for."""

    @abstractmethod
    async def get_game(self, game_id: str) -> Game:
        """Return one game."""

    @abstractmethod
    async def join_game(self, game_id: str) -> Game | None:
        """Join ``game_id`` as the authenticated user."""

    @abstractmethod
    async def leave_game(self, game_id: str) -> Game | None:
        """Leave ``game_id`` as the authenticated user."""

    @abstractmethod
    async def get_series(self, series_id: str) -> tuple[Series, list[Game]]:
        """Return a series and its generated games."""

    @abstractmethod
    async def subscribe_series(self, series_id: str) -> Series | None:
        """Become a regular of ``series_id``."""

    @abstractmethod
    async def unsubscribe_series(self, series_id: str) -> Series | None:
        """Stop being a regular of ``series_id``."""

    @abstractmethod
    async def list_messages(self, room_id: str, limit: int = 100) -> list[ChatMessage]:
        """Return the most recent messages of a room, oldest first."""

    @abstractmethod
    async def send_message(
        self, room_id: str, text: str, *, temp_id: str, reply_to: str | None = None
    ) -> ChatMessage | None:
        """Post a message; ``temp_id`` is echoed back for correlation."""

    @abstractmethod
    async def edit_message(self, message_id: str, text: str) -> ChatMessage | None:
        """Replace the text of a message."""

    @abstractmethod
    async def delete_message(self, message_id: str) -> ChatMessage | None:
        """Delete a message."""

    @abstractmethod
    async def react(
        self, message_id: str, emoji: str, *, added: bool = True
    ) -> ChatMessage | None:
        """Add or remove the user's ``emoji`` reaction."""

    @abstractmethod
    async def list_notifications(self) -> list[Notification]:
        """Return the user's notifications, newest first."""

    @abstractmethod
    async def mark_notification_read(self, notification_id: str) -> Notification | None:
        """Mark one notification as read."""
