"""HTTP implementation of :class:`~pickup_sync.adapters.base.SportsApi`.

Requests go through :mod:`httpx`, fully asynchronous, with a bearer token
from the configured :class:`~pickup_sync.adapters.base.TokenProvider`. A
``401`` is retried once with a refreshed token before it surfaces as
:class:`~pickup_sync.errors.AuthenticationError`.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from ..core.models import ChatMessage, Entity, Game, Notification, Series
from ..errors import AuthenticationError, MutationRejected, TransportError
from .base import SportsApi, TokenProvider

log = logging.getLogger(__name__)


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = {}
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return f"API Error: {response.reason_phrase or response.status_code}"


def _items(data: Any, key: str) -> list[Any]:
    """Return the list body of a listing, bare or wrapped under ``key``."""
    if isinstance(data, dict):
        data = data.get(key, [])
    if not isinstance(data, list):
        raise ValueError(f"expected a list of {key}, got {type(data).__name__}")
    return data


def _object(data: Any, what: str) -> dict[str, Any]:
    if not isinstance(data, dict):
        raise ValueError(f"expected a {what} object, got {type(data).__name__}")
    return data


def _entity_or_none(model: type[Entity], data: Any) -> Any:
    # mutation endpoints answer either with the entity or with a bare status
    if isinstance(data, dict) and "id" in data:
        return model.model_validate(data)
    return None


class HttpSportsApi(SportsApi):
    """Client for the games/series/messages/notifications REST API."""

    def __init__(
        self,
        base_url: str,
        token_provider: TokenProvider,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Store the API ``base_url``, token source and optional HTTP ``client``."""
        self.base_url = base_url.rstrip("/")
        self.token_provider = token_provider
        self.client = client or httpx.AsyncClient(timeout=15.0)

    # ------------------------------------------------------------------
    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
    ) -> Any:
        """Send one authenticated request and return the decoded body.

        Parameters
        ----------
        method:
            HTTP verb.
        path:
            Path below ``base_url``, starting with ``/api``.
        params:
            Query parameters; ``None`` values are dropped.
        json:
            Optional JSON body.

        """
        url = f"{self.base_url}{path}"
        query = {k: v for k, v in (params or {}).items() if v is not None}
        refresh = False
        while True:
            token = await self.token_provider(refresh=refresh)
            headers = {"Authorization": f"Bearer {token}"} if token else {}
            try:
                response = await self.client.request(
                    method, url, params=query, json=json, headers=headers
                )
            except httpx.TransportError as exc:
                raise TransportError(f"{method} {path}: {exc}") from exc
            if response.status_code == 401 and not refresh:
                log.info("token rejected for %s %s; refreshing", method, path)
                refresh = True
                continue
            break

        if response.status_code == 401:
            raise AuthenticationError(_error_message(response))
        if 400 <= response.status_code < 500:
            raise MutationRejected(_error_message(response), response.status_code)
        if response.status_code >= 500:
            raise TransportError(f"{method} {path}: {_error_message(response)}")
        if response.status_code == 204 or not response.content:
            return {}
        return response.json()

    # ------------------------------------------------------------------
    # Games
    async def search_games(
        self,
        *,
        date: str | None = None,
        city: str | None = None,
        field_id: str | None = None,
    ) -> list[Game]:
        data = await self._request(
            "GET",
            "/api/games/search",
            params={"date": date, "city": city, "fieldId": field_id},
        )
        return [Game.model_validate(item) for item in _items(data, "games")]

    async def friends_games(self) -> list[Game]:
        data = await self._request("GET", "/api/games/friends")
        return [Game.model_validate(item) for item in _items(data, "games")]

    async def my_games(self) -> list[Game]:
        data = await self._request("GET", "/api/games/mine")
        return [Game.model_validate(item) for item in _items(data, "games")]

    async def get_game(self, game_id: str) -> Game:
        data = await self._request("GET", f"/api/games/{game_id}")
        return Game.model_validate(_object(data, "game"))

    async def join_game(self, game_id: str) -> Game | None:
        data = await self._request("POST", f"/api/games/{game_id}/join")
        return _entity_or_none(Game, data)

    async def leave_game(self, game_id: str) -> Game | None:
        data = await self._request("POST", f"/api/games/{game_id}/leave")
        return _entity_or_none(Game, data)

    # ------------------------------------------------------------------
    # Series
    async def get_series(self, series_id: str) -> tuple[Series, list[Game]]:
        data = _object(await self._request("GET", f"/api/series/{series_id}"), "series")
        games = [Game.model_validate(item) for item in _items(data, "games")]
        series = Series.model_validate(
            {"gameIds": [g.id for g in games], **data.get("series", data)}
        )
        return series, games

    async def subscribe_series(self, series_id: str) -> Series | None:
        data = await self._request("POST", f"/api/series/{series_id}/subscribe")
        return _entity_or_none(Series, data)

    async def unsubscribe_series(self, series_id: str) -> Series | None:
        data = await self._request("DELETE", f"/api/series/{series_id}/subscribe")
        return _entity_or_none(Series, data)

    # ------------------------------------------------------------------
    # Messages
    async def list_messages(self, room_id: str, limit: int = 100) -> list[ChatMessage]:
        data = await self._request(
            "GET", "/api/messages", params={"roomId": room_id, "limit": limit}
        )
        return [ChatMessage.model_validate(item) for item in _items(data, "messages")]

    async def send_message(
        self, room_id: str, text: str, *, temp_id: str, reply_to: str | None = None
    ) -> ChatMessage | None:
        body = {"roomId": room_id, "text": text, "tempId": temp_id, "replyTo": reply_to}
        data = await self._request("POST", "/api/messages", json=body)
        return _entity_or_none(ChatMessage, data)

    async def edit_message(self, message_id: str, text: str) -> ChatMessage | None:
        data = await self._request(
            "PATCH", f"/api/messages/{message_id}", json={"text": text}
        )
        return _entity_or_none(ChatMessage, data)

    async def delete_message(self, message_id: str) -> ChatMessage | None:
        data = await self._request("DELETE", f"/api/messages/{message_id}")
        return _entity_or_none(ChatMessage, data)

    async def react(
        self, message_id: str, emoji: str, *, added: bool = True
    ) -> ChatMessage | None:
        data = await self._request(
            "POST" if added else "DELETE",
            f"/api/messages/{message_id}/reactions",
            json={"emoji": emoji},
        )
        return _entity_or_none(ChatMessage, data)

    # ------------------------------------------------------------------
    # Notifications
    async def list_notifications(self) -> list[Notification]:
        data = await self._request("GET", "/api/notifications")
        return [
            Notification.model_validate(n) for n in _items(data, "notifications")
        ]

    async def mark_notification_read(self, notification_id: str) -> Notification | None:
        data = await self._request("POST", f"/api/notifications/{notification_id}/read")
        return _entity_or_none(Notification, data)

    async def close(self) -> None:
        """Close the underlying :class:`httpx.AsyncClient`."""
        await self.client.aclose()
