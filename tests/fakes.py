"""In-memory stand-ins for the REST API and the socket client."""

import asyncio
from typing import Any

from socketio.exceptions import ConnectionError as HandshakeError

from pickup_sync.adapters.base import SportsApi


async def settle(rounds: int = 20) -> None:
    """Let background tasks run until they block."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeApi(SportsApi):
    """Serves entities from dicts and records every call.

    ``errors[name]`` makes a method raise, ``results[name]`` is what a
    mutation returns (``None``, a bare success, by default) and
    ``gates[name]`` holds events that successive calls wait on.
    """

    def __init__(self) -> None:
        self.games: dict[str, Any] = {}
        self.series: dict[str, Any] = {}
        self.messages: dict[str, Any] = {}
        self.notifications: dict[str, Any] = {}
        self.calls: list[tuple] = []
        self.errors: dict[str, Exception] = {}
        self.results: dict[str, Any] = {}
        self.gates: dict[str, list[asyncio.Event]] = {}

    async def _call(self, name: str, *args: Any) -> Any:
        self.calls.append((name, *args))
        gates = self.gates.get(name)
        if gates:
            await gates.pop(0).wait()
        if name in self.errors:
            raise self.errors[name]
        return self.results.get(name)

    def called(self, name: str) -> list[tuple]:
        return [call for call in self.calls if call[0] == name]

    async def search_games(self, *, date=None, city=None, field_id=None):
        await self._call("search_games", date, city, field_id)
        return [
            g
            for g in self.games.values()
            if (date is None or g.date == date)
            and (city is None or g.city == city)
            and (field_id is None or g.field_id == field_id)
        ]

    async def friends_games(self):
        await self._call("friends_games")
        return list(self.games.values())

    async def my_games(self):
        await self._call("my_games")
        return list(self.games.values())

    async def get_game(self, game_id):
        await self._call("get_game", game_id)
        return self.games[game_id]

    async def join_game(self, game_id):
        return await self._call("join_game", game_id)

    async def leave_game(self, game_id):
        return await self._call("leave_game", game_id)

    async def get_series(self, series_id):
        await self._call("get_series", series_id)
        games = [g for g in self.games.values() if g.series_id == series_id]
        return self.series[series_id], games

    async def subscribe_series(self, series_id):
        return await self._call("subscribe_series", series_id)

    async def unsubscribe_series(self, series_id):
        return await self._call("unsubscribe_series", series_id)

    async def list_messages(self, room_id, limit=100):
        await self._call("list_messages", room_id, limit)
        return [m for m in self.messages.values() if m.room_id == room_id][-limit:]

    async def send_message(self, room_id, text, *, temp_id, reply_to=None):
        return await self._call("send_message", room_id, text, temp_id)

    async def edit_message(self, message_id, text):
        return await self._call("edit_message", message_id, text)

    async def delete_message(self, message_id):
        return await self._call("delete_message", message_id)

    async def react(self, message_id, emoji, *, added=True):
        return await self._call("react", message_id, emoji, added)

    async def list_notifications(self):
        await self._call("list_notifications")
        return list(self.notifications.values())

    async def mark_notification_read(self, notification_id):
        return await self._call("mark_notification_read", notification_id)


class FakeSocket:
    """Stand-in for :class:`socketio.AsyncClient`.

    ``outcomes`` scripts successive ``connect`` calls: ``None`` succeeds, a
    dict is sent to the ``connect_error`` handler before the handshake fails,
    and ``"refused"`` fails without a handshake error.
    """

    def __init__(self, **kwargs: Any) -> None:
        self.kwargs = kwargs
        self.handlers: dict[str, Any] = {}
        self.connected = False
        self.emitted: list[tuple[str, Any]] = []
        self.auth: list[Any] = []
        self.outcomes: list[Any] = []
        self._lost: asyncio.Event | None = None

    def on(self, event, handler=None):
        self.handlers[event] = handler

    async def connect(self, url, auth=None, socketio_path=None, **kwargs):
        self.auth.append(auth)
        outcome = self.outcomes.pop(0) if self.outcomes else None
        if outcome == "refused":
            raise HandshakeError("Connection refused by the server")
        if outcome is not None:
            await self.handlers["connect_error"](outcome)
            raise HandshakeError("One or more namespaces failed to connect")
        self.connected = True
        self._lost = asyncio.Event()

    async def wait(self):
        await self._lost.wait()

    async def disconnect(self):
        self.drop()

    def drop(self):
        """Simulate the transport going away."""
        self.connected = False
        if self._lost is not None:
            self._lost.set()

    async def emit(self, event, data=None):
        self.emitted.append((event, data))

    async def push(self, name, data):
        await self.handlers["*"](name, data)


def token_source(tokens=("t1", "t2", "t3")):
    """Token provider returning the next token on each refresh."""
    issued = list(tokens)
    calls: list[bool] = []

    async def provide(*, refresh=False):
        calls.append(refresh)
        if refresh and len(issued) > 1:
            issued.pop(0)
        return issued[0]

    provide.calls = calls
    return provide


def recording_sleep(delays):
    """Replacement for ``asyncio.sleep`` that records the requested delays."""

    async def sleep(delay):
        delays.append(delay)
        await asyncio.sleep(0)

    return sleep
