"""Persistent socket.io channel carrying delta events.

The client runs its own connection loop on top of
:class:`socketio.AsyncClient` (with the library's reconnection turned off) so
that it controls the backoff, the single token refresh after an
authentication failure and the reporting of reconnects as potential gaps.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import socketio
from socketio.exceptions import ConnectionError as HandshakeError

from .adapters.base import TokenProvider
from .core.events import Event, parse_event
from .errors import AuthenticationError, MalformedEvent, TransportError

log = logging.getLogger(__name__)

EventHandler = Callable[[Event], None]
StatusHandler = Callable[["ConnectionStatus"], None]
ErrorHandler = Callable[[Exception], None]
ReconnectHandler = Callable[[], Awaitable[None] | None]

# markers the servers put in a rejected handshake
_AUTH_MARKERS = ("authentication error", "unauthorized", "jwt", "token")


class ConnectionStatus(str, Enum):
    CONNECTED = "connected"
    DEGRADED = "degraded"
    DISCONNECTED = "disconnected"
    FAILED = "failed"


@dataclass
class Backoff:
    """Exponential retry delays capped at ``ceiling``."""

    initial: float = 0.5
    factor: float = 2.0
    ceiling: float = 30.0
    attempts: int = field(default=0, init=False)

    def next(self) -> float:
        delay = min(self.initial * self.factor**self.attempts, self.ceiling)
        self.attempts += 1
        return delay

    def reset(self) -> None:
        self.attempts = 0


class TopicRegistry:
    """Reference counted channel topics.

    A topic stays joined while at least one consumer holds it.
    """

    def __init__(self) -> None:
        self._consumers: dict[str, set[str]] = {}

    def add(self, topic: str, consumer: str) -> bool:
        """Register ``consumer``; return ``True`` if the topic is new."""
        consumers = self._consumers.setdefault(topic, set())
        first = not consumers
        consumers.add(consumer)
        return first

    def remove(self, topic: str, consumer: str) -> bool:
        """Unregister ``consumer``; return ``True`` if the topic is now unused."""
        consumers = self._consumers.get(topic)
        if not consumers or consumer not in consumers:
            return False
        consumers.discard(consumer)
        if consumers:
            return False
        del self._consumers[topic]
        return True

    def consumers(self, topic: str) -> frozenset[str]:
        return frozenset(self._consumers.get(topic, ()))

    def topics(self) -> list[str]:
        return list(self._consumers)

    def __contains__(self, topic: str) -> bool:
        return topic in self._consumers


def _is_auth_failure(reason: Any) -> bool:
    if isinstance(reason, dict):
        reason = reason.get("message", "")
    text = str(reason).lower()
    return any(marker in text for marker in _AUTH_MARKERS)


class ChannelClient:
    """Connection to the push server.

    Parameters
    ----------
    url:
        Server URL, e.g. ``http://localhost:3005``.
    token_provider:
        Source of the bearer token sent in the handshake ``auth`` payload.
    socketio_path:
        Path of the socket.io endpoint on the server.
    backoff:
        Retry delays between connection attempts.
    client_factory:
        Builds the underlying socket client, :class:`socketio.AsyncClient`
        unless a test substitutes it.
    sleep:
        Coroutine used to wait between attempts.

    """

    def __init__(
        self,
        url: str,
        token_provider: TokenProvider,
        *,
        socketio_path: str = "/api/socket",
        backoff: Backoff | None = None,
        client_factory: Callable[..., Any] = socketio.AsyncClient,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.url = url
        self.token_provider = token_provider
        self.socketio_path = socketio_path
        self.backoff = backoff or Backoff()
        self.topics = TopicRegistry()
        self.status = ConnectionStatus.DISCONNECTED
        self.last_error: Exception | None = None
        self._sleep = sleep
        self._handlers: dict[str, list[EventHandler]] = {}
        self._status_handlers: list[StatusHandler] = []
        self._error_handlers: list[ErrorHandler] = []
        self._reconnect_handlers: list[ReconnectHandler] = []
        self._task: asyncio.Task[None] | None = None
        self._closing = False
        self._connected_once = False
        self._handshake_error: Any = None
        self._sio = client_factory(reconnection=False, logger=False)
        self._sio.on("connect_error", self._on_connect_error)
        self._sio.on("*", self._on_any)

    # ------------------------------------------------------------------
    # Listener registration
    # ------------------------------------------------------------------
    def on(self, event_type: str, handler: EventHandler) -> Callable[[], None]:
        """Call ``handler`` for every event of ``event_type`` (``"*"`` for all)."""
        handlers = self._handlers.setdefault(event_type, [])
        handlers.append(handler)

        def remove() -> None:
            if handler in handlers:
                handlers.remove(handler)

        return remove

    def on_status(self, handler: StatusHandler) -> Callable[[], None]:
        return _register(self._status_handlers, handler)

    def on_error(self, handler: ErrorHandler) -> Callable[[], None]:
        return _register(self._error_handlers, handler)

    def on_reconnect(self, handler: ReconnectHandler) -> Callable[[], None]:
        return _register(self._reconnect_handlers, handler)

    # ------------------------------------------------------------------
    # Topics
    # ------------------------------------------------------------------
    async def join_topic(self, topic: str, consumer: str = "default") -> None:
        if self.topics.add(topic, consumer):
            log.debug("joining topic %s", topic)
            await self.emit("joinRoom", topic)

    async def leave_topic(self, topic: str, consumer: str = "default") -> None:
        if self.topics.remove(topic, consumer):
            log.debug("leaving topic %s", topic)
            await self.emit("leaveRoom", topic)

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------
    async def connect(self) -> None:
        """Start the connection loop in the background."""
        if self._task is not None and not self._task.done():
            return
        self._closing = False
        self._task = asyncio.create_task(self._run(), name="pickup-sync-channel")

    async def wait_closed(self) -> None:
        """Wait until the connection loop stops (close or fatal error)."""
        if self._task is not None:
            await asyncio.shield(self._task)

    async def close(self) -> None:
        self._closing = True
        if self._sio.connected:
            await self._sio.disconnect()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._set_status(ConnectionStatus.DISCONNECTED)

    async def emit(self, event: str, data: Any = None) -> bool:
        """Send an advisory event; dropped when not connected."""
        if self.status is not ConnectionStatus.CONNECTED:
            log.debug("not connected, dropping outbound %s", event)
            return False
        await self._sio.emit(event, data)
        return True

    async def _run(self) -> None:
        refreshing = False
        while not self._closing:
            self._handshake_error = None
            try:
                token = await self.token_provider(refresh=refreshing)
            except (AuthenticationError, TransportError) as exc:
                if refreshing or isinstance(exc, AuthenticationError):
                    self._fail(AuthenticationError(f"no usable token: {exc}"))
                    return
                self._degrade(TransportError(f"token unavailable: {exc}"))
                await self._sleep(self.backoff.next())
                continue
            try:
                await self._sio.connect(
                    self.url,
                    auth={"token": token},
                    socketio_path=self.socketio_path,
                )
            except HandshakeError as exc:
                reason = self._handshake_error or exc
                if _is_auth_failure(reason):
                    if refreshing:
                        self._fail(AuthenticationError(f"handshake rejected: {reason}"))
                        return
                    log.info("handshake rejected, retrying with a fresh token")
                    refreshing = True
                    continue
                self._degrade(TransportError(f"connect failed: {reason}"))
                await self._sleep(self.backoff.next())
                continue

            refreshing = False
            self.backoff.reset()
            self._set_status(ConnectionStatus.CONNECTED)
            for topic in self.topics.topics():
                await self._sio.emit("joinRoom", topic)
            if self._connected_once:
                await self._notify_reconnect()
            self._connected_once = True

            await self._sio.wait()
            if self._closing:
                break
            log.warning("channel connection lost")
            self._degrade(TransportError("connection lost"))
            await self._sleep(self.backoff.next())

    def _degrade(self, error: Exception) -> None:
        log.info("%s", error)
        self.last_error = error
        self._set_status(ConnectionStatus.DEGRADED)

    def _fail(self, error: AuthenticationError) -> None:
        log.error("channel stopped: %s", error)
        self.last_error = error
        self._set_status(ConnectionStatus.FAILED)
        for handler in list(self._error_handlers):
            try:
                handler(error)
            except Exception:
                log.exception("error handler failed")

    def _set_status(self, status: ConnectionStatus) -> None:
        if status is self.status:
            return
        log.debug("channel status %s -> %s", self.status.value, status.value)
        self.status = status
        for handler in list(self._status_handlers):
            try:
                handler(status)
            except Exception:
                log.exception("status handler failed")

    async def _notify_reconnect(self) -> None:
        log.info("channel reconnected; reporting a possible gap")
        for handler in list(self._reconnect_handlers):
            try:
                result = handler()
                if inspect.isawaitable(result):
                    await result
            except Exception:
                log.exception("reconnect handler failed")

    # ------------------------------------------------------------------
    # Socket callbacks
    # ------------------------------------------------------------------
    async def _on_connect_error(self, data: Any = None) -> None:
        self._handshake_error = data

    async def _on_any(self, name: str, data: Any = None, *_: Any) -> None:
        try:
            event = parse_event(name, data)
        except MalformedEvent as exc:
            log.warning("dropping malformed event: %s", exc)
            return
        self.dispatch(event)

    def dispatch(self, event: Event) -> None:
        """Hand ``event`` to its handlers, then to the catch-all ones."""
        handlers = self._handlers.get(event.type, []) + self._handlers.get("*", [])
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                log.exception("handler failed for %s", event.type)


def _register(handlers: list, handler: Any) -> Callable[[], None]:
    handlers.append(handler)

    def remove() -> None:
        if handler in handlers:
            handlers.remove(handler)

    return remove
