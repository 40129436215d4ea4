import asyncio
import logging

from fakes import FakeSocket, recording_sleep, settle, token_source

from pickup_sync.channel import Backoff, ChannelClient, ConnectionStatus, TopicRegistry
from pickup_sync.core.events import MessageNew
from pickup_sync.errors import AuthenticationError, TransportError


def make_channel(socket, tokens=None, delays=None):
    def factory(**kwargs):
        socket.kwargs = kwargs
        return socket

    return ChannelClient(
        "http://sync.test",
        tokens or token_source(),
        socketio_path="/api/socket",
        backoff=Backoff(0.5, ceiling=2.0),
        client_factory=factory,
        sleep=recording_sleep(delays if delays is not None else []),
    )


def test_backoff_is_exponential_and_capped():
    backoff = Backoff(0.5, factor=2.0, ceiling=3.0)
    assert [backoff.next() for _ in range(5)] == [0.5, 1.0, 2.0, 3.0, 3.0]
    backoff.reset()
    assert backoff.next() == 0.5


def test_topic_registry_counts_consumers():
    topics = TopicRegistry()
    assert topics.add("r1", "a") is True
    assert topics.add("r1", "a") is False
    assert topics.add("r1", "b") is False
    assert topics.remove("r1", "a") is False
    assert topics.remove("r1", "zzz") is False
    assert topics.remove("r1", "b") is True
    assert "r1" not in topics


def test_connect_joins_topics_and_reports_status():
    socket = FakeSocket()
    channel = make_channel(socket)
    statuses = []
    channel.on_status(statuses.append)

    async def scenario():
        await channel.join_topic("games")
        await channel.connect()
        await settle()
        await channel.join_topic("r1", "view-1")
        await channel.join_topic("r1", "view-2")
        await channel.leave_topic("r1", "view-1")
        await channel.leave_topic("r1", "view-2")
        await channel.close()

    asyncio.run(scenario())
    assert socket.kwargs["reconnection"] is False
    assert socket.auth == [{"token": "t1"}]
    assert socket.emitted == [("joinRoom", "games"), ("joinRoom", "r1"), ("leaveRoom", "r1")]
    assert statuses == [ConnectionStatus.CONNECTED, ConnectionStatus.DISCONNECTED]


def test_auth_rejection_refreshes_the_token_once():
    socket = FakeSocket()
    socket.outcomes = [{"message": "Authentication error: jwt expired"}]
    tokens = token_source()
    channel = make_channel(socket, tokens)

    async def scenario():
        await channel.connect()
        await settle()
        status = channel.status
        await channel.close()
        return status

    assert asyncio.run(scenario()) is ConnectionStatus.CONNECTED
    assert tokens.calls == [False, True]
    assert socket.auth == [{"token": "t1"}, {"token": "t2"}]


def test_second_auth_rejection_is_fatal():
    socket = FakeSocket()
    socket.outcomes = [{"message": "Authentication error"}, {"message": "invalid token"}]
    channel = make_channel(socket)
    errors = []
    channel.on_error(errors.append)

    async def scenario():
        await channel.connect()
        await channel.wait_closed()

    asyncio.run(scenario())
    assert channel.status is ConnectionStatus.FAILED
    assert isinstance(channel.last_error, AuthenticationError)
    assert errors == [channel.last_error]
    assert len(socket.auth) == 2


def test_transport_failures_back_off_until_connected():
    socket = FakeSocket()
    socket.outcomes = ["refused", "refused", "refused", "refused"]
    delays = []
    channel = make_channel(socket, delays=delays)
    statuses = []
    channel.on_status(statuses.append)

    async def scenario():
        await channel.connect()
        await settle(60)
        await channel.close()

    asyncio.run(scenario())
    assert delays == [0.5, 1.0, 2.0, 2.0]
    assert statuses[:2] == [ConnectionStatus.DEGRADED, ConnectionStatus.CONNECTED]
    assert channel.backoff.attempts == 0


def test_unreachable_token_endpoint_is_retried():
    socket = FakeSocket()
    calls = []

    async def flaky(*, refresh=False):
        calls.append(refresh)
        if len(calls) == 1:
            raise TransportError("token endpoint unreachable")
        return "t1"

    delays = []
    channel = make_channel(socket, flaky, delays)
    statuses = []
    channel.on_status(statuses.append)

    async def scenario():
        await channel.connect()
        await settle()
        status = channel.status
        await channel.close()
        return status

    assert asyncio.run(scenario()) is ConnectionStatus.CONNECTED
    assert calls == [False, False]
    assert delays == [0.5]
    assert statuses[:2] == [ConnectionStatus.DEGRADED, ConnectionStatus.CONNECTED]
    assert socket.auth == [{"token": "t1"}]


def test_failed_token_refresh_is_fatal():
    socket = FakeSocket()
    socket.outcomes = [{"message": "Authentication error: jwt expired"}]

    async def stale(*, refresh=False):
        if refresh:
            raise TransportError("token endpoint unreachable")
        return "t1"

    channel = make_channel(socket, stale)

    async def scenario():
        await channel.connect()
        await channel.wait_closed()
        await channel.close()

    asyncio.run(scenario())
    assert channel.status is ConnectionStatus.FAILED
    assert isinstance(channel.last_error, AuthenticationError)
    assert len(socket.auth) == 1


def test_reconnect_rejoins_topics_and_reports_a_gap():
    socket = FakeSocket()
    channel = make_channel(socket)
    gaps = []

    async def on_gap():
        gaps.append(channel.status)

    channel.on_reconnect(on_gap)

    async def scenario():
        await channel.join_topic("user_u1")
        await channel.connect()
        await settle()
        assert gaps == []
        socket.drop()
        await settle()
        await channel.close()

    asyncio.run(scenario())
    assert gaps == [ConnectionStatus.CONNECTED]
    assert socket.emitted == [("joinRoom", "user_u1"), ("joinRoom", "user_u1")]


def test_inbound_events_are_validated_and_dispatched(caplog):
    socket = FakeSocket()
    channel = make_channel(socket)
    typed, everything = [], []

    def broken(event):
        raise RuntimeError("handler bug")

    channel.on("message.new", broken)
    channel.on("message.new", typed.append)
    remove = channel.on("*", everything.append)

    async def scenario():
        await channel.connect()
        await settle()
        with caplog.at_level(logging.WARNING, logger="pickup_sync.channel"):
            await socket.push("message", {"id": "m1", "roomId": "r1", "text": "hi"})
            await socket.push("messageDeleted", {"roomId": "r1"})
        remove()
        await socket.push("typing:start", {"roomId": "r1", "userId": "u2"})
        await channel.close()

    asyncio.run(scenario())
    assert len(typed) == 1 and isinstance(typed[0], MessageNew)
    assert [e.type for e in everything] == ["message.new"]
    assert "dropping malformed event" in caplog.text
    assert "handler failed for message.new" in caplog.text


def test_emit_is_dropped_while_disconnected():
    socket = FakeSocket()
    channel = make_channel(socket)
    assert asyncio.run(channel.emit("typing", {"roomId": "r1"})) is False
    assert socket.emitted == []
