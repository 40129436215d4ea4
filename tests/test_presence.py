from pickup_sync.core.events import parse_event
from pickup_sync.presence import PresenceTracker


class Clock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def test_typing_indicator_expires_after_ttl():
    clock = Clock()
    presence = PresenceTracker(typing_ttl=3.0, clock=clock)
    assert presence.observe(parse_event("typing:start", {"chatId": "r1", "senderId": "u1"}))
    assert presence.typing_users("r1") == ["u1"]

    clock.now += 2.9
    assert presence.typing_users("r1") == ["u1"]
    clock.now += 0.2
    assert presence.typing_users("r1") == []


def test_typing_stop_clears_immediately():
    presence = PresenceTracker(clock=Clock())
    presence.observe(parse_event("typing:start", {"roomId": "r1", "userId": "u1"}))
    presence.observe(parse_event("typing:stop", {"roomId": "r1", "userId": "u1"}))
    assert presence.typing_users("r1") == []


def test_online_set_follows_presence_updates():
    presence = PresenceTracker()
    presence.observe(parse_event("presence:update", {"userId": "u1", "isOnline": True}))
    presence.observe(parse_event("presence:update", {"userId": "u2", "isOnline": True}))
    presence.observe(parse_event("presence:update", {"userId": "u1", "isOnline": False}))
    assert presence.online == frozenset({"u2"})
    assert not presence.is_online("u1")


def test_stored_events_are_not_presence():
    presence = PresenceTracker()
    assert not presence.observe(parse_event("notification", {"id": "n1"}))
