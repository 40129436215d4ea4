import datetime as dt
import random

from pickup_sync.core.events import parse_event
from pickup_sync.core.models import EntityKind
from pickup_sync.data.models import Change, ChangeType
from pickup_sync.projections import (
    ProjectionRegistry,
    games_in_city,
    games_on_date,
    games_with_friends,
    messages_in_room,
    my_games,
)
from pickup_sync.reducer import reduce_event

NOW = dt.datetime(2030, 6, 1, 12, 0, tzinfo=dt.UTC)


def clock():
    return NOW


def put(store, *entities):
    store.apply(Change(e.kind, e.id, e, ChangeType.CREATED) for e in entities)


def brute_force(projection):
    matching = [e for e in projection.store.values(projection.kind) if projection.matches(e)]
    matching.sort(key=lambda e: (projection.spec.sort_key(e), e.id))
    if projection.spec.limit is not None:
        matching = matching[: projection.spec.limit]
    return [e.id for e in matching]


def test_projection_follows_store_changes(store, make_game):
    registry = ProjectionRegistry(store, clock)
    view = registry.register(games_on_date("2030-06-01"))
    put(store, make_game("late", time="20:00"), make_game("early", time="17:00"))
    put(store, make_game("other-day", date="2030-06-02"))
    assert view.ids == ["early", "late"]

    calls = []
    view.on_change(calls.append)
    store.apply([Change(EntityKind.GAME, "late", make_game("late", version=2, time="16:00"), ChangeType.UPDATED)])
    assert view.ids == ["late", "early"]
    assert calls == [view]

    store.apply([Change(EntityKind.GAME, "early", None, ChangeType.REMOVED)])
    assert view.ids == ["late"]


def test_unrelated_changes_do_not_notify(store, make_game, make_message):
    registry = ProjectionRegistry(store, clock)
    view = registry.register(games_on_date("2030-06-01"))
    calls = []
    view.on_change(calls.append)
    put(store, make_game("x", date="2030-07-01"), make_message("m1"))
    assert calls == []


def test_upcoming_only_hides_finished_games(store, make_game):
    registry = ProjectionRegistry(store, clock)
    put(
        store,
        make_game("done", time="10:00", duration=1),
        make_game("running", time="11:30", duration=1),
        make_game("later", time="19:00"),
    )
    view = registry.register(games_on_date("2030-06-01"))
    assert view.ids == ["running", "later"]

    view.rebuild(NOW + dt.timedelta(hours=2))
    assert view.ids == ["later"]


def test_limit_caps_items_but_keeps_the_rest_indexed(store, make_message):
    registry = ProjectionRegistry(store, clock)
    view = registry.register(messages_in_room("r1", limit=2))
    for minute in range(4):
        put(store, make_message(f"m{minute}", createdAt=f"2030-06-01T12:0{minute}:00+00:00"))
    assert view.ids == ["m3", "m2"]
    assert view.holds("m0")
    store.apply([Change(EntityKind.MESSAGE, "m3", None, ChangeType.REMOVED)])
    assert view.ids == ["m2", "m1"]


def test_overlapping_projections_share_payloads(store, make_game):
    registry = ProjectionRegistry(store, clock)
    by_date = registry.register(games_on_date("2030-06-01"))
    by_city = registry.register(games_in_city("oslo"))
    mine = registry.register(my_games("u1"))
    put(store, make_game("g1", city="Oslo", participants=["u1"]))
    assert by_date.items[0] is by_city.items[0] is mine.items[0]


def test_unregister_reports_orphans(store, make_game):
    registry = ProjectionRegistry(store, clock)
    by_date = registry.register(games_on_date("2030-06-01"))
    friends = registry.register(games_with_friends(["f1"]))
    put(store, make_game("shared", organizerId="f1"), make_game("solo"))
    assert registry.unregister(by_date) == {"solo"}
    assert not by_date.active
    assert registry.active(EntityKind.GAME) == [friends]


def test_projections_match_brute_force_under_random_deltas(store, make_game):
    rng = random.Random(7)
    registry = ProjectionRegistry(store, clock)
    views = [
        registry.register(games_on_date("2030-06-01")),
        registry.register(games_in_city("Oslo")),
        registry.register(my_games("u1")),
        registry.register(games_with_friends(["u2", "u3"])),
    ]
    versions = {}
    for step in range(400):
        game_id = f"g{rng.randrange(15)}"
        roll = rng.random()
        if roll < 0.5:
            version = versions.get(game_id, 0) + rng.choice([-1, 1, 2])
            versions[game_id] = max(version, versions.get(game_id, 0))
            payload = make_game(
                game_id,
                version=version,
                date=rng.choice(["2030-06-01", "2030-06-02"]),
                time=rng.choice(["09:00", "13:00", "18:00", "21:00"]),
                city=rng.choice(["Oslo", "Bergen"]),
                maxPlayers=3,
                participants=rng.sample(["u1", "u2", "u3", "u4"], rng.randrange(4)),
            ).dump()
            event = parse_event("entity.created", {"kind": "game", "data": payload})
        elif roll < 0.8:
            event = parse_event(
                rng.choice(["game.joined", "game.left"]),
                {"gameId": game_id, "userId": rng.choice(["u1", "u2", "u3", "u4"])},
            )
        else:
            event = parse_event("entity.deleted", {"kind": "game", "id": game_id})
        store.apply(reduce_event(store, event, now=NOW).changes)
        for view in views:
            assert view.ids == brute_force(view), (step, view.spec.name)
