import asyncio
import datetime as dt

import pytest
from fakes import settle

from pickup_sync.core.events import parse_event
from pickup_sync.core.models import EntityKind, Participant
from pickup_sync.data.models import Change, ChangeType, Mutation, MutationAction
from pickup_sync.errors import DuplicateMutation, MutationRejected, MutationTimeout
from pickup_sync.optimistic import OptimisticTracker
from pickup_sync.reducer import reduce_event

NOW = dt.datetime(2030, 6, 1, 12, 0, tzinfo=dt.UTC)


def join_mutation(store, game_id="g1", user_id="me"):
    def patch(current):
        if current is None or current.membership(user_id) is not None:
            return current
        return current.model_copy(
            update={"participants": current.participants + (Participant(id=user_id),)}
        )

    def settled():
        stored = store.get_base(EntityKind.GAME, game_id)
        return stored is not None and stored.membership(user_id) is not None

    return Mutation(
        EntityKind.GAME, game_id, MutationAction.JOIN, user_id, patch, settled=settled
    )


def seeded(store, game):
    store.apply([Change(game.kind, game.id, game, ChangeType.CREATED)])


def deliver(store, tracker, name, payload):
    event = parse_event(name, payload)
    store.apply(reduce_event(store, event, now=NOW).changes)
    tracker.observe(event)


def test_rejected_join_restores_the_exact_prior_state(store, make_game):
    seeded(store, make_game("g1", maxPlayers=10, participants=["a"]))
    tracker = OptimisticTracker(store, timeout=1.0)
    before = store.snapshot()
    seen_during = []

    async def submit():
        seen_during.append(store.get(EntityKind.GAME, "g1").membership("me"))
        raise MutationRejected("Game is full", 400)

    with pytest.raises(MutationRejected):
        asyncio.run(tracker.run(join_mutation(store), submit))
    assert seen_during == ["participant"]
    assert store.snapshot() == before
    assert not store.is_optimistic(EntityKind.GAME, "g1")
    assert tracker.records() == []


def test_rollback_keeps_deltas_that_arrived_meanwhile(store, make_game):
    seeded(store, make_game("g1", participants=["a"]))
    tracker = OptimisticTracker(store, timeout=1.0)

    async def submit():
        deliver(store, tracker, "game.joined", {"gameId": "g1", "userId": "b", "version": 2})
        raise MutationRejected("nope")

    with pytest.raises(MutationRejected):
        asyncio.run(tracker.run(join_mutation(store), submit))
    game = store.get(EntityKind.GAME, "g1")
    assert [p.id for p in game.participants] == ["a", "b"]


def test_waitlisted_user_sees_waitlist_after_confirmation(store, make_game):
    full = [f"p{i}" for i in range(10)]
    seeded(store, make_game("g1", maxPlayers=10, participants=full, waitlistEnabled=True))
    tracker = OptimisticTracker(store, timeout=1.0)

    async def scenario():
        task = asyncio.create_task(
            tracker.run(join_mutation(store, user_id="A"), _bare_success)
        )
        await settle()
        assert store.get(EntityKind.GAME, "g1").membership("A") == "participant"
        deliver(
            store,
            tracker,
            "game.joined",
            {"gameId": "g1", "userId": "A", "participants": full, "waitlist": ["A"], "version": 2},
        )
        return await task

    result = asyncio.run(scenario())
    assert result.membership("A") == "waitlisted"
    assert store.get(EntityKind.GAME, "g1").membership("A") == "waitlisted"
    assert not store.is_optimistic(EntityKind.GAME, "g1")


async def _bare_success():
    await asyncio.sleep(0)
    return None


def test_entity_response_is_merged(store, make_game):
    seeded(store, make_game("g1"))
    tracker = OptimisticTracker(store, timeout=1.0)
    confirmed = make_game("g1", version=2, participants=["me"])

    async def submit():
        return confirmed

    assert asyncio.run(tracker.run(join_mutation(store), submit)) is confirmed
    assert store.get_base(EntityKind.GAME, "g1") == confirmed
    assert not store.is_optimistic(EntityKind.GAME, "g1")


def test_unconfirmed_mutation_times_out_and_rolls_back(store, make_game):
    seeded(store, make_game("g1"))
    tracker = OptimisticTracker(store, timeout=0.05)
    before = store.snapshot()

    with pytest.raises(MutationTimeout):
        asyncio.run(tracker.run(join_mutation(store), _bare_success))
    assert store.snapshot() == before


def test_slow_submit_times_out(store, make_game):
    seeded(store, make_game("g1"))
    tracker = OptimisticTracker(store, timeout=0.05)

    async def hang():
        await asyncio.sleep(10)

    with pytest.raises(MutationTimeout):
        asyncio.run(tracker.run(join_mutation(store), hang))
    assert not store.is_optimistic(EntityKind.GAME, "g1")


def test_duplicate_submission_is_rejected_locally(store, make_game):
    seeded(store, make_game("g1"))
    tracker = OptimisticTracker(store, timeout=1.0)
    submitted = []

    async def submit():
        submitted.append(1)
        await asyncio.sleep(0.01)
        return make_game("g1", version=2, participants=["me"])

    async def scenario():
        first = asyncio.create_task(tracker.run(join_mutation(store), submit))
        await settle()
        with pytest.raises(DuplicateMutation):
            await tracker.run(join_mutation(store), submit)
        await first

    asyncio.run(scenario())
    assert submitted == [1]
