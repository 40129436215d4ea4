"""Optimistic mutations: show first, confirm or roll back later."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass

from .baseline import merge_snapshot
from .core.events import Event
from .core.models import Entity
from .data.models import Mutation, OptimisticRecord
from .data.store import EntityStore
from .errors import DuplicateMutation, MutationTimeout

log = logging.getLogger(__name__)

Submit = Callable[[], Awaitable[Entity | None]]


@dataclass
class _Pending:
    mutation: Mutation
    record: OptimisticRecord
    confirmed: asyncio.Future[None]


class OptimisticTracker:
    """Run mutations against the store's optimistic overlay.

    The patch of a mutation is visible as soon as :meth:`run` is called. It is
    removed again once the server confirmed the mutation, either with the
    updated entity in the response or with a matching delta event, and also
    when the mutation fails or times out. Because patches live in an overlay,
    removing one restores exactly the authoritative state, including deltas
    that arrived in the meantime.
    """

    def __init__(
        self,
        store: EntityStore,
        *,
        timeout: float = 10.0,
        merge: Callable[[Iterable[Entity]], object] | None = None,
    ) -> None:
        self.store = store
        self.timeout = timeout
        self._merge = merge or self._merge_snapshot
        self._pending: dict[tuple, _Pending] = {}

    def records(self) -> list[OptimisticRecord]:
        return [pending.record for pending in self._pending.values()]

    def is_pending(self, mutation: Mutation) -> bool:
        return mutation.key in self._pending

    async def run(self, mutation: Mutation, submit: Submit) -> Entity | None:
        """Apply ``mutation`` provisionally and submit it.

        Returns
        -------
        Entity | None
            The entity returned by the server, or the confirmed view of the
            target entity when the server answered with a bare status.

        Raises
        ------
        DuplicateMutation
            If the same mutation is still pending; nothing is submitted.
        MutationRejected
            If the server refused the mutation.
        MutationTimeout
            If no confirmation arrived before the deadline.

        """
        key = mutation.key
        if key in self._pending:
            raise DuplicateMutation(
                f"{mutation.action.value} on {mutation.kind.value} "
                f"{mutation.entity_id} is already pending"
            )
        loop = asyncio.get_running_loop()
        record = OptimisticRecord(
            local_id=uuid.uuid4().hex,
            kind=mutation.kind,
            entity_id=mutation.entity_id,
            intended_mutation=mutation.action,
            submitted_at=loop.time(),
            expires_after=self.timeout,
        )
        pending = _Pending(mutation, record, loop.create_future())
        self._pending[key] = pending
        self.store.add_patch(
            mutation.kind, mutation.entity_id, record.local_id, mutation.patch
        )
        try:
            try:
                result = await asyncio.wait_for(submit(), timeout=self.timeout)
            except asyncio.TimeoutError:
                raise MutationTimeout(
                    f"{mutation.action.value} on {mutation.entity_id} timed out"
                ) from None
            if result is not None:
                self._merge([result])
            elif not pending.confirmed.done() and not mutation.settled():
                remaining = max(record.deadline - loop.time(), 0.0)
                try:
                    await asyncio.wait_for(
                        asyncio.shield(pending.confirmed), timeout=remaining
                    )
                except asyncio.TimeoutError:
                    raise MutationTimeout(
                        f"no confirmation of {mutation.action.value} "
                        f"on {mutation.entity_id}"
                    ) from None
            record.confirmed = True
            log.debug("confirmed %s on %s", mutation.action.value, mutation.entity_id)
        except Exception as exc:
            log.info(
                "rolling back %s on %s %s: %s",
                mutation.action.value,
                mutation.kind.value,
                mutation.entity_id,
                exc.__class__.__name__,
            )
            raise
        finally:
            del self._pending[key]
            self.store.drop_patch(mutation.kind, mutation.entity_id, record.local_id)
        if result is not None:
            return result
        return self.store.get(mutation.kind, mutation.entity_id)

    def observe(self, event: Event) -> None:
        """Resolve pending mutations confirmed by ``event``.

        Called after the reducer applied the event to the store. The patch of
        a confirmed mutation is dropped at once, without waiting for the
        server's response to the submit.
        """
        for pending in list(self._pending.values()):
            if pending.confirmed.done():
                continue
            try:
                matched = pending.mutation.matches(event) or pending.mutation.settled()
            except Exception:
                log.exception("mutation matcher failed for %s", event.type)
                continue
            if matched:
                pending.confirmed.set_result(None)
                record = pending.record
                self.store.drop_patch(record.kind, record.entity_id, record.local_id)

    def _merge_snapshot(self, entities: Iterable[Entity]) -> None:
        self.store.apply(merge_snapshot(self.store, entities))
