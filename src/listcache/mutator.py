"""Optimistic mutations with exact rollback.

``mutate()`` writes the predicted result into the cache before it returns and
settles the server call in a task on the running loop:

    handle = mutator.mutate(key, toggle_visibility("c1"), send)
    cache.get(key)          # already shows the optimistic state
    result = await handle   # MutationResult, committed or rolled back
"""

from __future__ import annotations

import asyncio
import copy
from collections.abc import Callable, Generator, Iterable, Mapping
from dataclasses import replace
from typing import Any

import structlog

from listcache.cache import RemoteListCache, now_ms, validate_entry
from listcache.errors import CacheMissError, InvariantViolation, MutationFailed, TransformError
from listcache.transforms import merge_item
from listcache.types import (
    CacheEntry,
    CacheKey,
    Item,
    MutationOutcome,
    MutationResult,
    PendingMutation,
    SendToServer,
    Transform,
)

log = structlog.get_logger()

Revalidate = Callable[[CacheKey], object]
ErrorHandler = Callable[[MutationFailed], object]


class MutationHandle:
    """Awaitable result of ``mutate()``, with access to the pending mutation.

    Usage:
        result = await handle        # MutationResult
        handle.mutation.snapshot     # entry as it was before the change
    """

    __slots__ = ("_mutation", "_task")

    def __init__(
        self, mutation: PendingMutation, task: asyncio.Task[MutationResult]
    ) -> None:
        self._mutation = mutation
        self._task = task

    def __await__(self) -> Generator[Any, None, MutationResult]:
        return self._task.__await__()

    @property
    def mutation(self) -> PendingMutation:
        return self._mutation

    @property
    def task(self) -> asyncio.Task[MutationResult]:
        return self._task

    def done(self) -> bool:
        return self._task.done()


def _authoritative_item(response: Any) -> Item | None:
    if isinstance(response, Mapping) and "id" in response:
        return response
    return None


class OptimisticMutator:
    """Runs optimistic mutations against a shared cache."""

    def __init__(
        self,
        cache: RemoteListCache,
        *,
        revalidate: Revalidate | None = None,
        on_error: ErrorHandler | None = None,
    ) -> None:
        self._cache = cache
        self._revalidate = revalidate or (
            lambda key: cache.invalidate(key, exact=False)
        )
        self._on_error = on_error
        self._pending: dict[CacheKey, list[PendingMutation]] = {}
        self._tasks: set[asyncio.Task[MutationResult]] = set()

    def mutate(
        self,
        key: CacheKey,
        transform: Transform,
        send_to_server: SendToServer,
        *,
        invalidates: Iterable[CacheKey] = (),
        allow_removals: bool = False,
    ) -> MutationHandle:
        """Apply transform to key now and confirm it with the server.

        Raises CacheMissError, TransformError or InvariantViolation before
        anything is written. ``send_to_server`` is only called once the
        optimistic entry is in the cache. Set ``allow_removals`` for
        transforms that are meant to drop items.
        """
        loop = asyncio.get_running_loop()

        current = self._cache.get(key)
        if current is None:
            raise CacheMissError(key)

        snapshot = current
        try:
            optimistic = transform(copy.deepcopy(current))
        except Exception as e:
            log.warning("mutation_transform_failed", key=key, exc_info=True)
            raise TransformError(key, e) from e

        self._check(key, snapshot, optimistic, allow_removals)
        optimistic = replace(optimistic, last_written_at=now_ms())

        mutation = PendingMutation(
            target_key=key,
            apply=transform,
            snapshot=snapshot,
            optimistic=optimistic,
        )
        self._cache.set(key, optimistic)
        self._pending.setdefault(key, []).append(mutation)
        log.debug("mutation_applied", key=key)

        task = loop.create_task(
            self._settle(mutation, send_to_server, tuple(invalidates))
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return MutationHandle(mutation, task)

    def pending(self, key: CacheKey) -> list[PendingMutation]:
        """Mutations on key that have not settled yet."""
        return list(self._pending.get(key, ()))

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def wait_idle(self) -> None:
        """Wait until every mutation started so far has settled."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    def _check(
        self,
        key: CacheKey,
        before: CacheEntry,
        after: Any,
        allow_removals: bool,
    ) -> None:
        if not isinstance(after, CacheEntry):
            raise InvariantViolation(
                f"Transform for key {key!r} returned {type(after).__name__}, "
                "expected CacheEntry"
            )
        validate_entry(after)
        if allow_removals:
            return
        dropped = set(before.ids) - set(after.ids)
        if dropped:
            raise InvariantViolation(
                f"Transform for key {key!r} dropped items {sorted(map(str, dropped))}"
            )

    async def _settle(
        self,
        mutation: PendingMutation,
        send_to_server: SendToServer,
        invalidates: tuple[CacheKey, ...],
    ) -> MutationResult:
        key = mutation.target_key
        try:
            response = await send_to_server()
        except asyncio.CancelledError:
            self._rollback(mutation)
            raise
        except Exception as e:
            self._rollback(mutation)
            error = MutationFailed(e)
            log.warning("mutation_rolled_back", key=key, error=error.message)
            self._report(error)
            return MutationResult(MutationOutcome.ROLLED_BACK, key, error=error)
        finally:
            self._forget(mutation)

        mutation.outcome = MutationOutcome.COMMITTED
        item = _authoritative_item(response)
        if item is not None and self._merge(key, item):
            log.debug("mutation_committed", key=key, merged=True)
        else:
            self._revalidate(key)
            log.debug("mutation_committed", key=key, merged=False)
        for other in invalidates:
            self._revalidate(other)
        return MutationResult(MutationOutcome.COMMITTED, key, item=item)

    def _merge(self, key: CacheKey, item: Item) -> bool:
        current = self._cache.get(key)
        if current is None or current.find(item["id"]) is None:
            return False
        merged = merge_item(current, item)
        self._cache.set(key, replace(merged, last_written_at=now_ms()))
        return True

    def _rollback(self, mutation: PendingMutation) -> None:
        # Whole-entry restore; writes made to the key in the meantime are lost
        mutation.outcome = MutationOutcome.ROLLED_BACK
        key = mutation.target_key
        if key not in self._cache:
            # Evicted while in flight; nothing references it any more
            log.debug("mutation_rollback_skipped", key=key, reason="evicted")
            return
        self._cache.set(key, mutation.snapshot)

    def _forget(self, mutation: PendingMutation) -> None:
        key = mutation.target_key
        remaining = [m for m in self._pending.get(key, ()) if m is not mutation]
        if remaining:
            self._pending[key] = remaining
        else:
            self._pending.pop(key, None)

    def _report(self, error: MutationFailed) -> None:
        if self._on_error is None:
            return
        try:
            self._on_error(error)
        except Exception:
            log.warning("mutation_error_handler_failed", exc_info=True)
