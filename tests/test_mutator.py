"""Tests for optimistic mutations."""

import asyncio

import pytest

from listcache import (
    CacheEntry,
    CacheMissError,
    InvariantViolation,
    MutationFailed,
    MutationOutcome,
    OptimisticMutator,
    RemoteListCache,
    TransformError,
    remove_item,
    toggle_visibility,
    update_item,
)


@pytest.fixture
def mutator(cache: RemoteListCache) -> OptimisticMutator:
    return OptimisticMutator(cache)


@pytest.fixture
def populated(
    cache: RemoteListCache, courses_key: tuple, courses: CacheEntry
) -> CacheEntry:
    """Cache holding the creator's courses, as after a real fetch."""
    cache.set(courses_key, courses)
    entry = cache.get(courses_key)
    assert entry is not None
    return entry


async def server_ok() -> dict:
    return {"success": True}


async def server_down() -> None:
    raise ConnectionError("Network Error")


class TestToggleVisibility:
    """The creator dashboard's visibility switch."""

    async def test_success(
        self,
        cache: RemoteListCache,
        mutator: OptimisticMutator,
        courses_key: tuple,
        populated: CacheEntry,
    ) -> None:
        handle = mutator.mutate(courses_key, toggle_visibility("c1"), server_ok)

        # Visible before any await
        assert cache.get(courses_key).find("c1")["visibility"] == "public"

        result = await handle
        assert result.outcome is MutationOutcome.COMMITTED
        assert result.committed
        assert result.error is None
        entry = cache.get(courses_key)
        assert entry.find("c1")["visibility"] == "public"
        assert entry.is_stale is True  # Marked for revalidation

    async def test_failure_rolls_back_exactly(
        self,
        cache: RemoteListCache,
        mutator: OptimisticMutator,
        courses_key: tuple,
        populated: CacheEntry,
    ) -> None:
        handle = mutator.mutate(courses_key, toggle_visibility("c1"), server_down)
        assert cache.get(courses_key).find("c1")["visibility"] == "public"

        result = await handle
        assert result.outcome is MutationOutcome.ROLLED_BACK
        assert cache.get(courses_key) == populated
        assert cache.get(courses_key).find("c1")["visibility"] == "private"
        assert isinstance(result.error, MutationFailed)
        assert isinstance(result.error.cause, ConnectionError)
        assert result.error.message == "Network Error"
        assert result.error.recoverable is True

    async def test_server_item_wins(
        self,
        cache: RemoteListCache,
        mutator: OptimisticMutator,
        courses_key: tuple,
        populated: CacheEntry,
    ) -> None:
        async def send() -> dict:
            return {"id": "c1", "visibility": "public", "status": "published", "rev": 7}

        result = await mutator.mutate(courses_key, toggle_visibility("c1"), send)
        assert result.item == {"id": "c1", "visibility": "public", "status": "published", "rev": 7}
        entry = cache.get(courses_key)
        assert entry.find("c1")["rev"] == 7
        assert entry.is_stale is False


class TestRollbackExactness:
    @pytest.mark.parametrize(
        "transform",
        [
            toggle_visibility("c1"),
            update_item("c2", title="Changed", price=10),
            update_item("c1", visibility="public"),
        ],
    )
    async def test_any_transform_restored(
        self,
        cache: RemoteListCache,
        mutator: OptimisticMutator,
        courses_key: tuple,
        populated: CacheEntry,
        transform,
    ) -> None:
        await mutator.mutate(courses_key, transform, server_down)
        assert cache.get(courses_key) == populated

    async def test_timeout_rolls_back(
        self,
        cache: RemoteListCache,
        mutator: OptimisticMutator,
        courses_key: tuple,
        populated: CacheEntry,
    ) -> None:
        async def slow() -> None:
            await asyncio.wait_for(asyncio.sleep(1), timeout=0.01)

        result = await mutator.mutate(courses_key, toggle_visibility("c1"), slow)
        assert result.rolled_back
        assert cache.get(courses_key) == populated

    async def test_snapshot_independent_of_optimistic_entry(
        self,
        cache: RemoteListCache,
        mutator: OptimisticMutator,
        courses_key: tuple,
        populated: CacheEntry,
    ) -> None:
        gate = asyncio.Event()

        async def send() -> None:
            await gate.wait()
            raise ConnectionError("down")

        handle = mutator.mutate(courses_key, update_item("c2", title="Renamed"), send)
        assert cache.get(courses_key).find("c2")["title"] == "Renamed"
        assert handle.mutation.snapshot.find("c2")["title"] == "Async IO"
        handle.mutation.optimistic.items[1]["title"] = "Scribbled"

        gate.set()
        await handle
        assert cache.get(courses_key).find("c2")["title"] == "Async IO"

    async def test_edits_to_read_entries_do_not_reach_rollback(
        self,
        cache: RemoteListCache,
        mutator: OptimisticMutator,
        courses_key: tuple,
        populated: CacheEntry,
    ) -> None:
        gate = asyncio.Event()

        async def send() -> None:
            await gate.wait()
            raise ConnectionError("down")

        handle = mutator.mutate(courses_key, toggle_visibility("c1"), send)
        cache.get(courses_key).items[1]["title"] = "Scribbled"
        assert cache.get(courses_key).find("c2")["title"] == "Async IO"

        gate.set()
        await handle
        assert cache.get(courses_key) == populated

    async def test_unwrap_raises_failure(
        self,
        mutator: OptimisticMutator,
        courses_key: tuple,
        populated: CacheEntry,
    ) -> None:
        result = await mutator.mutate(courses_key, toggle_visibility("c1"), server_down)
        with pytest.raises(MutationFailed, match="Network Error"):
            result.unwrap()


class TestGuards:
    """Programming errors surface before anything is written."""

    async def test_cache_miss(
        self, cache: RemoteListCache, mutator: OptimisticMutator
    ) -> None:
        calls = 0

        async def send() -> None:
            nonlocal calls
            calls += 1

        with pytest.raises(CacheMissError):
            mutator.mutate(("never", "fetched"), toggle_visibility("c1"), send)
        assert cache.get(("never", "fetched")) is None
        assert calls == 0

    async def test_transform_exception(
        self,
        cache: RemoteListCache,
        mutator: OptimisticMutator,
        courses_key: tuple,
        populated: CacheEntry,
    ) -> None:
        calls = 0
        writes: list = []
        cache.subscribe(courses_key, lambda key, entry: writes.append(entry))

        async def send() -> None:
            nonlocal calls
            calls += 1

        def broken(entry: CacheEntry) -> CacheEntry:
            raise KeyError("visibility")

        with pytest.raises(TransformError) as excinfo:
            mutator.mutate(courses_key, broken, send)

        assert isinstance(excinfo.value.__cause__, KeyError)
        assert cache.get(courses_key) == populated
        assert writes == []
        assert calls == 0
        assert mutator.in_flight == 0

    async def test_duplicate_ids_blocked(
        self,
        cache: RemoteListCache,
        mutator: OptimisticMutator,
        courses_key: tuple,
        populated: CacheEntry,
    ) -> None:
        def duplicate(entry: CacheEntry) -> CacheEntry:
            return entry.with_items([*entry.items, {"id": "c1"}])

        with pytest.raises(InvariantViolation):
            mutator.mutate(courses_key, duplicate, server_ok)
        assert cache.get(courses_key) == populated

    async def test_dropped_item_blocked(
        self,
        cache: RemoteListCache,
        mutator: OptimisticMutator,
        courses_key: tuple,
        populated: CacheEntry,
    ) -> None:
        with pytest.raises(InvariantViolation, match="dropped"):
            mutator.mutate(courses_key, remove_item("c1"), server_ok)
        assert cache.get(courses_key) == populated

    async def test_removal_allowed_when_requested(
        self,
        cache: RemoteListCache,
        mutator: OptimisticMutator,
        courses_key: tuple,
        populated: CacheEntry,
    ) -> None:
        handle = mutator.mutate(
            courses_key, remove_item("c1"), server_ok, allow_removals=True
        )
        assert cache.get(courses_key).ids == ["c2"]
        assert (await handle).committed

    async def test_non_entry_result_blocked(
        self,
        mutator: OptimisticMutator,
        courses_key: tuple,
        populated: CacheEntry,
    ) -> None:
        with pytest.raises(InvariantViolation, match="expected CacheEntry"):
            mutator.mutate(courses_key, lambda entry: list(entry.items), server_ok)


class TestOverlappingMutations:
    """Two mutations on one key before the first settles."""

    async def test_second_snapshot_is_first_optimistic_state(
        self,
        cache: RemoteListCache,
        mutator: OptimisticMutator,
        courses_key: tuple,
        populated: CacheEntry,
    ) -> None:
        first_gate = asyncio.Event()

        async def first_send() -> None:
            await first_gate.wait()
            raise ConnectionError("down")

        first = mutator.mutate(courses_key, toggle_visibility("c1"), first_send)
        second = mutator.mutate(courses_key, toggle_visibility("c2"), server_ok)

        assert second.mutation.snapshot.find("c1")["visibility"] == "public"
        assert len(mutator.pending(courses_key)) == 2

        assert (await second).committed
        first_gate.set()
        assert (await first).rolled_back

        # Last network response wins: the first rollback discards the second overlay
        entry = cache.get(courses_key)
        assert entry.find("c1")["visibility"] == "private"
        assert entry.find("c2")["visibility"] == "public"
        assert mutator.pending(courses_key) == []


class TestSideEffects:
    async def test_runs_to_completion_without_awaiting(
        self,
        cache: RemoteListCache,
        mutator: OptimisticMutator,
        courses_key: tuple,
        populated: CacheEntry,
    ) -> None:
        """Dropping the handle does not cancel the mutation."""
        mutator.mutate(courses_key, toggle_visibility("c1"), server_down)
        await mutator.wait_idle()
        assert cache.get(courses_key) == populated

    async def test_on_error_receives_failure(
        self, cache: RemoteListCache, courses_key: tuple, populated: CacheEntry
    ) -> None:
        reported: list[MutationFailed] = []
        mutator = OptimisticMutator(cache, on_error=reported.append)

        await mutator.mutate(courses_key, toggle_visibility("c1"), server_down)
        assert [e.message for e in reported] == ["Network Error"]

    async def test_failing_on_error_still_rolls_back(
        self, cache: RemoteListCache, courses_key: tuple, populated: CacheEntry
    ) -> None:
        def broken(error: MutationFailed) -> None:
            raise RuntimeError("toast failed")

        mutator = OptimisticMutator(cache, on_error=broken)
        result = await mutator.mutate(courses_key, toggle_visibility("c1"), server_down)
        assert result.rolled_back
        assert cache.get(courses_key) == populated

    async def test_invalidates_related_keys(
        self,
        cache: RemoteListCache,
        mutator: OptimisticMutator,
        courses_key: tuple,
        populated: CacheEntry,
    ) -> None:
        cache.set(("course", "c1"), CacheEntry(items=({"id": "c1"},)))
        cache.set(("community", "g1"), CacheEntry(items=()))

        await mutator.mutate(
            courses_key, toggle_visibility("c1"), server_ok, invalidates=[("course",)]
        )
        assert cache.get(("course", "c1")).is_stale is True
        assert cache.get(("community", "g1")).is_stale is False

    async def test_cancellation_rolls_back(
        self,
        cache: RemoteListCache,
        mutator: OptimisticMutator,
        courses_key: tuple,
        populated: CacheEntry,
    ) -> None:
        async def hang() -> None:
            await asyncio.sleep(10)

        handle = mutator.mutate(courses_key, toggle_visibility("c1"), hang)
        await asyncio.sleep(0)
        handle.task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await handle
        assert cache.get(courses_key) == populated
        assert handle.mutation.outcome is MutationOutcome.ROLLED_BACK

    async def test_failure_after_eviction_does_not_restore(
        self,
        cache: RemoteListCache,
        mutator: OptimisticMutator,
        courses_key: tuple,
        courses: CacheEntry,
    ) -> None:
        """A key whose last consumer left mid-request stays evicted."""
        gate = asyncio.Event()

        async def send() -> None:
            await gate.wait()
            raise ConnectionError("down")

        cache.acquire(courses_key)
        cache.set(courses_key, courses)
        handle = mutator.mutate(courses_key, toggle_visibility("c1"), send)
        cache.release(courses_key)
        assert courses_key not in cache

        gate.set()
        result = await handle
        assert result.rolled_back
        assert courses_key not in cache
        assert cache.ref_count(courses_key) == 0

    def test_requires_running_loop(
        self, mutator: OptimisticMutator, courses_key: tuple, populated: CacheEntry
    ) -> None:
        with pytest.raises(RuntimeError):
            mutator.mutate(courses_key, toggle_visibility("c1"), server_ok)
