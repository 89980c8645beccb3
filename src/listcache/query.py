"""QueryClient - fetch, cache and revalidate collections.

Provides:
- query(): cached fetch with stampede protection and stale-while-revalidate
- refetch(), prefetch(): explicit network reads
- invalidate(): mark keys stale and refetch the ones still on screen
- mutate(): optimistic mutation, revalidated through invalidate()
- watch(): reference a key for as long as a view shows it
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import replace
from typing import TYPE_CHECKING, Any

import structlog

from listcache.cache import RemoteListCache, now_ms
from listcache.duration import parse_duration, to_seconds
from listcache.errors import ApiError, ListCacheError
from listcache.mutator import ErrorHandler, MutationHandle, OptimisticMutator
from listcache.types import CacheEntry, CacheKey, Duration, Fetcher, SendToServer, Transform

if TYPE_CHECKING:
    from listcache.config import Settings

log = structlog.get_logger()


class QueryClient:
    """Coordinates one RemoteListCache with the fetchers that fill it."""

    def __init__(
        self,
        cache: RemoteListCache | None = None,
        *,
        stale_time: Duration = "30s",
        gc_time: Duration = "5m",
        retries: int = 0,
        retry_delay: Duration = "1s",
        on_error: ErrorHandler | None = None,
    ) -> None:
        if retries < 0:
            raise ValueError("retries must not be negative")
        self._cache = cache if cache is not None else RemoteListCache(gc_time=gc_time)
        self._stale_time = parse_duration(stale_time)
        self._retries = retries
        self._retry_delay = to_seconds(retry_delay)
        self._fetchers: dict[CacheKey, Fetcher] = {}
        self._in_flight: dict[CacheKey, asyncio.Future[CacheEntry]] = {}
        self._background_tasks: set[asyncio.Task[Any]] = set()
        self._mutator = OptimisticMutator(
            self._cache,
            revalidate=lambda key: self.invalidate(key),
            on_error=on_error,
        )

    @classmethod
    def from_settings(
        cls, settings: Settings, *, on_error: ErrorHandler | None = None
    ) -> QueryClient:
        cache = RemoteListCache(
            gc_time=settings.cache.gc_time,
            max_items=settings.cache.max_items,
        )
        return cls(
            cache,
            stale_time=settings.cache.stale_time,
            retries=settings.cache.retries,
            retry_delay=settings.cache.retry_delay,
            on_error=on_error,
        )

    @property
    def cache(self) -> RemoteListCache:
        return self._cache

    @property
    def mutator(self) -> OptimisticMutator:
        return self._mutator

    async def query(self, key: CacheKey, fetch: Fetcher) -> CacheEntry:
        """Return the entry for key, fetching it on a miss.

        A stale entry is returned as is while a refresh runs in the
        background, so views never flash an empty state.
        """
        self._fetchers[key] = fetch
        entry = self._cache.get(key)
        if entry is not None:
            if self._is_stale(entry):
                self._refresh_in_background(key)
            return entry
        return await self._coalesce(key, fetch)

    async def refetch(self, key: CacheKey) -> CacheEntry:
        """Fetch key again with its remembered fetcher."""
        fetch = self._fetchers.get(key)
        if fetch is None:
            raise KeyError(f"No fetcher registered for key {key!r}")
        return await self._coalesce(key, fetch)

    async def prefetch(self, key: CacheKey, fetch: Fetcher) -> None:
        """Populate key ahead of time. Failures are logged, not raised."""
        self._fetchers[key] = fetch
        if key in self._cache:
            return
        try:
            await self._coalesce(key, fetch)
        except Exception:
            log.warning("prefetch_failed", key=key, exc_info=True)

    def set_data(self, key: CacheKey, entry: CacheEntry) -> None:
        """Write an entry directly, as if it had just been fetched."""
        self._cache.set(key, replace(entry, is_stale=False, last_written_at=now_ms()))

    def invalidate(
        self,
        key: CacheKey,
        *,
        exact: bool = False,
        refetch: bool = True,
    ) -> list[CacheKey]:
        """Mark key (and by default every key it prefixes) stale.

        Keys that are still referenced and have a known fetcher are refetched
        in the background. Returns the keys that were marked.
        """
        matched = self._cache.invalidate(key, exact=exact)
        if refetch:
            for k in matched:
                if self._cache.ref_count(k) and k in self._fetchers:
                    self._refresh_in_background(k)
        return matched

    def mutate(
        self,
        key: CacheKey,
        transform: Transform,
        send_to_server: SendToServer,
        *,
        invalidates: Iterable[CacheKey] = (),
        allow_removals: bool = False,
    ) -> MutationHandle:
        """Optimistically apply transform to key; see OptimisticMutator.mutate."""
        return self._mutator.mutate(
            key,
            transform,
            send_to_server,
            invalidates=invalidates,
            allow_removals=allow_removals,
        )

    @contextmanager
    def watch(self, key: CacheKey) -> Iterator[RemoteListCache]:
        """Hold a reference to key while the block runs."""
        self._cache.acquire(key)
        try:
            yield self._cache
        finally:
            self._cache.release(key)

    def is_fetching(self, key: CacheKey) -> bool:
        return key in self._in_flight

    async def wait_idle(self) -> None:
        """Wait for background refreshes and pending mutations to finish."""
        while self._background_tasks or self._mutator.in_flight:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)
            await self._mutator.wait_idle()

    async def close(self) -> None:
        """Cancel background refreshes and let mutations settle."""
        for task in list(self._background_tasks):
            task.cancel()
        await asyncio.gather(*list(self._background_tasks), return_exceptions=True)
        await self._mutator.wait_idle()

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    def _is_stale(self, entry: CacheEntry) -> bool:
        if entry.is_stale:
            return True
        return now_ms() - entry.last_written_at > self._stale_time

    async def _fetch(self, key: CacheKey, fetch: Fetcher) -> CacheEntry:
        attempt = 0
        while True:
            try:
                entry = await fetch()
                break
            except Exception as e:
                if isinstance(e, ListCacheError) and not e.recoverable:
                    raise
                if isinstance(e, ApiError) and e.status_code < 500:
                    raise
                if attempt >= self._retries:
                    raise
                attempt += 1
                log.info("query_retry", key=key, attempt=attempt, error=str(e))
                await asyncio.sleep(self._retry_delay)
        entry = replace(entry, is_stale=False, last_written_at=now_ms())
        self._cache.set(key, entry)
        log.debug("query_fetched", key=key, items=len(entry.items))
        return entry

    async def _coalesce(self, key: CacheKey, fetch: Fetcher) -> CacheEntry:
        """Coalesce concurrent fetches for the same key."""
        existing = self._in_flight.get(key)
        if existing is not None:
            return await asyncio.shield(existing)

        future: asyncio.Future[CacheEntry] = asyncio.get_running_loop().create_future()
        self._in_flight[key] = future
        try:
            entry = await self._fetch(key, fetch)
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            future.set_exception(e)
            # Retrieve it so an unawaited future does not warn
            future.exception()
            raise
        else:
            future.set_result(entry)
            return entry
        finally:
            del self._in_flight[key]

    def _refresh_in_background(self, key: CacheKey) -> None:
        fetch = self._fetchers.get(key)
        if fetch is None or key in self._in_flight:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            log.debug("background_refresh_skipped", key=key, reason="no_loop")
            return

        async def refresh() -> None:
            try:
                await self._coalesce(key, fetch)
            except asyncio.CancelledError:
                raise
            except Exception:
                # Old data stays visible; the next invalidate retries
                log.warning("background_refresh_failed", key=key, exc_info=True)

        task = loop.create_task(refresh())
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
