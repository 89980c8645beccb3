"""In-memory store for server-derived collections.

All operations are synchronous. Inside a single event loop no other callback
can run between a read and the write that follows it, so the store needs no
locks.
"""

from __future__ import annotations

import asyncio
import copy
import time
from collections import OrderedDict
from collections.abc import Callable, Iterator
from dataclasses import replace

import structlog

from listcache.duration import parse_duration, to_seconds
from listcache.errors import CacheMissError, InvariantViolation
from listcache.keys import is_key_prefix
from listcache.types import CacheEntry, CacheKey, Duration, Transform

log = structlog.get_logger()

Listener = Callable[[CacheKey, CacheEntry | None], None]


def now_ms() -> int:
    return int(time.time() * 1000)


def validate_entry(entry: CacheEntry) -> None:
    """Raise InvariantViolation unless every item has a unique ``id``."""
    seen: set[object] = set()
    for position, item in enumerate(entry.items):
        try:
            item_id = item["id"]
        except (KeyError, TypeError):
            raise InvariantViolation(f"Item at position {position} has no id") from None
        if item_id in seen:
            raise InvariantViolation(f"Duplicate item id {item_id!r}")
        seen.add(item_id)


class RemoteListCache:
    """Keyed cache of collection responses with reference-counted eviction.

    ``gc_time`` is how long an entry outlives its last consumer. With
    ``max_items`` set, the least recently used unreferenced entry is dropped
    once the store grows past the limit.

    Entries go in and come out as deep copies, so the stored data only
    changes through set, patch and invalidate.
    """

    def __init__(
        self,
        *,
        gc_time: Duration = "5m",
        max_items: int | None = None,
    ) -> None:
        self._entries: OrderedDict[CacheKey, CacheEntry] = OrderedDict()
        self._refs: dict[CacheKey, int] = {}
        self._listeners: dict[CacheKey, list[Listener]] = {}
        self._gc_handles: dict[CacheKey, asyncio.TimerHandle] = {}
        self._gc_time = parse_duration(gc_time)
        self._max_items = max_items

    def get(self, key: CacheKey) -> CacheEntry | None:
        """Get a copy of the entry for key, or None if it was never fetched."""
        entry = self._entries.get(key)
        return copy.deepcopy(entry) if entry is not None else None

    def set(self, key: CacheKey, entry: CacheEntry) -> None:
        """Replace the entry for key with a copy of entry."""
        validate_entry(entry)
        entry = copy.deepcopy(entry)
        if not entry.last_written_at:
            entry = replace(entry, last_written_at=now_ms())
        self._write(key, entry)

    def patch(
        self, key: CacheKey, transform: Transform
    ) -> tuple[CacheEntry, CacheEntry]:
        """Apply transform to the entry for key and store the result.

        Returns ``(new, old)``. The transform works on a deep copy, so ``old``
        is left exactly as it was for anyone still holding it.
        """
        old = self._entries.get(key)
        if old is None:
            raise CacheMissError(key)
        new = transform(copy.deepcopy(old))
        validate_entry(new)
        new = replace(new, last_written_at=now_ms())
        self._write(key, copy.deepcopy(new))
        return new, old

    def invalidate(self, key: CacheKey, *, exact: bool = True) -> list[CacheKey]:
        """Mark entries stale without discarding their data.

        With ``exact=False`` every cached key that starts with ``key`` is
        marked. Returns the keys that were marked.
        """
        if exact:
            matched = [key] if key in self._entries else []
        else:
            matched = [k for k in self._entries if is_key_prefix(key, k)]
        for k in matched:
            entry = self._entries[k]
            if not entry.is_stale:
                self._write(k, entry.mark_stale(), touch=False)
        if matched:
            log.debug("cache_invalidated", key=key, matched=len(matched))
        return matched

    def remove(self, key: CacheKey) -> None:
        """Drop the entry for key."""
        self._cancel_gc(key)
        if self._entries.pop(key, None) is not None:
            self._notify(key, None)

    def clear(self) -> None:
        """Drop every entry. References and listeners are kept."""
        for handle in self._gc_handles.values():
            handle.cancel()
        self._gc_handles.clear()
        keys = list(self._entries)
        self._entries.clear()
        for key in keys:
            self._notify(key, None)

    def keys(self) -> list[CacheKey]:
        return list(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[CacheKey]:
        return iter(list(self._entries))

    # -------------------------------------------------------------------------
    # Consumers
    # -------------------------------------------------------------------------

    def subscribe(self, key: CacheKey, listener: Listener) -> Callable[[], None]:
        """Call listener after every write to key. Returns an unsubscribe."""
        self._listeners.setdefault(key, []).append(listener)

        def unsubscribe() -> None:
            listeners = self._listeners.get(key)
            if listeners and listener in listeners:
                listeners.remove(listener)
                if not listeners:
                    del self._listeners[key]

        return unsubscribe

    def acquire(self, key: CacheKey) -> int:
        """Register a consumer of key. Cancels any pending eviction."""
        self._cancel_gc(key)
        self._refs[key] = self._refs.get(key, 0) + 1
        return self._refs[key]

    def release(self, key: CacheKey) -> int:
        """Drop a consumer of key. The last release schedules eviction."""
        count = self._refs.get(key, 0) - 1
        if count > 0:
            self._refs[key] = count
            return count
        self._refs.pop(key, None)
        self._schedule_gc(key)
        return 0

    def ref_count(self, key: CacheKey) -> int:
        return self._refs.get(key, 0)

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    def _write(self, key: CacheKey, entry: CacheEntry, *, touch: bool = True) -> None:
        self._entries[key] = entry
        if touch:
            self._entries.move_to_end(key)  # LRU touch
        self._enforce_max_items()
        self._notify(key, entry)

    def _notify(self, key: CacheKey, entry: CacheEntry | None) -> None:
        listeners = list(self._listeners.get(key, ()))
        if listeners and entry is not None:
            entry = copy.deepcopy(entry)
        for listener in listeners:
            try:
                listener(key, entry)
            except Exception:
                log.warning("cache_listener_error", key=key, exc_info=True)

    def _enforce_max_items(self) -> None:
        if not self._max_items:
            return
        overflow = len(self._entries) - self._max_items
        for key in list(self._entries):
            if overflow <= 0:
                break
            if self._refs.get(key):
                continue
            self._cancel_gc(key)
            del self._entries[key]
            overflow -= 1
            log.debug("cache_evicted", key=key, reason="max_items")

    def _schedule_gc(self, key: CacheKey) -> None:
        if key not in self._entries:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        if self._gc_time <= 0 or loop is None:
            self._evict(key)
            return
        self._cancel_gc(key)
        self._gc_handles[key] = loop.call_later(
            to_seconds(self._gc_time), self._evict, key
        )

    def _cancel_gc(self, key: CacheKey) -> None:
        handle = self._gc_handles.pop(key, None)
        if handle is not None:
            handle.cancel()

    def _evict(self, key: CacheKey) -> None:
        self._gc_handles.pop(key, None)
        if self._refs.get(key):
            return
        if self._entries.pop(key, None) is not None:
            log.debug("cache_evicted", key=key, reason="unreferenced")
            self._notify(key, None)
