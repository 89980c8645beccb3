"""Map backend response envelopes onto CacheEntry.

The backend wraps collections in a varying number of ``data`` layers
(``{"data": {"data": {"data": [...]}}}`` for paginated creator views, a bare
``{"data": [...]}`` elsewhere). This module is the only place that knows
about those shapes; everything past the fetch boundary sees CacheEntry.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from listcache.cache import now_ms, validate_entry
from listcache.errors import InvariantViolation
from listcache.types import CacheEntry, Item

ENVELOPE_KEY = "data"
COLLECTION_KEYS = ("items", "results", "courses", "communities", "videos")
MAX_DEPTH = 4


def _normalize_id(item: Any, position: int) -> Item:
    if not isinstance(item, Mapping):
        raise InvariantViolation(
            f"Item at position {position} is {type(item).__name__}, expected an object"
        )
    result = dict(item)
    if "id" not in result and "_id" in result:
        result["id"] = result["_id"]
    return result


def _scalars(body: Mapping[str, Any]) -> dict[str, Any]:
    return {
        k: v
        for k, v in body.items()
        if k != ENVELOPE_KEY and k not in COLLECTION_KEYS and not isinstance(v, (list, dict))
    }


def _find_collection(body: Any) -> tuple[list[Any], dict[str, Any]]:
    meta: dict[str, Any] = {}
    for _ in range(MAX_DEPTH):
        if isinstance(body, list):
            return body, meta
        if not isinstance(body, Mapping):
            break
        # Outer envelopes carry flags such as "success"; inner ones win
        meta.update(_scalars(body))
        if "pagination" in body and isinstance(body["pagination"], Mapping):
            meta["pagination"] = dict(body["pagination"])
        for name in COLLECTION_KEYS:
            if isinstance(body.get(name), list):
                return body[name], meta
        if ENVELOPE_KEY not in body:
            break
        body = body[ENVELOPE_KEY]
    raise InvariantViolation("Response does not contain a collection")


def normalize_response(body: Any) -> CacheEntry:
    """Build a CacheEntry from a collection response body."""
    raw_items, meta = _find_collection(body)
    entry = CacheEntry(
        items=tuple(_normalize_id(item, i) for i, item in enumerate(raw_items)),
        meta=meta,
        last_written_at=now_ms(),
    )
    validate_entry(entry)
    return entry


def find_item(body: Any) -> Item | None:
    """Unwrap a single-item response, or return None if it holds no item."""
    for _ in range(MAX_DEPTH):
        if not isinstance(body, Mapping):
            break
        if "id" in body or "_id" in body:
            return _normalize_id(body, 0)
        if not isinstance(body.get(ENVELOPE_KEY), Mapping):
            break
        body = body[ENVELOPE_KEY]
    return None


def normalize_item(body: Any) -> Item:
    """Unwrap a single-item response (``{"data": {...}}`` or the item itself)."""
    item = find_item(body)
    if item is None:
        raise InvariantViolation("Response does not contain an item with an id")
    return item
