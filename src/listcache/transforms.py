"""Pure entry transforms for patch() and mutate().

Each factory returns a function ``CacheEntry -> CacheEntry`` that builds a new
entry and never modifies the one it is given.
"""

from __future__ import annotations

from typing import Any

from listcache.types import CacheEntry, Item, Transform

VISIBILITY_STATUS = {"public": "published", "private": "draft"}


def update_item(item_id: Any, **changes: Any) -> Transform:
    """Set fields on the item with ``item_id``. Unknown ids are a no-op."""
    if "id" in changes and changes["id"] != item_id:
        raise ValueError("update_item cannot change an item's id")

    def apply(entry: CacheEntry) -> CacheEntry:
        return entry.with_items(
            [{**item, **changes} if item["id"] == item_id else item for item in entry.items]
        )

    return apply


def replace_item(new_item: Item) -> Transform:
    """Swap in ``new_item`` for the item with the same id."""

    def apply(entry: CacheEntry) -> CacheEntry:
        return entry.with_items(
            [dict(new_item) if item["id"] == new_item["id"] else item for item in entry.items]
        )

    return apply


def remove_item(item_id: Any) -> Transform:
    def apply(entry: CacheEntry) -> CacheEntry:
        return entry.with_items([item for item in entry.items if item["id"] != item_id])

    return apply


def append_item(new_item: Item) -> Transform:
    def apply(entry: CacheEntry) -> CacheEntry:
        return entry.with_items([*entry.items, dict(new_item)])

    return apply


def prepend_item(new_item: Item) -> Transform:
    def apply(entry: CacheEntry) -> CacheEntry:
        return entry.with_items([dict(new_item), *entry.items])

    return apply


def toggle_visibility(item_id: Any) -> Transform:
    """Flip an item between ``public`` and ``private``.

    The legacy ``status`` field (``published`` / ``draft``) is kept in step
    for views that still read it.
    """

    def apply(entry: CacheEntry) -> CacheEntry:
        items = []
        for item in entry.items:
            if item["id"] == item_id:
                visibility = "private" if item.get("visibility") == "public" else "public"
                item = {
                    **item,
                    "visibility": visibility,
                    "status": VISIBILITY_STATUS[visibility],
                }
            items.append(item)
        return entry.with_items(items)

    return apply


def merge_item(entry: CacheEntry, server_item: Item) -> CacheEntry:
    """Merge the authoritative item from the server into entry.

    Server fields win over whatever the optimistic write guessed. An item the
    entry does not contain leaves it unchanged.
    """
    if entry.find(server_item["id"]) is None:
        return entry
    return entry.with_items(
        [
            {**item, **server_item} if item["id"] == server_item["id"] else item
            for item in entry.items
        ]
    )
