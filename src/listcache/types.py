"""Core types for listcache."""

import enum
from collections.abc import Awaitable, Callable, Hashable, Mapping
from dataclasses import dataclass, field, replace
from datetime import timedelta
from typing import TYPE_CHECKING, Any, NewType

from listcache.errors import MutationFailed

# Branded key type - compile-time enforcement only
if TYPE_CHECKING:
    CacheKey = NewType("CacheKey", tuple[Hashable, ...])
else:
    CacheKey = tuple

Item = Mapping[str, Any]


@dataclass(frozen=True, slots=True)
class CacheEntry:
    """The last known server state of one collection."""

    items: tuple[Item, ...]
    meta: Mapping[str, Any] = field(default_factory=dict)
    is_stale: bool = False
    last_written_at: int = 0  # Unix timestamp ms

    @property
    def ids(self) -> list[Any]:
        return [item["id"] for item in self.items]

    def find(self, item_id: Any) -> Item | None:
        """Return the item with ``item_id``, or None."""
        for item in self.items:
            if item["id"] == item_id:
                return item
        return None

    def with_items(self, items: "list[Item] | tuple[Item, ...]") -> "CacheEntry":
        return replace(self, items=tuple(items))

    def mark_stale(self) -> "CacheEntry":
        return replace(self, is_stale=True)


Transform = Callable[[CacheEntry], CacheEntry]

# send_to_server() may resolve to an authoritative item, or to anything else
SendToServer = Callable[[], Awaitable[Any]]

Fetcher = Callable[[], Awaitable[CacheEntry]]


class MutationOutcome(enum.Enum):
    PENDING = "pending"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


@dataclass(slots=True)
class PendingMutation:
    """One in-flight optimistic change."""

    target_key: CacheKey
    apply: Transform
    snapshot: CacheEntry
    optimistic: CacheEntry
    outcome: MutationOutcome = MutationOutcome.PENDING


@dataclass(frozen=True, slots=True)
class MutationResult:
    """How a mutation settled."""

    outcome: MutationOutcome
    key: CacheKey
    item: Item | None = None
    error: MutationFailed | None = None

    @property
    def committed(self) -> bool:
        return self.outcome is MutationOutcome.COMMITTED

    @property
    def rolled_back(self) -> bool:
        return self.outcome is MutationOutcome.ROLLED_BACK

    def unwrap(self) -> Item | None:
        """Return the server item, raising the failure if rolled back."""
        if self.error is not None:
            raise self.error
        return self.item


# Duration type alias: "30s", "5m", "2h", "1d", milliseconds, or a timedelta
Duration = str | int | timedelta
