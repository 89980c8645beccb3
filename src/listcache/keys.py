"""Cache key construction and utilities."""

import hashlib
import json
from collections.abc import Callable, Hashable, Mapping
from typing import Any

from listcache.types import CacheKey


def _freeze(value: Any) -> Hashable:
    """Turn a query parameter into a hashable, order-independent value."""
    if isinstance(value, Mapping):
        return tuple(
            sorted(
                ((k, _freeze(v)) for k, v in value.items() if v is not None),
                key=lambda pair: (type(pair[0]).__name__, repr(pair[0])),
            )
        )
    if isinstance(value, (list, tuple)):
        return tuple(_freeze(v) for v in value)
    if isinstance(value, (set, frozenset)):
        return tuple(sorted((_freeze(v) for v in value), key=repr))
    if isinstance(value, Hashable):
        return value
    raise TypeError(f"Unsupported key part: {type(value).__name__}")


def query_key(name: str, *params: Any) -> CacheKey:
    """Build the key for one logical query result.

    Example:
        query_key("creatorCourses")                  # ("creatorCourses",)
        query_key("communities", {"search": "py"})   # ("communities", (("search", "py"),))

    Dict parameters are frozen into sorted tuples so that two calls with
    equal parameters produce equal keys. ``None`` values inside a dict are
    dropped, the same as an absent parameter.
    """
    if not name:
        raise ValueError("Key name must not be empty")
    return CacheKey((name, *(_freeze(p) for p in params)))


def define_keys(
    definitions: dict[str, Callable[..., tuple[Any, ...]]],
) -> dict[str, Callable[..., CacheKey]]:
    """
    Define all cache keys in a centralized location.

    Example:
        keys = define_keys({
            "creator_courses": lambda: ("creatorCourses",),
            "course": lambda id: ("course", id),
            "communities": lambda search, type: (
                "communities", {"search": search, "type": type}
            ),
        })

        keys["course"]("c1")   # ("course", "c1")
    """
    result: dict[str, Callable[..., CacheKey]] = {}
    for name, fn in definitions.items():

        def make_key(*args: Any, _fn: Callable[..., tuple[Any, ...]] = fn) -> CacheKey:
            parts = _fn(*args)
            return query_key(*parts)

        result[name] = make_key
    return result


def serialize_key(key: CacheKey) -> str:
    """Stable string form of a key, for logs and external stores."""
    return json.dumps(key, sort_keys=True, default=str, separators=(",", ":"))


def key_digest(key: CacheKey) -> str:
    """Short hash of a key."""
    return hashlib.sha256(serialize_key(key).encode()).hexdigest()[:16]


def is_key_prefix(parent: CacheKey, child: CacheKey) -> bool:
    """Check if parent is a prefix of child (for invalidation)."""
    if len(parent) > len(child):
        return False
    return child[: len(parent)] == parent
