"""listcache - optimistic updates for cached server collections."""

# HTTP boundary
from listcache.api import ApiClient
from listcache.cache import RemoteListCache, validate_entry

# Configuration
from listcache.config import Settings, setup_logging

# Duration parsing
from listcache.duration import parse_duration

# Errors
from listcache.errors import (
    ApiError,
    CacheMissError,
    ErrorCode,
    InvariantViolation,
    ListCacheError,
    MutationFailed,
    TransformError,
)

# Keys
from listcache.keys import define_keys, is_key_prefix, query_key, serialize_key

# Mutations
from listcache.mutator import MutationHandle, OptimisticMutator
from listcache.normalize import normalize_item, normalize_response
from listcache.query import QueryClient
from listcache.transforms import (
    append_item,
    merge_item,
    prepend_item,
    remove_item,
    replace_item,
    toggle_visibility,
    update_item,
)

# Core types
from listcache.types import (
    CacheEntry,
    CacheKey,
    Duration,
    Item,
    MutationOutcome,
    MutationResult,
    PendingMutation,
)

__version__ = "0.1.0"

__all__ = [
    "ApiClient",
    "ApiError",
    "CacheEntry",
    "CacheKey",
    "CacheMissError",
    "Duration",
    "ErrorCode",
    "InvariantViolation",
    "Item",
    "ListCacheError",
    "MutationFailed",
    "MutationHandle",
    "MutationOutcome",
    "MutationResult",
    "OptimisticMutator",
    "PendingMutation",
    "QueryClient",
    "RemoteListCache",
    "Settings",
    "TransformError",
    "append_item",
    "define_keys",
    "is_key_prefix",
    "merge_item",
    "normalize_item",
    "normalize_response",
    "parse_duration",
    "prepend_item",
    "query_key",
    "remove_item",
    "replace_item",
    "serialize_key",
    "setup_logging",
    "toggle_visibility",
    "update_item",
    "validate_entry",
]
