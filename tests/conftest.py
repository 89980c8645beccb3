"""Shared pytest fixtures."""

import pytest

from listcache import CacheEntry, QueryClient, RemoteListCache, define_keys, query_key


@pytest.fixture
def cache() -> RemoteListCache:
    """Create a fresh RemoteListCache for each test."""
    return RemoteListCache(gc_time=0)


@pytest.fixture
def client(cache: RemoteListCache) -> QueryClient:
    """Create a QueryClient around the test cache."""
    return QueryClient(cache, stale_time="10s")


@pytest.fixture
def keys() -> dict:
    """Create common key definitions for tests."""
    return define_keys(
        {
            "creator_courses": lambda: ("creatorCourses",),
            "course": lambda id: ("course", id),
            "communities": lambda search, type: (
                "communities",
                {"search": search, "type": type},
            ),
        }
    )


@pytest.fixture
def courses_key() -> tuple:
    return query_key("creatorCourses")


@pytest.fixture
def courses() -> CacheEntry:
    """Two courses as the creator dashboard receives them."""
    return CacheEntry(
        items=(
            {"id": "c1", "title": "Intro to Python", "visibility": "private", "status": "draft"},
            {"id": "c2", "title": "Async IO", "visibility": "public", "status": "published"},
        ),
        meta={"total": 2},
    )
