"""Shared fixtures: a tmp_path-backed store, an in-memory cache and a fixed clock."""

from datetime import datetime, timezone

import pytest

from error_tracker import ErrorTracker
from progress_store import JsonProgressStore, StaticCurriculum
from session_cache import InMemoryCache, SessionCache
from session_engine import SessionEngine

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def store(tmp_path) -> JsonProgressStore:
    return JsonProgressStore(tmp_path / "progress")


@pytest.fixture
def cache() -> SessionCache:
    return SessionCache(InMemoryCache())


@pytest.fixture
def curriculum() -> StaticCurriculum:
    return StaticCurriculum(
        modules={"en-GB:1A": "Greetings", "en-GB:1B": "Shopping", "fr-FR:1A": "Salutations"},
        scenarios={"en-GB:1A-cafe": "Ordering at a cafe", "en-GB:1B-market": "At the market"},
    )


@pytest.fixture
def tracker(store) -> ErrorTracker:
    return ErrorTracker(store)


@pytest.fixture
def engine(store, cache, tracker) -> SessionEngine:
    return SessionEngine(store, cache, tracker=tracker)
