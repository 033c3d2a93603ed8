"""
Fast-path mirror of open sessions.

The cache is advisory only: every caller falls back to the store on a miss,
and a backend failure is logged and treated as a miss.
"""

import logging
import time
from datetime import datetime
from threading import Lock
from typing import Callable, Optional, Protocol

import config
from learner_model import ActiveSessionState, Session, utcnow

logger = logging.getLogger(__name__)

SESSION_PREFIX = "active-session:"
LEARNER_SESSION_PREFIX = "learner-session:"


class CacheBackend(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    def delete(self, key: str) -> None: ...

    def keys(self, prefix: str) -> list[str]: ...


class InMemoryCache:
    """Thread-safe key -> JSON blob store with per-key expiry."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._data: dict[str, tuple[str, float]] = {}
        self._clock = clock
        self._lock = Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if self._clock() >= expires_at:
                del self._data[key]
                return None
            return value

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._data[key] = (value, self._clock() + ttl_seconds)

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self, prefix: str) -> list[str]:
        now = self._clock()
        with self._lock:
            return [k for k, (_, exp) in self._data.items() if k.startswith(prefix) and exp > now]


class SessionCache:
    def __init__(self, backend: Optional[CacheBackend] = None, ttl_seconds: Optional[int] = None):
        self.backend = backend
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else config.SESSION_CACHE_TTL_SECONDS

    @property
    def available(self) -> bool:
        return self.backend is not None

    def set_active_session(self, state: ActiveSessionState) -> None:
        if self.backend is None:
            return
        try:
            self.backend.set(
                f"{SESSION_PREFIX}{state.session_id}", state.model_dump_json(), self.ttl_seconds
            )
            self.backend.set(
                f"{LEARNER_SESSION_PREFIX}{state.learner_id}:{state.language_code}",
                state.session_id,
                self.ttl_seconds,
            )
        except Exception:
            logger.warning("Failed to set active session %s in cache", state.session_id)

    def get_active_session(self, session_id: str) -> Optional[ActiveSessionState]:
        if self.backend is None:
            return None
        try:
            data = self.backend.get(f"{SESSION_PREFIX}{session_id}")
            if not data:
                return None
            return ActiveSessionState.model_validate_json(data)
        except Exception:
            logger.warning("Failed to read active session %s from cache", session_id)
            return None

    def get_active_session_id_for_learner(self, learner_id: str, language_code: str) -> Optional[str]:
        if self.backend is None:
            return None
        try:
            return self.backend.get(f"{LEARNER_SESSION_PREFIX}{learner_id}:{language_code}")
        except Exception:
            logger.warning("Failed to read learner session key for %s/%s", learner_id, language_code)
            return None

    def update_session_state(self, session_id: str, **updates) -> None:
        current = self.get_active_session(session_id)
        if current is None:
            return
        updates.setdefault("last_event_at", utcnow())
        self.set_active_session(current.model_copy(update=updates))

    def increment_events_count(self, session_id: str, at: Optional[datetime] = None) -> None:
        current = self.get_active_session(session_id)
        if current is None:
            return
        self.update_session_state(
            session_id, events_count=current.events_count + 1, last_event_at=at or utcnow()
        )

    def increment_errors_count(self, session_id: str) -> None:
        current = self.get_active_session(session_id)
        if current is None:
            return
        self.update_session_state(session_id, errors_in_session=current.errors_in_session + 1)

    def set_current_activity_index(self, session_id: str, index: int) -> None:
        self.update_session_state(session_id, current_activity_index=index)

    def extend_ttl(self, session_id: str) -> None:
        state = self.get_active_session(session_id)
        if state is not None:
            self.set_active_session(state)

    def remove_active_session(self, session_id: str) -> None:
        if self.backend is None:
            return
        state = self.get_active_session(session_id)
        try:
            self.backend.delete(f"{SESSION_PREFIX}{session_id}")
            if state is not None:
                self.backend.delete(
                    f"{LEARNER_SESSION_PREFIX}{state.learner_id}:{state.language_code}"
                )
        except Exception:
            logger.warning("Failed to remove active session %s from cache", session_id)

    def all_active_session_ids(self) -> list[str]:
        if self.backend is None:
            return []
        try:
            return [k[len(SESSION_PREFIX):] for k in self.backend.keys(SESSION_PREFIX)]
        except Exception:
            logger.warning("Failed to list active sessions in cache")
            return []


def state_from_session(session: Session) -> ActiveSessionState:
    """Rebuild the cache mirror from the authoritative stored session."""
    return ActiveSessionState(
        session_id=session.id,
        learner_id=session.learner_id,
        language_code=session.language_code,
        scenario_id=session.scenario_id,
        started_at=session.started_at,
        last_event_at=session.last_event_at,
        events_count=len(session.events),
        errors_in_session=len(session.events_of("error_detected")),
        current_activity_index=len(session.events_of("practice_activity_completed")),
    )
