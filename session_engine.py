"""
Session engine.
Lifecycle state machine over the append-only event log, event side effects,
completion bookkeeping against learner memory, and stale-session recovery.

    ACTIVE <-> PAUSED
    ACTIVE | PAUSED -> COMPLETED | ABANDONED   (terminal)
"""

import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Literal, Optional, Sequence, get_args

from pydantic import BaseModel, Field, ValidationError, field_validator

import config
from error_tracker import (
    ErrorFeedback,
    ErrorTracker,
    build_error_feedback,
    generate_feedback,
    reset_recent_counts,
    update_pattern_trends,
)
from errors import (
    ActiveSessionExistsError,
    InvalidInputError,
    InvalidStateError,
    NotFoundError,
    ProgressEngineError,
)
from learner_model import (
    ErrorLogInput,
    EventType,
    LearnerMemory,
    ModuleProgress,
    Session,
    SessionEvent,
    SessionMetrics,
    ensure_utc,
    new_id,
    utcnow,
)
from scoring_engine import flow_score, message_gaps, round_score
from session_cache import SessionCache, state_from_session

logger = logging.getLogger(__name__)

EVENT_TYPES = frozenset(get_args(EventType))
LONG_RUNNING_HOURS = 2


class EventSpec(BaseModel):
    """An event waiting to be appended."""

    type: EventType
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: Optional[datetime] = None

    @field_validator("timestamp")
    @classmethod
    def timestamp_in_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value) if value is not None else None


class ProcessedEvent(BaseModel):
    event: SessionEvent
    session: Session
    side_effects: list[str] = Field(default_factory=list)
    error_feedback: Optional[ErrorFeedback] = None


class BatchFailure(BaseModel):
    index: int
    type: str
    error: str
    error_type: str


class BatchResult(BaseModel):
    processed: list[ProcessedEvent] = Field(default_factory=list)
    failed: list[BatchFailure] = Field(default_factory=list)


class ProgressUpdate(BaseModel):
    scenario_completed: bool = False
    module_id: Optional[str] = None
    module_progress: int = 0  # percent of the module's scenarios done
    new_streak: int = 0


class SessionCompletionResult(BaseModel):
    session: Session
    metrics: SessionMetrics
    memory_updated: bool
    progress_update: ProgressUpdate
    feedback: list[str] = Field(default_factory=list)


class CompletionPreview(BaseModel):
    can_complete: bool
    estimated_score: int
    activities_completed: int
    activities_remaining: int
    recommendation: str


class RecoveryResult(BaseModel):
    recovered: bool
    session: Optional[Session] = None
    action: Literal["no_action_needed", "cache_restored", "cache_rebuilt", "marked_abandoned"]
    message: str


class SweepResult(BaseModel):
    cleaned: int = 0
    session_ids: list[str] = Field(default_factory=list)
    cache_entries_removed: int = 0


class SessionHealth(BaseModel):
    is_healthy: bool
    issues: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)


class SessionStats(BaseModel):
    total_sessions: int
    completed_sessions: int
    abandoned_sessions: int
    total_duration: int
    average_duration: float
    average_score: float


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

def compute_session_metrics(
    events: Sequence[SessionEvent], started_at: datetime, ended_at: datetime
) -> SessionMetrics:
    """
    Counts by event type plus three session-level scores:
      engagement  user messages/minute x 20 (cap 100), -5 per hint, +10 per activity
      accuracy    share of user messages without a detected error
      fluency     rhythm of the gaps between user messages
    Overall is their rounded mean.
    """
    duration = max(int((ended_at - started_at).total_seconds()), 0)

    def count(event_type: str) -> int:
        return sum(1 for e in events if e.type == event_type)

    user_messages = [e for e in events if e.type == "user_message"]
    user_count = len(user_messages)
    agent_count = count("agent_message")
    errors = count("error_detected")
    hints = count("hint_requested")
    activities = count("practice_activity_completed")

    if duration == 0:
        engagement = 0
    else:
        score = min(user_count / (duration / 60) * 20, 100)
        if hints:
            score = max(score - hints * 5, 0)
        score += activities * 10
        engagement = min(round_score(score), 100)

    if user_count == 0:
        accuracy = 100
    else:
        accuracy = max(round_score((1 - errors / user_count) * 100), 0)

    fluency = flow_score(message_gaps(user_messages)) if user_count >= 3 else 50

    return SessionMetrics(
        duration=duration,
        message_count=user_count + agent_count,
        user_message_count=user_count,
        agent_message_count=agent_count,
        errors_detected=errors,
        corrections_made=count("correction_given"),
        corrections_accepted=count("correction_accepted"),
        hints_requested=hints,
        activities_completed=activities,
        engagement_score=engagement,
        fluency_score=fluency,
        accuracy_score=accuracy,
        overall_score=round_score((engagement + accuracy + fluency) / 3),
    )


def module_id_for_scenario(scenario_id: str) -> str:
    """'en-GB:1A-cafe' -> 'en-GB:1A'. Ids without a '-' are their own module."""
    head, sep, _ = scenario_id.rpartition("-")
    return head if sep and head else scenario_id


def is_scenario_completed(session: Session) -> bool:
    started = len(session.events_of("practice_activity_started"))
    if started == 0:
        return len(session.events_of("user_message")) >= 5
    return len(session.events_of("practice_activity_completed")) >= started


def next_streak(last_session_at: Optional[datetime], current: int, now: datetime) -> int:
    """Consecutive calendar days with at least one completed session."""
    if last_session_at is None:
        return 1
    days = (now.date() - last_session_at.date()).days
    if days <= 0:
        return max(current, 1)
    if days == 1:
        return current + 1
    return 1


def session_feedback(metrics: SessionMetrics) -> list[str]:
    feedback = []
    if metrics.overall_score >= 80:
        feedback.append("Excellent session! Great work!")
    elif metrics.overall_score >= 60:
        feedback.append("Good session. Keep practicing!")
    else:
        feedback.append("Every practice session helps. You're improving!")

    minutes = round_score(metrics.duration / 60)
    if minutes >= 20:
        feedback.append(f"Great dedication - {minutes} minutes of practice!")
    if metrics.accuracy_score >= 90:
        feedback.append("Your accuracy was impressive!")
    if metrics.activities_completed > 0:
        feedback.append(f"Completed {metrics.activities_completed} practice activities")
    if metrics.errors_detected == 0:
        feedback.append("Perfect session - no errors detected!")
    elif metrics.corrections_accepted > metrics.errors_detected * 0.8:
        feedback.append("Great job accepting and learning from corrections!")
    return feedback


# ---------------------------------------------------------------------------
# Event builders
# ---------------------------------------------------------------------------

def user_message_event(content: str, audio_url: Optional[str] = None, duration: Optional[float] = None) -> EventSpec:
    data: dict[str, Any] = {"content": content}
    if audio_url:
        data["audio_url"] = audio_url
    if duration is not None:
        data["duration"] = duration
    return EventSpec(type="user_message", data=data)


def agent_message_event(content: str, audio_url: Optional[str] = None) -> EventSpec:
    data: dict[str, Any] = {"content": content}
    if audio_url:
        data["audio_url"] = audio_url
    return EventSpec(type="agent_message", data=data)


def error_event(
    category: str,
    subcategory: Optional[str] = None,
    context: str = "",
    correction: Optional[str] = None,
) -> EventSpec:
    return EventSpec(
        type="error_detected",
        data={
            "category": category,
            "subcategory": subcategory,
            "context": context,
            "correction": correction,
        },
    )


def correction_event(
    original: str, corrected: str, accepted: bool = False, error_log_id: Optional[str] = None
) -> EventSpec:
    data: dict[str, Any] = {"original": original, "corrected": corrected}
    if error_log_id:
        data["error_log_id"] = error_log_id
    return EventSpec(type="correction_accepted" if accepted else "correction_given", data=data)


def activity_completed_event(
    activity_id: str, score: Optional[int] = None, attempts: Optional[int] = None
) -> EventSpec:
    data: dict[str, Any] = {"activity_id": activity_id}
    if score is not None:
        data["score"] = score
    if attempts is not None:
        data["attempts"] = attempts
    return EventSpec(type="practice_activity_completed", data=data)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class SessionEngine:
    def __init__(
        self,
        store,
        cache: Optional[SessionCache] = None,
        curriculum=None,
        tracker: Optional[ErrorTracker] = None,
    ):
        self.store = store
        self.cache = cache or SessionCache()
        self.curriculum = curriculum
        self.tracker = tracker or ErrorTracker(store)
        self._lock = threading.RLock()

    # -- lookups --------------------------------------------------------------

    def get_session(self, session_id: str) -> Session:
        session = self.store.get_session(session_id)
        if session is None:
            raise NotFoundError(f"Session {session_id} not found")
        return session

    def list_sessions(
        self,
        learner_id: str,
        language_code: Optional[str] = None,
        status: Optional[str] = None,
        scenario_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Session], int]:
        sessions = self.store.list_sessions(
            learner_id=learner_id,
            language_code=language_code,
            scenario_id=scenario_id,
            status=status,
            start=start,
            end=end,
        )
        return sessions[offset:offset + limit], len(sessions)

    def get_session_history(
        self, learner_id: str, language_code: Optional[str] = None, limit: int = 10
    ) -> list[Session]:
        return self.store.list_sessions(learner_id=learner_id, language_code=language_code)[:limit]

    def get_session_stats(
        self, learner_id: str, language_code: str, days: int = 30, now: Optional[datetime] = None
    ) -> SessionStats:
        start = (now or utcnow()) - timedelta(days=days)
        sessions = self.store.list_sessions(
            learner_id=learner_id, language_code=language_code, start=start
        )
        completed = [s for s in sessions if s.status == "COMPLETED"]
        total_duration = sum(s.metrics.duration for s in completed if s.metrics)
        total_score = sum(s.metrics.overall_score for s in completed if s.metrics)
        return SessionStats(
            total_sessions=len(sessions),
            completed_sessions=len(completed),
            abandoned_sessions=sum(1 for s in sessions if s.status == "ABANDONED"),
            total_duration=total_duration,
            average_duration=total_duration / len(completed) if completed else 0.0,
            average_score=total_score / len(completed) if completed else 0.0,
        )

    def find_active_session(
        self, learner_id: str, language_code: str, exclude: Optional[str] = None
    ) -> Optional[Session]:
        """The learner's ACTIVE session for a language, checked against storage."""
        cached_id = self.cache.get_active_session_id_for_learner(learner_id, language_code)
        if cached_id and cached_id != exclude:
            session = self.store.get_session(cached_id)
            if session is not None and session.status == "ACTIVE":
                return session

        for session in self.store.list_sessions(
            learner_id=learner_id, language_code=language_code, status="ACTIVE"
        ):
            if session.id != exclude:
                return session
        return None

    # -- lifecycle ------------------------------------------------------------

    def create_session(
        self,
        learner_id: str,
        language_code: str,
        scenario_id: Optional[str] = None,
        metadata: Optional[dict] = None,
        now: Optional[datetime] = None,
    ) -> Session:
        self._check_scenario(scenario_id)
        now = now or utcnow()

        with self._lock:
            existing = self.find_active_session(learner_id, language_code)
            if existing is not None:
                raise ActiveSessionExistsError(
                    f"Learner {learner_id} already has an active session for "
                    f"{language_code}: {existing.id}"
                )

            session = Session(
                learner_id=learner_id,
                language_code=language_code,
                scenario_id=scenario_id,
                started_at=now,
                metadata=dict(metadata or {}),
                events=[
                    SessionEvent(type="session_start", timestamp=now, data={"scenario_id": scenario_id})
                ],
            )
            self.store.save_session(session)

        self.cache.set_active_session(state_from_session(session))
        logger.info("Session %s created for %s/%s", session.id, learner_id, language_code)
        return session

    def update_session(
        self,
        session_id: str,
        scenario_id: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> Session:
        session = self.get_session(session_id)
        if session.is_terminal:
            raise InvalidStateError(f"Cannot update {session.status.lower()} session {session_id}")

        if scenario_id is not None:
            self._check_scenario(scenario_id)
            session.scenario_id = scenario_id
        if metadata:
            session.metadata = {**session.metadata, **metadata}

        self.store.save_session(session)
        self.cache.update_session_state(
            session_id, scenario_id=session.scenario_id, last_event_at=session.last_event_at
        )
        return session

    def pause(self, session_id: str, now: Optional[datetime] = None) -> Session:
        session = self.get_session(session_id)
        if session.status != "ACTIVE":
            raise InvalidStateError(f"Cannot pause {session.status.lower()} session {session_id}")
        self._append(session, "pause", {}, now)
        session.status = "PAUSED"
        self._persist(session)
        logger.info("Session %s paused", session_id)
        return session

    def resume(self, session_id: str, now: Optional[datetime] = None) -> Session:
        session = self.get_session(session_id)
        if session.status == "ACTIVE":
            return session
        if session.is_terminal:
            raise InvalidStateError(f"Cannot resume {session.status.lower()} session {session_id}")

        with self._lock:
            other = self.find_active_session(
                session.learner_id, session.language_code, exclude=session.id
            )
            if other is not None:
                raise ActiveSessionExistsError(
                    f"Cannot resume {session_id}: session {other.id} is already active"
                )
            self._append(session, "resume", {}, now)
            session.status = "ACTIVE"
            self._persist(session)

        logger.info("Session %s resumed", session_id)
        return session

    def complete(self, session_id: str, now: Optional[datetime] = None) -> Session:
        """Freeze metrics and close the session. Completing twice returns the same record."""
        session = self.get_session(session_id)
        if session.status == "COMPLETED":
            return session
        if session.status == "ABANDONED":
            raise InvalidStateError(f"Cannot complete abandoned session {session_id}")

        self._close(session, "COMPLETED", {}, now)
        logger.info(
            "Session %s completed (overall %s)", session_id, session.metrics.overall_score
        )
        return session

    def abandon(
        self, session_id: str, reason: str = "abandoned", now: Optional[datetime] = None
    ) -> Session:
        session = self.get_session(session_id)
        if session.is_terminal:
            return session
        self._close(session, "ABANDONED", {"reason": reason}, now)
        logger.info("Session %s abandoned (%s)", session_id, reason)
        return session

    # -- events ---------------------------------------------------------------

    def append_event(
        self,
        session_id: str,
        type: str,
        data: Optional[dict] = None,
        timestamp: Optional[datetime] = None,
    ) -> Session:
        return self.process_event(session_id, type, data, timestamp).session

    def process_event(
        self,
        session_id: str,
        type: str,
        data: Optional[dict] = None,
        timestamp: Optional[datetime] = None,
    ) -> ProcessedEvent:
        """
        Append one event and apply its side effects. Everything that can be
        rejected is checked before the log is touched.
        """
        session = self.get_session(session_id)
        if session.is_terminal:
            raise InvalidStateError(
                f"Cannot append to {session.status.lower()} session {session_id}"
            )
        if type not in EVENT_TYPES:
            raise InvalidInputError(f"Unknown event type: {type}")
        if timestamp is not None:
            timestamp = ensure_utc(timestamp)
        if timestamp is not None and timestamp < session.last_event_at:
            raise InvalidInputError(
                f"Event timestamp {timestamp.isoformat()} is earlier than the last event "
                f"({session.last_event_at.isoformat()})"
            )

        data = dict(data or {})
        error_payload = None
        if type == "error_detected":
            try:
                error_payload = ErrorLogInput.model_validate(data)
            except ValidationError as exc:
                raise InvalidInputError(f"Invalid error_detected payload: {exc}") from exc
            data["error_log_id"] = new_id()

        correction_target = data.get("error_log_id") if type == "correction_accepted" else None
        if correction_target and self.store.get_error_log(correction_target) is None:
            raise NotFoundError(f"Error log {correction_target} not found")

        event, incremental = self._append(session, type, data, timestamp)
        self._persist(session, incremental=incremental)
        result = ProcessedEvent(event=event, session=session)

        if error_payload is not None:
            self.tracker.log_error(
                session.learner_id,
                session.language_code,
                error_payload,
                session_id=session.id,
                timestamp=event.timestamp,
                error_id=data["error_log_id"],
            )
            if incremental:
                self.cache.increment_errors_count(session.id)
            result.error_feedback = build_error_feedback(
                self.tracker.get_error_patterns(session.learner_id, session.language_code),
                error_payload.category,
                error_payload.subcategory,
            )
            result.side_effects += ["error_logged", "patterns_updated", "feedback_generated"]
        elif correction_target:
            self.tracker.mark_corrected(correction_target)
            result.side_effects.append("error_marked_corrected")
        elif type == "practice_activity_completed":
            self.cache.set_current_activity_index(
                session.id, len(session.events_of("practice_activity_completed"))
            )
            result.side_effects.append("activity_index_advanced")
        elif type == "user_message":
            self.cache.extend_ttl(session.id)
            result.side_effects.append("cache_ttl_extended")

        return result

    def process_batch_events(self, session_id: str, events: Sequence[EventSpec | dict]) -> BatchResult:
        """Process events in order; a failing event is recorded and the rest continue."""
        result = BatchResult()
        for index, raw in enumerate(events):
            event_type = raw.type if isinstance(raw, EventSpec) else str(raw.get("type"))
            try:
                spec = raw if isinstance(raw, EventSpec) else EventSpec.model_validate(raw)
            except ValidationError as exc:
                result.failed.append(
                    BatchFailure(index=index, type=event_type, error=str(exc), error_type="validation")
                )
                continue
            try:
                result.processed.append(
                    self.process_event(session_id, spec.type, spec.data, spec.timestamp)
                )
            except ProgressEngineError as exc:
                result.failed.append(
                    BatchFailure(index=index, type=spec.type, error=str(exc), error_type=exc.error_type)
                )
        return result

    # -- completion -----------------------------------------------------------

    def complete_session_with_feedback(
        self, session_id: str, now: Optional[datetime] = None
    ) -> SessionCompletionResult:
        """
        Complete the session and fold it into learner memory once. A session
        closed by a plain complete(), or whose memory update failed, still gets
        its memory update on the next call.
        """
        session = self.get_session(session_id)
        if session.status == "COMPLETED" and session.memory_applied:
            return SessionCompletionResult(
                session=session,
                metrics=session.metrics or SessionMetrics(),
                memory_updated=False,
                progress_update=ProgressUpdate(),
                feedback=["Session already completed"],
            )

        session = self.complete(session_id, now)

        memory_updated = False
        progress = ProgressUpdate()
        try:
            progress = self._update_learner_memory(session)
            memory_updated = True
        except Exception:
            logger.exception("Failed to update learner memory after session %s", session_id)
        else:
            session.memory_applied = True
            self.store.save_session(session)

        summary = self.tracker.session_summary(session_id)
        patterns = self.tracker.get_error_patterns(session.learner_id, session.language_code)
        feedback = session_feedback(session.metrics) + summary.suggestions + generate_feedback(patterns)

        return SessionCompletionResult(
            session=session,
            metrics=session.metrics,
            memory_updated=memory_updated,
            progress_update=progress,
            feedback=list(dict.fromkeys(feedback))[:5],
        )

    def get_completion_preview(self, session_id: str, now: Optional[datetime] = None) -> CompletionPreview:
        session = self.get_session(session_id)
        ended = session.completed_at or max(now or utcnow(), session.last_event_at)
        metrics = session.metrics or compute_session_metrics(session.events, session.started_at, ended)

        completed = len(session.events_of("practice_activity_completed"))
        remaining = max(len(session.events_of("practice_activity_started")) - completed, 0)

        if remaining > 0:
            recommendation = f"Complete {remaining} remaining activities for best results"
        elif metrics.user_message_count < 3:
            recommendation = "Practice more conversations before completing"
        else:
            recommendation = "Ready to complete!"

        return CompletionPreview(
            can_complete=not session.is_terminal,
            estimated_score=metrics.overall_score,
            activities_completed=completed,
            activities_remaining=remaining,
            recommendation=recommendation,
        )

    # -- recovery -------------------------------------------------------------

    def sweep_stale_sessions(self, now: Optional[datetime] = None) -> SweepResult:
        """
        Abandon open sessions that went idle or ran past the maximum duration,
        and drop cache entries whose session is no longer open. Safe to run
        repeatedly.
        """
        now = now or utcnow()
        result = SweepResult()

        open_sessions = self.store.list_sessions(status="ACTIVE") + self.store.list_sessions(status="PAUSED")
        for session in open_sessions:
            reason = self._stale_reason(session, now)
            if reason is None:
                continue
            try:
                self.abandon(session.id, reason=reason, now=now)
            except ProgressEngineError:
                logger.warning("Failed to abandon stale session %s", session.id, exc_info=True)
                continue
            result.session_ids.append(session.id)

        open_ids = {s.id for s in open_sessions} - set(result.session_ids)
        for session_id in self.cache.all_active_session_ids():
            if session_id not in open_ids:
                self.cache.remove_active_session(session_id)
                result.cache_entries_removed += 1

        result.cleaned = len(result.session_ids)
        if result.cleaned:
            logger.info("Swept %d stale sessions", result.cleaned)
        return result

    def recover_session(self, session_id: str, now: Optional[datetime] = None) -> RecoveryResult:
        """Bring the cache back in line with storage for one session."""
        now = now or utcnow()
        session = self.get_session(session_id)

        if session.is_terminal:
            self.cache.remove_active_session(session_id)
            return RecoveryResult(
                recovered=False, session=session, action="no_action_needed",
                message="Session already ended",
            )

        if now - session.started_at > timedelta(hours=config.MAX_SESSION_HOURS):
            session = self.abandon(session_id, reason="max_duration", now=now)
            return RecoveryResult(
                recovered=False, session=session, action="marked_abandoned",
                message="Session exceeded maximum duration and was abandoned",
            )

        if self.cache.available:
            cached = self.cache.get_active_session(session_id)
            if cached is None:
                self.cache.set_active_session(state_from_session(session))
                logger.debug("Restored cache entry for session %s", session_id)
                return RecoveryResult(
                    recovered=True, session=session, action="cache_restored",
                    message="Session state restored from storage",
                )
            if cached.events_count != len(session.events):
                self.cache.set_active_session(state_from_session(session))
                logger.debug("Rebuilt cache entry for session %s", session_id)
                return RecoveryResult(
                    recovered=True, session=session, action="cache_rebuilt",
                    message="Cached state disagreed with storage and was rebuilt",
                )

        return RecoveryResult(
            recovered=False, session=session, action="no_action_needed",
            message="No recovery action needed",
        )

    def get_session_health(self, session_id: str, now: Optional[datetime] = None) -> SessionHealth:
        now = now or utcnow()
        session = self.get_session(session_id)
        issues: list[str] = []
        recommendations: list[str] = []

        if not session.is_terminal:
            if self.cache.available:
                cached = self.cache.get_active_session(session_id)
                if cached is None:
                    issues.append("Session not found in cache")
                    recommendations.append("Run session recovery to restore the cache entry")
                elif cached.events_count != len(session.events):
                    issues.append("Event count mismatch between cache and storage")
                    recommendations.append("Run session recovery to rebuild the cache entry")

            idle = (now - session.last_event_at).total_seconds()
            if idle > config.IDLE_THRESHOLD_SECONDS:
                issues.append(f"Session idle for {int(idle // 60)} minutes")
                recommendations.append("Consider completing or abandoning this session")

            hours = (now - session.started_at).total_seconds() / 3600
            if hours > LONG_RUNNING_HOURS:
                issues.append(f"Session running for {hours:.1f} hours")
                recommendations.append("Long sessions may affect performance")

        return SessionHealth(is_healthy=not issues, issues=issues, recommendations=recommendations)

    # -- internals ------------------------------------------------------------

    def _check_scenario(self, scenario_id: Optional[str]) -> None:
        if scenario_id and self.curriculum is not None and not self.curriculum.scenario_exists(scenario_id):
            raise NotFoundError(f"Scenario {scenario_id} not found")

    def _append(
        self,
        session: Session,
        type: str,
        data: dict,
        timestamp: Optional[datetime],
    ) -> tuple[SessionEvent, bool]:
        """
        Add an event to the in-memory session. Implicit timestamps are clamped
        so the log never goes backwards. Returns the event and whether the
        cache mirror can be bumped incrementally.
        """
        last = session.last_event_at
        at = ensure_utc(timestamp) if timestamp is not None else max(utcnow(), last)
        if at < last:
            at = last
        cached = self.cache.get_active_session(session.id)
        incremental = cached is not None and cached.events_count == len(session.events)

        event = SessionEvent(type=type, timestamp=at, data=data)
        session.events.append(event)
        logger.debug("Appended %s to session %s", type, session.id)
        return event, incremental

    def _persist(self, session: Session, incremental: bool = False) -> None:
        self.store.save_session(session)
        if session.is_terminal:
            self.cache.remove_active_session(session.id)
        elif incremental:
            self.cache.increment_events_count(session.id, at=session.last_event_at)
        else:
            self.cache.set_active_session(state_from_session(session))

    def _close(self, session: Session, status: str, data: dict, now: Optional[datetime]) -> None:
        event, _ = self._append(session, "session_end", data, now)
        session.status = status
        session.completed_at = event.timestamp
        session.metrics = compute_session_metrics(session.events, session.started_at, event.timestamp)
        self._persist(session)

    def _stale_reason(self, session: Session, now: datetime) -> Optional[str]:
        if now - session.started_at > timedelta(hours=config.MAX_SESSION_HOURS):
            return "max_duration"
        if (now - session.last_event_at).total_seconds() > config.IDLE_THRESHOLD_SECONDS:
            return "idle_timeout"
        return None

    def _update_learner_memory(self, session: Session) -> ProgressUpdate:
        ended = session.completed_at
        metrics = session.metrics
        scenario_id = session.scenario_id
        scenario_done = bool(scenario_id) and is_scenario_completed(session)
        module_id = module_id_for_scenario(scenario_id) if scenario_id else None

        def mutate(memory: LearnerMemory) -> None:
            data = memory.progress_data
            data.current_streak = next_streak(data.last_session_at, data.current_streak, ended)
            data.longest_streak = max(data.longest_streak, data.current_streak)
            data.total_sessions += 1
            data.total_practice_minutes += round_score(metrics.duration / 60)
            data.last_session_at = ended

            if scenario_done:
                if scenario_id not in data.completed_scenarios:
                    data.completed_scenarios.append(scenario_id)
                progress = data.module_progress.setdefault(
                    module_id, ModuleProgress(module_id=module_id)
                )
                progress.scenarios_completed += 1
                progress.last_practiced_at = ended
                n = progress.scenarios_completed
                progress.average_score = (progress.average_score * (n - 1) + metrics.overall_score) / n
                if n >= progress.scenarios_total and module_id not in data.completed_modules:
                    data.completed_modules.append(module_id)

            reset_recent_counts(memory.error_patterns)
            update_pattern_trends(memory.error_patterns, now=ended)

        memory = self.store.update_memory(session.learner_id, session.language_code, mutate)

        module_pct = 0
        if module_id and module_id in memory.progress_data.module_progress:
            mp = memory.progress_data.module_progress[module_id]
            module_pct = round_score(mp.scenarios_completed / mp.scenarios_total * 100)

        return ProgressUpdate(
            scenario_completed=scenario_done,
            module_id=module_id,
            module_progress=module_pct,
            new_streak=memory.progress_data.current_streak,
        )
