"""
Learner Progress MCP Server.
Exposes tools for session lifecycle, event processing, assessments,
level progression, review recommendations and error trends.
"""

import functools
import logging
import os
import sys

# Ensure sibling modules are importable
sys.path.insert(0, os.path.dirname(__file__))

from datetime import datetime
from typing import Any, Optional

from fastmcp import FastMCP

import config
from assessment_engine import AssessmentEngine
from error_tracker import ErrorTracker
from errors import InvalidInputError, ProgressEngineError
from learner_model import LearnerLanguage, ensure_utc
from progress_store import JsonProgressStore, StaticCurriculum
from progression_engine import ProgressionEngine, get_all_thresholds
from review_recommender import ReviewRecommender
from session_cache import InMemoryCache, SessionCache
from session_engine import SessionEngine

logger = logging.getLogger(__name__)

mcp = FastMCP("LearnerProgress")

store = JsonProgressStore()
curriculum = StaticCurriculum.from_json(config.CURRICULUM_PATH) if config.CURRICULUM_PATH else None
tracker = ErrorTracker(store)
sessions = SessionEngine(store, SessionCache(InMemoryCache()), curriculum, tracker)
recommender = ReviewRecommender(store, curriculum)
assessments = AssessmentEngine(store, recommender=recommender)
progression = ProgressionEngine(store, assessments)


def _reports_errors(fn):
    """Turn engine errors into the {"error": ...} dicts tools return for missing data."""

    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except ProgressEngineError as exc:
            logger.debug("%s failed: %s", fn.__name__, exc)
            return {"error": str(exc), "error_type": exc.error_type}

    return wrapper


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as exc:
        raise InvalidInputError(f"Invalid timestamp: {value!r}") from exc
    return ensure_utc(parsed)


def _dump(model) -> dict:
    return model.model_dump(mode="json")


# ---------------------------------------------------------------------------
# Learners
# ---------------------------------------------------------------------------

@mcp.tool()
@_reports_errors
def enroll_learner(
    learner_id: str,
    language_code: str,
    current_level: str = "A2",
    current_module_id: Optional[str] = None,
) -> dict:
    """
    Create or update the learner's enrolment in a language.
    The enrolment holds the CEFR level that progression advances.
    """
    existing = store.get_learner_language(learner_id, language_code)
    try:
        record = LearnerLanguage(
            learner_id=learner_id,
            language_code=language_code,
            current_level=existing.current_level if existing else current_level,
            current_module_id=current_module_id or (existing.current_module_id if existing else None),
        )
    except ValueError as exc:
        raise InvalidInputError(str(exc)) from exc
    store.save_learner_language(record)
    return {"enrolled": True, "new": existing is None, **_dump(record)}


@mcp.tool()
@_reports_errors
def get_learner_progress(learner_id: str, language_code: str) -> dict:
    """Level, module completion, streak, practice time, strong and weak areas."""
    return _dump(recommender.get_learner_progress(learner_id, language_code))


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------

@mcp.tool()
@_reports_errors
def start_session(
    learner_id: str,
    language_code: str,
    scenario_id: Optional[str] = None,
    metadata: Optional[dict[str, Any]] = None,
) -> dict:
    """
    Start a practice session. Fails if the learner already has an active
    session for this language.
    """
    session = sessions.create_session(learner_id, language_code, scenario_id, metadata)
    return {
        "status": "session_started",
        "session_id": session.id,
        "learner_id": learner_id,
        "language_code": language_code,
        "scenario_id": scenario_id,
        "started_at": session.started_at.isoformat(),
    }


@mcp.tool()
@_reports_errors
def get_session(session_id: str) -> dict:
    """Return the full session, including its event log."""
    return _dump(sessions.get_session(session_id))


@mcp.tool()
@_reports_errors
def list_sessions(
    learner_id: str,
    language_code: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = 20,
    offset: int = 0,
) -> dict:
    """List a learner's sessions, newest first. Events are omitted."""
    page, total = sessions.list_sessions(
        learner_id, language_code=language_code, status=status, limit=limit, offset=offset
    )
    return {
        "total": total,
        "sessions": [s.model_dump(mode="json", exclude={"events"}) for s in page],
    }


@mcp.tool()
@_reports_errors
def update_session(
    session_id: str,
    scenario_id: Optional[str] = None,
    metadata: Optional[dict[str, Any]] = None,
) -> dict:
    """Change the scenario or merge metadata on an open session."""
    session = sessions.update_session(session_id, scenario_id, metadata)
    return {"updated": True, "scenario_id": session.scenario_id, "metadata": session.metadata}


@mcp.tool()
@_reports_errors
def append_event(
    session_id: str,
    event_type: str,
    data: Optional[dict[str, Any]] = None,
    timestamp: Optional[str] = None,
) -> dict:
    """
    Append an event to an open session and apply its side effects.
    error_detected needs data.category (grammar, vocabulary, pronunciation,
    cultural, pragmatic, register) and returns immediate feedback.
    correction_accepted with data.error_log_id marks that error corrected.
    """
    result = sessions.process_event(session_id, event_type, data, _parse_time(timestamp))
    return {
        "recorded": True,
        "event_id": result.event.id,
        "event": _dump(result.event),
        "events_count": len(result.session.events),
        "side_effects": result.side_effects,
        "error_feedback": _dump(result.error_feedback) if result.error_feedback else None,
    }


@mcp.tool()
@_reports_errors
def append_events(session_id: str, events: list[dict[str, Any]]) -> dict:
    """
    Append several events in order. Each item is {"type", "data", "timestamp"?}.
    Failing events are reported and do not stop the rest.
    """
    result = sessions.process_batch_events(session_id, events)
    return {
        "processed": len(result.processed),
        "event_ids": [p.event.id for p in result.processed],
        "failed": [_dump(f) for f in result.failed],
    }


@mcp.tool()
@_reports_errors
def pause_session(session_id: str) -> dict:
    """Pause an active session."""
    session = sessions.pause(session_id)
    return {"status": session.status, "session_id": session.id}


@mcp.tool()
@_reports_errors
def resume_session(session_id: str) -> dict:
    """Resume a paused session. Resuming an active session does nothing."""
    session = sessions.resume(session_id)
    return {"status": session.status, "session_id": session.id}


@mcp.tool()
@_reports_errors
def complete_session(session_id: str) -> dict:
    """
    End the session, freeze its metrics, update learner memory and return
    progress and feedback. Completing twice changes nothing.
    """
    result = sessions.complete_session_with_feedback(session_id)
    return {
        "status": "session_completed",
        "session_id": session_id,
        "metrics": _dump(result.metrics),
        "memory_updated": result.memory_updated,
        "progress_update": _dump(result.progress_update),
        "feedback": result.feedback,
    }


@mcp.tool()
@_reports_errors
def abandon_session(session_id: str, reason: str = "abandoned") -> dict:
    """Close a session without completing it."""
    session = sessions.abandon(session_id, reason)
    return {"status": session.status, "session_id": session.id, "metrics": _dump(session.metrics)}


@mcp.tool()
@_reports_errors
def get_completion_preview(session_id: str) -> dict:
    """Estimated score and remaining activities, without closing the session."""
    return _dump(sessions.get_completion_preview(session_id))


@mcp.tool()
@_reports_errors
def get_session_stats(learner_id: str, language_code: str, days: int = 30) -> dict:
    """Session counts, durations and average score over the last N days."""
    return _dump(sessions.get_session_stats(learner_id, language_code, days))


@mcp.tool()
@_reports_errors
def recover_session(session_id: str) -> dict:
    """Reconcile the cached state of a session with storage."""
    result = sessions.recover_session(session_id)
    return {"recovered": result.recovered, "action": result.action, "message": result.message}


@mcp.tool()
@_reports_errors
def get_session_health(session_id: str) -> dict:
    """Cache agreement, idle time and running time of an open session."""
    return _dump(sessions.get_session_health(session_id))


@mcp.tool()
@_reports_errors
def sweep_stale_sessions() -> dict:
    """Abandon sessions that went idle or ran past the maximum duration."""
    return _dump(sessions.sweep_stale_sessions())


# ---------------------------------------------------------------------------
# Assessments
# ---------------------------------------------------------------------------

@mcp.tool()
@_reports_errors
def create_assessment(session_id: str, assessment_type: str = "INFORMAL") -> dict:
    """
    Score a session on fluency, accuracy, appropriacy and confidence.
    Returns the stored assessment and review recommendations.
    """
    result = assessments.assess_session(session_id, assessment_type)
    return {
        "assessment": _dump(result.assessment),
        "review_recommendations": [_dump(r) for r in result.review_recommendations],
    }


@mcp.tool()
@_reports_errors
def assess_events(
    learner_id: str,
    language_code: str,
    events: list[dict[str, Any]],
    error_logs: Optional[list[dict[str, Any]]] = None,
    duration: float = 0.0,
    assessment_type: str = "INFORMAL",
    module_id: Optional[str] = None,
) -> dict:
    """
    Score a batch of events that was never stored as a session.
    events: [{"type", "timestamp", "data"}]; error_logs: [{"category", "subcategory"?,
    "context"?, "corrected"?}]; duration in seconds.
    """
    result = assessments.create_assessment(
        learner_id,
        language_code,
        {"events": events, "error_logs": error_logs or [], "duration": duration, "module_id": module_id},
        type=assessment_type,
        module_id=module_id,
    )
    return {
        "assessment": _dump(result.assessment),
        "review_recommendations": [_dump(r) for r in result.review_recommendations],
    }


@mcp.tool()
@_reports_errors
def get_assessment(assessment_id: str) -> dict:
    """Return one stored assessment."""
    return _dump(assessments.get_assessment(assessment_id))


@mcp.tool()
@_reports_errors
def list_assessments(
    learner_id: str,
    language_code: str,
    assessment_type: Optional[str] = None,
    module_id: Optional[str] = None,
    limit: int = 20,
    offset: int = 0,
) -> dict:
    """List assessments, newest first."""
    page, total = assessments.list_assessments(
        learner_id, language_code, type=assessment_type, module_id=module_id, limit=limit, offset=offset
    )
    return {"total": total, "assessments": [_dump(a) for a in page]}


@mcp.tool()
@_reports_errors
def get_average_scores(learner_id: str, language_code: str, days: int = 30) -> dict:
    """Rolling averages of every score over the last N days."""
    return _dump(assessments.get_average_scores(learner_id, language_code, days))


# ---------------------------------------------------------------------------
# Progression
# ---------------------------------------------------------------------------

@mcp.tool()
@_reports_errors
def evaluate_progression(learner_id: str, language_code: str) -> dict:
    """Decide whether the learner can advance to the next CEFR level."""
    return _dump(progression.evaluate_progression(learner_id, language_code))


@mcp.tool()
@_reports_errors
def advance_level(learner_id: str, language_code: str, target_level: Optional[str] = None) -> dict:
    """
    Advance one level if the evaluation allows it. Passing the level the
    learner is already at succeeds without change.
    """
    return _dump(progression.advance_level(learner_id, language_code, target_level))


@mcp.tool()
@_reports_errors
def get_progress_to_next_level(learner_id: str, language_code: str) -> dict:
    """Which score requirements for the next level are already met."""
    return _dump(progression.get_progress_to_next_level(learner_id, language_code))


@mcp.tool()
@_reports_errors
def get_competency_breakdown(learner_id: str, language_code: str, target_level: str) -> dict:
    """Recent averages and module completion measured against a target level."""
    return _dump(progression.get_competency_breakdown(learner_id, language_code, target_level))


@mcp.tool()
@_reports_errors
def get_level_thresholds(language_code: str) -> dict:
    """Competency thresholds for every level."""
    return {level: _dump(t) for level, t in get_all_thresholds(language_code).items()}


# ---------------------------------------------------------------------------
# Review and errors
# ---------------------------------------------------------------------------

@mcp.tool()
@_reports_errors
def get_review_recommendations(learner_id: str, language_code: str, limit: int = 5) -> dict:
    """Skills, modules and scenarios worth reviewing, highest priority first."""
    recs = recommender.get_recommendations(learner_id, language_code, limit)
    return {"recommendations": [_dump(r) for r in recs]}


@mcp.tool()
@_reports_errors
def get_error_trends(learner_id: str, language_code: str, window_days: Optional[int] = None) -> dict:
    """Trend report over the learner's error patterns plus the headline error rate."""
    report = tracker.trend_report(learner_id, language_code, window_days)
    rate = tracker.error_rate(learner_id, language_code, window_days)
    return {
        **_dump(report),
        "error_rate": _dump(rate),
        "top_patterns": [
            {"label": p.label, "frequency": p.frequency, "trend": p.trend}
            for p in tracker.get_top_patterns(learner_id, language_code)
        ],
    }


@mcp.tool()
@_reports_errors
def list_errors(
    learner_id: str,
    language_code: str,
    category: Optional[str] = None,
    corrected: Optional[bool] = None,
    limit: int = 20,
    offset: int = 0,
) -> dict:
    """Logged errors, newest first."""
    page, total = tracker.list_errors(
        learner_id, language_code, limit=limit, offset=offset, category=category, corrected=corrected
    )
    return {"total": total, "errors": [_dump(e) for e in page]}


if __name__ == "__main__":
    logging.basicConfig(level=config.LOG_LEVEL)
    mcp.run()
