"""Tests for session_engine.py: lifecycle, event processing, completion and recovery."""

from datetime import datetime, timedelta, timezone

import pytest

from errors import ActiveSessionExistsError, InvalidInputError, InvalidStateError, NotFoundError
from learner_model import Session, SessionEvent
from session_cache import SessionCache
from session_engine import (
    SessionEngine,
    activity_completed_event,
    agent_message_event,
    compute_session_metrics,
    correction_event,
    error_event,
    is_scenario_completed,
    module_id_for_scenario,
    next_streak,
    user_message_event,
)

from conftest import NOW


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def at(seconds: float) -> datetime:
    return NOW + timedelta(seconds=seconds)


def start(engine: SessionEngine, learner: str = "ana", language: str = "en-GB", **kwargs):
    return engine.create_session(learner, language, now=NOW, **kwargs)


def say(engine: SessionEngine, session_id: str, seconds: float, text: str = "I want a cup of tea"):
    return engine.process_event(session_id, "user_message", {"content": text}, at(seconds))


def user_events(offsets: list[float]) -> list[SessionEvent]:
    return [
        SessionEvent(type="user_message", timestamp=at(s), data={"content": "hello there"})
        for s in offsets
    ]


def disk_full(*args, **kwargs):
    raise OSError("disk full")


# ---------------------------------------------------------------------------
# compute_session_metrics
# ---------------------------------------------------------------------------

class TestComputeSessionMetrics:
    def test_steady_conversation(self):
        metrics = compute_session_metrics(user_events([0, 10, 20]), NOW, at(60))
        assert metrics.duration == 60
        assert metrics.user_message_count == 3
        assert metrics.engagement_score == 60
        assert metrics.accuracy_score == 100
        assert metrics.fluency_score == 100
        assert metrics.overall_score == 87

    def test_zero_duration(self):
        metrics = compute_session_metrics(user_events([0]), NOW, NOW)
        assert metrics.engagement_score == 0

    def test_errors_lower_accuracy(self):
        events = user_events([0, 10, 20, 30]) + [
            SessionEvent(type="error_detected", timestamp=at(31)),
        ]
        metrics = compute_session_metrics(events, NOW, at(60))
        assert metrics.errors_detected == 1
        assert metrics.accuracy_score == 75

    def test_hints_and_activities(self):
        events = user_events([0, 10, 20]) + [
            SessionEvent(type="hint_requested", timestamp=at(21)),
            SessionEvent(type="hint_requested", timestamp=at(22)),
            SessionEvent(type="practice_activity_completed", timestamp=at(23)),
        ]
        metrics = compute_session_metrics(events, NOW, at(60))
        # 60 - 10 + 10
        assert metrics.engagement_score == 60
        assert metrics.hints_requested == 2
        assert metrics.activities_completed == 1

    def test_fluency_needs_three_messages(self):
        metrics = compute_session_metrics(user_events([0, 10]), NOW, at(60))
        assert metrics.fluency_score == 50

    def test_no_user_messages(self):
        metrics = compute_session_metrics([], NOW, at(60))
        assert metrics.accuracy_score == 100


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

class TestHelpers:
    def test_module_id_for_scenario(self):
        assert module_id_for_scenario("en-GB:1A-cafe") == "en-GB:1A"
        assert module_id_for_scenario("1a-s1-extra") == "1a-s1"
        assert module_id_for_scenario("standalone") == "standalone"

    def test_next_streak(self):
        day = datetime(2026, 3, 2, 23, 0, tzinfo=timezone.utc)
        assert next_streak(None, 0, day) == 1
        assert next_streak(day - timedelta(hours=2), 3, day) == 3
        assert next_streak(day - timedelta(days=1), 3, day) == 4
        assert next_streak(day - timedelta(days=3), 3, day) == 1
        # second session on the first day
        assert next_streak(day - timedelta(hours=1), 0, day) == 1

    def test_event_builders(self):
        assert user_message_event("hi").data == {"content": "hi"}
        assert agent_message_event("hello", audio_url="a.mp3").data == {"content": "hello", "audio_url": "a.mp3"}
        assert error_event("grammar", "tense").data["category"] == "grammar"
        assert correction_event("goed", "went", accepted=True).type == "correction_accepted"
        assert correction_event("goed", "went").type == "correction_given"
        assert activity_completed_event("a1", score=80).data == {"activity_id": "a1", "score": 80}


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

class TestLifecycle:
    def test_create(self, engine, cache):
        session = start(engine, scenario_id="en-GB:1A-cafe")
        assert session.status == "ACTIVE"
        assert [e.type for e in session.events] == ["session_start"]
        state = cache.get_active_session(session.id)
        assert state is not None
        assert state.events_count == 1
        assert cache.get_active_session_id_for_learner("ana", "en-GB") == session.id

    def test_one_active_session_per_language(self, engine):
        start(engine)
        with pytest.raises(ActiveSessionExistsError):
            start(engine)
        other = start(engine, language="fr-FR")
        assert other.status == "ACTIVE"

    def test_active_session_error_is_invalid_state(self, engine):
        start(engine)
        with pytest.raises(InvalidStateError):
            start(engine)

    def test_unknown_scenario(self, store, cache, curriculum):
        engine = SessionEngine(store, cache, curriculum)
        with pytest.raises(NotFoundError):
            start(engine, scenario_id="en-GB:9Z-nowhere")
        assert start(engine, scenario_id="en-GB:1A-cafe").scenario_id == "en-GB:1A-cafe"

    def test_get_unknown_session(self, engine):
        with pytest.raises(NotFoundError):
            engine.get_session("missing")

    def test_pause_and_resume(self, engine):
        session = start(engine)
        paused = engine.pause(session.id, now=at(10))
        assert paused.status == "PAUSED"
        with pytest.raises(InvalidStateError):
            engine.pause(session.id, now=at(11))
        resumed = engine.resume(session.id, now=at(20))
        assert resumed.status == "ACTIVE"
        assert [e.type for e in resumed.events] == ["session_start", "pause", "resume"]

    def test_resume_active_is_noop(self, engine):
        session = start(engine)
        again = engine.resume(session.id)
        assert again.status == "ACTIVE"
        assert len(again.events) == 1

    def test_resume_blocked_by_other_active_session(self, engine):
        first = start(engine)
        engine.pause(first.id, now=at(1))
        start(engine)  # allowed: the first one is paused
        with pytest.raises(InvalidStateError):
            engine.resume(first.id)

    def test_complete_freezes_metrics(self, engine):
        session = start(engine)
        say(engine, session.id, 10)
        done = engine.complete(session.id, now=at(60))
        assert done.status == "COMPLETED"
        assert done.completed_at == at(60)
        assert done.events[-1].type == "session_end"

        again = engine.complete(session.id, now=at(500))
        assert again.metrics == done.metrics
        assert again.completed_at == done.completed_at

    def test_complete_paused(self, engine):
        session = start(engine)
        engine.pause(session.id, now=at(5))
        assert engine.complete(session.id, now=at(10)).status == "COMPLETED"

    def test_complete_abandoned_fails(self, engine):
        session = start(engine)
        engine.abandon(session.id, now=at(5))
        with pytest.raises(InvalidStateError):
            engine.complete(session.id)

    def test_abandon_terminal_is_noop(self, engine):
        session = start(engine)
        done = engine.complete(session.id, now=at(5))
        assert engine.abandon(session.id).status == "COMPLETED"
        assert len(engine.get_session(session.id).events) == len(done.events)

    def test_abandon_records_reason(self, engine, cache):
        session = start(engine)
        abandoned = engine.abandon(session.id, reason="user_left", now=at(5))
        assert abandoned.events[-1].data == {"reason": "user_left"}
        assert abandoned.metrics is not None
        assert cache.get_active_session(session.id) is None

    def test_update_session(self, engine):
        session = start(engine, metadata={"device": "web"})
        updated = engine.update_session(session.id, scenario_id="en-GB:1B-market", metadata={"mode": "voice"})
        assert updated.scenario_id == "en-GB:1B-market"
        assert updated.metadata == {"device": "web", "mode": "voice"}

    def test_update_terminal_fails(self, engine):
        session = start(engine)
        engine.complete(session.id, now=at(5))
        with pytest.raises(InvalidStateError):
            engine.update_session(session.id, metadata={"x": 1})

    def test_works_without_cache(self, store):
        engine = SessionEngine(store, SessionCache())
        session = start(engine)
        say(engine, session.id, 5)
        assert engine.complete(session.id, now=at(10)).status == "COMPLETED"

    def test_history_and_stats(self, engine):
        first = start(engine)
        say(engine, first.id, 10)
        engine.complete(first.id, now=at(120))
        second = start(engine)
        engine.abandon(second.id, now=at(130))

        assert {s.id for s in engine.get_session_history("ana")} == {first.id, second.id}
        stats = engine.get_session_stats("ana", "en-GB", now=at(200))
        assert stats.total_sessions == 2
        assert stats.completed_sessions == 1
        assert stats.abandoned_sessions == 1
        assert stats.total_duration == 120


# ---------------------------------------------------------------------------
# Event log
# ---------------------------------------------------------------------------

class TestEvents:
    def test_append_keeps_order(self, engine, cache):
        session = start(engine)
        say(engine, session.id, 5)
        say(engine, session.id, 5)
        say(engine, session.id, 9)
        stored = engine.get_session(session.id)
        stamps = [e.timestamp for e in stored.events]
        assert stamps == sorted(stamps)
        assert cache.get_active_session(session.id).events_count == 4

    def test_append_while_paused(self, engine):
        session = start(engine)
        engine.pause(session.id, now=at(1))
        assert len(engine.append_event(session.id, "agent_message", {"content": "Take your time"}, at(2)).events) == 3

    def test_append_to_terminal_fails(self, engine):
        session = start(engine)
        engine.complete(session.id, now=at(5))
        with pytest.raises(InvalidStateError):
            say(engine, session.id, 10)

    def test_backdated_timestamp_rejected(self, engine):
        session = start(engine)
        say(engine, session.id, 10)
        with pytest.raises(InvalidInputError):
            say(engine, session.id, 5)
        assert len(engine.get_session(session.id).events) == 2

    def test_implicit_timestamp_clamped(self, engine):
        future = datetime.now(timezone.utc) + timedelta(days=1)
        session = engine.create_session("ana", "en-GB", now=future)
        result = engine.process_event(session.id, "agent_message", {"content": "hi"})
        assert result.event.timestamp == future

    def test_unknown_event_type(self, engine):
        session = start(engine)
        with pytest.raises(InvalidInputError):
            engine.process_event(session.id, "dance", {}, at(1))

    def test_error_detected(self, engine, store):
        session = start(engine)
        result = engine.process_event(
            session.id, "error_detected",
            {"category": "grammar", "subcategory": "tense", "context": "I goed home"}, at(3),
        )
        error_id = result.event.data["error_log_id"]
        log = store.get_error_log(error_id)
        assert log is not None
        assert log.session_id == session.id
        assert log.timestamp == at(3)

        patterns = store.load_memory("ana", "en-GB").error_patterns
        assert patterns[0].category == "grammar"
        assert patterns[0].frequency == 1
        assert result.error_feedback.immediate_correction == "Check your verb tense here."
        assert "error_logged" in result.side_effects

    def test_error_detected_counts_in_cache(self, engine, cache):
        session = start(engine)
        engine.process_event(session.id, "error_detected", {"category": "vocabulary"}, at(3))
        assert cache.get_active_session(session.id).errors_in_session == 1

    def test_invalid_error_payload(self, engine, store):
        session = start(engine)
        with pytest.raises(InvalidInputError):
            engine.process_event(session.id, "error_detected", {"category": "spelling"}, at(3))
        assert len(engine.get_session(session.id).events) == 1
        assert store.list_error_logs(session_id=session.id) == []

    def test_correction_accepted_marks_log(self, engine, store):
        session = start(engine)
        detected = engine.process_event(session.id, "error_detected", {"category": "grammar"}, at(3))
        error_id = detected.event.data["error_log_id"]
        engine.process_event(session.id, "correction_accepted", {"error_log_id": error_id}, at(4))
        assert store.get_error_log(error_id).corrected is True

    def test_correction_for_unknown_log(self, engine):
        session = start(engine)
        with pytest.raises(NotFoundError):
            engine.process_event(session.id, "correction_accepted", {"error_log_id": "nope"}, at(4))

    def test_activity_completed_advances_index(self, engine, cache):
        session = start(engine)
        engine.process_event(session.id, "practice_activity_started", {"activity_id": "a1"}, at(1))
        engine.process_event(session.id, "practice_activity_completed", {"activity_id": "a1"}, at(2))
        assert cache.get_active_session(session.id).current_activity_index == 1

    def test_batch_collects_failures(self, engine):
        session = start(engine)
        batch = [
            user_message_event("Hello"),
            {"type": "error_detected", "data": {"category": "nonsense"}},
            {"type": "not_an_event"},
            {"type": "agent_message", "data": {"content": "Hi!"}},
        ]
        result = engine.process_batch_events(session.id, batch)
        assert len(result.processed) == 2
        assert [f.index for f in result.failed] == [1, 2]
        assert result.failed[0].error_type == "validation"
        assert result.processed[1].event.type == "agent_message"

    def test_error_builder_carries_correction(self, engine, store):
        session = start(engine)
        spec = error_event("grammar", "tense", context="I goed home", correction="I went home")
        engine.process_event(session.id, spec.type, spec.data, at(3))
        [pattern] = store.load_memory("ana", "en-GB").error_patterns
        assert [e.correction for e in pattern.examples] == ["I went home"]

    def test_batch_naive_timestamps_are_utc(self, engine):
        session = start(engine)
        batch = [
            {"type": "user_message", "data": {"content": "Hello"}, "timestamp": "2026-03-02T12:00:10+00:00"},
            {"type": "user_message", "data": {"content": "Again"}, "timestamp": "2026-03-02T12:00:30"},
            {"type": "user_message", "data": {"content": "Too early"}, "timestamp": "2026-03-02T11:00:00"},
            user_message_event("Bye"),
        ]
        result = engine.process_batch_events(session.id, batch)
        assert len(result.processed) == 3
        assert result.processed[1].event.timestamp == at(30)
        assert [(f.index, f.error_type) for f in result.failed] == [(2, "validation")]
        assert len(engine.get_session(session.id).events) == 4

    def test_naive_timestamp_is_utc(self, engine):
        session = start(engine)
        naive = datetime(2026, 3, 2, 12, 0, 40)
        result = engine.process_event(session.id, "user_message", {"content": "Hi"}, naive)
        assert result.event.timestamp == at(40)
        assert result.event.timestamp.tzinfo is not None


# ---------------------------------------------------------------------------
# Completion with feedback
# ---------------------------------------------------------------------------

class TestCompletion:
    def test_scenario_completed_by_messages(self):
        events = [SessionEvent(type="user_message", timestamp=at(i)) for i in range(5)]
        session = Session(learner_id="ana", language_code="en-GB", events=events)
        assert is_scenario_completed(session)
        session.events.append(SessionEvent(type="practice_activity_started", timestamp=at(6)))
        assert not is_scenario_completed(session)

    def test_updates_memory(self, engine, store):
        session = start(engine, scenario_id="en-GB:1A-cafe")
        for i in range(5):
            say(engine, session.id, 10 * (i + 1))
        engine.process_event(session.id, "error_detected", {"category": "grammar"}, at(55))

        result = engine.complete_session_with_feedback(session.id, now=at(120))
        assert result.memory_updated is True
        assert result.progress_update.scenario_completed is True
        assert result.progress_update.module_id == "en-GB:1A"
        assert result.progress_update.module_progress == 20
        assert result.progress_update.new_streak == 1
        assert 1 <= len(result.feedback) <= 5

        memory = store.load_memory("ana", "en-GB")
        data = memory.progress_data
        assert data.total_sessions == 1
        assert data.total_practice_minutes == 2
        assert data.completed_scenarios == ["en-GB:1A-cafe"]
        assert data.module_progress["en-GB:1A"].scenarios_completed == 1
        assert data.module_progress["en-GB:1A"].average_score == result.metrics.overall_score
        assert all(p.recent_count == 0 for p in memory.error_patterns)
        assert memory.error_patterns[0].frequency == 1

    def test_second_call_does_not_touch_memory(self, engine, store):
        session = start(engine, scenario_id="en-GB:1A-cafe")
        say(engine, session.id, 10)
        first = engine.complete_session_with_feedback(session.id, now=at(60))
        version = store.load_memory("ana", "en-GB").version

        second = engine.complete_session_with_feedback(session.id, now=at(90))
        assert second.memory_updated is False
        assert second.metrics == first.metrics
        assert store.load_memory("ana", "en-GB").version == version
        assert store.load_memory("ana", "en-GB").progress_data.total_sessions == 1

    def test_memory_failure_degrades(self, engine, store, monkeypatch):
        session = start(engine)
        monkeypatch.setattr(store, "update_memory", disk_full)
        result = engine.complete_session_with_feedback(session.id, now=at(60))
        assert result.memory_updated is False
        assert result.session.status == "COMPLETED"

    def test_retry_after_memory_failure(self, engine, store, monkeypatch):
        session = start(engine)
        engine.process_event(session.id, "error_detected", {"category": "grammar"}, at(5))
        monkeypatch.setattr(store, "update_memory", disk_full)
        assert engine.complete_session_with_feedback(session.id, now=at(60)).memory_updated is False
        monkeypatch.undo()

        retry = engine.complete_session_with_feedback(session.id, now=at(90))
        assert retry.memory_updated is True
        memory = store.load_memory("ana", "en-GB")
        assert [p.recent_count for p in memory.error_patterns] == [0]
        assert memory.progress_data.total_sessions == 1

    def test_plain_complete_leaves_memory_for_feedback_call(self, engine, store):
        session = start(engine)
        engine.process_event(session.id, "error_detected", {"category": "grammar"}, at(5))
        engine.complete(session.id, now=at(60))
        assert not engine.get_session(session.id).memory_applied
        assert store.load_memory("ana", "en-GB").error_patterns[0].recent_count == 1

        result = engine.complete_session_with_feedback(session.id, now=at(90))
        assert result.memory_updated is True
        assert result.session.completed_at == at(60)
        assert engine.get_session(session.id).memory_applied
        memory = store.load_memory("ana", "en-GB")
        assert [p.recent_count for p in memory.error_patterns] == [0]
        assert memory.progress_data.total_sessions == 1

        again = engine.complete_session_with_feedback(session.id, now=at(120))
        assert again.memory_updated is False
        assert store.load_memory("ana", "en-GB").progress_data.total_sessions == 1

    def test_module_completes_after_five_scenarios(self, engine, store):
        for day in range(5):
            t0 = NOW + timedelta(days=day)
            session = engine.create_session("ana", "en-GB", scenario_id=f"en-GB:1A-s{day}", now=t0)
            for i in range(5):
                engine.process_event(
                    session.id, "user_message", {"content": "fine thanks"}, t0 + timedelta(seconds=10 * (i + 1))
                )
            engine.complete_session_with_feedback(session.id, now=t0 + timedelta(minutes=5))

        data = store.load_memory("ana", "en-GB").progress_data
        assert data.completed_modules == ["en-GB:1A"]
        assert data.current_streak == 5
        assert data.longest_streak == 5

    def test_completion_preview(self, engine):
        session = start(engine)
        engine.process_event(session.id, "practice_activity_started", {"activity_id": "a1"}, at(1))
        preview = engine.get_completion_preview(session.id, now=at(60))
        assert preview.can_complete is True
        assert preview.activities_remaining == 1
        assert "1 remaining" in preview.recommendation
        # nothing was written
        assert engine.get_session(session.id).status == "ACTIVE"
        assert len(engine.get_session(session.id).events) == 2


# ---------------------------------------------------------------------------
# Recovery
# ---------------------------------------------------------------------------

class TestRecovery:
    def test_sweep_abandons_idle_sessions(self, engine):
        idle = start(engine)
        fresh = engine.create_session("ben", "en-GB", now=at(1900))

        result = engine.sweep_stale_sessions(now=at(1900 + 60))
        assert result.session_ids == [idle.id]
        stored = engine.get_session(idle.id)
        assert stored.status == "ABANDONED"
        assert stored.events[-1].data == {"reason": "idle_timeout"}
        assert engine.get_session(fresh.id).status == "ACTIVE"

        assert engine.sweep_stale_sessions(now=at(1900 + 60)).cleaned == 0

    def test_sweep_idle_measured_from_last_event(self, engine):
        session = start(engine)
        say(engine, session.id, 1700)
        assert engine.sweep_stale_sessions(now=at(1900)).cleaned == 0

    def test_sweep_max_duration(self, engine):
        session = start(engine)
        for minutes in range(10, 250, 10):
            say(engine, session.id, minutes * 60)
        result = engine.sweep_stale_sessions(now=at(4 * 3600 + 120))
        assert result.session_ids == [session.id]
        assert engine.get_session(session.id).events[-1].data == {"reason": "max_duration"}

    def test_recover_restores_missing_cache_entry(self, engine, cache):
        session = start(engine)
        cache.remove_active_session(session.id)
        result = engine.recover_session(session.id, now=at(10))
        assert result.action == "cache_restored"
        assert cache.get_active_session(session.id).events_count == 1

    def test_recover_rebuilds_mismatch(self, engine, cache):
        session = start(engine)
        say(engine, session.id, 5)
        cache.update_session_state(session.id, events_count=99)
        result = engine.recover_session(session.id, now=at(10))
        assert result.action == "cache_rebuilt"
        assert cache.get_active_session(session.id).events_count == 2

    def test_recover_healthy(self, engine):
        session = start(engine)
        assert engine.recover_session(session.id, now=at(10)).action == "no_action_needed"

    def test_recover_over_duration(self, engine):
        session = start(engine)
        result = engine.recover_session(session.id, now=at(5 * 3600))
        assert result.action == "marked_abandoned"
        assert engine.get_session(session.id).status == "ABANDONED"

    def test_mismatched_cache_is_rebuilt_on_append(self, engine, cache):
        session = start(engine)
        cache.update_session_state(session.id, events_count=42)
        say(engine, session.id, 5)
        assert cache.get_active_session(session.id).events_count == 2

    def test_health(self, engine, cache):
        session = start(engine)
        assert engine.get_session_health(session.id, now=at(10)).is_healthy

        cache.remove_active_session(session.id)
        health = engine.get_session_health(session.id, now=at(2400))
        assert not health.is_healthy
        assert "Session not found in cache" in health.issues
        assert any(issue.startswith("Session idle") for issue in health.issues)
