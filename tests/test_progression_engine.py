"""Tests for progression_engine.py: thresholds, competency gating and level advancement."""

from datetime import timedelta

import pytest

from assessment_engine import AverageScores
from errors import InvalidInputError, NotFoundError
from learner_model import (
    AccuracyScore,
    Assessment,
    AssessmentScores,
    DimensionScore,
    LearnerLanguage,
)
from progression_engine import (
    ProgressionEngine,
    check_competency,
    get_all_thresholds,
    get_thresholds,
    next_level,
    overall_stddev,
)

from conftest import NOW


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def assessment(overall: int, days_ago: float, dims: int | None = None) -> Assessment:
    score = dims if dims is not None else overall
    part = DimensionScore(score=score, components={}, feedback="")
    return Assessment(
        learner_id="ana",
        language_code="en-GB",
        scores=AssessmentScores(
            overall=overall,
            fluency=part,
            accuracy=AccuracyScore(score=score, components={}, feedback=""),
            appropriacy=part,
            confidence=part,
        ),
        created_at=NOW - timedelta(days=days_ago),
    )


def seed(store, overalls: list[int], dims: int | None = None) -> None:
    """One assessment per day, newest first."""
    for day, overall in enumerate(overalls):
        store.save_assessment(assessment(overall, day + 1, dims))


def enroll(store, level: str = "A2", module_id: str | None = None) -> None:
    store.save_learner_language(
        LearnerLanguage(learner_id="ana", language_code="en-GB", current_level=level, current_module_id=module_id)
    )


def complete_modules(store, *modules: str) -> None:
    def mutate(memory):
        memory.progress_data.completed_modules.extend(modules)

    store.update_memory("ana", "en-GB", mutate)


@pytest.fixture
def progression(store) -> ProgressionEngine:
    return ProgressionEngine(store)


# ---------------------------------------------------------------------------
# Pure rules
# ---------------------------------------------------------------------------

class TestThresholds:
    def test_module_ids_are_language_qualified(self):
        assert get_thresholds("B1", "fr-FR").required_modules == (
            "fr-FR:1A", "fr-FR:1B", "fr-FR:1C", "fr-FR:1D",
        )
        assert get_thresholds("A2", "en-GB").required_modules == ()

    def test_unknown_level(self):
        with pytest.raises(InvalidInputError):
            get_thresholds("D1", "en-GB")

    def test_all_levels(self):
        thresholds = get_all_thresholds("en-GB")
        assert list(thresholds) == ["A2", "B1", "B2", "C1", "C2"]
        assert thresholds["C2"].min_accuracy_score == 90

    def test_next_level(self):
        assert next_level("A2") == "B1"
        assert next_level("C1") == "C2"
        assert next_level("C2") is None

    def test_stddev(self):
        assert overall_stddev([]) == 0.0
        assert overall_stddev([assessment(70, 1), assessment(70, 2)]) == 0.0
        assert overall_stddev([assessment(60, 1), assessment(80, 2)]) == 10.0

    def test_every_failure_reported(self):
        check = check_competency(
            get_thresholds("B1", "en-GB"),
            AverageScores(overall=50, fluency=50, accuracy=70, appropriacy=50, confidence=70, count=3),
            ["en-GB:1A"],
        )
        assert not check.passed
        assert check.failure_reasons == [
            "Overall score (50%) below required 60%",
            "Fluency score (50%) below required 55%",
            "Appropriacy score (50%) below required 55%",
            "Missing required modules: en-GB:1B, en-GB:1C, en-GB:1D",
        ]
        assert len(check.recommendations) == 4


# ---------------------------------------------------------------------------
# evaluate_progression
# ---------------------------------------------------------------------------

class TestEvaluateProgression:
    def test_not_enrolled(self, progression):
        with pytest.raises(NotFoundError):
            progression.evaluate_progression("ana", "en-GB", now=NOW)

    def test_insufficient_data(self, progression, store):
        enroll(store)
        seed(store, [90, 90])
        result = progression.evaluate_progression("ana", "en-GB", now=NOW)
        assert result.status == "insufficient_data"
        assert not result.can_advance
        assert result.reasons == ["Insufficient data: 2 of 3 assessments in the last 30 days"]

    def test_old_assessments_do_not_count(self, progression, store):
        enroll(store)
        seed(store, [90, 90])
        store.save_assessment(assessment(90, 40))
        assert progression.evaluate_progression("ana", "en-GB", now=NOW).status == "insufficient_data"

    def test_ready(self, progression, store):
        enroll(store, module_id="en-GB:1A")
        seed(store, [80, 80, 80])
        result = progression.evaluate_progression("ana", "en-GB", now=NOW)
        assert result.status == "ready"
        assert result.can_advance
        assert result.recommended_level == "B1"
        assert result.module_completion.module_id == "en-GB:1A"
        assert result.module_completion.completed is True
        assert result.reasons[0] == "Average score of 80% meets requirements"

    def test_competency_not_met(self, progression, store):
        enroll(store)
        seed(store, [60, 60, 60], dims=40)
        result = progression.evaluate_progression("ana", "en-GB", now=NOW)
        assert result.status == "competency_not_met"
        assert result.reasons == [
            "Fluency score (40%) below required 45%",
            "Accuracy score (40%) below required 50%",
        ]

    def test_missing_modules(self, progression, store):
        enroll(store, level="B1")
        seed(store, [80, 80, 80])
        complete_modules(store, "en-GB:1A")
        result = progression.evaluate_progression("ana", "en-GB", now=NOW)
        assert result.status == "competency_not_met"
        assert result.reasons == ["Missing required modules: en-GB:1B, en-GB:1C, en-GB:1D"]

    def test_modules_from_another_language_do_not_count(self, progression, store):
        enroll(store, level="B1")
        seed(store, [80, 80, 80])
        complete_modules(store, "fr-FR:1A", "fr-FR:1B", "fr-FR:1C", "fr-FR:1D")
        assert progression.evaluate_progression("ana", "en-GB", now=NOW).status == "competency_not_met"

    def test_inconsistent_scores(self, progression, store):
        enroll(store)
        seed(store, [100, 100, 100, 65, 65], dims=95)
        result = progression.evaluate_progression("ana", "en-GB", now=NOW)
        assert result.status == "not_consistent"
        assert "17.1" in result.reasons[0]

    def test_max_level(self, progression, store):
        enroll(store, level="C2")
        seed(store, [95, 95, 95])
        complete_modules(store, "en-GB:4A", "en-GB:4B", "en-GB:4C")
        result = progression.evaluate_progression("ana", "en-GB", now=NOW)
        assert result.status == "max_level"
        assert result.recommended_level is None


# ---------------------------------------------------------------------------
# advance_level
# ---------------------------------------------------------------------------

class TestAdvanceLevel:
    def test_advances_one_level(self, progression, store):
        enroll(store)
        seed(store, [80, 80, 80])
        result = progression.advance_level("ana", "en-GB", now=NOW)
        assert result.success and result.changed
        assert result.new_level == "B1"
        assert store.get_learner_language("ana", "en-GB").current_level == "B1"

    def test_retry_with_reached_level_is_noop(self, progression, store):
        enroll(store)
        seed(store, [80, 80, 80])
        progression.advance_level("ana", "en-GB", "B1", now=NOW)
        again = progression.advance_level("ana", "en-GB", "B1", now=NOW)
        assert again.success
        assert not again.changed
        assert store.get_learner_language("ana", "en-GB").current_level == "B1"

    def test_cannot_skip_levels(self, progression, store):
        enroll(store)
        seed(store, [80, 80, 80])
        result = progression.advance_level("ana", "en-GB", "C1", now=NOW)
        assert not result.success
        assert "B1" in result.message
        assert store.get_learner_language("ana", "en-GB").current_level == "A2"

    def test_not_ready(self, progression, store):
        enroll(store)
        seed(store, [80])
        result = progression.advance_level("ana", "en-GB", now=NOW)
        assert not result.success
        assert result.message.startswith("Insufficient data")

    def test_unknown_target(self, progression, store):
        enroll(store)
        with pytest.raises(InvalidInputError):
            progression.advance_level("ana", "en-GB", "Z9", now=NOW)


# ---------------------------------------------------------------------------
# Progress reports
# ---------------------------------------------------------------------------

class TestProgressReports:
    def test_progress_to_next_level(self, progression, store):
        enroll(store)
        seed(store, [70, 70], dims=58)
        store.save_assessment(assessment(70, 3, dims=49))
        progress = progression.get_progress_to_next_level("ana", "en-GB", now=NOW)
        # averages: overall 70, every dimension 55 against B1's 60/55/60/55
        assert progress.next_level == "B1"
        assert [r.met for r in progress.requirements] == [True, True, False, True]
        assert progress.percent_complete == 75

    def test_competency_breakdown(self, progression, store):
        seed(store, [60, 60, 60, 60, 60])
        store.save_assessment(assessment(0, 200))
        complete_modules(store, "en-GB:1A", "en-GB:1B")
        breakdown = progression.get_competency_breakdown("ana", "en-GB", "B1")
        assert breakdown.overall.current == 60
        assert breakdown.overall.percentage == 100
        assert breakdown.fluency.percentage == 100
        assert breakdown.modules.current == 2
        assert breakdown.modules.percentage == 50

    def test_breakdown_below_target(self, progression, store):
        seed(store, [40, 40, 40])
        breakdown = progression.get_competency_breakdown("ana", "en-GB", "A2")
        assert breakdown.overall.percentage == 80
        assert breakdown.modules.percentage == 100

    def test_required_modules_check(self, progression, store):
        complete_modules(store, "en-GB:2A", "en-GB:2B", "en-GB:2C", "en-GB:2D")
        assert progression.check_required_modules("ana", "en-GB", "B2").passed
        assert progression.check_required_modules("ana", "en-GB", "C1").missing == [
            "en-GB:3A", "en-GB:3B", "en-GB:3C", "en-GB:3D",
        ]
