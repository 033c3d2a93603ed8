"""
Competency gating and CEFR level progression.

A learner advances one rung at a time (A2 -> B1 -> B2 -> C1 -> C2) once the
30-day rolling averages clear every threshold of the current level, the
level's required modules are complete, and recent overall scores are
consistent.
"""

import logging
import math
import threading
from datetime import datetime
from typing import Optional, Sequence

from pydantic import BaseModel, Field

import config
from assessment_engine import AssessmentEngine, AverageScores, average_scores
from errors import InvalidInputError, NotFoundError
from learner_model import (
    LEVEL_ORDER,
    Assessment,
    CompetencyThreshold,
    LearnerLanguage,
    ModuleCompletion,
    ProgressionResult,
)
from scoring_engine import round_score

logger = logging.getLogger(__name__)

MODULE_PASS_SCORE = 70

# Required modules are listed without the language prefix; see get_thresholds.
LEVEL_THRESHOLDS: dict[str, CompetencyThreshold] = {
    "A2": CompetencyThreshold(
        level="A2", min_overall_score=50, min_fluency_score=45,
        min_accuracy_score=50, min_appropriacy_score=40,
    ),
    "B1": CompetencyThreshold(
        level="B1", min_overall_score=60, min_fluency_score=55,
        min_accuracy_score=60, min_appropriacy_score=55,
        required_modules=("1A", "1B", "1C", "1D"),
    ),
    "B2": CompetencyThreshold(
        level="B2", min_overall_score=70, min_fluency_score=65,
        min_accuracy_score=70, min_appropriacy_score=65,
        required_modules=("2A", "2B", "2C", "2D"),
    ),
    "C1": CompetencyThreshold(
        level="C1", min_overall_score=80, min_fluency_score=75,
        min_accuracy_score=80, min_appropriacy_score=75,
        required_modules=("3A", "3B", "3C", "3D"),
    ),
    "C2": CompetencyThreshold(
        level="C2", min_overall_score=90, min_fluency_score=85,
        min_accuracy_score=90, min_appropriacy_score=85,
        required_modules=("4A", "4B", "4C"),
    ),
}


class CompetencyCheck(BaseModel):
    passed: bool
    failure_reasons: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)


class ModuleCheck(BaseModel):
    passed: bool
    missing: list[str] = Field(default_factory=list)
    reasons: list[str] = Field(default_factory=list)


class Requirement(BaseModel):
    name: str
    current: int
    required: int
    met: bool


class ProgressToNextLevel(BaseModel):
    current_level: str
    next_level: Optional[str] = None
    percent_complete: int
    requirements: list[Requirement]


class CompetencyMeasure(BaseModel):
    current: int
    required: int
    percentage: int


class CompetencyBreakdown(BaseModel):
    target_level: str
    overall: CompetencyMeasure
    fluency: CompetencyMeasure
    accuracy: CompetencyMeasure
    appropriacy: CompetencyMeasure
    modules: CompetencyMeasure


class AdvanceResult(BaseModel):
    success: bool
    changed: bool = False
    new_level: Optional[str] = None
    message: str


# ---------------------------------------------------------------------------
# Pure rules
# ---------------------------------------------------------------------------

def next_level(level: str) -> Optional[str]:
    index = LEVEL_ORDER.index(level)
    if index >= len(LEVEL_ORDER) - 1:
        return None
    return LEVEL_ORDER[index + 1]


def get_thresholds(level: str, language_code: str) -> CompetencyThreshold:
    """Thresholds for one level, with module ids qualified by the language code."""
    if level not in LEVEL_THRESHOLDS:
        raise InvalidInputError(f"Unknown level: {level}")
    base = LEVEL_THRESHOLDS[level]
    return base.model_copy(
        update={"required_modules": tuple(f"{language_code}:{m}" for m in base.required_modules)}
    )


def get_all_thresholds(language_code: str) -> dict[str, CompetencyThreshold]:
    return {level: get_thresholds(level, language_code) for level in LEVEL_ORDER}


def check_required_modules(required: Sequence[str], completed: Sequence[str]) -> ModuleCheck:
    done = set(completed)
    missing = [m for m in required if m not in done]
    if missing:
        return ModuleCheck(
            passed=False,
            missing=missing,
            reasons=[f"Missing required modules: {', '.join(missing)}"],
        )
    return ModuleCheck(passed=True)


def check_competency(
    thresholds: CompetencyThreshold,
    scores: AverageScores,
    completed_modules: Sequence[str],
) -> CompetencyCheck:
    """Every unmet threshold is reported, not just the first."""
    reasons: list[str] = []
    recommendations: list[str] = []

    checks = (
        ("Overall", scores.overall, thresholds.min_overall_score,
         "Continue practicing to improve your overall performance"),
        ("Fluency", scores.fluency, thresholds.min_fluency_score,
         "Focus on conversational practice to improve fluency"),
        ("Accuracy", scores.accuracy, thresholds.min_accuracy_score,
         "Review grammar and vocabulary to improve accuracy"),
        ("Appropriacy", scores.appropriacy, thresholds.min_appropriacy_score,
         "Practice cultural scenarios to improve appropriacy"),
    )
    for name, current, required, tip in checks:
        if current < required:
            reasons.append(f"{name} score ({current}%) below required {required}%")
            recommendations.append(tip)

    modules = check_required_modules(thresholds.required_modules, completed_modules)
    if not modules.passed:
        reasons.extend(modules.reasons)
        recommendations.append("Complete all required modules before advancement")

    return CompetencyCheck(passed=not reasons, failure_reasons=reasons, recommendations=recommendations)


def overall_stddev(assessments: Sequence[Assessment]) -> float:
    """Population standard deviation of overall scores."""
    scores = [a.scores.overall for a in assessments]
    if not scores:
        return 0.0
    mean = sum(scores) / len(scores)
    return math.sqrt(sum((s - mean) ** 2 for s in scores) / len(scores))


def module_completion(module_id: Optional[str], score: int) -> Optional[ModuleCompletion]:
    if not module_id:
        return None
    return ModuleCompletion(
        module_id=module_id,
        completed=score >= MODULE_PASS_SCORE,
        score=score,
        required_score=MODULE_PASS_SCORE,
    )


def _measure(current: int, required: int) -> CompetencyMeasure:
    percentage = min(100, round_score(current / required * 100)) if required else 100
    return CompetencyMeasure(current=current, required=required, percentage=percentage)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class ProgressionEngine:
    def __init__(self, store, assessments: Optional[AssessmentEngine] = None):
        self.store = store
        self.assessments = assessments or AssessmentEngine(store)
        self._lock = threading.Lock()

    def _learner_language(self, learner_id: str, language_code: str) -> LearnerLanguage:
        record = self.store.get_learner_language(learner_id, language_code)
        if record is None:
            raise NotFoundError(f"Learner {learner_id} is not enrolled in {language_code}")
        return record

    def _completed_modules(self, learner_id: str, language_code: str) -> list[str]:
        return self.store.load_memory(learner_id, language_code).progress_data.completed_modules

    def check_required_modules(self, learner_id: str, language_code: str, level: str) -> ModuleCheck:
        return check_required_modules(
            get_thresholds(level, language_code).required_modules,
            self._completed_modules(learner_id, language_code),
        )

    def evaluate_progression(
        self, learner_id: str, language_code: str, now: Optional[datetime] = None
    ) -> ProgressionResult:
        """Read-only: decides whether the learner may move up one level."""
        record = self._learner_language(learner_id, language_code)
        level = record.current_level

        recent = self.assessments.recent_assessments(learner_id, language_code, now=now)
        if len(recent) < config.MIN_ASSESSMENTS:
            return ProgressionResult(
                can_advance=False,
                status="insufficient_data",
                current_level=level,
                reasons=[
                    f"Insufficient data: {len(recent)} of {config.MIN_ASSESSMENTS} assessments "
                    f"in the last {config.ROLLING_AVERAGE_DAYS} days"
                ],
                next_steps=[
                    f"Complete at least {config.MIN_ASSESSMENTS} assessments before level advancement"
                ],
            )

        averages = average_scores(recent)
        completion = module_completion(record.current_module_id, averages.overall)
        competency = check_competency(
            get_thresholds(level, language_code),
            averages,
            self._completed_modules(learner_id, language_code),
        )
        if not competency.passed:
            return ProgressionResult(
                can_advance=False,
                status="competency_not_met",
                current_level=level,
                module_completion=completion,
                reasons=competency.failure_reasons,
                next_steps=competency.recommendations,
            )

        target = next_level(level)
        if target is None:
            return ProgressionResult(
                can_advance=False,
                status="max_level",
                current_level=level,
                reasons=[f"Already at maximum level ({level}): cannot advance further"],
                next_steps=["Focus on maintaining and refining your excellent skills"],
            )

        spread = overall_stddev(recent[:config.CONSISTENCY_WINDOW])
        if spread >= config.CONSISTENCY_MAX_STDDEV:
            return ProgressionResult(
                can_advance=False,
                status="not_consistent",
                current_level=level,
                module_completion=completion,
                reasons=[
                    "Performance not yet consistent enough for advancement "
                    f"(overall scores vary by {spread:.1f} points)"
                ],
                next_steps=["Maintain your current performance for a few more sessions"],
            )

        return ProgressionResult(
            can_advance=True,
            status="ready",
            current_level=level,
            recommended_level=target,
            module_completion=completion,
            reasons=[
                f"Average score of {averages.overall}% meets requirements",
                "Consistent performance across recent assessments",
                "Required competencies demonstrated",
            ],
            next_steps=[f"Ready to advance to {target} level content", "New modules will be unlocked"],
        )

    def advance_level(
        self,
        learner_id: str,
        language_code: str,
        target_level: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> AdvanceResult:
        """
        Re-evaluate and persist the next level. Passing the level the learner
        is already at succeeds without change, so a retried call is harmless.
        """
        if target_level is not None and target_level not in LEVEL_ORDER:
            raise InvalidInputError(f"Unknown level: {target_level}")

        with self._lock:
            record = self._learner_language(learner_id, language_code)
            if target_level is not None and record.current_level == target_level:
                return AdvanceResult(
                    success=True, new_level=target_level,
                    message=f"Already at {target_level}",
                )

            evaluation = self.evaluate_progression(learner_id, language_code, now)
            if not evaluation.can_advance:
                return AdvanceResult(success=False, message="; ".join(evaluation.reasons))
            if target_level is not None and target_level != evaluation.recommended_level:
                return AdvanceResult(
                    success=False,
                    message=f"Can only advance one level at a time, to {evaluation.recommended_level}",
                )

            self.store.save_learner_language(
                record.model_copy(update={"current_level": evaluation.recommended_level})
            )

        logger.info(
            "Learner %s advanced %s -> %s in %s",
            learner_id, record.current_level, evaluation.recommended_level, language_code,
        )
        return AdvanceResult(
            success=True,
            changed=True,
            new_level=evaluation.recommended_level,
            message=f"Successfully advanced to {evaluation.recommended_level}",
        )

    def get_progress_to_next_level(
        self, learner_id: str, language_code: str, now: Optional[datetime] = None
    ) -> ProgressToNextLevel:
        record = self._learner_language(learner_id, language_code)
        target = next_level(record.current_level)
        thresholds = get_thresholds(target or record.current_level, language_code)
        averages = self.assessments.get_average_scores(learner_id, language_code, now=now)

        requirements = [
            Requirement(name=name, current=current, required=required, met=current >= required)
            for name, current, required in (
                ("Overall Score", averages.overall, thresholds.min_overall_score),
                ("Fluency", averages.fluency, thresholds.min_fluency_score),
                ("Accuracy", averages.accuracy, thresholds.min_accuracy_score),
                ("Appropriacy", averages.appropriacy, thresholds.min_appropriacy_score),
            )
        ]
        met = sum(1 for r in requirements if r.met)
        return ProgressToNextLevel(
            current_level=record.current_level,
            next_level=target,
            percent_complete=round_score(met / len(requirements) * 100),
            requirements=requirements,
        )

    def get_competency_breakdown(
        self, learner_id: str, language_code: str, target_level: str
    ) -> CompetencyBreakdown:
        """Averages of the last few assessments measured against a target level."""
        thresholds = get_thresholds(target_level, language_code)
        latest = self.store.list_assessments(learner_id=learner_id, language_code=language_code)
        averages = average_scores(latest[:config.CONSISTENCY_WINDOW])

        completed = set(self._completed_modules(learner_id, language_code))
        required = thresholds.required_modules
        done = sum(1 for m in required if m in completed)

        return CompetencyBreakdown(
            target_level=target_level,
            overall=_measure(averages.overall, thresholds.min_overall_score),
            fluency=_measure(averages.fluency, thresholds.min_fluency_score),
            accuracy=_measure(averages.accuracy, thresholds.min_accuracy_score),
            appropriacy=_measure(averages.appropriacy, thresholds.min_appropriacy_score),
            modules=CompetencyMeasure(
                current=done,
                required=len(required),
                percentage=round_score(done / len(required) * 100) if required else 100,
            ),
        )
