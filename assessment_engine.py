"""
Assessment engine.
Scores a session into an immutable Assessment, attaches score-based
recommendations and the comparison with the learner's previous assessment,
and serves rolling averages for the progression engine.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional, Sequence

from pydantic import BaseModel, Field, ValidationError

import config
from errors import InvalidInputError, NotFoundError
from learner_model import (
    Assessment,
    AssessmentInput,
    AssessmentRecommendation,
    AssessmentScores,
    ErrorLogEntry,
    ErrorLogInput,
    ReviewRecommendation,
    ScoreComparison,
    Session,
    utcnow,
)
from scoring_engine import DEFAULT_HEURISTICS, ScoringHeuristics, calculate_scores, round_score
from session_engine import module_id_for_scenario

logger = logging.getLogger(__name__)

DIMENSIONS = ("fluency", "accuracy", "appropriacy", "confidence")
COMPARISON_MARGIN = 5
PRIORITY_ORDER = {"high": 0, "medium": 1, "low": 2}

# (learner_id, language_code) -> review recommendations
Recommender = Callable[[str, str], list[ReviewRecommendation]]


class AverageScores(BaseModel):
    overall: int = 0
    fluency: int = 0
    accuracy: int = 0
    appropriacy: int = 0
    confidence: int = 0
    count: int = 0


class AssessmentResult(BaseModel):
    assessment: Assessment
    review_recommendations: list[ReviewRecommendation] = Field(default_factory=list)


def score_recommendations(scores: AssessmentScores) -> list[AssessmentRecommendation]:
    """Recommendations that follow directly from one set of scores, highest priority first."""
    recommendations = []

    if scores.accuracy.score < 60 and scores.accuracy.errors_by_category:
        by_category = scores.accuracy.errors_by_category
        top = max(by_category, key=by_category.get)
        recommendations.append(
            AssessmentRecommendation(
                type="focus_area",
                value=top,
                reason=f"Your {top} accuracy needs improvement ({by_category[top]} errors this session)",
                priority="high",
            )
        )

    if scores.fluency.score < 60:
        recommendations.append(
            AssessmentRecommendation(
                type="practice_type",
                value="conversation",
                reason=(
                    f"Fluency scored {scores.fluency.score}; practice more conversational "
                    "exercises to improve it"
                ),
                priority="high",
            )
        )

    if scores.appropriacy.score < 60:
        recommendations.append(
            AssessmentRecommendation(
                type="focus_area",
                value="cultural",
                reason=(
                    f"Appropriacy scored {scores.appropriacy.score}; focus on cultural "
                    "conventions and politeness"
                ),
                priority="medium",
            )
        )

    if scores.overall >= 80:
        recommendations.append(
            AssessmentRecommendation(
                type="level_change",
                value="consider_advancement",
                reason=(
                    f"An overall score of {scores.overall} suggests you may be ready "
                    "for more advanced content"
                ),
                priority="medium",
            )
        )

    recommendations.sort(key=lambda r: PRIORITY_ORDER[r.priority])
    return recommendations


def compare_scores(previous: AssessmentScores, current: AssessmentScores) -> ScoreComparison:
    """A move of 5 points or more in either direction counts as a change."""
    comparison = ScoreComparison()
    for dim in DIMENSIONS:
        diff = getattr(current, dim).score - getattr(previous, dim).score
        if diff >= COMPARISON_MARGIN:
            comparison.improved.append(dim)
        elif diff <= -COMPARISON_MARGIN:
            comparison.declined.append(dim)
        else:
            comparison.stable.append(dim)
    return comparison


def average_scores(assessments: Sequence[Assessment]) -> AverageScores:
    if not assessments:
        return AverageScores()
    n = len(assessments)
    return AverageScores(
        overall=round_score(sum(a.scores.overall for a in assessments) / n),
        **{
            dim: round_score(sum(getattr(a.scores, dim).score for a in assessments) / n)
            for dim in DIMENSIONS
        },
        count=n,
    )


def build_assessment_input(session: Session, error_logs: Sequence[ErrorLogEntry]) -> AssessmentInput:
    """Scoring input from a stored session and the error logs raised during it."""
    if session.metrics is not None:
        duration = float(session.metrics.duration)
    else:
        duration = max((session.last_event_at - session.started_at).total_seconds(), 0.0)

    return AssessmentInput(
        session_id=session.id,
        module_id=module_id_for_scenario(session.scenario_id) if session.scenario_id else None,
        events=list(session.events),
        error_logs=[
            ErrorLogInput(
                category=e.category,
                subcategory=e.subcategory,
                context=e.context,
                correction=e.correction,
                corrected=e.corrected,
            )
            for e in error_logs
        ],
        duration=duration,
    )


class AssessmentEngine:
    def __init__(
        self,
        store,
        recommender: Optional[Recommender] = None,
        heuristics: ScoringHeuristics = DEFAULT_HEURISTICS,
    ):
        self.store = store
        self.recommender = recommender
        self.heuristics = heuristics

    def create_assessment(
        self,
        learner_id: str,
        language_code: str,
        assessment_input: AssessmentInput | dict,
        type: str = "INFORMAL",
        module_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> AssessmentResult:
        """
        Score, compare, persist. Review recommendations are generated only
        after the assessment is safely stored; if they fail the assessment
        still stands and the list comes back empty.
        """
        try:
            data = (
                assessment_input
                if isinstance(assessment_input, AssessmentInput)
                else AssessmentInput.model_validate(assessment_input)
            )
        except ValidationError as exc:
            raise InvalidInputError(f"Invalid assessment input: {exc}") from exc
        if type not in ("INFORMAL", "MILESTONE"):
            raise InvalidInputError(f"Unknown assessment type: {type}")

        now = now or utcnow()
        scores = calculate_scores(data, self.heuristics)

        previous = self._latest_before(learner_id, language_code, now)
        if previous is not None:
            scores.breakdown.compared_to_previous = compare_scores(previous.scores, scores)

        assessment = Assessment(
            learner_id=learner_id,
            language_code=language_code,
            type=type,
            module_id=module_id or data.module_id,
            session_id=data.session_id,
            scores=scores,
            recommendations=score_recommendations(scores),
            created_at=now,
        )
        self.store.save_assessment(assessment)
        logger.info(
            "Assessment %s created for %s/%s (overall %d)",
            assessment.id, learner_id, language_code, scores.overall,
        )

        review: list[ReviewRecommendation] = []
        if self.recommender is not None:
            try:
                review = self.recommender(learner_id, language_code)
            except Exception:
                logger.exception("Review recommendations failed after assessment %s", assessment.id)

        return AssessmentResult(assessment=assessment, review_recommendations=review)

    def assess_session(
        self, session_id: str, type: str = "INFORMAL", now: Optional[datetime] = None
    ) -> AssessmentResult:
        session = self.store.get_session(session_id)
        if session is None:
            raise NotFoundError(f"Session {session_id} not found")
        error_logs = self.store.list_error_logs(session_id=session_id)
        return self.create_assessment(
            session.learner_id,
            session.language_code,
            build_assessment_input(session, error_logs),
            type=type,
            now=now,
        )

    def get_assessment(self, assessment_id: str) -> Assessment:
        assessment = self.store.get_assessment(assessment_id)
        if assessment is None:
            raise NotFoundError(f"Assessment {assessment_id} not found")
        return assessment

    def get_latest(self, learner_id: str, language_code: str) -> Optional[Assessment]:
        assessments = self.store.list_assessments(learner_id=learner_id, language_code=language_code)
        return assessments[0] if assessments else None

    def get_latest_for_module(self, learner_id: str, language_code: str, module_id: str) -> Optional[Assessment]:
        assessments = self.store.list_assessments(
            learner_id=learner_id, language_code=language_code, module_id=module_id
        )
        return assessments[0] if assessments else None

    def list_assessments(
        self,
        learner_id: Optional[str] = None,
        language_code: Optional[str] = None,
        type: Optional[str] = None,
        module_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Assessment], int]:
        assessments = self.store.list_assessments(
            learner_id=learner_id,
            language_code=language_code,
            type=type,
            module_id=module_id,
            start=start,
            end=end,
        )
        return assessments[offset:offset + limit], len(assessments)

    def recent_assessments(
        self,
        learner_id: str,
        language_code: str,
        days: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> list[Assessment]:
        """Assessments inside the lookback window, newest first."""
        days = days if days is not None else config.ROLLING_AVERAGE_DAYS
        start = (now or utcnow()) - timedelta(days=days)
        return self.store.list_assessments(
            learner_id=learner_id, language_code=language_code, start=start, end=now
        )

    def get_average_scores(
        self,
        learner_id: str,
        language_code: str,
        days: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> AverageScores:
        return average_scores(self.recent_assessments(learner_id, language_code, days, now))

    def compare_with_previous(self, assessment: Assessment) -> ScoreComparison:
        previous = self._latest_before(assessment.learner_id, assessment.language_code, assessment.created_at)
        if previous is None:
            return ScoreComparison()
        return compare_scores(previous.scores, assessment.scores)

    def _latest_before(self, learner_id: str, language_code: str, before: datetime) -> Optional[Assessment]:
        for assessment in self.store.list_assessments(learner_id=learner_id, language_code=language_code):
            if assessment.created_at < before:
                return assessment
        return None
