"""
Review recommender.
Merges skill, module and scenario suggestions into one ranked list, and
summarises a learner's overall progress for a language.
"""

from typing import Optional, Sequence

from error_tracker import suggest_focus_areas
from learner_model import (
    ErrorPattern,
    LearnerProgress,
    ProgressData,
    ReviewRecommendation,
)
from scoring_engine import round_score


PRIORITY_ORDER = {"high": 0, "medium": 1, "low": 2}
RECENT_ERROR_LOGS = 50
MODULE_REVIEW_BELOW = 70
SCENARIO_ERROR_PENALTY = 10  # per error, when the scenario was never completed

SKILL_NAMES = {
    "grammar": "Grammar Skills",
    "vocabulary": "Vocabulary",
    "pronunciation": "Pronunciation",
    "cultural": "Cultural Awareness",
    "pragmatic": "Pragmatic Usage",
    "register": "Register Matching",
}

# average module score needed to be "ready" at each level
LEVEL_TARGET_SCORES = {"A2": 60, "B1": 70, "B2": 80, "C1": 90, "C2": 100}


def skill_name(category: str) -> str:
    return SKILL_NAMES.get(category, category)


def estimate_skill_score(pattern: ErrorPattern) -> int:
    if pattern.trend == "improving":
        return 70
    if pattern.trend == "stable":
        return 55
    return 40


def skill_recommendations(patterns: Sequence[ErrorPattern]) -> list[ReviewRecommendation]:
    focus = suggest_focus_areas(patterns)
    recommendations = []

    if focus.primary is not None:
        p = focus.primary
        recommendations.append(
            ReviewRecommendation(
                type="skill",
                id=p.category,
                name=skill_name(p.category),
                reason=f"Recurring challenge with {p.frequency} occurrences ({p.recent_count} recent, {p.trend})",
                priority="high",
                current_score=estimate_skill_score(p),
                target_score=80,
            )
        )

    for p in focus.secondary[:2]:
        recommendations.append(
            ReviewRecommendation(
                type="skill",
                id=p.category,
                name=skill_name(p.category),
                reason=f"Area needs attention: {p.frequency} occurrences, {p.recent_count} recent",
                priority="medium",
                current_score=estimate_skill_score(p),
                target_score=75,
            )
        )
    return recommendations


def module_recommendations(progress: ProgressData, curriculum=None) -> list[ReviewRecommendation]:
    weak = sorted(
        (mp for mp in progress.module_progress.values() if mp.average_score < MODULE_REVIEW_BELOW),
        key=lambda mp: mp.average_score,
    )
    recommendations = []
    for mp in weak[:2]:
        title = curriculum.module_title(mp.module_id) if curriculum is not None else None
        score = round_score(mp.average_score)
        recommendations.append(
            ReviewRecommendation(
                type="module",
                id=mp.module_id,
                name=title or mp.module_id,
                reason=f"Average score of {score}% needs improvement",
                priority="high" if mp.average_score < 50 else "medium",
                last_practiced_at=mp.last_practiced_at,
                current_score=score,
                target_score=MODULE_REVIEW_BELOW,
            )
        )
    return recommendations


def scenario_priority(error_count: int) -> str:
    if error_count > 5:
        return "high"
    if error_count >= 3:
        return "medium"
    return "low"


def prioritize(recommendations: Sequence[ReviewRecommendation]) -> list[ReviewRecommendation]:
    """High before medium before low; order within a priority is kept."""
    return sorted(recommendations, key=lambda r: PRIORITY_ORDER[r.priority])


def percent_to_next_level(level: str, average_score: int) -> int:
    return min(100, round_score(average_score / LEVEL_TARGET_SCORES[level] * 100))


def average_module_score(progress: ProgressData) -> int:
    modules = list(progress.module_progress.values())
    if not modules:
        return 0
    return round_score(sum(m.average_score for m in modules) / len(modules))


def strong_areas(patterns: Sequence[ErrorPattern]) -> list[str]:
    return [
        skill_name(p.category)
        for p in patterns
        if p.trend == "improving" or p.recent_count == 0
    ][:3]


def weak_areas(patterns: Sequence[ErrorPattern]) -> list[str]:
    weak = [p for p in patterns if p.trend == "worsening" or p.frequency >= 5]
    weak.sort(key=lambda p: -p.frequency)
    return [skill_name(p.category) for p in weak][:3]


class ReviewRecommender:
    def __init__(self, store, curriculum=None):
        self.store = store
        self.curriculum = curriculum

    def get_recommendations(
        self, learner_id: str, language_code: str, limit: int = 5
    ) -> list[ReviewRecommendation]:
        memory = self.store.load_memory(learner_id, language_code)
        recommendations = (
            skill_recommendations(memory.error_patterns)
            + module_recommendations(memory.progress_data, self.curriculum)
            + self.scenario_recommendations(learner_id, language_code)
        )
        return prioritize(recommendations)[:limit]

    def __call__(self, learner_id: str, language_code: str) -> list[ReviewRecommendation]:
        return self.get_recommendations(learner_id, language_code)

    def scenario_recommendations(self, learner_id: str, language_code: str) -> list[ReviewRecommendation]:
        """Scenarios that produced the most errors among the latest error logs."""
        logs = self.store.list_error_logs(learner_id=learner_id, language_code=language_code)
        scenario_for: dict[str, Optional[str]] = {}
        counts: dict[str, int] = {}

        for log in logs[:RECENT_ERROR_LOGS]:
            if not log.session_id:
                continue
            if log.session_id not in scenario_for:
                session = self.store.get_session(log.session_id)
                scenario_for[log.session_id] = session.scenario_id if session else None
            scenario_id = scenario_for[log.session_id]
            if scenario_id:
                counts[scenario_id] = counts.get(scenario_id, 0) + 1

        top = sorted(counts.items(), key=lambda item: -item[1])[:2]
        recommendations = []
        for scenario_id, errors in top:
            scores = self._completed_scores(learner_id, language_code, scenario_id)
            if scores:
                current = round_score(sum(scores) / len(scores))
            else:
                current = max(100 - SCENARIO_ERROR_PENALTY * errors, 0)
            title = self.curriculum.scenario_title(scenario_id) if self.curriculum is not None else None
            recommendations.append(
                ReviewRecommendation(
                    type="scenario",
                    id=scenario_id,
                    name=title or scenario_id,
                    reason=f"{errors} errors recorded in this scenario",
                    priority=scenario_priority(errors),
                    current_score=current,
                    target_score=80,
                )
            )
        return recommendations

    def _completed_scores(self, learner_id: str, language_code: str, scenario_id: str) -> list[int]:
        sessions = self.store.list_sessions(
            learner_id=learner_id, language_code=language_code, scenario_id=scenario_id, status="COMPLETED"
        )
        return [s.metrics.overall_score for s in sessions if s.metrics is not None]

    def get_learner_progress(self, learner_id: str, language_code: str) -> LearnerProgress:
        record = self.store.get_learner_language(learner_id, language_code)
        level = record.current_level if record is not None else "A2"
        memory = self.store.load_memory(learner_id, language_code)
        progress = memory.progress_data

        if self.curriculum is not None:
            total = self.curriculum.count_modules(language_code)
        else:
            total = len(set(progress.module_progress) | set(progress.completed_modules))

        average = average_module_score(progress)
        return LearnerProgress(
            current_level=level,
            percent_to_next_level=percent_to_next_level(level, average),
            modules_completed=len(progress.completed_modules),
            modules_total=total,
            average_score=average,
            streak=progress.current_streak,
            total_practice_minutes=progress.total_practice_minutes,
            strong_areas=strong_areas(memory.error_patterns),
            weak_areas=weak_areas(memory.error_patterns),
        )
