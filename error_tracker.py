"""
Error pattern tracker.
Pure functions over a learner's ErrorPattern list (recording, windowed trends,
focus areas, trend reports, live feedback) plus the ErrorTracker service that
persists error logs and patterns through the store.
"""

import logging
from datetime import datetime, timedelta
from typing import Literal, Optional, Sequence

from pydantic import BaseModel, Field, ValidationError

import config
from errors import InvalidInputError, NotFoundError
from learner_model import (
    ErrorExample,
    ErrorLogEntry,
    ErrorLogInput,
    ErrorPattern,
    LearnerMemory,
    Trend,
    utcnow,
)

logger = logging.getLogger(__name__)

IMPROVEMENT_THRESHOLD = -20.0
WORSENING_THRESHOLD = 20.0
SIGNIFICANT_CHANGE = 30.0
PERSISTENT_MIN_OCCURRENCES = 5


class TrendAnalysis(BaseModel):
    category: str
    subcategory: Optional[str] = None
    trend: Trend
    window_days: int
    previous_count: int
    current_count: int
    percentage_change: float


class CommonError(BaseModel):
    category: str
    subcategory: Optional[str] = None
    count: int
    trend: Trend


class ErrorStats(BaseModel):
    total_errors: int
    errors_by_category: dict[str, int]
    recent_error_rate: int
    most_common_errors: list[CommonError]


class FocusAreas(BaseModel):
    primary: Optional[ErrorPattern] = None
    secondary: list[ErrorPattern] = Field(default_factory=list)
    improving: list[ErrorPattern] = Field(default_factory=list)


class SignificantChange(BaseModel):
    category: str
    subcategory: Optional[str] = None
    direction: Literal["better", "worse"]
    magnitude: Literal["slight", "moderate", "significant"]
    percentage_change: float


class TrendReport(BaseModel):
    overall_trend: Trend
    category_trends: list[TrendAnalysis]
    significant_changes: list[SignificantChange]
    recommendations: list[str]


class TimeframeComparison(BaseModel):
    improvement: float
    category_changes: dict[str, float]


class ErrorFeedback(BaseModel):
    immediate_correction: str
    explanation: str
    related_tip: Optional[str] = None
    pattern_warning: Optional[str] = None
    focus_hint: Optional[str] = None


class Breakthrough(BaseModel):
    is_breakthrough: bool
    message: Optional[str] = None


class SessionErrorSummary(BaseModel):
    total_errors: int
    by_category: dict[str, int]
    most_frequent: Optional[str] = None
    most_frequent_count: int = 0
    suggestions: list[str] = Field(default_factory=list)


class ErrorRate(BaseModel):
    current: int
    previous: int
    change: float


# ---------------------------------------------------------------------------
# Recording
# ---------------------------------------------------------------------------

def find_pattern(
    patterns: Sequence[ErrorPattern], category: str, subcategory: Optional[str]
) -> Optional[ErrorPattern]:
    for pattern in patterns:
        if pattern.category == category and pattern.subcategory == subcategory:
            return pattern
    return None


def record_error(
    patterns: list[ErrorPattern],
    category: str,
    subcategory: Optional[str] = None,
    context: str = "",
    now: Optional[datetime] = None,
    session_id: Optional[str] = None,
    correction: Optional[str] = None,
    max_examples: Optional[int] = None,
) -> ErrorPattern:
    """
    Add one occurrence to the (category, subcategory) pattern, creating it if
    needed. The examples list is a FIFO ring; the oldest example drops out
    once the cap is reached. Mutates `patterns` in place.
    """
    now = now or utcnow()
    cap = max_examples if max_examples is not None else config.MAX_PATTERN_EXAMPLES

    pattern = find_pattern(patterns, category, subcategory)
    if pattern is None:
        pattern = ErrorPattern(
            category=category,
            subcategory=subcategory,
            first_occurrence=now,
        )
        patterns.append(pattern)

    pattern.frequency += 1
    pattern.recent_count += 1
    pattern.last_occurrence = now
    pattern.examples.append(
        ErrorExample(
            context=context,
            error=subcategory or category,
            correction=correction,
            timestamp=now,
            session_id=session_id,
        )
    )
    if len(pattern.examples) > cap:
        pattern.examples = pattern.examples[-cap:]
    return pattern


def reset_recent_counts(patterns: Sequence[ErrorPattern]) -> None:
    for pattern in patterns:
        pattern.recent_count = 0


# ---------------------------------------------------------------------------
# Trends
# ---------------------------------------------------------------------------

def percentage_change(previous: int, current: int) -> float:
    if previous > 0:
        return (current - previous) / previous * 100
    if current > 0:
        return 100.0
    return 0.0


def classify_change(change: float) -> Trend:
    if change <= IMPROVEMENT_THRESHOLD:
        return "improving"
    if change >= WORSENING_THRESHOLD:
        return "worsening"
    return "stable"


def analyze_trends(
    patterns: Sequence[ErrorPattern],
    window_days: Optional[int] = None,
    now: Optional[datetime] = None,
) -> list[TrendAnalysis]:
    """
    Compare example counts in the current window against the window before it.
    A 20% drop is improving, a 20% rise is worsening. Nothing in the previous
    window but something now counts as +100%; nothing in either is stable.

    The current window is [now - W, now], closed at `now` rather than the
    half-open [now - W, now), so an error recorded at `now` counts at once.
    """
    window_days = window_days if window_days is not None else config.TREND_WINDOW_DAYS
    now = now or utcnow()
    window_start = now - timedelta(days=window_days)
    previous_start = window_start - timedelta(days=window_days)

    results = []
    for pattern in patterns:
        current = sum(1 for e in pattern.examples if window_start <= e.timestamp <= now)
        previous = sum(1 for e in pattern.examples if previous_start <= e.timestamp < window_start)
        change = percentage_change(previous, current)
        results.append(
            TrendAnalysis(
                category=pattern.category,
                subcategory=pattern.subcategory,
                trend=classify_change(change),
                window_days=window_days,
                previous_count=previous,
                current_count=current,
                percentage_change=change,
            )
        )
    return results


def update_pattern_trends(
    patterns: Sequence[ErrorPattern],
    window_days: Optional[int] = None,
    now: Optional[datetime] = None,
) -> None:
    """Write freshly computed trends back onto the patterns."""
    for pattern, analysis in zip(patterns, analyze_trends(patterns, window_days, now)):
        pattern.trend = analysis.trend


def calculate_stats(patterns: Sequence[ErrorPattern]) -> ErrorStats:
    by_category: dict[str, int] = {}
    for p in patterns:
        by_category[p.category] = by_category.get(p.category, 0) + p.frequency

    most_common = sorted(patterns, key=lambda p: -p.frequency)[:5]
    return ErrorStats(
        total_errors=sum(p.frequency for p in patterns),
        errors_by_category=by_category,
        recent_error_rate=sum(p.recent_count for p in patterns),
        most_common_errors=[
            CommonError(category=p.category, subcategory=p.subcategory, count=p.frequency, trend=p.trend)
            for p in most_common
        ],
    )


def find_persistent_errors(
    patterns: Sequence[ErrorPattern], min_occurrences: int = PERSISTENT_MIN_OCCURRENCES
) -> list[ErrorPattern]:
    return [p for p in patterns if p.frequency >= min_occurrences and p.trend != "improving"]


def find_improving_areas(patterns: Sequence[ErrorPattern]) -> list[ErrorPattern]:
    return [p for p in patterns if p.trend == "improving"]


def find_worsening_areas(patterns: Sequence[ErrorPattern]) -> list[ErrorPattern]:
    return [p for p in patterns if p.trend == "worsening"]


def suggest_focus_areas(patterns: Sequence[ErrorPattern]) -> FocusAreas:
    """
    Worsening patterns first, then the most recent offenders among persistent
    ones. Used for both live error feedback and review recommendations, so
    both always agree on what the learner should work on.
    """
    candidates: list[ErrorPattern] = []
    for p in find_worsening_areas(patterns) + find_persistent_errors(patterns):
        if not any(c is p for c in candidates):
            candidates.append(p)

    prioritized = sorted(candidates, key=lambda p: (p.trend != "worsening", -p.recent_count))
    return FocusAreas(
        primary=prioritized[0] if prioritized else None,
        secondary=prioritized[1:4],
        improving=find_improving_areas(patterns),
    )


def generate_feedback(patterns: Sequence[ErrorPattern]) -> list[str]:
    feedback = []
    stats = calculate_stats(patterns)
    focus = suggest_focus_areas(patterns)

    if focus.improving:
        feedback.append(f"Great progress on {', '.join(p.category for p in focus.improving)}!")
    if focus.primary is not None:
        feedback.append(f"Let's focus on {focus.primary.label} this session.")
    if stats.most_common_errors:
        top = stats.most_common_errors[0]
        suffix = f" - {top.subcategory}" if top.subcategory else ""
        feedback.append(f"Most common challenge: {top.category}{suffix}")
    return feedback


# ---------------------------------------------------------------------------
# Trend report
# ---------------------------------------------------------------------------

def _label(category: str, subcategory: Optional[str]) -> str:
    return f"{category} ({subcategory})" if subcategory else category


def _overall_trend(trends: Sequence[TrendAnalysis]) -> Trend:
    if not trends:
        return "stable"
    current = sum(t.current_count for t in trends)
    previous = sum(t.previous_count for t in trends)
    if previous == 0:
        return "stable" if current == 0 else "worsening"
    return classify_change(percentage_change(previous, current))


_MAGNITUDE_ORDER = {"significant": 0, "moderate": 1, "slight": 2}


def find_significant_changes(trends: Sequence[TrendAnalysis]) -> list[SignificantChange]:
    changes = []
    for t in trends:
        size = abs(t.percentage_change)
        if size < SIGNIFICANT_CHANGE:
            continue
        if size >= 70:
            magnitude = "significant"
        elif size >= 50:
            magnitude = "moderate"
        else:
            magnitude = "slight"
        changes.append(
            SignificantChange(
                category=t.category,
                subcategory=t.subcategory,
                direction="better" if t.percentage_change < 0 else "worse",
                magnitude=magnitude,
                percentage_change=t.percentage_change,
            )
        )
    changes.sort(key=lambda c: _MAGNITUDE_ORDER[c.magnitude])
    return changes


def _report_recommendations(
    trends: Sequence[TrendAnalysis], changes: Sequence[SignificantChange]
) -> list[str]:
    recommendations = []
    worse = [c for c in changes if c.direction == "worse"]
    better = [c for c in changes if c.direction == "better"]

    if worse:
        recommendations.append(
            f"Focus on {_label(worse[0].category, worse[0].subcategory)} - this area needs attention"
        )
    if better:
        recommendations.append(
            f"Great progress on {_label(better[0].category, better[0].subcategory)}! Keep practicing"
        )

    persistent = [t for t in trends if t.current_count >= 3 and t.trend != "improving"]
    if persistent and len(recommendations) < 3:
        recommendations.append(
            f"{persistent[0].category} has been a consistent challenge "
            "- try different practice approaches"
        )

    if trends and all(t.current_count == 0 for t in trends):
        recommendations.append("Excellent! Consider increasing difficulty level")

    if not recommendations:
        recommendations.append("Keep up your consistent practice!")
    return recommendations[:5]


def analyze_patterns(
    patterns: Sequence[ErrorPattern],
    window_days: Optional[int] = None,
    now: Optional[datetime] = None,
) -> TrendReport:
    trends = analyze_trends(patterns, window_days, now)
    changes = find_significant_changes(trends)
    return TrendReport(
        overall_trend=_overall_trend(trends),
        category_trends=trends,
        significant_changes=changes,
        recommendations=_report_recommendations(trends, changes),
    )


def compare_timeframes(
    patterns: Sequence[ErrorPattern],
    window_days: int,
    now: Optional[datetime] = None,
) -> TimeframeComparison:
    """
    Per-category change between the last `window_days` and the window before.
    `improvement` is the negated mean change, so positive means fewer errors.
    """
    current: dict[str, int] = {}
    previous: dict[str, int] = {}
    for t in analyze_trends(patterns, window_days, now):
        current[t.category] = current.get(t.category, 0) + t.current_count
        previous[t.category] = previous.get(t.category, 0) + t.previous_count

    changes = {cat: percentage_change(previous[cat], current[cat]) for cat in current}
    improvement = -sum(changes.values()) / len(changes) if changes else 0.0
    return TimeframeComparison(improvement=improvement, category_changes=changes)


# ---------------------------------------------------------------------------
# Live feedback
# ---------------------------------------------------------------------------

_FEEDBACK_TABLE: dict[str, tuple[str, str, Optional[str]]] = {
    "grammar:articles": (
        "Remember to use the correct article here.",
        "Articles (a, an, the) are essential for noun phrases.",
        "Use 'a' before consonant sounds, 'an' before vowel sounds.",
    ),
    "grammar:tense": (
        "Check your verb tense here.",
        "The verb form needs to match the time frame of the action.",
        "Consider when the action happened - past, present, or future.",
    ),
    "grammar:word-order": (
        "The word order needs adjustment.",
        "English typically follows Subject-Verb-Object order.",
        "Adjectives come before nouns in English.",
    ),
    "grammar": (
        "Take another look at the grammar here.",
        "Small grammar slips can change the meaning of a sentence.",
        None,
    ),
    "vocabulary": (
        "There's a more suitable word choice here.",
        "Word choice affects how natural your speech sounds.",
        "Consider the context and formality level.",
    ),
    "pronunciation": (
        "Pay attention to the pronunciation here.",
        "Clear pronunciation helps with being understood.",
        "Listen to native speakers and practice the sound.",
    ),
    "cultural": (
        "Consider the cultural context here.",
        "Every culture has specific conventions for situations like this.",
        "When in doubt, err on the side of politeness.",
    ),
    "pragmatic": (
        "The phrasing could be more appropriate.",
        "How you say something matters as much as what you say.",
        "Indirect phrasing often sounds more natural in requests.",
    ),
    "register": (
        "The formality level might not match the context.",
        "Different situations call for different levels of formality.",
        "Match your language to your audience and setting.",
    ),
}


def build_error_feedback(
    patterns: Sequence[ErrorPattern], category: str, subcategory: Optional[str] = None
) -> ErrorFeedback:
    """Immediate feedback for one detected error, informed by the learner's history."""
    key = f"{category}:{subcategory}" if subcategory else category
    correction, explanation, tip = _FEEDBACK_TABLE.get(
        key,
        _FEEDBACK_TABLE.get(category, ("Let's work on this together.", "Practice makes perfect!", None)),
    )

    warning = None
    current = find_pattern(patterns, category, subcategory)
    if current is not None and current.frequency >= 3:
        if current.trend == "worsening":
            warning = "This is a recurring challenge for you. Let's work on it together!"
        elif current.trend == "stable" and current.frequency >= 5:
            warning = "You've had this error before. Pay special attention to this area."

    focus_hint = None
    primary = suggest_focus_areas(patterns).primary
    if primary is not None:
        if primary is current:
            focus_hint = f"{primary.label} is your main focus area right now."
        else:
            focus_hint = f"Your main focus area right now is {primary.label}."

    return ErrorFeedback(
        immediate_correction=correction,
        explanation=explanation,
        related_tip=tip,
        pattern_warning=warning,
        focus_hint=focus_hint,
    )


def check_pattern_breakthrough(
    patterns: Sequence[ErrorPattern], category: str, subcategory: Optional[str] = None
) -> Breakthrough:
    pattern = find_pattern(patterns, category, subcategory)
    if pattern is not None and pattern.trend == "improving" and pattern.recent_count == 0:
        return Breakthrough(
            is_breakthrough=True,
            message=f"Amazing progress on {category}! You haven't made this error recently.",
        )
    return Breakthrough(is_breakthrough=False)


def summarize_session_errors(errors: Sequence[ErrorLogEntry]) -> SessionErrorSummary:
    by_category: dict[str, int] = {}
    for e in errors:
        by_category[e.category] = by_category.get(e.category, 0) + 1

    summary = SessionErrorSummary(total_errors=len(errors), by_category=by_category)
    if by_category:
        # first category to reach the top count wins
        top = max(by_category, key=by_category.get)
        summary.most_frequent = top
        summary.most_frequent_count = by_category[top]
        summary.suggestions.append(f"Focus on {top} - it came up {by_category[top]} times")
    if len(errors) > 5:
        summary.suggestions.append("Consider slowing down and focusing on accuracy")
    if not errors:
        summary.suggestions.append("Great session! Your accuracy is excellent")
    return summary


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class ErrorTracker:
    """Error logs and the learner's pattern document, kept in step."""

    def __init__(self, store, window_days: Optional[int] = None):
        self.store = store
        self.window_days = window_days if window_days is not None else config.TREND_WINDOW_DAYS

    def log_error(
        self,
        learner_id: str,
        language_code: str,
        error: ErrorLogInput | dict,
        session_id: Optional[str] = None,
        timestamp: Optional[datetime] = None,
        error_id: Optional[str] = None,
    ) -> ErrorLogEntry:
        """Persist one error log and fold it into the learner's patterns."""
        try:
            payload = error if isinstance(error, ErrorLogInput) else ErrorLogInput.model_validate(error)
        except ValidationError as exc:
            raise InvalidInputError(f"Invalid error payload: {exc}") from exc

        extra = {"id": error_id} if error_id is not None else {}
        entry = ErrorLogEntry(
            **payload.model_dump(),
            **extra,
            learner_id=learner_id,
            language_code=language_code,
            session_id=session_id,
            timestamp=timestamp or utcnow(),
        )
        self.store.save_error_log(entry)

        def mutate(memory: LearnerMemory) -> None:
            record_error(
                memory.error_patterns,
                entry.category,
                entry.subcategory,
                entry.context,
                now=entry.timestamp,
                session_id=session_id,
                correction=entry.correction,
            )
            update_pattern_trends(memory.error_patterns, self.window_days, entry.timestamp)

        self.store.update_memory(learner_id, language_code, mutate)
        logger.debug(
            "Logged %s error for %s/%s (session %s)",
            entry.category, learner_id, language_code, session_id,
        )
        return entry

    def mark_corrected(self, error_id: str) -> ErrorLogEntry:
        entry = self.store.get_error_log(error_id)
        if entry is None:
            raise NotFoundError(f"Error log {error_id} not found")
        if entry.corrected:
            return entry
        entry.corrected = True
        return self.store.save_error_log(entry)

    def list_errors(
        self,
        learner_id: str,
        language_code: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
        **filters,
    ) -> tuple[list[ErrorLogEntry], int]:
        """One page of matching error logs, newest first, plus the total count."""
        logs = self.store.list_error_logs(
            learner_id=learner_id, language_code=language_code, **filters
        )
        return logs[offset:offset + limit], len(logs)

    def get_recent_errors(self, learner_id: str, language_code: str, limit: int = 10) -> list[ErrorLogEntry]:
        return self.store.list_error_logs(learner_id=learner_id, language_code=language_code)[:limit]

    def get_session_errors(self, session_id: str) -> list[ErrorLogEntry]:
        """Oldest first."""
        return list(reversed(self.store.list_error_logs(session_id=session_id)))

    def counts_by_category(
        self, learner_id: str, language_code: str, days: int = 30, now: Optional[datetime] = None
    ) -> dict[str, int]:
        start = (now or utcnow()) - timedelta(days=days)
        counts: dict[str, int] = {}
        for e in self.store.list_error_logs(learner_id=learner_id, language_code=language_code, start=start):
            counts[e.category] = counts.get(e.category, 0) + 1
        return counts

    def error_rate(
        self,
        learner_id: str,
        language_code: str,
        window_days: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> ErrorRate:
        window_days = window_days if window_days is not None else self.window_days
        now = now or utcnow()
        current_start = now - timedelta(days=window_days)
        previous_start = current_start - timedelta(days=window_days)

        logs = self.store.list_error_logs(
            learner_id=learner_id, language_code=language_code, start=previous_start
        )
        current = sum(1 for e in logs if e.timestamp >= current_start)
        previous = len(logs) - current
        return ErrorRate(current=current, previous=previous, change=percentage_change(previous, current))

    def get_error_patterns(self, learner_id: str, language_code: str) -> list[ErrorPattern]:
        return self.store.load_memory(learner_id, language_code).error_patterns

    def get_top_patterns(self, learner_id: str, language_code: str, limit: int = 5) -> list[ErrorPattern]:
        patterns = self.get_error_patterns(learner_id, language_code)
        return sorted(patterns, key=lambda p: -p.frequency)[:limit]

    def trend_report(
        self,
        learner_id: str,
        language_code: str,
        window_days: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> TrendReport:
        patterns = self.get_error_patterns(learner_id, language_code)
        return analyze_patterns(patterns, window_days or self.window_days, now)

    def session_summary(self, session_id: str) -> SessionErrorSummary:
        return summarize_session_errors(self.get_session_errors(session_id))

    def feedback_for(
        self, learner_id: str, language_code: str, category: str, subcategory: Optional[str] = None
    ) -> ErrorFeedback:
        return build_error_feedback(self.get_error_patterns(learner_id, language_code), category, subcategory)

    def breakthrough(
        self, learner_id: str, language_code: str, category: str, subcategory: Optional[str] = None
    ) -> Breakthrough:
        return check_pattern_breakthrough(
            self.get_error_patterns(learner_id, language_code), category, subcategory
        )
