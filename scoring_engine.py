"""
Scoring engine: pure logic, no I/O.
Four independent scorers (fluency, accuracy, appropriacy, confidence) that turn
a session's events and error logs into 0-100 scores with component breakdowns.
"""

import math
import re
from functools import lru_cache
from typing import Optional, Sequence

from pydantic import BaseModel

from learner_model import (
    AccuracyScore,
    AssessmentInput,
    AssessmentScores,
    DimensionScore,
    ErrorLogInput,
    ScoreBreakdown,
    SessionEvent,
)

DIMENSION_WEIGHTS = {
    "fluency": 0.25,
    "accuracy": 0.35,
    "appropriacy": 0.20,
    "confidence": 0.20,
}

FLUENCY_WEIGHTS = {
    "speaking_pace": 0.25,
    "hesitation_frequency": 0.25,
    "filler_usage": 0.20,
    "natural_flow": 0.30,
}
ACCURACY_WEIGHTS = {
    "grammar_accuracy": 0.35,
    "vocabulary_accuracy": 0.25,
    "pronunciation_accuracy": 0.25,
    "error_recovery": 0.15,
}
APPROPRIACY_WEIGHTS = {
    "register_match": 0.25,
    "cultural_awareness": 0.25,
    "politeness_level": 0.25,
    "context_suitability": 0.25,
}
CONFIDENCE_WEIGHTS = {
    "risk_taking": 0.25,
    "self_correction": 0.30,
    "persistence_level": 0.25,
    "complexity_attempts": 0.20,
}

LONG_PAUSE_SECONDS = 10.0


class ScoringHeuristics(BaseModel):
    """
    Regex lists behind the text heuristics. All matching is case-insensitive.
    Swap in another instance to tune the heuristics for a different locale.
    """

    fillers: tuple[str, ...] = (
        r"\bum+\b",
        r"\buh+\b",
        r"\berm+\b",
        r"\blike\b",
        r"\byou know\b",
        r"\bso+\b",
        r"\bwell+\b",
        r"\bbasically\b",
        r"\bactually\b",
    )
    politeness_markers: tuple[str, ...] = (
        r"\bplease\b",
        r"\bthank you\b",
        r"\bthanks\b",
        r"\bsorry\b",
        r"\bexcuse me\b",
        r"\bwould you\b",
        r"\bcould you\b",
        r"\bmight i\b",
        r"\bi wonder if\b",
        r"\bwould you mind\b",
        r"\bi'm afraid\b",
    )
    complexity_connectives: tuple[str, ...] = (
        r"\b(although|however|nevertheless|furthermore|moreover)\b",
        r"\b(if .+ then|when .+ will|because .+ so)\b",
        r"\b(not only .+ but also)\b",
        r"\b(on the one hand|on the other hand)\b",
        r"\b(as a result|in contrast|for instance)\b",
    )
    advanced_grammar_markers: tuple[str, ...] = (
        r"\b(subjunctive|conditional|passive)\b",
        r"\b(i wish|if only|had i known)\b",
        r"\b(having been|being|to have been)\b",
        r"\b(it is said that|it appears that|it seems)\b",
        r"\b(might have|could have|would have|should have)\b",
        r"\b(were i to|should you|had we)\b",
    )


DEFAULT_HEURISTICS = ScoringHeuristics()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

@lru_cache(maxsize=None)
def _compile(patterns: tuple[str, ...]) -> tuple[re.Pattern, ...]:
    return tuple(re.compile(p, re.IGNORECASE) for p in patterns)


def round_score(value: float) -> int:
    """Round half up, matching how scores are reported everywhere else."""
    return int(math.floor(value + 0.5))


def _below(value: float, bands: Sequence[tuple[float, int]], otherwise: int) -> int:
    """First score whose exclusive upper bound exceeds value."""
    for upper, score in bands:
        if value < upper:
            return score
    return otherwise


def _at_least(value: float, bands: Sequence[tuple[float, int]], otherwise: int) -> int:
    """First score whose inclusive lower bound value reaches."""
    for lower, score in bands:
        if value >= lower:
            return score
    return otherwise


def _weighted(components: dict[str, int], weights: dict[str, float]) -> int:
    return round_score(sum(components[name] * weight for name, weight in weights.items()))


def _weakest(components: dict[str, int]) -> str:
    # min() keeps the first of equal values, so ties go to the earlier component
    return min(components, key=components.get)


def _content(event: SessionEvent) -> str:
    content = event.data.get("content")
    return content if isinstance(content, str) else ""


def _words(text: str) -> list[str]:
    return text.split()


def _user_messages(events: Sequence[SessionEvent]) -> list[SessionEvent]:
    return [e for e in events if e.type == "user_message"]


def message_gaps(messages: Sequence[SessionEvent]) -> list[float]:
    """Seconds between consecutive messages."""
    return [
        (messages[i].timestamp - messages[i - 1].timestamp).total_seconds()
        for i in range(1, len(messages))
    ]


def coefficient_of_variation(values: Sequence[float]) -> Optional[float]:
    """Population std-dev over mean; None when the mean is zero."""
    if not values:
        return None
    mean = sum(values) / len(values)
    if mean == 0:
        return None
    variance = sum((v - mean) ** 2 for v in values) / len(values)
    return math.sqrt(variance) / mean


def flow_score(gaps: Sequence[float]) -> int:
    """Low variance between gaps reads as natural rhythm."""
    cv = coefficient_of_variation(gaps)
    if cv is None:
        # all messages at the same instant: no rhythm to judge
        return 50
    return _below(cv, ((0.3, 100), (0.5, 80), (0.7, 60), (1.0, 40)), 20)


def _matches_any(text: str, patterns: tuple[re.Pattern, ...]) -> bool:
    return any(p.search(text) for p in patterns)


# ---------------------------------------------------------------------------
# Fluency
# ---------------------------------------------------------------------------

def score_fluency(
    events: Sequence[SessionEvent],
    duration_seconds: float,
    heuristics: ScoringHeuristics = DEFAULT_HEURISTICS,
) -> DimensionScore:
    """
    Pace (3-6 messages/minute is ideal), hesitation (gaps over 10s), filler
    density, and natural flow (coefficient of variation of gaps).
    """
    messages = _user_messages(events)
    gaps = message_gaps(messages)

    components = {
        "speaking_pace": _speaking_pace(len(messages), duration_seconds),
        "hesitation_frequency": _hesitation(gaps),
        "filler_usage": _filler_usage(messages, _compile(heuristics.fillers)),
        "natural_flow": flow_score(gaps) if len(messages) >= 3 else 50,
    }
    score = _weighted(components, FLUENCY_WEIGHTS)
    return DimensionScore(
        score=score, components=components, feedback=_fluency_feedback(score, components)
    )


def _speaking_pace(message_count: int, duration_seconds: float) -> int:
    if message_count < 2 or duration_seconds < 60:
        return 50
    per_minute = message_count / (duration_seconds / 60)
    if 3 <= per_minute <= 6:
        return 100
    if 2 <= per_minute <= 8:
        return 80
    if 1 <= per_minute <= 10:
        return 60
    return 40


def _hesitation(gaps: Sequence[float]) -> int:
    if not gaps:
        return 50
    rate = sum(1 for g in gaps if g > LONG_PAUSE_SECONDS) / len(gaps)
    return _below(rate, ((0.1, 100), (0.2, 80), (0.3, 60), (0.5, 40)), 20)


def _filler_usage(messages: Sequence[SessionEvent], fillers: tuple[re.Pattern, ...]) -> int:
    total_words = 0
    total_fillers = 0
    for msg in messages:
        text = _content(msg)
        total_words += len(_words(text))
        total_fillers += sum(len(p.findall(text)) for p in fillers)

    if total_words == 0:
        return 50
    rate = total_fillers / total_words
    return _below(rate, ((0.02, 100), (0.05, 80), (0.1, 60), (0.15, 40)), 20)


_FLUENCY_TIPS = {
    "speaking_pace": "Try to maintain a more consistent speaking pace - not too fast, not too slow.",
    "hesitation_frequency": "Work on reducing long pauses. Practice helps build confidence!",
    "filler_usage": (
        'Try to reduce filler words like "um" and "like". It\'s okay to pause briefly instead.'
    ),
    "natural_flow": "Focus on maintaining a natural rhythm in your speech.",
}


def _fluency_feedback(score: int, components: dict[str, int]) -> str:
    if score >= 80:
        return "Excellent fluency! Your speech flows naturally and confidently."
    return _FLUENCY_TIPS[_weakest(components)]


# ---------------------------------------------------------------------------
# Accuracy
# ---------------------------------------------------------------------------

def score_accuracy(
    events: Sequence[SessionEvent],
    error_logs: Sequence[ErrorLogInput],
) -> AccuracyScore:
    """
    Per-category error rate (errors per utterance) for grammar, vocabulary and
    pronunciation, plus the share of errors that were corrected.
    """
    utterances = len(_user_messages(events)) or 1
    by_category = count_errors_by_category(error_logs)
    corrected = sum(1 for e in error_logs if e.corrected)

    components = {
        "grammar_accuracy": category_accuracy(by_category.get("grammar", 0), utterances),
        "vocabulary_accuracy": category_accuracy(by_category.get("vocabulary", 0), utterances),
        "pronunciation_accuracy": category_accuracy(
            by_category.get("pronunciation", 0), utterances
        ),
        "error_recovery": _error_recovery(len(error_logs), corrected),
    }
    score = _weighted(components, ACCURACY_WEIGHTS)
    return AccuracyScore(
        score=score,
        components=components,
        errors_by_category=by_category,
        feedback=_accuracy_feedback(score, components),
    )


def category_accuracy(error_count: int, utterances: int) -> int:
    """Eight tiers from 100 (no errors) down to 30 (half the utterances or worse)."""
    if error_count == 0:
        return 100
    rate = error_count / utterances
    return _below(
        rate,
        ((0.05, 90), (0.1, 80), (0.2, 70), (0.3, 60), (0.4, 50), (0.5, 40)),
        30,
    )


def _error_recovery(total_errors: int, corrected: int) -> int:
    if total_errors == 0:
        return 100
    return _at_least(corrected / total_errors, ((0.9, 100), (0.7, 80), (0.5, 60), (0.3, 40)), 20)


def count_errors_by_category(error_logs: Sequence[ErrorLogInput]) -> dict[str, int]:
    counts: dict[str, int] = {}
    for error in error_logs:
        counts[error.category] = counts.get(error.category, 0) + 1
    return counts


_ACCURACY_TIPS = {
    "grammar_accuracy": "Focus on grammar patterns, especially verb tenses and articles.",
    "vocabulary_accuracy": "Expand your vocabulary through reading and listening exercises.",
    "pronunciation_accuracy": "Practice pronunciation by listening to native speakers and repeating.",
    "error_recovery": "When you are corrected, try the phrase again to lock in the right form.",
}


def _accuracy_feedback(score: int, components: dict[str, int]) -> str:
    if score >= 90:
        return "Excellent accuracy! Very few errors and great self-correction."
    if score >= 80:
        return "Good accuracy! Minor errors that don't impede communication."
    return _ACCURACY_TIPS[_weakest(components)]


# ---------------------------------------------------------------------------
# Appropriacy
# ---------------------------------------------------------------------------

def score_appropriacy(
    events: Sequence[SessionEvent],
    error_logs: Sequence[ErrorLogInput],
    heuristics: ScoringHeuristics = DEFAULT_HEURISTICS,
) -> DimensionScore:
    messages = _user_messages(events)
    by_category = count_errors_by_category(error_logs)
    total = len(messages)

    components = {
        "register_match": _register_match(by_category.get("register", 0), total),
        "cultural_awareness": _context_rate(by_category.get("cultural", 0), total),
        "politeness_level": _politeness(messages, _compile(heuristics.politeness_markers)),
        "context_suitability": _context_rate(by_category.get("pragmatic", 0), total),
    }
    score = _weighted(components, APPROPRIACY_WEIGHTS)
    return DimensionScore(
        score=score, components=components, feedback=_appropriacy_feedback(score, components)
    )


def _register_match(errors: int, utterances: int) -> int:
    if utterances == 0:
        return 50
    if errors == 0:
        return 100
    return _below(errors / utterances, ((0.05, 90), (0.1, 75), (0.2, 60)), 40)


def _context_rate(errors: int, utterances: int) -> int:
    if utterances == 0:
        return 50
    if errors == 0:
        return 100
    return _below(errors / utterances, ((0.05, 85), (0.1, 70), (0.2, 55)), 40)


def _politeness(messages: Sequence[SessionEvent], markers: tuple[re.Pattern, ...]) -> int:
    texts = [t for t in (_content(m) for m in messages) if t]
    if not texts:
        return 50
    rate = sum(1 for t in texts if _matches_any(t, markers)) / len(texts)
    return _at_least(rate, ((0.5, 100), (0.3, 80), (0.2, 65), (0.1, 50)), 35)


_APPROPRIACY_TIPS = {
    "register_match": "Pay attention to formality levels - match your language to the situation.",
    "cultural_awareness": "Learn more about the cultural conventions and expectations of the language.",
    "politeness_level": (
        'Try using more polite expressions like "please", "would you mind", "I wonder if".'
    ),
    "context_suitability": "Consider the context more carefully when choosing how to express yourself.",
}


def _appropriacy_feedback(score: int, components: dict[str, int]) -> str:
    if score >= 85:
        return "Excellent! Your language is culturally appropriate and well-suited to the context."
    if score >= 70:
        return "Good appropriacy! Minor adjustments would make your language even more natural."
    return _APPROPRIACY_TIPS[_weakest(components)]


# ---------------------------------------------------------------------------
# Confidence
# ---------------------------------------------------------------------------

def score_confidence(
    events: Sequence[SessionEvent],
    error_logs: Sequence[ErrorLogInput],
    heuristics: ScoringHeuristics = DEFAULT_HEURISTICS,
) -> DimensionScore:
    """
    Risk taking (message length, connectives), self-correction, persistence
    through activities, and attempts at advanced grammar.
    """
    messages = _user_messages(events)
    accepted = sum(1 for e in events if e.type == "correction_accepted")

    components = {
        "risk_taking": _risk_taking(messages, _compile(heuristics.complexity_connectives)),
        "self_correction": _self_correction(len(error_logs), accepted),
        "persistence_level": _persistence(events),
        "complexity_attempts": _complexity_attempts(
            messages, _compile(heuristics.advanced_grammar_markers)
        ),
    }
    score = _weighted(components, CONFIDENCE_WEIGHTS)
    return DimensionScore(
        score=score, components=components, feedback=_confidence_feedback(score, components)
    )


def _risk_taking(messages: Sequence[SessionEvent], connectives: tuple[re.Pattern, ...]) -> int:
    if not messages:
        return 50
    texts = [_content(m) for m in messages]
    avg_words = sum(len(_words(t)) for t in texts) / len(messages)
    complexity_rate = sum(1 for t in texts if _matches_any(t, connectives)) / len(messages)

    score = 50
    score += _at_least(avg_words, ((15, 25), (10, 15), (6, 5)), 0)
    score += _at_least(complexity_rate, ((0.2, 25), (0.1, 15), (0.05, 5)), 0)
    return min(score, 100)


def _self_correction(total_errors: int, corrections_accepted: int) -> int:
    if total_errors == 0:
        return 100
    rate = corrections_accepted / total_errors
    return _at_least(rate, ((0.9, 100), (0.7, 85), (0.5, 70), (0.3, 55)), 40)


def _persistence(events: Sequence[SessionEvent]) -> int:
    hints = sum(1 for e in events if e.type == "hint_requested")
    started = sum(1 for e in events if e.type == "practice_activity_started")
    completed = sum(1 for e in events if e.type == "practice_activity_completed")

    score = 70
    if started > 0:
        completion = completed / started
        if completion >= 1:
            score += 20
        elif completion >= 0.7:
            score += 10
        elif completion < 0.3:
            score -= 20

        hint_rate = hints / started
        if hint_rate > 2:
            score -= 15
        elif hint_rate > 1:
            score -= 5

    return max(min(score, 100), 0)


def _complexity_attempts(messages: Sequence[SessionEvent], markers: tuple[re.Pattern, ...]) -> int:
    if not messages:
        return 50
    rate = sum(1 for m in messages if _matches_any(_content(m), markers)) / len(messages)
    return _at_least(rate, ((0.3, 100), (0.2, 85), (0.1, 70), (0.05, 55)), 40)


_CONFIDENCE_TIPS = {
    "risk_taking": "Try using longer sentences and more complex structures. It's okay to make mistakes!",
    "self_correction": "When you make a mistake, try to correct yourself. This shows active learning!",
    "persistence_level": "Keep going even when it gets difficult. Persistence is key to improvement!",
    "complexity_attempts": "Challenge yourself with more advanced grammar structures.",
}


def _confidence_feedback(score: int, components: dict[str, int]) -> str:
    if score >= 85:
        return (
            "Excellent confidence! You take risks, learn from mistakes, "
            "and persist through challenges."
        )
    if score >= 70:
        return "Good confidence! Keep pushing yourself to try new structures and expressions."
    return _CONFIDENCE_TIPS[_weakest(components)]


# ---------------------------------------------------------------------------
# Combined
# ---------------------------------------------------------------------------

def combine_overall(fluency: int, accuracy: int, appropriacy: int, confidence: int) -> int:
    return round_score(
        fluency * DIMENSION_WEIGHTS["fluency"]
        + accuracy * DIMENSION_WEIGHTS["accuracy"]
        + appropriacy * DIMENSION_WEIGHTS["appropriacy"]
        + confidence * DIMENSION_WEIGHTS["confidence"]
    )


def calculate_scores(
    assessment_input: AssessmentInput,
    heuristics: ScoringHeuristics = DEFAULT_HEURISTICS,
) -> AssessmentScores:
    events = assessment_input.events
    errors = assessment_input.error_logs

    fluency = score_fluency(events, assessment_input.duration, heuristics)
    accuracy = score_accuracy(events, errors)
    appropriacy = score_appropriacy(events, errors, heuristics)
    confidence = score_confidence(events, errors, heuristics)

    named = {
        "Fluency": fluency.score,
        "Accuracy": accuracy.score,
        "Appropriacy": appropriacy.score,
        "Confidence": confidence.score,
    }
    breakdown = ScoreBreakdown(
        strengths=[name for name, s in named.items() if s >= 75],
        areas_for_improvement=[name for name, s in named.items() if s < 60],
    )
    return AssessmentScores(
        overall=combine_overall(fluency.score, accuracy.score, appropriacy.score, confidence.score),
        fluency=fluency,
        accuracy=accuracy,
        appropriacy=appropriacy,
        confidence=confidence,
        breakdown=breakdown,
    )

