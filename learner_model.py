"""
Learner progress data models.
Pydantic v2 models for sessions, error tracking, assessments and learner memory.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

ErrorCategory = Literal[
    "grammar", "vocabulary", "pronunciation", "cultural", "pragmatic", "register"
]
ERROR_CATEGORIES: tuple[str, ...] = (
    "grammar", "vocabulary", "pronunciation", "cultural", "pragmatic", "register",
)

SessionStatus = Literal["ACTIVE", "PAUSED", "COMPLETED", "ABANDONED"]
OPEN_STATUSES = frozenset({"ACTIVE", "PAUSED"})
TERMINAL_STATUSES = frozenset({"COMPLETED", "ABANDONED"})

EventType = Literal[
    "session_start",
    "session_end",
    "user_message",
    "agent_message",
    "error_detected",
    "correction_given",
    "correction_accepted",
    "hint_requested",
    "hint_given",
    "scenario_started",
    "scenario_completed",
    "practice_activity_started",
    "practice_activity_completed",
    "feedback_given",
    "pause",
    "resume",
]

Trend = Literal["improving", "stable", "worsening"]
Priority = Literal["high", "medium", "low"]
AssessmentType = Literal["INFORMAL", "MILESTONE"]

Level = Literal["A2", "B1", "B2", "C1", "C2"]
LEVEL_ORDER: tuple[str, ...] = ("A2", "B1", "B2", "C1", "C2")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def ensure_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------

class SessionEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    type: EventType
    timestamp: datetime = Field(default_factory=utcnow)
    data: dict[str, Any] = Field(default_factory=dict)

    @field_validator("timestamp")
    @classmethod
    def timestamp_in_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class SessionMetrics(BaseModel):
    duration: int = 0  # seconds
    message_count: int = 0
    user_message_count: int = 0
    agent_message_count: int = 0
    errors_detected: int = 0
    corrections_made: int = 0
    corrections_accepted: int = 0
    hints_requested: int = 0
    activities_completed: int = 0
    engagement_score: int = 0
    fluency_score: int = 0
    accuracy_score: int = 0
    overall_score: int = 0


class Session(BaseModel):
    id: str = Field(default_factory=new_id)
    learner_id: str
    language_code: str
    scenario_id: Optional[str] = None
    status: SessionStatus = "ACTIVE"
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    events: list[SessionEvent] = Field(default_factory=list)
    metrics: Optional[SessionMetrics] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    memory_applied: bool = False  # completion folded into learner memory

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def last_event_at(self) -> datetime:
        if self.events:
            return self.events[-1].timestamp
        return self.started_at

    def events_of(self, *types: str) -> list[SessionEvent]:
        return [e for e in self.events if e.type in types]


class ActiveSessionState(BaseModel):
    """Cache mirror of an open session. Never authoritative."""

    session_id: str
    learner_id: str
    language_code: str
    scenario_id: Optional[str] = None
    started_at: datetime
    last_event_at: datetime
    events_count: int = 0
    errors_in_session: int = 0
    current_activity_index: int = 0


# ---------------------------------------------------------------------------
# Errors and patterns
# ---------------------------------------------------------------------------

class ErrorLogInput(BaseModel):
    category: ErrorCategory
    subcategory: Optional[str] = None
    context: str = ""
    correction: Optional[str] = None
    corrected: bool = False


class ErrorLogEntry(ErrorLogInput):
    id: str = Field(default_factory=new_id)
    learner_id: str
    language_code: str
    session_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


class ErrorExample(BaseModel):
    context: str
    error: str
    correction: Optional[str] = None
    timestamp: datetime
    session_id: Optional[str] = None


class ErrorPattern(BaseModel):
    category: ErrorCategory
    subcategory: Optional[str] = None
    frequency: int = 0
    recent_count: int = 0
    trend: Trend = "stable"
    examples: list[ErrorExample] = Field(default_factory=list)  # oldest first, capped
    first_occurrence: Optional[datetime] = None
    last_occurrence: Optional[datetime] = None

    @property
    def label(self) -> str:
        if self.subcategory:
            return f"{self.category} ({self.subcategory})"
        return self.category


# ---------------------------------------------------------------------------
# Learner memory
# ---------------------------------------------------------------------------

class ModuleProgress(BaseModel):
    module_id: str
    scenarios_completed: int = 0
    scenarios_total: int = 5
    average_score: float = 0.0
    last_practiced_at: Optional[datetime] = None


class ProgressData(BaseModel):
    completed_modules: list[str] = Field(default_factory=list)
    completed_scenarios: list[str] = Field(default_factory=list)
    current_streak: int = 0
    longest_streak: int = 0
    total_sessions: int = 0
    total_practice_minutes: int = 0
    last_session_at: Optional[datetime] = None
    module_progress: dict[str, ModuleProgress] = Field(default_factory=dict)


class LearnerPreferences(BaseModel):
    session_duration: Literal["short", "medium", "long"] = "medium"
    practice_style: Literal["conversational", "structured", "mixed"] = "mixed"
    feedback_level: Literal["minimal", "moderate", "detailed"] = "moderate"
    voice_speed: Literal["slow", "normal", "fast"] = "normal"
    focus_areas: list[str] = Field(default_factory=list)
    avoid_topics: list[str] = Field(default_factory=list)
    preferred_scenario_types: list[str] = Field(default_factory=list)
    challenge_level: Literal["comfortable", "balanced", "challenging"] = "balanced"


class LearnerProfile(BaseModel):
    native_language: str = ""
    other_languages: list[str] = Field(default_factory=list)
    learning_goals: list[str] = Field(default_factory=list)
    occupation: Optional[str] = None
    interests: list[str] = Field(default_factory=list)
    pathway_id: Optional[str] = None
    timezone: Optional[str] = None


class LearnerMemory(BaseModel):
    """Durable per (learner, language) document, updated by read-modify-write."""

    learner_id: str
    language_code: str
    version: int = 0
    progress_data: ProgressData = Field(default_factory=ProgressData)
    error_patterns: list[ErrorPattern] = Field(default_factory=list)
    preferences: LearnerPreferences = Field(default_factory=LearnerPreferences)
    profile: LearnerProfile = Field(default_factory=LearnerProfile)
    updated_at: datetime = Field(default_factory=utcnow)


class LearnerLanguage(BaseModel):
    learner_id: str
    language_code: str
    current_level: Level = "A2"
    current_module_id: Optional[str] = None
    is_active: bool = True


# ---------------------------------------------------------------------------
# Assessments
# ---------------------------------------------------------------------------

class DimensionScore(BaseModel):
    score: int
    components: dict[str, int]
    feedback: str


class AccuracyScore(DimensionScore):
    errors_by_category: dict[str, int] = Field(default_factory=dict)


class ScoreComparison(BaseModel):
    improved: list[str] = Field(default_factory=list)
    declined: list[str] = Field(default_factory=list)
    stable: list[str] = Field(default_factory=list)


class ScoreBreakdown(BaseModel):
    strengths: list[str] = Field(default_factory=list)
    areas_for_improvement: list[str] = Field(default_factory=list)
    compared_to_previous: ScoreComparison = Field(default_factory=ScoreComparison)


class AssessmentScores(BaseModel):
    overall: int
    fluency: DimensionScore
    accuracy: AccuracyScore
    appropriacy: DimensionScore
    confidence: DimensionScore
    breakdown: ScoreBreakdown = Field(default_factory=ScoreBreakdown)


class AssessmentRecommendation(BaseModel):
    type: Literal["module", "scenario", "focus_area", "level_change", "practice_type"]
    value: str
    reason: str
    priority: Priority


class AssessmentInput(BaseModel):
    session_id: Optional[str] = None
    module_id: Optional[str] = None
    events: list[SessionEvent] = Field(default_factory=list)
    error_logs: list[ErrorLogInput] = Field(default_factory=list)
    duration: float = 0.0  # seconds


class Assessment(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    learner_id: str
    language_code: str
    type: AssessmentType = "INFORMAL"
    module_id: Optional[str] = None
    session_id: Optional[str] = None
    scores: AssessmentScores
    recommendations: list[AssessmentRecommendation] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)


# ---------------------------------------------------------------------------
# Progression and review
# ---------------------------------------------------------------------------

class CompetencyThreshold(BaseModel):
    model_config = ConfigDict(frozen=True)

    level: Level
    min_overall_score: int
    min_fluency_score: int
    min_accuracy_score: int
    min_appropriacy_score: int
    required_modules: tuple[str, ...] = ()


class ModuleCompletion(BaseModel):
    module_id: str
    completed: bool
    score: int
    required_score: int = 70


class ProgressionResult(BaseModel):
    can_advance: bool
    status: Literal[
        "insufficient_data", "competency_not_met", "max_level", "not_consistent", "ready"
    ]
    current_level: Level
    recommended_level: Optional[Level] = None
    module_completion: Optional[ModuleCompletion] = None
    reasons: list[str] = Field(default_factory=list)
    next_steps: list[str] = Field(default_factory=list)


class ReviewRecommendation(BaseModel):
    type: Literal["module", "scenario", "skill"]
    id: str
    name: str
    reason: str
    priority: Priority
    last_practiced_at: Optional[datetime] = None
    current_score: Optional[int] = None
    target_score: int


class LearnerProgress(BaseModel):
    current_level: Level
    percent_to_next_level: int
    modules_completed: int
    modules_total: int
    average_score: int
    streak: int
    total_practice_minutes: int
    strong_areas: list[str] = Field(default_factory=list)
    weak_areas: list[str] = Field(default_factory=list)
