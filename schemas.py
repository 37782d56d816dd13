"""Pydantic schemas for learner metrics profiles, events and projections."""

from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Any, Dict, List

from pydantic import BaseModel, Field, field_validator

__all__ = [
    "OutcomeValidationError",
    "ScoreSample",
    "LevelHistoryEntry",
    "ProgressionMetrics",
    "PerformanceMetrics",
    "ForgettingCurveSample",
    "MasteryMetrics",
    "EngagementMetrics",
    "LearningMetric",
    "UserMetricsProfile",
    "MetricSnapshot",
    "ExerciseOutcome",
    "SessionRecord",
    "ProfileSummary",
    "HistoryFilter",
    "ConceptRecommendation",
    "StrengthsAndWeaknesses",
    "OutcomeIngestRequest",
    "SessionIngestRequest",
    "CustomMetricRequest",
    "ProgressionUpdateRequest",
    "utc_now",
    "ensure_utc",
]


class OutcomeValidationError(ValueError):
    """Raised when an inbound event is malformed and must not touch state."""


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime (naive values are assumed UTC)."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class _UtcModel(BaseModel):
    @field_validator("*", mode="after")
    @classmethod
    def _coerce_datetimes(cls, value: Any) -> Any:
        if isinstance(value, datetime):
            return ensure_utc(value)
        return value


# ---------- profile sections ----------
class ScoreSample(_UtcModel):
    score: float = Field(ge=0.0, le=1.0)
    timestamp: datetime


class LevelHistoryEntry(_UtcModel):
    level: str
    previous_level: str | None = None
    achieved_at: datetime
    duration_days: float = Field(
        default=0.0,
        ge=0.0,
        description="Days spent at the previous level before reaching this one.",
    )


class ProgressionMetrics(_UtcModel):
    current_level: str = "A1"
    progress_in_current_level: float = Field(default=0.0, ge=0.0, le=1.0)
    level_history: List[LevelHistoryEntry] = Field(default_factory=list)
    progression_speed: float = Field(
        default=0.0,
        description="Levels gained per month, derived from the level history.",
    )


class PerformanceMetrics(_UtcModel):
    total_exercises_completed: int = 0
    success_rate: float = Field(default=0.0, ge=0.0, le=1.0)
    success_rate_by_type: Dict[str, float] = Field(default_factory=dict)
    success_rate_by_skill: Dict[str, float] = Field(default_factory=dict)
    exercise_counts_by_type: Dict[str, int] = Field(default_factory=dict)
    sample_counts_by_skill: Dict[str, int] = Field(default_factory=dict)
    recent_scores: List[ScoreSample] = Field(
        default_factory=list,
        description="Most recent scores, oldest first; bounded by the rolling window.",
    )
    average_time_per_exercise: float = 0.0
    average_time_by_type: Dict[str, float] = Field(default_factory=dict)
    error_rates: Dict[str, float] = Field(default_factory=dict)
    performance_trend: float = 0.0


class ForgettingCurveSample(BaseModel):
    days_from_last_practice: int
    retention_rate: float = Field(ge=0.0, le=1.0)


class MasteryMetrics(_UtcModel):
    skill_mastery_levels: Dict[str, float] = Field(default_factory=dict)
    mastered_skills: List[str] = Field(default_factory=list)
    weakness_skills: List[str] = Field(default_factory=list)
    mastered_skills_count: int = 0
    forgetting_curves: Dict[str, List[ForgettingCurveSample]] = Field(default_factory=dict)
    retention_rates: Dict[str, float] = Field(default_factory=dict)
    performance_consistency: Dict[str, float] = Field(default_factory=dict)
    skill_acquisition_rates: Dict[str, float] = Field(default_factory=dict)
    last_practiced: Dict[str, datetime] = Field(default_factory=dict)

    @field_validator("last_practiced", mode="after")
    @classmethod
    def _coerce_practice_dates(cls, value: Dict[str, datetime]) -> Dict[str, datetime]:
        return {skill: ensure_utc(moment) for skill, moment in value.items()}


class EngagementMetrics(_UtcModel):
    total_sessions: int = 0
    completed_sessions: int = 0
    average_session_duration: float = Field(default=0.0, description="Minutes per session.")
    total_learning_time: float = Field(default=0.0, description="Minutes, all sessions.")
    average_exercises_per_session: float = 0.0
    session_completion_rate: float = Field(default=0.0, ge=0.0, le=1.0)
    usage_frequency: float = Field(default=0.0, description="Sessions in the trailing week.")
    streak_days: int = 0
    longest_streak_days: int = 0
    last_session_date: datetime | None = None
    recent_session_dates: List[datetime] = Field(default_factory=list)

    @field_validator("recent_session_dates", mode="after")
    @classmethod
    def _coerce_session_dates(cls, value: List[datetime]) -> List[datetime]:
        return [ensure_utc(moment) for moment in value]


class LearningMetric(_UtcModel):
    id: str
    name: str
    value: Any = None
    updated_at: datetime = Field(default_factory=utc_now)
    category: str | None = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class UserMetricsProfile(_UtcModel):
    user_id: str
    created_at: datetime = Field(default_factory=utc_now)
    last_updated: datetime = Field(default_factory=utc_now)
    progression: ProgressionMetrics = Field(default_factory=ProgressionMetrics)
    performance: PerformanceMetrics = Field(default_factory=PerformanceMetrics)
    mastery: MasteryMetrics = Field(default_factory=MasteryMetrics)
    engagement: EngagementMetrics = Field(default_factory=EngagementMetrics)
    custom_metrics: Dict[str, LearningMetric] = Field(default_factory=dict)
    standard_metrics: Dict[str, LearningMetric] = Field(default_factory=dict)


class MetricSnapshot(_UtcModel):
    """Immutable history point; appended to the history store, never edited."""

    user_id: str
    metric_id: str
    timestamp: datetime = Field(default_factory=utc_now)
    value: Any = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    model_config = {"frozen": True}


# ---------- inbound events ----------
class ExerciseOutcome(_UtcModel):
    exercise_id: str
    exercise_type: str | None = Field(
        default=None,
        description="Exercise family; inferred from the exercise id when omitted.",
    )
    score: float = Field(description="Normalised score, expected in [0, 1].")
    time_spent_seconds: float = Field(default=0.0, ge=0.0)
    attempts: int = Field(default=1, ge=1)
    skill_scores: Dict[str, float] = Field(default_factory=dict)
    error_types: List[str] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=utc_now)

    def validate_for_ingest(self) -> None:
        """Raise :class:`OutcomeValidationError` for values the engine cannot use."""

        if not self.exercise_id or not self.exercise_id.strip():
            raise OutcomeValidationError("exercise_id required")
        if not math.isfinite(self.score):
            raise OutcomeValidationError("score must be a finite number")
        for skill, value in self.skill_scores.items():
            if not skill:
                raise OutcomeValidationError("skill identifiers must be non-empty")
            if not math.isfinite(value):
                raise OutcomeValidationError(f"score for skill '{skill}' must be finite")
        if not math.isfinite(self.time_spent_seconds):
            raise OutcomeValidationError("time_spent_seconds must be finite")


class SessionRecord(_UtcModel):
    session_id: str
    started_at: datetime
    ended_at: datetime | None = None
    exercises_completed: int = Field(default=0, ge=0)
    completed: bool = True

    @property
    def duration_minutes(self) -> int:
        if self.ended_at is None:
            return 0
        seconds = (self.ended_at - self.started_at).total_seconds()
        return max(0, int(seconds // 60))


# ---------- outbound projections ----------
class ProfileSummary(BaseModel):
    user_id: str
    current_level: str
    progress_in_level: float
    mastered_skills_count: int
    success_rate: float
    total_exercises_completed: int
    average_session_duration: float
    weakness_areas: List[str] = Field(default_factory=list)
    strength_areas: List[str] = Field(default_factory=list)
    custom_metrics: Dict[str, LearningMetric] = Field(default_factory=dict)

    model_config = {"frozen": True}


class HistoryFilter(_UtcModel):
    start_date: datetime | None = None
    end_date: datetime | None = None
    limit: int | None = Field(default=None, ge=0)
    offset: int | None = Field(default=None, ge=0)


class ConceptRecommendation(BaseModel):
    concept_id: str
    priority: float
    mastery: float
    days_since_last_practice: float
    forgetting_factor: float
    importance: float
    reason: str

    model_config = {"frozen": True}


class StrengthsAndWeaknesses(BaseModel):
    user_id: str
    strengths: List[str] = Field(default_factory=list)
    weaknesses: List[str] = Field(default_factory=list)

    model_config = {"frozen": True}


# ---------- HTTP request bodies ----------
class OutcomeIngestRequest(ExerciseOutcome):
    user_id: str


class SessionIngestRequest(SessionRecord):
    user_id: str


class CustomMetricRequest(BaseModel):
    user_id: str
    metric_id: str
    value: Any = None
    name: str | None = None
    category: str | None = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ProgressionUpdateRequest(BaseModel):
    user_id: str
    level: str | None = None
    progress: float | None = Field(default=None, ge=0.0, le=1.0)
