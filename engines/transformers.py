"""Conversions between inbound events, stored profiles and outbound views."""

from __future__ import annotations

import math
import re
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel

from schemas import (
    ExerciseOutcome,
    LearningMetric,
    ProfileSummary,
    StrengthsAndWeaknesses,
    UserMetricsProfile,
    utc_now,
)

# Keyword groups checked in order against the lower-cased exercise id.
_EXERCISE_TYPE_KEYWORDS: Tuple[Tuple[Tuple[str, ...], str], ...] = (
    (("quiz", "qcm", "choice"), "multiple_choice"),
    (("drag", "drop"), "drag_drop"),
    (("fill", "blank"), "fill_blank"),
    (("video", "response"), "video_response"),
    (("sign", "practice"), "signing_practice"),
)

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")


def infer_exercise_type(exercise_id: str) -> str:
    lowered = (exercise_id or "").lower()
    for keywords, exercise_type in _EXERCISE_TYPE_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return exercise_type
    return "unknown"


def normalize_outcome(outcome: ExerciseOutcome) -> ExerciseOutcome:
    """Fill in the exercise type and deduplicate error types."""

    exercise_type = outcome.exercise_type or infer_exercise_type(outcome.exercise_id)
    error_types = list(dict.fromkeys(error for error in outcome.error_types if error))
    return outcome.model_copy(update={"exercise_type": exercise_type, "error_types": error_types})


def to_summary(profile: UserMetricsProfile) -> ProfileSummary:
    return ProfileSummary(
        user_id=profile.user_id,
        current_level=profile.progression.current_level,
        progress_in_level=profile.progression.progress_in_current_level,
        mastered_skills_count=profile.mastery.mastered_skills_count,
        success_rate=profile.performance.success_rate,
        total_exercises_completed=profile.performance.total_exercises_completed,
        average_session_duration=profile.engagement.average_session_duration,
        weakness_areas=list(profile.mastery.weakness_skills),
        strength_areas=list(profile.mastery.mastered_skills),
        custom_metrics={
            metric_id: metric.model_copy(deep=True)
            for metric_id, metric in profile.custom_metrics.items()
        },
    )


# Cutoffs for per-exercise-type success rates and engagement labels.
_TYPE_STRENGTH_RATE = 0.8
_TYPE_WEAKNESS_RATE = 0.4
_FREQUENCY_STRENGTH_SESSIONS = 5
_FREQUENCY_WEAKNESS_SESSIONS = 2
_DURATION_STRENGTH_MINUTES = 30
_DURATION_WEAKNESS_MINUTES = 10


def identify_strengths_and_weaknesses(profile: UserMetricsProfile) -> StrengthsAndWeaknesses:
    """Label a learner's strong and weak areas.

    Starts from the mastery bands, then adds exercise types by success rate
    (``>= 0.8`` strong, ``< 0.4`` weak) and engagement labels for weekly
    usage frequency and average session length.
    """

    strengths = list(profile.mastery.mastered_skills)
    weaknesses = list(profile.mastery.weakness_skills)

    for exercise_type, rate in sorted(profile.performance.success_rate_by_type.items()):
        label = f"Exercise type: {exercise_type}"
        if rate >= _TYPE_STRENGTH_RATE:
            strengths.append(label)
        elif rate < _TYPE_WEAKNESS_RATE:
            weaknesses.append(label)

    engagement = profile.engagement
    if engagement.usage_frequency >= _FREQUENCY_STRENGTH_SESSIONS:
        strengths.append("Usage frequency")
    elif engagement.usage_frequency < _FREQUENCY_WEAKNESS_SESSIONS:
        weaknesses.append("Usage frequency")

    if engagement.average_session_duration >= _DURATION_STRENGTH_MINUTES:
        strengths.append("Session duration")
    elif engagement.average_session_duration < _DURATION_WEAKNESS_MINUTES:
        weaknesses.append("Session duration")

    return StrengthsAndWeaknesses(
        user_id=profile.user_id,
        strengths=list(dict.fromkeys(strengths)),
        weaknesses=list(dict.fromkeys(weaknesses)),
    )


def extract_metric_value(profile: UserMetricsProfile, path: str) -> Any:
    """Follow a dotted ``path`` through the profile; ``None`` when absent."""

    current: Any = profile
    for part in path.split("."):
        if current is None:
            return None
        if isinstance(current, BaseModel):
            current = getattr(current, part, None)
        elif isinstance(current, dict):
            current = current.get(part)
        else:
            return None
    if isinstance(current, BaseModel):
        return current.model_dump(mode="json")
    if isinstance(current, list):
        return [item.model_dump(mode="json") if isinstance(item, BaseModel) else item for item in current]
    if isinstance(current, dict):
        return {
            key: value.model_dump(mode="json") if isinstance(value, BaseModel) else value
            for key, value in current.items()
        }
    return current


def format_metric_name(metric_id: str) -> str:
    """``performance.successRate`` -> ``Performance - Success Rate``."""

    words = []
    for segment in metric_id.split("."):
        spaced = _CAMEL_BOUNDARY.sub(" ", segment).replace("_", " ")
        words.append(" ".join(word.capitalize() for word in spaced.split()))
    return " - ".join(word for word in words if word)


def extract_metric(profile: UserMetricsProfile, metric_id: str) -> Optional[LearningMetric]:
    """Resolve a metric from custom metrics, standard metrics, then the profile body."""

    if metric_id in profile.custom_metrics:
        return profile.custom_metrics[metric_id]
    if metric_id in profile.standard_metrics:
        return profile.standard_metrics[metric_id]

    value = extract_metric_value(profile, metric_id)
    if value is None:
        return None
    return LearningMetric(
        id=metric_id,
        name=format_metric_name(metric_id),
        value=value,
        updated_at=profile.last_updated,
    )


# ---------- calculated standard metrics ----------
def estimated_days_to_next_level(profile: UserMetricsProfile) -> int:
    progress = profile.progression.progress_in_current_level
    if progress > 0.9:
        return 1
    history = profile.progression.level_history
    if len(history) < 2:
        return math.ceil(30 * (1 - progress))
    average_duration = sum(entry.duration_days for entry in history) / (len(history) - 1)
    return math.ceil(average_duration * (1 - progress))


def overall_mastery_level(profile: UserMetricsProfile) -> float:
    levels = list(profile.mastery.skill_mastery_levels.values())
    if not levels:
        return 0.0
    return sum(levels) / len(levels)


def engagement_score(profile: UserMetricsProfile) -> int:
    """0-100 blend of usage frequency, session length, streak and completion."""

    engagement = profile.engagement
    frequency_factor = min(1.0, engagement.usage_frequency / 7)
    duration_factor = min(1.0, engagement.average_session_duration / 60)
    streak_factor = min(1.0, engagement.streak_days / 14)
    completion_factor = engagement.session_completion_rate
    weighted = (
        frequency_factor * 0.3
        + duration_factor * 0.2
        + streak_factor * 0.3
        + completion_factor * 0.2
    )
    return round(weighted * 100)


def enrich_with_calculated_metrics(profile: UserMetricsProfile) -> UserMetricsProfile:
    """Return a copy of ``profile`` with derived standard metrics refreshed."""

    enriched = profile.model_copy(deep=True)
    now = utc_now()
    calculated: Dict[str, Tuple[str, Any]] = {
        "estimated_time_to_next_level": (
            "Estimated days to next level",
            estimated_days_to_next_level(profile),
        ),
        "performance_trend": ("Performance trend", profile.performance.performance_trend),
        "overall_mastery_level": ("Overall mastery level", overall_mastery_level(profile)),
        "engagement_score": ("Engagement score", engagement_score(profile)),
    }
    for metric_id, (name, value) in calculated.items():
        enriched.standard_metrics[metric_id] = LearningMetric(
            id=metric_id, name=name, value=value, updated_at=now, category="calculated"
        )
    return enriched
