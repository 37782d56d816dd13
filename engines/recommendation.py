"""Ranks practiced concepts a learner should revisit next."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, List, Mapping, Optional, Union

from engines.statistics_kernel import clamp
from schemas import ConceptRecommendation, UserMetricsProfile, ensure_utc, utc_now

logger = logging.getLogger(__name__)

DEFAULT_IMPORTANCE = 0.7
FORGETTING_HORIZON_DAYS = 30.0

MASTERY_WEIGHT = 0.5
FORGETTING_WEIGHT = 0.3
IMPORTANCE_WEIGHT = 0.2

REASON_REINFORCEMENT = "needs reinforcement"
REASON_REVIEW = "due for review"
REASON_FOUNDATIONAL = "foundational concept"
REASON_PROGRESSION = "important for progression"

ImportanceSource = Union[Mapping[str, float], Callable[[str], Optional[float]], None]


class RecommendationEngine:
    """Scores concepts by weakness, time since practice and curricular importance.

    ``importance`` may be a mapping or a callable returning a weight in
    [0, 1] for a concept id; unknown concepts fall back to
    ``default_importance``. The engine never mutates the profile.
    """

    def __init__(
        self,
        importance: ImportanceSource = None,
        default_importance: float = DEFAULT_IMPORTANCE,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._importance = importance
        self.default_importance = clamp(default_importance)
        self._clock = clock

    def concept_importance(self, concept_id: str) -> float:
        source = self._importance
        value: Optional[float] = None
        if source is None:
            value = None
        elif callable(source):
            try:
                value = source(concept_id)
            except Exception:
                logger.exception("Importance lookup failed for %s; using default", concept_id)
                value = None
        else:
            value = source.get(concept_id)
        if value is None:
            return self.default_importance
        return clamp(float(value))

    def recommend_next_concepts(
        self,
        profile: UserMetricsProfile,
        count: int = 3,
        now: Optional[datetime] = None,
    ) -> List[ConceptRecommendation]:
        if count <= 0:
            return []
        now = ensure_utc(now) if now is not None else self._clock()
        mastery = profile.mastery

        scored: List[ConceptRecommendation] = []
        for concept_id, level in mastery.skill_mastery_levels.items():
            last_practice = mastery.last_practiced.get(concept_id)
            if last_practice is None:
                continue

            days = max(0.0, (now - last_practice).total_seconds() / 86400.0)
            forgetting_factor = min(1.0, days / FORGETTING_HORIZON_DAYS)
            mastery_level = clamp(level)
            mastery_factor = 1.0 - mastery_level
            importance = self.concept_importance(concept_id)

            priority = (
                MASTERY_WEIGHT * mastery_factor
                + FORGETTING_WEIGHT * forgetting_factor
                + IMPORTANCE_WEIGHT * importance
            )
            if priority <= 0:
                continue

            scored.append(
                ConceptRecommendation(
                    concept_id=concept_id,
                    priority=priority,
                    mastery=mastery_level,
                    days_since_last_practice=days,
                    forgetting_factor=forgetting_factor,
                    importance=importance,
                    reason=self._reason(mastery_level, forgetting_factor, importance),
                )
            )

        # sorted() is stable, so equal priorities keep concept insertion order.
        ranked = sorted(scored, key=lambda rec: rec.priority, reverse=True)
        return ranked[:count]

    @staticmethod
    def _reason(mastery_level: float, forgetting_factor: float, importance: float) -> str:
        if mastery_level < 0.4:
            return REASON_REINFORCEMENT
        if forgetting_factor > 0.7:
            return REASON_REVIEW
        if importance > 0.8:
            return REASON_FOUNDATIONAL
        return REASON_PROGRESSION
