"""Per-skill mastery estimation with forgetting curves and adaptive acquisition rates."""

from __future__ import annotations

import logging
from typing import Dict, List, Tuple

from engines.base import BaseTracker
from engines.statistics_kernel import clamp, exponential_moving_average, retention_rate
from schemas import ExerciseOutcome, ForgettingCurveSample, MasteryMetrics

logger = logging.getLogger(__name__)

MASTERY_ALPHA = 0.3
CONSISTENCY_ALPHA = 0.2
CURVE_DAYS: Tuple[int, ...] = tuple(range(0, 31, 5))
RETENTION_REFERENCE_DAY = 5

ACQUISITION_RATE_SEED = 0.01
ACQUISITION_RATE_MIN = 0.001
ACQUISITION_RATE_MAX = 0.1
ACQUISITION_GROWTH = 1.1
ACQUISITION_DECAY = 0.9
# A score below this share of the current mastery counts as a setback.
SETBACK_RATIO = 0.8


def forgetting_curve(mastery_level: float) -> List[ForgettingCurveSample]:
    return [
        ForgettingCurveSample(days_from_last_practice=day, retention_rate=retention_rate(mastery_level, day))
        for day in CURVE_DAYS
    ]


def reference_retention(curve: List[ForgettingCurveSample]) -> float:
    """Retention at the reference horizon, falling back to the curve midpoint."""

    for sample in curve:
        if sample.days_from_last_practice == RETENTION_REFERENCE_DAY:
            return sample.retention_rate
    if not curve:
        return 0.0
    return curve[len(curve) // 2].retention_rate


class MasteryTracker(BaseTracker[MasteryMetrics]):
    """Blends skill scores into mastery levels and derives retention signals.

    Skills at or above ``mastered_threshold`` are mastered, skills at or
    below ``weakness_threshold`` are weaknesses. The cutoffs are hard: a
    skill hovering around a threshold can move between bands on consecutive
    updates.
    """

    def __init__(self, mastered_threshold: float = 0.8, weakness_threshold: float = 0.4) -> None:
        if not 0.0 <= weakness_threshold < mastered_threshold <= 1.0:
            raise ValueError("weakness_threshold must be lower than mastered_threshold within [0, 1]")
        self.mastered_threshold = float(mastered_threshold)
        self.weakness_threshold = float(weakness_threshold)

    def update(self, mastery: MasteryMetrics, outcome: ExerciseOutcome) -> MasteryMetrics:
        updated = mastery.model_copy(deep=True)

        for skill, raw_score in outcome.skill_scores.items():
            score = clamp(raw_score)
            previous = updated.skill_mastery_levels.get(skill)

            if previous is None:
                level = score
                reference = score
            else:
                level = clamp(exponential_moving_average(previous, score, MASTERY_ALPHA))
                # Consistency and acquisition compare against the level before this score.
                reference = previous
            updated.skill_mastery_levels[skill] = level

            curve = forgetting_curve(level)
            updated.forgetting_curves[skill] = curve
            updated.retention_rates[skill] = clamp(reference_retention(curve))

            agreement = 1.0 - abs(score - reference)
            consistency = updated.performance_consistency.get(skill)
            updated.performance_consistency[skill] = clamp(
                agreement
                if consistency is None
                else exponential_moving_average(consistency, agreement, CONSISTENCY_ALPHA)
            )

            updated.skill_acquisition_rates[skill] = self._next_acquisition_rate(
                updated.skill_acquisition_rates.get(skill, ACQUISITION_RATE_SEED), score, reference
            )
            updated.last_practiced[skill] = outcome.timestamp

        self._recompute_bands(updated)
        if outcome.skill_scores:
            logger.debug(
                "Mastery updated for %s skills; mastered=%s weak=%s",
                len(outcome.skill_scores),
                updated.mastered_skills_count,
                len(updated.weakness_skills),
            )
        return updated

    @staticmethod
    def _next_acquisition_rate(current: float, score: float, mastery_level: float) -> float:
        if score > mastery_level:
            current *= ACQUISITION_GROWTH
        elif score < SETBACK_RATIO * mastery_level:
            current *= ACQUISITION_DECAY
        return clamp(current, ACQUISITION_RATE_MIN, ACQUISITION_RATE_MAX)

    def classify(self, level: float) -> str:
        if level >= self.mastered_threshold:
            return "mastered"
        if level <= self.weakness_threshold:
            return "weak"
        return "developing"

    def _recompute_bands(self, mastery: MasteryMetrics) -> None:
        bands: Dict[str, List[str]] = {"mastered": [], "weak": [], "developing": []}
        for skill, level in mastery.skill_mastery_levels.items():
            bands[self.classify(level)].append(skill)
        mastery.mastered_skills = bands["mastered"]
        mastery.weakness_skills = bands["weak"]
        mastery.mastered_skills_count = len(bands["mastered"])
