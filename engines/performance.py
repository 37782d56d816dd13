"""Success-rate, timing, error-frequency and trend tracking per learner."""

from __future__ import annotations

import logging
from typing import Dict

from engines.base import BaseTracker
from engines.statistics_kernel import clamp, linear_trend, update_rolling_average
from schemas import ExerciseOutcome, PerformanceMetrics, ScoreSample

logger = logging.getLogger(__name__)


class PerformanceTracker(BaseTracker[PerformanceMetrics]):
    """Updates the performance section of a profile from one exercise outcome.

    Parameters
    ----------
    success_threshold:
        Minimum score counted as a success when computing success rates.
    rolling_window_size:
        Effective window of the rolling averages, the length of the
        recent-scores buffer and the scale applied to the trend slope.
    """

    def __init__(self, success_threshold: float = 0.6, rolling_window_size: int = 20) -> None:
        if not 0.0 <= success_threshold <= 1.0:
            raise ValueError("success_threshold must be in [0, 1]")
        if rolling_window_size <= 0:
            raise ValueError("rolling_window_size must be positive")
        self.success_threshold = float(success_threshold)
        self.window_size = int(rolling_window_size)

    def update(self, performance: PerformanceMetrics, outcome: ExerciseOutcome) -> PerformanceMetrics:
        updated = performance.model_copy(deep=True)
        score = clamp(outcome.score)
        exercise_type = outcome.exercise_type or "unknown"

        updated.total_exercises_completed += 1
        n_global = self._samples(updated.total_exercises_completed)

        updated.recent_scores.append(ScoreSample(score=score, timestamp=outcome.timestamp))
        updated.recent_scores.sort(key=lambda sample: sample.timestamp)
        if len(updated.recent_scores) > self.window_size:
            del updated.recent_scores[: len(updated.recent_scores) - self.window_size]

        success = 1.0 if score >= self.success_threshold else 0.0
        updated.success_rate = clamp(update_rolling_average(updated.success_rate, success, n_global))

        type_count = updated.exercise_counts_by_type.get(exercise_type, 0) + 1
        updated.exercise_counts_by_type[exercise_type] = type_count
        n_type = self._samples(type_count)
        updated.success_rate_by_type[exercise_type] = clamp(
            update_rolling_average(updated.success_rate_by_type.get(exercise_type, 0.0), success, n_type)
        )

        for skill, skill_score in outcome.skill_scores.items():
            skill_count = updated.sample_counts_by_skill.get(skill, 0) + 1
            updated.sample_counts_by_skill[skill] = skill_count
            skill_success = 1.0 if clamp(skill_score) >= self.success_threshold else 0.0
            updated.success_rate_by_skill[skill] = clamp(
                update_rolling_average(
                    updated.success_rate_by_skill.get(skill, 0.0),
                    skill_success,
                    self._samples(skill_count),
                )
            )

        time_spent = max(0.0, outcome.time_spent_seconds)
        updated.average_time_per_exercise = update_rolling_average(
            updated.average_time_per_exercise, time_spent, n_global
        )
        updated.average_time_by_type[exercise_type] = update_rolling_average(
            updated.average_time_by_type.get(exercise_type, 0.0), time_spent, n_type
        )

        updated.error_rates = self._update_error_rates(
            updated.error_rates, set(outcome.error_types), n_global
        )
        updated.performance_trend = self._trend(updated)

        logger.debug(
            "Performance updated: total=%s success_rate=%.3f trend=%.3f",
            updated.total_exercises_completed,
            updated.success_rate,
            updated.performance_trend,
        )
        return updated

    # ----- helpers -----------------------------------------------------
    def _samples(self, count: int) -> int:
        # Capping n at the window makes the cumulative mean behave like an EMA
        # with weight 1/window once the window has filled.
        return min(count, self.window_size)

    @staticmethod
    def _update_error_rates(
        current: Dict[str, float], seen: set, n: int
    ) -> Dict[str, float]:
        rates = dict(current)
        for error_type in rates:
            if error_type not in seen:
                rates[error_type] = clamp(update_rolling_average(rates[error_type], 0.0, n))
        for error_type in seen:
            rates[error_type] = clamp(update_rolling_average(rates.get(error_type, 0.0), 1.0, n))
        return rates

    def _trend(self, performance: PerformanceMetrics) -> float:
        points = [(index, sample.score) for index, sample in enumerate(performance.recent_scores)]
        return linear_trend(points).slope * self.window_size
