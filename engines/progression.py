"""Proficiency level progression tracking.

Level changes are recorded in a bounded history together with the time spent
at the previous level, from which a progression speed in levels per month is
derived. Levels are ordinal-encoded with
:func:`engines.statistics_kernel.level_to_ordinal`, so regressions count as
negative progress.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from engines.statistics_kernel import clamp, level_to_ordinal
from schemas import LevelHistoryEntry, ProgressionMetrics, ensure_utc, utc_now

_LOGGER = logging.getLogger(__name__)

DAYS_PER_MONTH = 30.0


class ProgressionTracker:
    def __init__(self, max_history: int = 20) -> None:
        if max_history <= 0:
            raise ValueError("max_history must be positive")
        self.max_history = int(max_history)

    def update_progress(self, progression: ProgressionMetrics, progress: float) -> ProgressionMetrics:
        updated = progression.model_copy(deep=True)
        updated.progress_in_current_level = clamp(progress)
        return updated

    def set_level(
        self,
        progression: ProgressionMetrics,
        level: str,
        progress: float = 0.0,
        at: Optional[datetime] = None,
        started_at: Optional[datetime] = None,
    ) -> ProgressionMetrics:
        """Move the learner to ``level``.

        ``started_at`` marks when the learner entered the current level and is
        only consulted while the history is still empty.
        """

        level = level.strip()
        if not level:
            raise ValueError("level must be non-empty")
        if level == progression.current_level:
            return self.update_progress(progression, progress)

        at = ensure_utc(at) if at is not None else utc_now()
        updated = progression.model_copy(deep=True)

        if updated.level_history:
            entered_previous = updated.level_history[-1].achieved_at
        else:
            entered_previous = ensure_utc(started_at) if started_at is not None else at
        duration_days = max(0.0, (at - entered_previous).total_seconds() / 86400.0)

        updated.level_history.append(
            LevelHistoryEntry(
                level=level,
                previous_level=updated.current_level,
                achieved_at=at,
                duration_days=duration_days,
            )
        )
        if len(updated.level_history) > self.max_history:
            del updated.level_history[: len(updated.level_history) - self.max_history]

        updated.current_level = level
        updated.progress_in_current_level = clamp(progress)
        updated.progression_speed = self.progression_speed(updated)
        _LOGGER.info(
            "Level changed %s -> %s after %.1f days",
            updated.level_history[-1].previous_level,
            level,
            duration_days,
        )
        return updated

    @staticmethod
    def progression_speed(progression: ProgressionMetrics) -> float:
        """Ordinal levels gained per month across the retained history."""

        gained = 0.0
        elapsed_days = 0.0
        for entry in progression.level_history:
            if entry.previous_level is not None:
                gained += level_to_ordinal(entry.level) - level_to_ordinal(entry.previous_level)
            elapsed_days += entry.duration_days
        if elapsed_days <= 0:
            return 0.0
        return gained / elapsed_days * DAYS_PER_MONTH
