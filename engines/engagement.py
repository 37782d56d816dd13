"""Session-level engagement metrics: counters, rolling averages and streaks."""

from __future__ import annotations

import logging
from datetime import timedelta

from engines.statistics_kernel import clamp, update_rolling_average
from schemas import EngagementMetrics, SessionRecord

logger = logging.getLogger(__name__)

USAGE_WINDOW = timedelta(days=7)
SESSION_DATE_RETENTION = timedelta(days=30)
MAX_SESSION_DATES = 100


class EngagementTracker:
    def __init__(self, rolling_window_size: int = 20) -> None:
        if rolling_window_size <= 0:
            raise ValueError("rolling_window_size must be positive")
        self.window_size = int(rolling_window_size)

    def record_session(self, engagement: EngagementMetrics, session: SessionRecord) -> EngagementMetrics:
        updated = engagement.model_copy(deep=True)
        duration = float(session.duration_minutes)
        moment = session.ended_at or session.started_at

        updated.total_sessions += 1
        if session.completed:
            updated.completed_sessions += 1
        n = min(updated.total_sessions, self.window_size)

        updated.average_session_duration = update_rolling_average(
            updated.average_session_duration, duration, n
        )
        updated.average_exercises_per_session = update_rolling_average(
            updated.average_exercises_per_session, float(session.exercises_completed), n
        )
        updated.total_learning_time += duration
        updated.session_completion_rate = clamp(updated.completed_sessions / updated.total_sessions)

        self._update_streak(updated, session)

        dates = sorted(updated.recent_session_dates + [moment])
        newest = dates[-1]
        dates = [d for d in dates if newest - d <= SESSION_DATE_RETENTION][-MAX_SESSION_DATES:]
        updated.recent_session_dates = dates
        updated.usage_frequency = float(sum(1 for d in dates if newest - d < USAGE_WINDOW))

        logger.debug(
            "Session %s recorded: duration=%s min streak=%s",
            session.session_id,
            duration,
            updated.streak_days,
        )
        return updated

    @staticmethod
    def _update_streak(engagement: EngagementMetrics, session: SessionRecord) -> None:
        moment = session.ended_at or session.started_at
        day = moment.date()
        last = engagement.last_session_date

        if last is None:
            engagement.streak_days = 1
        else:
            gap = (day - last.date()).days
            if gap == 1:
                engagement.streak_days += 1
            elif gap > 1:
                engagement.streak_days = 1
            # Same-day and out-of-order sessions leave the streak unchanged.
            engagement.streak_days = max(engagement.streak_days, 1)

        if last is None or moment > last:
            engagement.last_session_date = moment
        engagement.longest_streak_days = max(engagement.longest_streak_days, engagement.streak_days)
