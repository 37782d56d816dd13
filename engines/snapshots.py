"""Rate-limited recording of learner metrics into the history store."""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from datetime import datetime, timedelta
from enum import Enum
from threading import Lock
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from engines.stores import HistoryStore
from engines.transformers import extract_metric_value
from schemas import ExerciseOutcome, MetricSnapshot, UserMetricsProfile, utc_now

logger = logging.getLogger(__name__)

DEFAULT_STANDARD_METRICS: Sequence[str] = (
    "progression.current_level",
    "progression.progress_in_current_level",
    "performance.success_rate",
    "mastery.mastered_skills_count",
    "engagement.average_session_duration",
    "engagement.usage_frequency",
)

# Gates older than the interval are dropped once this many users are tracked.
_GATE_PRUNE_THRESHOLD = 10_000


class SnapshotType(str, Enum):
    EXERCISE = "exercise"
    SESSION = "session"
    CUSTOM = "custom"


class SnapshotThrottler:
    """Writes metric snapshots at most once per ``min_interval`` per user.

    Custom metric snapshots bypass the gate. History writes run on a small
    worker pool and each batch gives up after ``write_timeout`` seconds.
    Failed or abandoned writes are logged and never propagate to the caller.
    """

    def __init__(
        self,
        history_store: HistoryStore,
        min_interval: timedelta = timedelta(minutes=5),
        standard_metrics: Sequence[str] = DEFAULT_STANDARD_METRICS,
        clock: Callable[[], datetime] = utc_now,
        write_timeout: float = 2.0,
        max_workers: int = 2,
    ) -> None:
        self.history_store = history_store
        self.write_timeout = float(write_timeout)
        self.min_interval = min_interval
        self.standard_metrics = tuple(standard_metrics)
        self._clock = clock
        self._last_snapshot: Dict[str, datetime] = {}
        self._lock = Lock()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="metric-history")

    # ----- gate --------------------------------------------------------
    def can_record(self, user_id: str, now: Optional[datetime] = None) -> bool:
        now = now or self._clock()
        with self._lock:
            last = self._last_snapshot.get(user_id)
        return last is None or now - last >= self.min_interval

    def last_snapshot_time(self, user_id: str) -> Optional[datetime]:
        with self._lock:
            return self._last_snapshot.get(user_id)

    def _claim(self, user_id: str, now: datetime) -> Optional[datetime]:
        """Atomically pass the gate.

        Returns ``None`` when the gate is closed, otherwise the prior
        timestamp (or ``now`` itself for a first snapshot) so the claim can
        be rolled back.
        """
        with self._lock:
            last = self._last_snapshot.get(user_id)
            if last is not None and now - last < self.min_interval:
                return None
            self._last_snapshot[user_id] = now
            if len(self._last_snapshot) > _GATE_PRUNE_THRESHOLD:
                self._prune_gates(now)
            return last or now

    def _release(self, user_id: str, previous: datetime, now: datetime) -> None:
        with self._lock:
            if previous is now:
                self._last_snapshot.pop(user_id, None)
            else:
                self._last_snapshot[user_id] = previous

    def _prune_gates(self, now: datetime) -> None:
        stale = [uid for uid, moment in self._last_snapshot.items() if now - moment >= self.min_interval]
        for uid in stale:
            del self._last_snapshot[uid]

    # ----- recording ---------------------------------------------------
    def try_record(
        self,
        user_id: str,
        profile: UserMetricsProfile,
        outcome: Optional[ExerciseOutcome] = None,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> int:
        """Record standard and per-exercise metrics unless throttled.

        Returns the number of snapshots written (0 when the gate is closed).
        """
        now = self._clock()
        previous = self._claim(user_id, now)
        if previous is None:
            logger.debug("Snapshot for %s throttled", user_id)
            return 0

        base: Dict[str, Any] = {"type": SnapshotType.EXERCISE.value}
        if outcome is not None:
            base.update(
                exercise_id=outcome.exercise_id,
                exercise_type=outcome.exercise_type,
                score=outcome.score,
                skills=list(outcome.skill_scores),
            )
        base.update(metadata or {})

        snapshots = self._standard_snapshots(user_id, profile, now, base)
        if outcome is not None:
            snapshots.extend(self._exercise_snapshots(user_id, outcome, now, base))
        return self._write_batch(user_id, snapshots, previous, now)

    def record_session(self, user_id: str, session_id: str, profile: UserMetricsProfile) -> int:
        now = self._clock()
        previous = self._claim(user_id, now)
        if previous is None:
            logger.debug("Session snapshot for %s throttled", user_id)
            return 0

        base = {
            "type": SnapshotType.SESSION.value,
            "session_id": session_id,
            "total_exercises": profile.performance.total_exercises_completed,
            "total_learning_time": profile.engagement.total_learning_time,
        }
        snapshots = {
            snapshot.metric_id: snapshot
            for snapshot in self._standard_snapshots(user_id, profile, now, base)
        }
        session_specific = {
            "mastery.mastered_skills_count": (
                profile.mastery.mastered_skills_count,
                {"skills": list(profile.mastery.mastered_skills)},
            ),
            "progression.current_level": (
                profile.progression.current_level,
                {"progress_in_level": profile.progression.progress_in_current_level},
            ),
            "engagement.total_learning_time": (profile.engagement.total_learning_time, {}),
        }
        for metric_id, (value, extra) in session_specific.items():
            snapshots[metric_id] = MetricSnapshot(
                user_id=user_id,
                metric_id=metric_id,
                timestamp=now,
                value=value,
                metadata={**base, **extra},
            )
        return self._write_batch(user_id, list(snapshots.values()), previous, now)

    def record_custom(
        self,
        user_id: str,
        metric_id: str,
        value: Any,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        snapshot = MetricSnapshot(
            user_id=user_id,
            metric_id=metric_id,
            timestamp=self._clock(),
            value=value,
            metadata={"type": SnapshotType.CUSTOM.value, **(metadata or {})},
        )
        try:
            self._append(snapshot, self.write_timeout)
        except FuturesTimeoutError:
            logger.warning("Timed out recording custom snapshot %s for %s", metric_id, user_id)
            return False
        except Exception:
            logger.exception("Failed to record custom snapshot %s for %s", metric_id, user_id)
            return False
        logger.info("Custom snapshot recorded for metric %s of user %s", metric_id, user_id)
        return True

    def close(self) -> None:
        self._executor.shutdown(wait=True)

    # ----- helpers -----------------------------------------------------
    def _standard_snapshots(
        self, user_id: str, profile: UserMetricsProfile, now: datetime, metadata: Dict[str, Any]
    ) -> List[MetricSnapshot]:
        snapshots = []
        for path in self.standard_metrics:
            value = extract_metric_value(profile, path)
            if value is None:
                continue
            snapshots.append(
                MetricSnapshot(user_id=user_id, metric_id=path, timestamp=now, value=value, metadata=dict(metadata))
            )
        return snapshots

    @staticmethod
    def _exercise_snapshots(
        user_id: str, outcome: ExerciseOutcome, now: datetime, metadata: Dict[str, Any]
    ) -> List[MetricSnapshot]:
        snapshots = [
            MetricSnapshot(
                user_id=user_id,
                metric_id=f"skill.{skill}.score",
                timestamp=now,
                value=score,
                metadata={**metadata, "skill": skill},
            )
            for skill, score in outcome.skill_scores.items()
        ]
        exercise_type = outcome.exercise_type or "unknown"
        snapshots.append(
            MetricSnapshot(
                user_id=user_id,
                metric_id=f"exercise_type.{exercise_type}.time_spent",
                timestamp=now,
                value=outcome.time_spent_seconds,
                metadata={**metadata, "exercise_type": exercise_type},
            )
        )
        return snapshots

    def _write_batch(
        self, user_id: str, snapshots: List[MetricSnapshot], previous: datetime, now: datetime
    ) -> int:
        deadline = time.monotonic() + self.write_timeout
        written = 0
        try:
            for snapshot in snapshots:
                self._append(snapshot, deadline - time.monotonic())
                written += 1
        except FuturesTimeoutError:
            # Writes already handed to the store may still land, so the gate stays claimed.
            logger.warning(
                "Timed out writing metric snapshots for %s after %s of %s", user_id, written, len(snapshots)
            )
            return written
        except Exception:
            logger.exception("Failed to write metric snapshots for %s after %s of %s", user_id, written, len(snapshots))
            if written == 0:
                self._release(user_id, previous, now)
            return written
        logger.info("Recorded %s metric snapshots for %s", written, user_id)
        return written

    def _append(self, snapshot: MetricSnapshot, timeout: float) -> None:
        if timeout <= 0:
            raise FuturesTimeoutError()
        self._executor.submit(self.history_store.append, snapshot).result(timeout=timeout)
