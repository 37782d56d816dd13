"""Coordinates the analytics engines behind a per-user serialized update path."""

from __future__ import annotations

import logging
import math
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, Iterator, List, Optional

from engines.caching import ProfileCache
from engines.engagement import EngagementTracker
from engines.mastery import MasteryTracker
from engines.performance import PerformanceTracker
from engines.progression import ProgressionTracker
from engines.recommendation import ImportanceSource, RecommendationEngine
from engines.snapshots import SnapshotThrottler
from engines.stores import HistoryStore, ProfileStore
from engines.transformers import (
    enrich_with_calculated_metrics,
    extract_metric,
    format_metric_name,
    identify_strengths_and_weaknesses,
    normalize_outcome,
    to_summary,
)
from env_validation import AnalyticsConfig
from schemas import (
    ConceptRecommendation,
    ExerciseOutcome,
    HistoryFilter,
    LearningMetric,
    MetricSnapshot,
    OutcomeValidationError,
    ProfileSummary,
    SessionRecord,
    StrengthsAndWeaknesses,
    UserMetricsProfile,
    utc_now,
)

logger = logging.getLogger(__name__)


class ConcurrencyViolation(RuntimeError):
    """Two updates for the same learner overlapped; indicates a programming error."""


@dataclass
class _LockEntry:
    lock: threading.Lock = field(default_factory=threading.Lock)
    refs: int = 0


class _UserLockRegistry:
    """Hands out one lock per user and forgets it once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: Dict[str, _LockEntry] = {}

    @contextmanager
    def hold(self, user_id: str) -> Iterator[None]:
        with self._guard:
            entry = self._entries.get(user_id)
            if entry is None:
                entry = self._entries[user_id] = _LockEntry()
            entry.refs += 1
        entry.lock.acquire()
        try:
            yield
        finally:
            entry.lock.release()
            with self._guard:
                entry.refs -= 1
                if entry.refs == 0:
                    del self._entries[user_id]

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)


class AnalyticsOrchestrator:
    """Entry point for recording learner activity and querying derived metrics.

    Every mutation of a learner's profile runs under that learner's lock:
    load from the cache, fold the event through the trackers, record
    snapshots, then save. Updates for different learners proceed in parallel.
    Reads take the same lock, so a query never races an update. Write
    failures are absorbed by the cache and the throttler, so a successful
    return means the in-memory profile was updated. A profile store that
    cannot be read raises :class:`ProfileUnavailableError` and leaves the
    stored profile untouched.
    """

    def __init__(
        self,
        cache: ProfileCache,
        history_store: HistoryStore,
        performance: Optional[PerformanceTracker] = None,
        mastery: Optional[MasteryTracker] = None,
        engagement: Optional[EngagementTracker] = None,
        progression: Optional[ProgressionTracker] = None,
        recommender: Optional[RecommendationEngine] = None,
        snapshots: Optional[SnapshotThrottler] = None,
        auto_snapshots: bool = True,
        history_retention_days: int = 365,
        max_snapshots_per_metric: Optional[int] = 100,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.cache = cache
        self.history_store = history_store
        self.performance = performance or PerformanceTracker()
        self.mastery = mastery or MasteryTracker()
        self.engagement = engagement or EngagementTracker()
        self.progression = progression or ProgressionTracker()
        self.recommender = recommender or RecommendationEngine(clock=clock)
        self.snapshots = snapshots or SnapshotThrottler(history_store, clock=clock)
        self.auto_snapshots = auto_snapshots
        self.history_retention_days = history_retention_days
        self.max_snapshots_per_metric = max_snapshots_per_metric
        self._clock = clock
        self._locks = _UserLockRegistry()
        self._in_flight: Dict[str, int] = {}
        self._in_flight_guard = threading.Lock()

    @classmethod
    def from_config(
        cls,
        config: AnalyticsConfig,
        profile_store: ProfileStore,
        history_store: HistoryStore,
        importance: ImportanceSource = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> "AnalyticsOrchestrator":
        cache = ProfileCache(
            profile_store,
            ttl_seconds=config.cache_ttl_seconds,
            max_entries=config.cache_max_entries,
            persist_timeout=config.persist_timeout_seconds,
        )
        return cls(
            cache,
            history_store,
            performance=PerformanceTracker(config.success_threshold, config.rolling_window),
            mastery=MasteryTracker(config.mastered_threshold, config.weakness_threshold),
            engagement=EngagementTracker(config.rolling_window),
            recommender=RecommendationEngine(importance=importance, clock=clock),
            snapshots=SnapshotThrottler(
                history_store,
                min_interval=timedelta(seconds=config.snapshot_interval_seconds),
                write_timeout=config.persist_timeout_seconds,
                clock=clock,
            ),
            auto_snapshots=config.auto_snapshots,
            history_retention_days=config.history_retention_days,
            max_snapshots_per_metric=config.max_snapshots_per_metric,
            clock=clock,
        )

    # ----- updates -----------------------------------------------------
    def ingest(self, user_id: str, outcome: ExerciseOutcome) -> ProfileSummary:
        """Fold one exercise outcome into the learner's profile.

        Raises :class:`OutcomeValidationError` before touching any state when
        the user id is empty or the outcome carries unusable values.
        """

        self._require_user(user_id)
        outcome.validate_for_ingest()
        outcome = normalize_outcome(outcome)

        with self._serialized(user_id):
            profile = self._load(user_id)
            profile.performance = self.performance.update(profile.performance, outcome)
            profile.mastery = self.mastery.update(profile.mastery, outcome)
            profile.last_updated = self._clock()
            if self.auto_snapshots:
                self.snapshots.try_record(user_id, profile, outcome)
            self.cache.save(profile)

        logger.debug("Ingested exercise %s for user %s", outcome.exercise_id, user_id)
        return to_summary(profile)

    def record_session(self, user_id: str, session: SessionRecord) -> ProfileSummary:
        self._require_user(user_id)
        if not session.session_id or not session.session_id.strip():
            raise OutcomeValidationError("session_id required")
        if session.ended_at is not None and session.ended_at < session.started_at:
            raise OutcomeValidationError("session cannot end before it starts")

        with self._serialized(user_id):
            profile = self._load(user_id)
            profile.engagement = self.engagement.record_session(profile.engagement, session)
            profile.last_updated = self._clock()
            if self.auto_snapshots:
                self.snapshots.record_session(user_id, session.session_id, profile)
            self.cache.save(profile)

        logger.info("Recorded session %s for user %s", session.session_id, user_id)
        return to_summary(profile)

    def update_progression(
        self,
        user_id: str,
        level: Optional[str] = None,
        progress: Optional[float] = None,
    ) -> ProfileSummary:
        """Move the learner to ``level`` and/or set progress within the current level."""

        self._require_user(user_id)
        if level is None and progress is None:
            raise OutcomeValidationError("level or progress required")
        if level is not None and not level.strip():
            raise OutcomeValidationError("level must be non-empty")
        if progress is not None and not math.isfinite(progress):
            raise OutcomeValidationError("progress must be a finite number")

        with self._serialized(user_id):
            profile = self._load(user_id)
            now = self._clock()
            if level is not None:
                profile.progression = self.progression.set_level(
                    profile.progression,
                    level,
                    progress=progress if progress is not None else 0.0,
                    at=now,
                    started_at=profile.created_at,
                )
            else:
                profile.progression = self.progression.update_progress(profile.progression, progress)
            profile.last_updated = now
            self.cache.save(profile)

        return to_summary(profile)

    def create_custom_metric(
        self,
        user_id: str,
        metric_id: str,
        value,
        name: Optional[str] = None,
        category: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> LearningMetric:
        self._require_user(user_id)
        if not metric_id or not metric_id.strip():
            raise OutcomeValidationError("metric_id required")

        with self._serialized(user_id):
            profile = self._load(user_id)
            now = self._clock()
            metric = LearningMetric(
                id=metric_id,
                name=name or format_metric_name(metric_id),
                value=value,
                updated_at=now,
                category=category,
                metadata=dict(metadata or {}),
            )
            profile.custom_metrics[metric_id] = metric
            profile.last_updated = now
            self.snapshots.record_custom(user_id, metric_id, value, {"action": "create", **metric.metadata})
            self.cache.save(profile)

        logger.info("Created custom metric %s for user %s", metric_id, user_id)
        return metric

    def update_custom_metric(
        self, user_id: str, metric_id: str, value, metadata: Optional[dict] = None
    ) -> LearningMetric:
        """Replace the value of an existing custom metric; ``KeyError`` when unknown."""

        self._require_user(user_id)
        with self._serialized(user_id):
            profile = self._load(user_id)
            existing = profile.custom_metrics.get(metric_id)
            if existing is None:
                raise KeyError(metric_id)
            now = self._clock()
            metric = existing.model_copy(
                update={
                    "value": value,
                    "updated_at": now,
                    "metadata": {**existing.metadata, **(metadata or {})},
                }
            )
            profile.custom_metrics[metric_id] = metric
            profile.last_updated = now
            self.snapshots.record_custom(user_id, metric_id, value, {"action": "update", **(metadata or {})})
            self.cache.save(profile)

        return metric

    # ----- queries -----------------------------------------------------
    def get_profile(self, user_id: str) -> UserMetricsProfile:
        self._require_user(user_id)
        with self._serialized(user_id):
            return self._load(user_id)

    def get_summary(self, user_id: str) -> ProfileSummary:
        return to_summary(self.get_profile(user_id))

    def get_user_metrics(
        self, user_id: str, metric_ids: Optional[Iterable[str]] = None
    ) -> Dict[str, LearningMetric]:
        """Resolve metrics by id; every custom and standard metric when ``metric_ids`` is None.

        Unknown ids are left out of the result.
        """

        profile = enrich_with_calculated_metrics(self.get_profile(user_id))
        if metric_ids is None:
            return {**profile.standard_metrics, **profile.custom_metrics}
        resolved: Dict[str, LearningMetric] = {}
        for metric_id in metric_ids:
            metric = extract_metric(profile, metric_id)
            if metric is not None:
                resolved[metric_id] = metric
        return resolved

    def recommend(self, user_id: str, count: int = 3) -> List[ConceptRecommendation]:
        return self.recommender.recommend_next_concepts(self.get_profile(user_id), count=count)

    def identify_strengths_and_weaknesses(self, user_id: str) -> StrengthsAndWeaknesses:
        return identify_strengths_and_weaknesses(self.get_profile(user_id))

    def get_metric_history(
        self,
        user_id: str,
        metric_id: str,
        history_filter: Optional[HistoryFilter] = None,
    ) -> List[MetricSnapshot]:
        self._require_user(user_id)
        return self.history_store.query(user_id, metric_id, history_filter)

    # ----- maintenance -------------------------------------------------
    def prune_history(self, now: Optional[datetime] = None) -> int:
        """Drop snapshots past the retention window and cap each metric series."""

        now = now or self._clock()
        older_than = now - timedelta(days=self.history_retention_days)
        removed = self.history_store.prune(
            older_than=older_than, max_per_metric=self.max_snapshots_per_metric
        )
        logger.info("Pruned %s metric snapshots older than %s", removed, older_than.isoformat())
        return removed

    def flush_pending(self) -> int:
        return self.cache.flush_pending()

    def close(self) -> int:
        """Flush pending profiles and stop the store workers; returns how many were flushed."""

        flushed = self.cache.flush_pending()
        self.cache.close()
        self.snapshots.close()
        return flushed

    # ----- internals ---------------------------------------------------
    @staticmethod
    def _require_user(user_id: str) -> None:
        if not user_id or not user_id.strip():
            raise OutcomeValidationError("user_id required")

    def _new_profile(self, user_id: str) -> UserMetricsProfile:
        now = self._clock()
        return UserMetricsProfile(user_id=user_id, created_at=now, last_updated=now)

    def _load(self, user_id: str) -> UserMetricsProfile:
        return self.cache.get_or_create(user_id, lambda: self._new_profile(user_id))

    @contextmanager
    def _serialized(self, user_id: str) -> Iterator[None]:
        ident = threading.get_ident()
        with self._in_flight_guard:
            if self._in_flight.get(user_id) == ident:
                raise ConcurrencyViolation(f"re-entrant update for user {user_id}")
        with self._locks.hold(user_id):
            with self._in_flight_guard:
                owner = self._in_flight.get(user_id)
                if owner is not None:
                    raise ConcurrencyViolation(
                        f"update for user {user_id} already in flight on thread {owner}"
                    )
                self._in_flight[user_id] = ident
            try:
                yield
            finally:
                with self._in_flight_guard:
                    self._in_flight.pop(user_id, None)
