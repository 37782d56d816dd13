"""Profile and metric-history store contracts with in-memory and SQLite backends."""

from __future__ import annotations

import threading
from collections import defaultdict
from datetime import datetime
from typing import Dict, List, Optional, Protocol

import db
from schemas import HistoryFilter, MetricSnapshot, UserMetricsProfile


class ProfileStore(Protocol):
    def load(self, user_id: str) -> Optional[UserMetricsProfile]: ...

    def save(self, profile: UserMetricsProfile) -> None: ...

    def delete(self, user_id: str) -> bool: ...


class HistoryStore(Protocol):
    def append(self, snapshot: MetricSnapshot) -> None: ...

    def query(
        self,
        user_id: str,
        metric_id: str,
        history_filter: Optional[HistoryFilter] = None,
    ) -> List[MetricSnapshot]: ...

    def prune(self, older_than: Optional[datetime] = None, max_per_metric: Optional[int] = None) -> int: ...


def apply_history_filter(
    snapshots: List[MetricSnapshot], history_filter: Optional[HistoryFilter]
) -> List[MetricSnapshot]:
    """Sort chronologically, apply inclusive date bounds, then paginate."""

    result = sorted(snapshots, key=lambda snapshot: snapshot.timestamp)
    if history_filter is None:
        return result
    if history_filter.start_date is not None:
        result = [s for s in result if s.timestamp >= history_filter.start_date]
    if history_filter.end_date is not None:
        result = [s for s in result if s.timestamp <= history_filter.end_date]
    if history_filter.limit is not None or history_filter.offset is not None:
        offset = history_filter.offset or 0
        end = None if history_filter.limit is None else offset + history_filter.limit
        result = result[offset:end]
    return result


class InMemoryProfileStore:
    """Dictionary-backed profile store holding deep copies of saved profiles."""

    def __init__(self) -> None:
        self._profiles: Dict[str, UserMetricsProfile] = {}
        self._lock = threading.Lock()

    def load(self, user_id: str) -> Optional[UserMetricsProfile]:
        with self._lock:
            profile = self._profiles.get(user_id)
        return profile.model_copy(deep=True) if profile is not None else None

    def save(self, profile: UserMetricsProfile) -> None:
        with self._lock:
            self._profiles[profile.user_id] = profile.model_copy(deep=True)

    def delete(self, user_id: str) -> bool:
        with self._lock:
            return self._profiles.pop(user_id, None) is not None


class InMemoryHistoryStore:
    def __init__(self) -> None:
        self._entries: Dict[str, List[MetricSnapshot]] = defaultdict(list)
        self._lock = threading.Lock()

    def append(self, snapshot: MetricSnapshot) -> None:
        with self._lock:
            self._entries[snapshot.user_id].append(snapshot)

    def query(
        self,
        user_id: str,
        metric_id: str,
        history_filter: Optional[HistoryFilter] = None,
    ) -> List[MetricSnapshot]:
        with self._lock:
            matching = [s for s in self._entries.get(user_id, []) if s.metric_id == metric_id]
        return apply_history_filter(matching, history_filter)

    def prune(self, older_than: Optional[datetime] = None, max_per_metric: Optional[int] = None) -> int:
        removed = 0
        with self._lock:
            for user_id, entries in list(self._entries.items()):
                kept = entries
                if older_than is not None:
                    kept = [s for s in kept if s.timestamp >= older_than]
                if max_per_metric is not None:
                    by_metric: Dict[str, List[MetricSnapshot]] = defaultdict(list)
                    for snapshot in sorted(kept, key=lambda s: s.timestamp):
                        by_metric[snapshot.metric_id].append(snapshot)
                    survivors = set()
                    for series in by_metric.values():
                        tail = series[-max_per_metric:] if max_per_metric > 0 else []
                        survivors.update(id(s) for s in tail)
                    kept = [s for s in kept if id(s) in survivors]
                removed += len(entries) - len(kept)
                self._entries[user_id] = kept
        return removed

    def count(self, user_id: Optional[str] = None) -> int:
        with self._lock:
            if user_id is not None:
                return len(self._entries.get(user_id, []))
            return sum(len(entries) for entries in self._entries.values())


class SQLiteProfileStore:
    """Profile store delegating to the module-level helpers in :mod:`db`."""

    def load(self, user_id: str) -> Optional[UserMetricsProfile]:
        return db.load_metrics_profile(user_id)

    def save(self, profile: UserMetricsProfile) -> None:
        db.save_metrics_profile(profile)

    def delete(self, user_id: str) -> bool:
        return db.delete_metrics_profile(user_id)


class SQLiteHistoryStore:
    def append(self, snapshot: MetricSnapshot) -> None:
        db.append_metric_snapshot(snapshot)

    def query(
        self,
        user_id: str,
        metric_id: str,
        history_filter: Optional[HistoryFilter] = None,
    ) -> List[MetricSnapshot]:
        return db.query_metric_history(user_id, metric_id, history_filter)

    def prune(self, older_than: Optional[datetime] = None, max_per_metric: Optional[int] = None) -> int:
        return db.prune_metric_history(older_than=older_than, max_per_metric=max_per_metric)
