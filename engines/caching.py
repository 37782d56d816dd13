"""TTL + LRU cache of learner metrics profiles over a pluggable profile store."""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Dict, List, Optional

from db import PersistenceError
from engines.stores import ProfileStore
from schemas import UserMetricsProfile

logger = logging.getLogger(__name__)

_WRITE_LOCK_STRIPES = 64


class ProfileUnavailableError(PersistenceError):
    """The profile store could not say whether a profile exists."""


@dataclass
class _CacheEntry:
    profile: UserMetricsProfile
    stored_at: float


class ProfileCache:
    """Thread-safe profile cache with time-based expiry and a size bound.

    Reads return deep copies so callers never mutate cached state in place.
    Store calls run on a small worker pool and are abandoned after
    ``persist_timeout`` seconds; a profile whose write failed or timed out is
    kept in a pending set, stays authoritative for this process, and is
    retried by :meth:`flush_pending`.
    """

    def __init__(
        self,
        store: ProfileStore,
        ttl_seconds: float = 60.0,
        max_entries: int = 10_000,
        persist_timeout: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
        max_workers: int = 4,
    ):
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self.store = store
        self.ttl_seconds = float(ttl_seconds)
        self.max_entries = int(max_entries)
        self.persist_timeout = float(persist_timeout)
        self._clock = clock
        self._entries: "OrderedDict[str, _CacheEntry]" = OrderedDict()
        self._pending: Dict[str, UserMetricsProfile] = {}
        self._versions: Dict[str, int] = {}
        self._lock = Lock()
        self._write_locks = [Lock() for _ in range(_WRITE_LOCK_STRIPES)]
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="profile-store")
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    # ----- public API --------------------------------------------------
    def get_or_create(
        self, user_id: str, factory: Callable[[], UserMetricsProfile]
    ) -> UserMetricsProfile:
        """Return the cached profile, else the stored one, else ``factory()``.

        Raises :class:`ProfileUnavailableError` when the store cannot answer,
        so a stored profile is never replaced by a default one. A miss only
        inserts: if a save for the same user lands while the store is being
        read, the lookup starts over and returns the newer entry.
        """

        while True:
            with self._lock:
                cached = self._get_fresh(user_id)
                if cached is not None:
                    self.hits += 1
                    return cached.model_copy(deep=True)
                self.misses += 1
                pending = self._pending.get(user_id)
                version = self._versions.get(user_id, 0)

            profile = pending if pending is not None else self._load(user_id)
            created = profile is None
            if created:
                profile = factory()

            with self._lock:
                if self._versions.get(user_id, 0) != version:
                    continue
                self._put(profile)
                if created:
                    version += 1
                    self._versions[user_id] = version
            break

        if created:
            logger.info("Created metrics profile for user %s", user_id)
            self._persist(profile, version)
        return profile.model_copy(deep=True)

    def save(self, profile: UserMetricsProfile) -> bool:
        """Write ``profile`` through to the cache and the store.

        Returns True when the store acknowledged the write within the
        timeout. The cache is updated either way.
        """

        snapshot = profile.model_copy(deep=True)
        with self._lock:
            self._put(snapshot)
            version = self._versions.get(snapshot.user_id, 0) + 1
            self._versions[snapshot.user_id] = version
        return self._persist(snapshot, version)

    def invalidate(self, user_id: str) -> None:
        with self._lock:
            self._entries.pop(user_id, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def pending_user_ids(self) -> List[str]:
        with self._lock:
            return list(self._pending)

    def flush_pending(self) -> int:
        """Retry store writes that previously failed; returns how many succeeded."""

        with self._lock:
            queued = [
                (profile, self._versions.get(user_id, 0))
                for user_id, profile in self._pending.items()
            ]
        flushed = sum(1 for profile, version in queued if self._persist(profile, version))
        if queued:
            logger.info("Flushed %s of %s pending metrics profiles", flushed, len(queued))
        return flushed

    def close(self) -> None:
        self._executor.shutdown(wait=True)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, user_id: object) -> bool:
        with self._lock:
            return isinstance(user_id, str) and self._get_fresh(user_id) is not None

    # ----- internals ---------------------------------------------------
    def _get_fresh(self, user_id: str) -> Optional[UserMetricsProfile]:
        entry = self._entries.get(user_id)
        if entry is None:
            return None
        if self._clock() - entry.stored_at >= self.ttl_seconds:
            del self._entries[user_id]
            return None
        self._entries.move_to_end(user_id)
        return entry.profile

    def _put(self, profile: UserMetricsProfile) -> None:
        self._entries[profile.user_id] = _CacheEntry(profile, self._clock())
        self._entries.move_to_end(profile.user_id)
        while len(self._entries) > self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            self.evictions += 1
            logger.debug("Evicted metrics profile %s from cache", evicted)

    def _load(self, user_id: str) -> Optional[UserMetricsProfile]:
        future = self._executor.submit(self.store.load, user_id)
        try:
            return future.result(timeout=self.persist_timeout)
        except FuturesTimeoutError as exc:
            logger.warning("Timed out loading metrics profile for %s", user_id)
            raise ProfileUnavailableError(f"profile store timed out for {user_id}") from exc
        except Exception as exc:
            logger.exception("Failed to load metrics profile for %s", user_id)
            raise ProfileUnavailableError(f"profile store failed for {user_id}") from exc

    def _write(self, profile: UserMetricsProfile, version: int) -> bool:
        stripe = self._write_locks[hash(profile.user_id) % _WRITE_LOCK_STRIPES]
        with stripe:
            with self._lock:
                if self._versions.get(profile.user_id, 0) != version:
                    # A newer save for this user superseded this one.
                    return False
            self.store.save(profile)
        with self._lock:
            if self._versions.get(profile.user_id, 0) == version:
                self._pending.pop(profile.user_id, None)
        return True

    def _persist(self, profile: UserMetricsProfile, version: int) -> bool:
        future = self._executor.submit(self._write, profile, version)
        try:
            return future.result(timeout=self.persist_timeout)
        except FuturesTimeoutError:
            logger.warning(
                "Timed out persisting metrics profile for %s; keeping it pending", profile.user_id
            )
        except Exception:
            logger.exception(
                "Failed to persist metrics profile for %s; keeping it pending", profile.user_id
            )
        with self._lock:
            if self._versions.get(profile.user_id, 0) == version:
                self._pending[profile.user_id] = profile
        return False
