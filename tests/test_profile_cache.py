import threading
import unittest

from db import PersistenceError
from engines.caching import ProfileCache, ProfileUnavailableError
from engines.stores import InMemoryProfileStore
from schemas import UserMetricsProfile


class _Clock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class _FlakyStore(InMemoryProfileStore):
    def __init__(self):
        super().__init__()
        self.fail_saves = False
        self.fail_loads = False
        self.save_calls = 0

    def save(self, profile):
        self.save_calls += 1
        if self.fail_saves:
            raise RuntimeError("store unavailable")
        super().save(profile)

    def load(self, user_id):
        if self.fail_loads:
            raise RuntimeError("store unavailable")
        return super().load(user_id)


class _StallingLoadStore(InMemoryProfileStore):
    """Answers the first load with what it saw, but only after ``release`` is set."""

    def __init__(self):
        super().__init__()
        self.loading = threading.Event()
        self.release = threading.Event()
        self._stalled = False

    def load(self, user_id):
        seen = super().load(user_id)
        if not self._stalled:
            self._stalled = True
            self.loading.set()
            self.release.wait(5)
        return seen


class _BlockingStore(InMemoryProfileStore):
    def __init__(self):
        super().__init__()
        self.release = threading.Event()

    def save(self, profile):
        self.release.wait(5)
        super().save(profile)


def _factory(user_id):
    return lambda: UserMetricsProfile(user_id=user_id)


class ProfileCacheTests(unittest.TestCase):
    def setUp(self):
        self.clock = _Clock()
        self.store = _FlakyStore()
        self.cache = ProfileCache(self.store, ttl_seconds=60, max_entries=3, clock=self.clock)

    def tearDown(self):
        self.cache.close()

    def test_factory_profile_is_created_and_stored(self):
        profile = self.cache.get_or_create("u1", _factory("u1"))

        self.assertEqual(profile.user_id, "u1")
        self.assertIsNotNone(self.store.load("u1"))
        self.assertIn("u1", self.cache)

    def test_hit_returns_independent_copy(self):
        first = self.cache.get_or_create("u1", _factory("u1"))
        first.performance.total_exercises_completed = 99

        second = self.cache.get_or_create("u1", _factory("u1"))
        self.assertEqual(second.performance.total_exercises_completed, 0)
        self.assertEqual(self.cache.hits, 1)

    def test_expired_entry_reloads_from_store(self):
        profile = self.cache.get_or_create("u1", _factory("u1"))
        profile.progression.current_level = "B1"
        self.cache.save(profile)

        self.clock.now += 61
        self.assertNotIn("u1", self.cache)
        reloaded = self.cache.get_or_create("u1", _factory("u1"))
        self.assertEqual(reloaded.progression.current_level, "B1")

    def test_lru_eviction_bounds_size(self):
        for user_id in ("a", "b", "c"):
            self.cache.get_or_create(user_id, _factory(user_id))
        self.cache.get_or_create("a", _factory("a"))
        self.cache.get_or_create("d", _factory("d"))

        self.assertEqual(len(self.cache), 3)
        self.assertNotIn("b", self.cache)
        self.assertIn("a", self.cache)
        self.assertEqual(self.cache.evictions, 1)

    def test_failed_save_keeps_profile_pending_until_flush(self):
        profile = self.cache.get_or_create("u1", _factory("u1"))
        profile.performance.total_exercises_completed = 5
        self.store.fail_saves = True

        with self.assertLogs("engines.caching", level="ERROR"):
            self.assertFalse(self.cache.save(profile))
        self.assertEqual(self.cache.pending_user_ids(), ["u1"])
        cached = self.cache.get_or_create("u1", _factory("u1"))
        self.assertEqual(cached.performance.total_exercises_completed, 5)

        self.store.fail_saves = False
        self.assertEqual(self.cache.flush_pending(), 1)
        self.assertEqual(self.cache.pending_user_ids(), [])
        self.assertEqual(self.store.load("u1").performance.total_exercises_completed, 5)

    def test_pending_profile_survives_cache_expiry(self):
        profile = self.cache.get_or_create("u1", _factory("u1"))
        profile.performance.total_exercises_completed = 7
        self.store.fail_saves = True
        with self.assertLogs("engines.caching", level="ERROR"):
            self.cache.save(profile)

        self.cache.invalidate("u1")
        reloaded = self.cache.get_or_create("u1", _factory("u1"))
        self.assertEqual(reloaded.performance.total_exercises_completed, 7)

    def test_load_failure_keeps_stored_profile(self):
        stored = UserMetricsProfile(user_id="u1")
        stored.performance.total_exercises_completed = 50
        self.store.save(stored)
        self.store.fail_loads = True

        with self.assertLogs("engines.caching", level="ERROR"):
            with self.assertRaises(ProfileUnavailableError):
                self.cache.get_or_create("u1", _factory("u1"))
        self.assertNotIn("u1", self.cache)

        self.store.fail_loads = False
        self.assertEqual(self.store.load("u1").performance.total_exercises_completed, 50)
        reloaded = self.cache.get_or_create("u1", _factory("u1"))
        self.assertEqual(reloaded.performance.total_exercises_completed, 50)

    def test_unavailable_store_is_a_persistence_error(self):
        self.assertTrue(issubclass(ProfileUnavailableError, PersistenceError))

    def test_slow_load_times_out_without_creating_profile(self):
        store = _StallingLoadStore()
        cache = ProfileCache(store, persist_timeout=0.05)
        try:
            with self.assertLogs("engines.caching", level="WARNING"):
                with self.assertRaises(ProfileUnavailableError):
                    cache.get_or_create("slow", _factory("slow"))
            self.assertNotIn("slow", cache)
        finally:
            store.release.set()
            cache.close()
        self.assertIsNone(store.load("slow"))

    def test_miss_never_overwrites_a_concurrent_save(self):
        store = _StallingLoadStore()
        cache = ProfileCache(store)
        results = []
        reader = threading.Thread(target=lambda: results.append(cache.get_or_create("u1", _factory("u1"))))
        try:
            reader.start()
            self.assertTrue(store.loading.wait(2))

            newer = UserMetricsProfile(user_id="u1")
            newer.performance.total_exercises_completed = 3
            self.assertTrue(cache.save(newer))

            store.release.set()
            reader.join(5)
        finally:
            store.release.set()
            cache.close()

        self.assertEqual(results[0].performance.total_exercises_completed, 3)
        self.assertEqual(store.load("u1").performance.total_exercises_completed, 3)
        self.assertEqual(cache.get_or_create("u1", _factory("u1")).performance.total_exercises_completed, 3)

    def test_slow_store_times_out_without_blocking(self):
        store = _BlockingStore()
        cache = ProfileCache(store, persist_timeout=0.05)
        try:
            with self.assertLogs("engines.caching", level="WARNING"):
                saved = cache.save(UserMetricsProfile(user_id="slow"))
            self.assertFalse(saved)
            self.assertEqual(cache.pending_user_ids(), ["slow"])
            self.assertIn("slow", cache)
        finally:
            store.release.set()
            cache.close()

    def test_invalid_size_bound_rejected(self):
        with self.assertRaises(ValueError):
            ProfileCache(InMemoryProfileStore(), max_entries=0)


if __name__ == "__main__":
    unittest.main()
