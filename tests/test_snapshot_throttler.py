import threading
import time
import unittest
from datetime import datetime, timedelta, timezone

from engines.snapshots import DEFAULT_STANDARD_METRICS, SnapshotThrottler, SnapshotType
from engines.stores import InMemoryHistoryStore
from schemas import ExerciseOutcome, MasteryMetrics, UserMetricsProfile


class _Clock:
    def __init__(self, start):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class _FailingHistoryStore(InMemoryHistoryStore):
    def append(self, snapshot):
        raise RuntimeError("history store offline")


class _SlowHistoryStore(InMemoryHistoryStore):
    def __init__(self):
        super().__init__()
        self.release = threading.Event()

    def append(self, snapshot):
        self.release.wait(2)
        super().append(snapshot)


class SnapshotThrottlerTests(unittest.TestCase):
    def setUp(self):
        self.clock = _Clock(datetime(2024, 1, 10, 8, 0, tzinfo=timezone.utc))
        self.store = InMemoryHistoryStore()
        self.throttler = SnapshotThrottler(
            self.store, min_interval=timedelta(minutes=5), clock=self.clock
        )
        self.profile = UserMetricsProfile(
            user_id="u1",
            mastery=MasteryMetrics(
                skill_mastery_levels={"vocab": 0.9},
                mastered_skills=["vocab"],
                mastered_skills_count=1,
            ),
        )

    def test_second_call_within_interval_is_noop(self):
        first = self.throttler.try_record("u1", self.profile)
        self.assertEqual(first, len(DEFAULT_STANDARD_METRICS))
        count_after_first = self.store.count("u1")

        self.clock.advance(seconds=10)
        self.assertEqual(self.throttler.try_record("u1", self.profile), 0)
        self.assertEqual(self.store.count("u1"), count_after_first)

        self.clock.advance(minutes=6)
        self.assertGreater(self.throttler.try_record("u1", self.profile), 0)
        self.assertEqual(self.store.count("u1"), 2 * count_after_first)

    def test_users_are_throttled_independently(self):
        self.assertGreater(self.throttler.try_record("u1", self.profile), 0)
        other = self.profile.model_copy(update={"user_id": "u2"})
        self.assertGreater(self.throttler.try_record("u2", other), 0)

    def test_exercise_snapshots_include_skill_and_type_metrics(self):
        outcome = ExerciseOutcome(
            exercise_id="drag-1",
            exercise_type="drag_drop",
            score=0.7,
            time_spent_seconds=42,
            skill_scores={"vocab": 0.7},
        )
        self.throttler.try_record("u1", self.profile, outcome)

        skill = self.store.query("u1", "skill.vocab.score")
        timing = self.store.query("u1", "exercise_type.drag_drop.time_spent")
        self.assertEqual([s.value for s in skill], [0.7])
        self.assertEqual([s.value for s in timing], [42.0])
        self.assertEqual(skill[0].metadata["type"], SnapshotType.EXERCISE.value)
        self.assertEqual(skill[0].metadata["exercise_id"], "drag-1")

    def test_custom_snapshots_bypass_throttle(self):
        self.throttler.try_record("u1", self.profile)
        self.assertTrue(self.throttler.record_custom("u1", "focus", 3))
        self.assertTrue(self.throttler.record_custom("u1", "focus", 4))

        values = [s.value for s in self.store.query("u1", "focus")]
        self.assertEqual(values, [3, 4])
        self.assertFalse(self.throttler.can_record("u1"))

    def test_session_snapshots_share_the_gate(self):
        written = self.throttler.record_session("u1", "s-1", self.profile)
        self.assertGreater(written, 0)
        mastered = self.store.query("u1", "mastery.mastered_skills_count")
        self.assertEqual(len(mastered), 1)
        self.assertEqual(mastered[0].metadata["skills"], ["vocab"])
        self.assertEqual(mastered[0].metadata["session_id"], "s-1")

        self.clock.advance(minutes=1)
        self.assertEqual(self.throttler.try_record("u1", self.profile), 0)

    def test_failed_write_is_swallowed_and_gate_reopens(self):
        throttler = SnapshotThrottler(
            _FailingHistoryStore(), min_interval=timedelta(minutes=5), clock=self.clock
        )
        with self.assertLogs("engines.snapshots", level="ERROR"):
            self.assertEqual(throttler.try_record("u1", self.profile), 0)
        self.assertTrue(throttler.can_record("u1"))
        self.assertIsNone(throttler.last_snapshot_time("u1"))

        with self.assertLogs("engines.snapshots", level="ERROR"):
            self.assertFalse(throttler.record_custom("u1", "focus", 1))

    def test_slow_history_store_is_abandoned_after_timeout(self):
        store = _SlowHistoryStore()
        throttler = SnapshotThrottler(
            store, min_interval=timedelta(minutes=5), clock=self.clock, write_timeout=0.05
        )
        try:
            started = time.monotonic()
            with self.assertLogs("engines.snapshots", level="WARNING"):
                self.assertEqual(throttler.try_record("u1", self.profile), 0)
            self.assertLess(time.monotonic() - started, 0.3)
            # The in-flight write may still land, so the gate stays claimed.
            self.assertFalse(throttler.can_record("u1"))

            with self.assertLogs("engines.snapshots", level="WARNING"):
                self.assertFalse(throttler.record_custom("u1", "focus", 1))
        finally:
            store.release.set()
            throttler.close()

    def test_last_snapshot_time_tracks_clock(self):
        self.throttler.try_record("u1", self.profile)
        self.assertEqual(self.throttler.last_snapshot_time("u1"), self.clock.now)


if __name__ == "__main__":
    unittest.main()
