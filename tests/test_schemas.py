import math
import unittest
from datetime import datetime, timedelta, timezone

from pydantic import ValidationError

from schemas import (
    ExerciseOutcome,
    HistoryFilter,
    MetricSnapshot,
    OutcomeValidationError,
    SessionRecord,
    UserMetricsProfile,
)


class SchemaTests(unittest.TestCase):
    def test_naive_datetimes_are_treated_as_utc(self):
        outcome = ExerciseOutcome(exercise_id="q", score=0.5, timestamp=datetime(2024, 1, 1, 12, 0))
        self.assertEqual(outcome.timestamp.tzinfo, timezone.utc)

        offset = timezone(timedelta(hours=2))
        snapshot = MetricSnapshot(
            user_id="u", metric_id="m", timestamp=datetime(2024, 1, 1, 14, 0, tzinfo=offset)
        )
        self.assertEqual(snapshot.timestamp, datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc))

    def test_outcome_defaults(self):
        outcome = ExerciseOutcome(exercise_id="q", score=0.5)
        self.assertEqual(outcome.attempts, 1)
        self.assertEqual(outcome.time_spent_seconds, 0.0)
        self.assertIsNone(outcome.exercise_type)

    def test_validate_for_ingest(self):
        ExerciseOutcome(exercise_id="q", score=0.5).validate_for_ingest()
        with self.assertRaises(OutcomeValidationError):
            ExerciseOutcome(exercise_id="q", score=math.nan).validate_for_ingest()
        with self.assertRaises(OutcomeValidationError):
            ExerciseOutcome(exercise_id="q", score=0.5, skill_scores={"": 0.5}).validate_for_ingest()

    def test_outcome_rejects_zero_attempts(self):
        with self.assertRaises(ValidationError):
            ExerciseOutcome(exercise_id="q", score=0.5, attempts=0)

    def test_snapshot_is_frozen(self):
        snapshot = MetricSnapshot(user_id="u", metric_id="m", value=1)
        with self.assertRaises(ValidationError):
            snapshot.value = 2

    def test_session_duration_floors_minutes(self):
        start = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)
        session = SessionRecord(session_id="s", started_at=start, ended_at=start + timedelta(seconds=179))
        self.assertEqual(session.duration_minutes, 2)
        self.assertEqual(SessionRecord(session_id="s", started_at=start).duration_minutes, 0)

    def test_history_filter_rejects_negative_paging(self):
        with self.assertRaises(ValidationError):
            HistoryFilter(limit=-1)

    def test_profile_json_round_trip(self):
        profile = UserMetricsProfile(user_id="u1")
        profile.mastery.skill_mastery_levels["vocab"] = 0.4
        restored = UserMetricsProfile.model_validate_json(profile.model_dump_json())
        self.assertEqual(restored, profile)


if __name__ == "__main__":
    unittest.main()
