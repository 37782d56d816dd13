from datetime import datetime, timedelta, timezone

import pytest

from engines.progression import ProgressionTracker
from schemas import ProgressionMetrics

START = datetime(2024, 1, 1, tzinfo=timezone.utc)


def test_update_progress_clamps():
    tracker = ProgressionTracker()
    progression = tracker.update_progress(ProgressionMetrics(), 1.4)
    assert progression.progress_in_current_level == 1.0


def test_set_level_records_history_and_speed():
    tracker = ProgressionTracker()
    progression = tracker.set_level(
        ProgressionMetrics(), "A2", at=START + timedelta(days=15), started_at=START
    )
    progression = tracker.set_level(progression, "B1", at=START + timedelta(days=45))

    assert progression.current_level == "B1"
    assert [entry.previous_level for entry in progression.level_history] == ["A1", "A2"]
    assert [entry.duration_days for entry in progression.level_history] == pytest.approx([15.0, 30.0])
    # Two levels gained across 45 days.
    assert progression.progression_speed == pytest.approx(2 / 45 * 30)


def test_same_level_only_updates_progress():
    tracker = ProgressionTracker()
    progression = tracker.set_level(ProgressionMetrics(), "A1", progress=0.3, at=START)
    assert progression.level_history == []
    assert progression.progress_in_current_level == pytest.approx(0.3)


def test_regression_counts_as_negative_speed():
    tracker = ProgressionTracker()
    progression = ProgressionMetrics(current_level="B1")
    progression = tracker.set_level(progression, "A2", at=START + timedelta(days=10), started_at=START)
    assert progression.progression_speed < 0


def test_history_is_bounded():
    tracker = ProgressionTracker(max_history=2)
    progression = ProgressionMetrics()
    for index, level in enumerate(["A2", "B1", "B2", "C1"], start=1):
        progression = tracker.set_level(progression, level, at=START + timedelta(days=index))

    assert [entry.level for entry in progression.level_history] == ["B2", "C1"]


def test_empty_level_rejected():
    with pytest.raises(ValueError):
        ProgressionTracker().set_level(ProgressionMetrics(), "  ")
