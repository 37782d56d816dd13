"""Pure numeric primitives shared by the analytics engines.

Every function here is stateless and free of I/O. Degenerate inputs (empty
series, a single sample, zero variance) never raise; they return the
documented default instead so callers can feed raw learner history directly.
"""

from __future__ import annotations

import math
import statistics
from dataclasses import dataclass
from typing import Iterable, List, Sequence, Tuple

# Letter bands of CEFR-like proficiency codes ("A1".."C2").
_LEVEL_LETTERS = "ABC"


@dataclass(frozen=True)
class TrendLine:
    slope: float
    intercept: float

    def at(self, x: float) -> float:
        return self.slope * x + self.intercept


def clamp(value: float, lower: float = 0.0, upper: float = 1.0) -> float:
    return max(lower, min(upper, value))


def rolling_average(values: Sequence[float], window: int) -> float:
    """Mean of the last ``window`` values, or of all values when fewer exist."""

    if not values:
        return 0.0
    if window <= 0:
        window = len(values)
    return statistics.fmean(values[-window:])


def update_rolling_average(current: float, new_value: float, n: int) -> float:
    """Fold ``new_value`` into ``current`` as the ``n``-th sample of a mean.

    This is a cumulative mean update, ``current + (new - current) / n``, not a
    fixed-window average. It only approximates a window of size ``W`` when the
    caller passes ``n = min(samples_seen, W)``; once ``n`` stops growing each
    new sample carries weight ``1/W``. Passing the raw sample count instead
    degrades silently into a full-history mean. ``n <= 0`` is treated as 1,
    which replaces ``current`` with ``new_value``.
    """

    n = max(1, int(n))
    return current + (new_value - current) / n


def weighted_average(pairs: Iterable[Tuple[float, float]]) -> float:
    """Return sum(value * weight) / sum(weight) over ``(value, weight)`` pairs."""

    total = 0.0
    weight_sum = 0.0
    for value, weight in pairs:
        total += value * weight
        weight_sum += weight
    if weight_sum == 0:
        return 0.0
    return total / weight_sum


def exponential_moving_average(current: float, new_value: float, alpha: float) -> float:
    return alpha * new_value + (1.0 - alpha) * current


def linear_trend(points: Sequence[Tuple[float, float]]) -> TrendLine:
    """Ordinary least squares fit over ``(x, y)`` points.

    With fewer than two points, or when every x is identical, the slope is 0
    and the intercept is the mean of y (0 for an empty input).
    """

    if not points:
        return TrendLine(0.0, 0.0)
    xs = [float(x) for x, _ in points]
    ys = [float(y) for _, y in points]
    mean_y = statistics.fmean(ys)
    if len(points) < 2:
        return TrendLine(0.0, mean_y)

    mean_x = statistics.fmean(xs)
    denominator = sum((x - mean_x) ** 2 for x in xs)
    if denominator == 0:
        return TrendLine(0.0, mean_y)

    numerator = sum((x - mean_x) * (y - mean_y) for x, y in zip(xs, ys))
    slope = numerator / denominator
    return TrendLine(slope, mean_y - slope * mean_x)


def predict_future_value(values: Sequence[float], steps_ahead: int = 1) -> float:
    """Extrapolate an index-ordered series ``steps_ahead`` positions past its end."""

    if not values:
        return 0.0
    trend = linear_trend([(index, value) for index, value in enumerate(values)])
    return trend.at(len(values) - 1 + steps_ahead)


def standard_deviation(values: Sequence[float]) -> float:
    """Population standard deviation; 0 for fewer than two samples."""

    if len(values) < 2:
        return 0.0
    return statistics.pstdev(values)


def detect_anomalies(values: Sequence[float], threshold_std_devs: float = 2.0) -> List[int]:
    """Indices lying at least ``threshold_std_devs`` population deviations from the mean."""

    deviation = standard_deviation(values)
    if deviation == 0:
        return []
    mean = statistics.fmean(values)
    limit = threshold_std_devs * deviation
    return [
        index
        for index, value in enumerate(values)
        if abs(value - mean) > limit or math.isclose(abs(value - mean), limit)
    ]


def retention_rate(initial_strength: float, days_since_practice: float) -> float:
    """Forgetting curve ``strength * exp(-decay * days)``.

    The decay rate is ``0.1 * (1 - strength)``, so a fully mastered skill
    does not decay and weaker skills fade faster.
    """

    decay_rate = 0.1 * (1.0 - initial_strength)
    return initial_strength * math.exp(-decay_rate * max(0.0, days_since_practice))


def level_to_ordinal(level: str) -> float:
    """Map ``A1..C2`` to ``1..6``; other strings fall back to their numeric value or 0."""

    code = (level or "").strip().upper()
    if len(code) == 2 and code[0] in _LEVEL_LETTERS and code[1] in "12":
        return float(1 + 2 * _LEVEL_LETTERS.index(code[0]) + (int(code[1]) - 1))
    try:
        number = float(code)
    except ValueError:
        return 0.0
    return number if math.isfinite(number) else 0.0
