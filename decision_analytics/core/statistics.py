"""
Statistical helpers shared by the analyzers.

Percentile extraction and guarded ratios.
"""

import math
from typing import Iterable, List, Sequence, Tuple


def compute_exact_percentile(values: Sequence[float], percentile: float) -> float:
    """Compute a percentile using linear interpolation.

    Uses the same method as numpy.percentile with interpolation='linear':
    position ``p * (n - 1)`` between the two bracketing sorted values.

    Args:
        values: Numeric values (any order)
        percentile: Percentile to compute (0-100)

    Returns:
        Interpolated percentile value

    Raises:
        ValueError: If values is empty or percentile is out of range
    """
    if not values:
        raise ValueError("Values list cannot be empty")

    if percentile < 0 or percentile > 100:
        raise ValueError("Percentile must be between 0 and 100")

    sorted_values = sorted(values)
    n = len(sorted_values)

    position = (percentile / 100.0) * (n - 1)

    lower_index = int(position)
    upper_index = min(lower_index + 1, n - 1)
    fraction = position - lower_index

    lower_value = sorted_values[lower_index]
    upper_value = sorted_values[upper_index]

    return lower_value + fraction * (upper_value - lower_value)


def compute_nearest_rank(sorted_values: Sequence[float], fraction: float) -> float:
    """Pick the value at index ``floor(n * fraction)`` of an already sorted list.

    Returns 0 for an empty list.
    """
    if not sorted_values:
        return 0.0
    index = min(int(math.floor(len(sorted_values) * fraction)), len(sorted_values) - 1)
    return sorted_values[index]


def expand_weighted(pairs: Iterable[Tuple[float, int]]) -> List[float]:
    """Expand (value, weight) pairs into a sorted list with ``weight`` copies of each value."""
    expanded: List[float] = []
    for value, weight in pairs:
        if weight > 0:
            expanded.extend([value] * weight)
    expanded.sort()
    return expanded


def safe_ratio(numerator: float, denominator: float) -> float:
    """Divide, returning 0 when the denominator is 0."""
    return numerator / denominator if denominator else 0.0


def safe_percentage(numerator: float, denominator: float) -> float:
    """Percentage of ``numerator`` over ``denominator``, 0 when the denominator is 0."""
    return safe_ratio(numerator, denominator) * 100


def clamp(value: float, lower: float, upper: float) -> float:
    return max(lower, min(upper, value))
