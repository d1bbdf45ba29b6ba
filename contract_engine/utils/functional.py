"""
Functional programming utilities.

Pure functions for configuration merging and score arithmetic. None of
them mutate their arguments.
"""

import copy
import math
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional, Sequence


def utc_now() -> datetime:
    """
    Get current UTC time as timezone-aware datetime.

    Returns:
        Current datetime with UTC timezone
    """
    return datetime.now(timezone.utc)


def format_timestamp(dt: Optional[datetime] = None) -> str:
    """
    Format datetime as ISO 8601 string.

    Args:
        dt: Datetime to format, defaults to current UTC time

    Returns:
        ISO 8601 formatted string
    """
    if dt is None:
        dt = utc_now()
    return dt.isoformat()


def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """
    Recursively merge ``override`` into a copy of ``base``.

    Nested mappings are merged key by key. Lists and scalars in
    ``override`` replace the value in ``base`` wholesale.

    Args:
        base: Original mapping
        override: Partial mapping to apply

    Returns:
        New merged mapping

    Example:
        >>> deep_merge({"a": {"x": 1, "y": 2}, "l": [1]}, {"a": {"y": 3}, "l": [2]})
        {'a': {'x': 1, 'y': 3}, 'l': [2]}
    """
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def clamp(value: Any, low: float = 0.0, high: float = 1.0, default: float = 0.5) -> float:
    """
    Clamp a numeric value into ``[low, high]``.

    Non-numeric input (including bools and NaN) yields ``default``.
    """
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    if math.isnan(value):
        return default
    return min(max(float(value), low), high)


def mean(values: Iterable[float], default: float = 0.0) -> float:
    values = list(values)
    if not values:
        return default
    return sum(values) / len(values)


def percentile(sorted_values: Sequence[float], fraction: float) -> float:
    """
    Nearest-rank percentile of an already sorted sequence.

    Args:
        sorted_values: Values in ascending order
        fraction: Percentile as a fraction, e.g. 0.95

    Returns:
        The percentile value, 0.0 for an empty sequence
    """
    if not sorted_values:
        return 0.0
    index = max(0, math.ceil(fraction * len(sorted_values)) - 1)
    return sorted_values[min(index, len(sorted_values) - 1)]


def count_by(items: Iterable[Any], key) -> Dict[str, int]:
    """Count items per ``key(item)``, keeping first-seen order."""
    counts: Dict[str, int] = {}
    for item in items:
        bucket = key(item)
        counts[bucket] = counts.get(bucket, 0) + 1
    return counts
