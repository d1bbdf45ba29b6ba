"""
Unit tests for functional utilities.

Tests cover:
- Deep merge semantics
- Clamping of scores
- Percentiles and aggregation helpers
"""

import math

from contract_engine.utils.functional import (
    clamp,
    count_by,
    deep_merge,
    format_timestamp,
    mean,
    percentile,
    utc_now,
)


class TestDeepMerge:
    """Test recursive configuration merging."""

    def test_nested_mappings_merge(self):
        """Test that nested keys not in the override survive."""
        base = {"a": {"x": 1, "y": 2}, "b": 1}
        merged = deep_merge(base, {"a": {"y": 3}})

        assert merged == {"a": {"x": 1, "y": 3}, "b": 1}

    def test_lists_are_replaced(self):
        """Test that lists in the override replace the base list."""
        merged = deep_merge({"methods": ["plugin", "ai_model"]}, {"methods": ["rule_based"]})
        assert merged["methods"] == ["rule_based"]

    def test_inputs_not_mutated(self):
        """Test that neither argument is modified."""
        base = {"a": {"x": 1}}
        override = {"a": {"x": 2}}
        deep_merge(base, override)

        assert base == {"a": {"x": 1}}
        assert override == {"a": {"x": 2}}

    def test_result_does_not_alias_override(self):
        """Test that nested override values are copied."""
        override = {"a": {"list": [1, 2]}}
        merged = deep_merge({}, override)
        merged["a"]["list"].append(3)

        assert override["a"]["list"] == [1, 2]


class TestClamp:
    """Test score clamping."""

    def test_within_range_unchanged(self):
        assert clamp(0.42) == 0.42

    def test_out_of_range(self):
        assert clamp(1.7) == 1.0
        assert clamp(-3) == 0.0

    def test_non_numeric_uses_default(self):
        """Test that strings, None, bools and NaN fall back to the default."""
        assert clamp("0.9") == 0.5
        assert clamp(None) == 0.5
        assert clamp(True) == 0.5
        assert clamp(math.nan) == 0.5
        assert clamp(None, default=0.0) == 0.0


class TestAggregation:
    """Test mean, percentile and counting helpers."""

    def test_mean_empty_returns_default(self):
        assert mean([]) == 0.0
        assert mean([], default=0.5) == 0.5
        assert mean([1, 2, 3]) == 2

    def test_percentile_nearest_rank(self):
        values = list(range(1, 101))
        assert percentile(values, 0.95) == 95
        assert percentile(values, 0.99) == 99
        assert percentile([7.0], 0.95) == 7.0
        assert percentile([], 0.5) == 0.0

    def test_count_by_keeps_first_seen_order(self):
        counts = count_by(["b", "a", "b"], lambda v: v)
        assert list(counts) == ["b", "a"]
        assert counts == {"b": 2, "a": 1}


class TestTimestamps:
    """Test timestamp helpers."""

    def test_utc_now_is_timezone_aware(self):
        assert utc_now().tzinfo is not None

    def test_format_timestamp_iso(self):
        stamp = format_timestamp()
        assert "T" in stamp
        assert stamp.endswith("+00:00")
