"""
Unit tests for baseline computation.

Tests deterministic baseline statistics over historical spend.
"""

import math

import pytest

from spend_guard.core.baseline import (
    compute_baseline,
    compute_service_baselines,
    BaselineState,
    BaselineMetrics,
    MIN_WARM_SAMPLES,
    _compute_exact_percentile
)
from conftest import build_analysis


class TestExactPercentile:
    """Test exact percentile computation."""

    def test_median_even_count(self):
        """Test median computation with even number of values."""
        values = [1.0, 2.0, 3.0, 4.0]
        assert _compute_exact_percentile(values, 50) == 2.5

    def test_median_odd_count(self):
        values = [1.0, 2.0, 3.0]
        assert _compute_exact_percentile(values, 50) == 2.0

    def test_p90_interpolation(self):
        """Test P90 computation with interpolation."""
        values = [10.0, 20.0, 30.0, 40.0]
        p90 = _compute_exact_percentile(values, 90)
        assert p90 == pytest.approx(37.0)  # Position 2.7: 30.0 + 0.7 * (40.0 - 30.0)

    def test_percentile_bounds(self):
        values = [5.0, 10.0, 15.0]
        assert _compute_exact_percentile(values, 0) == 5.0
        assert _compute_exact_percentile(values, 100) == 15.0

    def test_unsorted_input(self):
        assert _compute_exact_percentile([3.0, 1.0, 2.0], 50) == 2.0

    def test_empty_values_raises_error(self):
        with pytest.raises(ValueError, match="Values list cannot be empty"):
            _compute_exact_percentile([], 50)

    def test_invalid_percentile_raises_error(self):
        values = [1.0, 2.0, 3.0]

        with pytest.raises(ValueError, match="Percentile must be between 0 and 100"):
            _compute_exact_percentile(values, -1)

        with pytest.raises(ValueError, match="Percentile must be between 0 and 100"):
            _compute_exact_percentile(values, 101)


class TestBaselineComputation:
    """Test baseline computation from historical costs."""

    def test_cold_baseline_with_few_periods(self):
        """Test cold baseline below the warm sample count."""
        result = compute_baseline([10.0, 20.0])

        assert result.state == BaselineState.COLD
        assert result.metrics.sample_count == 2
        assert result.metrics.mean == 15.0
        assert result.metrics.stddev == 5.0

    def test_warm_baseline(self):
        result = compute_baseline([float(i) for i in range(1, MIN_WARM_SAMPLES + 2)])

        assert result.state == BaselineState.WARM
        assert result.metrics.median == 2.5

    def test_empty_values_raises_error(self):
        with pytest.raises(ValueError, match="Values list cannot be empty"):
            compute_baseline([])

    def test_negative_cost_raises_error(self):
        with pytest.raises(ValueError, match="Value at index 1"):
            compute_baseline([1.0, -2.0])

    def test_deterministic(self):
        values = [4.0, 9.0, 1.0, 7.0]
        assert compute_baseline(values) == compute_baseline(values)

    def test_deviation_ratio_floors_small_means(self):
        """Means under $1 are treated as $1 so pennies don't look like spikes."""
        result = compute_baseline([0.1, 0.1, 0.1])
        assert result.deviation_ratio(1.1) == pytest.approx(1.0)

    def test_z_score(self):
        result = compute_baseline([10.0, 20.0])
        assert result.z_score(25.0) == pytest.approx(2.0)

    def test_z_score_constant_history(self):
        result = compute_baseline([5.0, 5.0, 5.0])
        assert result.z_score(5.0) == 0.0
        assert math.isinf(result.z_score(6.0))

    def test_baseline_metrics_validation(self):
        with pytest.raises(ValueError, match="mean cannot be negative"):
            BaselineMetrics(mean=-1.0, median=1.0, p90=1.0, stddev=0.0, sample_count=1)

        with pytest.raises(ValueError, match="sample_count must be >= 1"):
            BaselineMetrics(mean=1.0, median=1.0, p90=1.0, stddev=0.0, sample_count=0)


class TestServiceBaselines:
    """Test per-service baselines across periods."""

    def test_missing_service_counts_as_zero(self):
        history = [
            build_analysis({"EC2": 10.0, "S3": 2.0}),
            build_analysis({"EC2": 20.0}),
        ]

        baselines = compute_service_baselines(history)

        assert set(baselines) == {"EC2", "S3"}
        assert baselines["EC2"].metrics.mean == 15.0
        assert baselines["S3"].metrics.mean == 1.0

    def test_no_history(self):
        assert compute_service_baselines([]) == {}
