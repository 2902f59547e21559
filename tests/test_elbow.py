"""Tests for mnarflux.analysis.elbow."""

import numpy as np
import pytest

from mnarflux.analysis.elbow import (
    NoElbowFoundError,
    detect_cutoff,
    find_elbow,
    finite_differences,
    intensity_density,
)


class TestFiniteDifferences:
    def test_lengths_and_values(self):
        x = np.arange(5, dtype=float)
        y = x ** 2
        d1, d2 = finite_differences(x, y)

        assert d1.shape == (4,)
        assert d2.shape == (3,)
        np.testing.assert_allclose(d1, [1, 3, 5, 7])
        np.testing.assert_allclose(d2, [1, 1, 1])


class TestFindElbow:
    @pytest.mark.parametrize("k", [2.0, 4.0, 7.0])
    def test_single_kink_returns_kink_location(self, k):
        x = np.arange(0.0, 10.0, 1.0)
        y = np.where(x <= k, 0.0, 2.0 * (x - k))

        assert find_elbow(x, y, threshold=0.35) == k

    def test_kink_on_uneven_grid(self):
        x = np.array([0.0, 0.5, 1.5, 3.0, 3.2, 4.0, 6.0])
        y = np.where(x <= 3.0, x, 3.0 + 5.0 * (x - 3.0))

        assert find_elbow(x, y, threshold=0.35) == 3.0

    def test_linear_curve_has_no_elbow(self):
        x = np.linspace(0, 10, 50)
        y = 3.0 * x + 1.0

        with pytest.raises(NoElbowFoundError):
            find_elbow(x, y, threshold=1e-6)

    def test_threshold_above_curvature_has_no_elbow(self):
        x = np.arange(0.0, 10.0, 1.0)
        y = np.where(x <= 4, 0.0, 2.0 * (x - 4))

        with pytest.raises(NoElbowFoundError):
            find_elbow(x, y, threshold=5.0)

    def test_smallest_qualifying_x_wins(self):
        x = np.arange(0.0, 12.0, 1.0)
        y = np.where(x <= 3, 0.0, x - 3) + np.where(x <= 8, 0.0, 3.0 * (x - 8))

        assert find_elbow(x, y, threshold=0.35) == 3.0

    @pytest.mark.parametrize(
        "x, y",
        [
            ([0.0, 1.0], [0.0, 1.0]),                       # too short
            ([0.0, 1.0, 2.0], [0.0, 1.0]),                  # unequal lengths
            ([0.0, 2.0, 1.0, 3.0], [0.0, 1.0, 2.0, 3.0]),   # not ascending
        ],
    )
    def test_invalid_input(self, x, y):
        with pytest.raises(ValueError):
            find_elbow(x, y)


class TestDensity:
    def test_density_grid_and_mass(self):
        rng = np.random.default_rng(0)
        values = rng.normal(20.0, 1.5, size=400)
        x, y = intensity_density(values, n_points=256)

        assert x.shape == y.shape == (256,)
        assert np.all(np.diff(x) > 0)
        assert x[0] < values.min() and x[-1] > values.max()
        assert np.sum(y) * (x[1] - x[0]) == pytest.approx(1.0, abs=0.02)

    def test_density_ignores_nan(self):
        x, y = intensity_density([1.0, 2.0, np.nan, 3.0], n_points=32)
        assert np.all(np.isfinite(y))

    def test_constant_values_rejected(self):
        with pytest.raises(ValueError):
            intensity_density([5.0, 5.0, 5.0])

    def test_detect_cutoff_within_grid(self):
        rng = np.random.default_rng(1)
        means = np.concatenate([rng.normal(16.0, 0.6, 80), rng.normal(21.0, 1.2, 400)])
        cutoff, x, y = detect_cutoff(means, threshold=1e-4, n_points=512)

        assert x[0] <= cutoff <= x[-1]
        assert y.shape == x.shape
