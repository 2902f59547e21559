"""Elbow detection on density curves, used to place the MNAR/MAR intensity cutoff."""

from typing import Optional, Tuple, Union

import numpy as np
from scipy.stats import gaussian_kde


class NoElbowFoundError(ValueError):
    """No point of the curve has a second derivative above the threshold."""


def finite_differences(x: np.ndarray, y: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Index-aligned first and second derivatives.

    d1[i] = (y[i+1] - y[i]) / (x[i+1] - x[i])        (len n-1)
    d2[i] = (d1[i+1] - d1[i]) / (x[i+2] - x[i])      (len n-2)
    """
    d1 = np.diff(y) / np.diff(x)
    d2 = np.diff(d1) / (x[2:] - x[:-2])
    return d1, d2


def find_elbow(x, y, threshold: float = 0.35) -> float:
    """
    Return the smallest x whose curvature magnitude |d2| exceeds `threshold`.

    d2[i] is attributed to the centre of its stencil, x[i+1], so a kink located
    at x[k] is reported as x[k].

    Args:
        x: strictly ascending sample positions.
        y: curve values f(x), same length as x (at least 3 points).
        threshold: minimal |second derivative| for a point to qualify.

    Raises:
        NoElbowFoundError: if no index qualifies. Callers decide on a fallback.
    """
    x = np.asarray(x, dtype=np.float64)
    y = np.asarray(y, dtype=np.float64)
    if x.ndim != 1 or x.shape != y.shape:
        raise ValueError(f"x and y must be 1D with equal length, got {x.shape} and {y.shape}.")
    if x.size < 3:
        raise ValueError("At least 3 points are needed to estimate a second derivative.")
    if np.any(np.diff(x) <= 0):
        raise ValueError("x must be strictly ascending.")

    _, d2 = finite_differences(x, y)
    hits = np.flatnonzero(np.abs(d2) > threshold)
    if hits.size == 0:
        raise NoElbowFoundError(
            f"No curvature point above threshold={threshold} "
            f"(max |d2|={np.nanmax(np.abs(d2)):.4g})."
        )
    return float(np.min(x[hits + 1]))


def intensity_density(
    values,
    n_points: int = 512,
    bw_method: Optional[Union[str, float]] = None,
) -> Tuple[np.ndarray, np.ndarray]:
    """Gaussian KDE of `values` evaluated on an even grid spanning their range (3 bandwidths padded)."""
    v = np.asarray(values, dtype=np.float64)
    v = v[np.isfinite(v)]
    if v.size < 2 or np.ptp(v) == 0:
        raise ValueError("Density estimation needs at least two distinct finite values.")
    kde = gaussian_kde(v, bw_method=bw_method)
    pad = 3.0 * float(np.sqrt(kde.covariance[0, 0]))
    x = np.linspace(v.min() - pad, v.max() + pad, int(n_points))
    return x, kde(x)


def detect_cutoff(
    means,
    threshold: float = 0.35,
    n_points: int = 512,
    bw_method: Optional[Union[str, float]] = None,
) -> Tuple[float, np.ndarray, np.ndarray]:
    """Density of per-protein mean intensities, then its elbow. Returns (cutoff, x, y)."""
    x, y = intensity_density(means, n_points=n_points, bw_method=bw_method)
    return find_elbow(x, y, threshold=threshold), x, y
