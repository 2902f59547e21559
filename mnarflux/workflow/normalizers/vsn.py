import numpy as np
from scipy.optimize import minimize_scalar
from sklearn.base import BaseEstimator, TransformerMixin

_EPS = 1e-12


def glog2(z: np.ndarray, c: float) -> np.ndarray:
    """Generalized log2: log2((z + sqrt(z^2 + c^2)) / 2). Equals log2(z) for z >> c, linear near 0."""
    return (np.arcsinh(z / c) + np.log(c / 2.0)) / np.log(2.0)


def sd_mean_heterogeneity(mat: np.ndarray, n_bins: int = 10, min_obs: int = 3) -> float:
    """Relative spread of the per-feature SD across intensity bins (0 = perfectly stabilized)."""
    obs = np.sum(np.isfinite(mat), axis=1)
    sub = mat[obs >= min_obs]
    if sub.shape[0] < n_bins * 2:
        return np.inf
    means = np.nanmean(sub, axis=1)
    sds = np.nanstd(sub, axis=1, ddof=1)
    order = np.argsort(means)
    bins = np.array_split(sds[order], n_bins)
    bin_sd = np.array([np.median(b) for b in bins if b.size])
    mean_sd = np.mean(bin_sd)
    if not np.isfinite(mean_sd) or mean_sd <= 0:
        return np.inf
    return float(np.std(bin_sd) / mean_sd)


class VSNNormalizer(BaseEstimator, TransformerMixin):
    """
    Variance-stabilizing normalization for linear intensities.

    Each sample column is first scaled to the global median, then all values go
    through a shared generalized-log2 transform with offset `c`. `c` is either the
    `offset_quantile` of the calibrated intensities or, with `optimize=True`, the
    value minimizing the dependency of the feature SD on the mean intensity.
    Assumes X is linear scale, shape = (n_features, n_samples); NaN stays NaN.
    """

    def __init__(self, offset_quantile=0.05, optimize=False, n_bins=10):
        self.offset_quantile = float(offset_quantile)
        self.optimize = bool(optimize)
        self.n_bins = int(n_bins)

    def fit(self, X, y=None):
        X = np.asarray(X, dtype=np.float64)
        pos = np.where(X > 0, X, np.nan)
        if not np.any(np.isfinite(pos)):
            raise ValueError("VSN needs at least one positive intensity.")

        col_median = np.nanmedian(pos, axis=0)
        global_median = np.nanmedian(pos)
        col_median[~np.isfinite(col_median)] = global_median
        self.scale_ = global_median / col_median

        Z = pos * self.scale_
        c0 = max(float(np.nanquantile(Z, self.offset_quantile)), _EPS)

        if self.optimize:
            lo = np.log10(max(float(np.nanquantile(Z, 0.001)), _EPS))
            hi = np.log10(max(float(np.nanquantile(Z, 0.5)), _EPS * 10))

            def _score(log_c):
                return sd_mean_heterogeneity(glog2(Z, 10.0 ** log_c), n_bins=self.n_bins)

            res = minimize_scalar(_score, bounds=(lo, hi), method="bounded")
            c0 = 10.0 ** float(res.x) if np.isfinite(res.fun) else c0

        self.offset_ = c0
        self.heterogeneity_ = sd_mean_heterogeneity(glog2(Z, c0), n_bins=self.n_bins)
        return self

    def transform(self, X):
        X = np.asarray(X, dtype=np.float64)
        Z = np.where(X > 0, X, np.nan) * self.scale_
        return glog2(Z, self.offset_)

    def fit_transform(self, X, y=None):
        return self.fit(X).transform(X)
