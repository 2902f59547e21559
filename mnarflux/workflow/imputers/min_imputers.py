import numpy as np
from sklearn.base import BaseEstimator, TransformerMixin

_EPS = 1e-8


def _column_low_quantile(X: np.ndarray, quantile: float) -> np.ndarray:
    """Per-column low quantile; all-missing columns get the global low quantile."""
    has_val = np.any(np.isfinite(X), axis=0)
    q = np.full(X.shape[1], np.nan)
    if np.any(has_val):
        q[has_val] = np.nanquantile(X[:, has_val], quantile, axis=0)
    q[~has_val] = np.nanquantile(X, quantile) if np.any(has_val) else 0.0
    return q


class MinDetImputer(BaseEstimator, TransformerMixin):
    """
    Deterministic left-censored imputation.
    Each missing value becomes the low quantile of its sample column.
    Assumes X is log-scale, shape = (n_features, n_samples).
    """

    def __init__(self, quantile=0.01):
        self.quantile = float(quantile)

    def fit(self, X, y=None):
        X = np.asarray(X, dtype=np.float64)
        self.col_fill_ = _column_low_quantile(X, self.quantile)
        return self

    def transform(self, X):
        X_imp = np.array(X, dtype=np.float64, copy=True)
        rows, cols = np.nonzero(np.isnan(X_imp))
        X_imp[rows, cols] = self.col_fill_[cols]
        return X_imp


class MinProbImputer(BaseEstimator, TransformerMixin):
    """
    Probabilistic left-censored imputation (MinProb).

    Missing values of sample column j are drawn from N(q_j, sigma), where q_j is
    the `quantile` of column j and sigma is `tune_sigma` times the median of the
    per-feature standard deviations (features with at least two values).
    The generator is created from `random_state` at each `transform` call, so the
    same input and seed always give the same draws.
    Assumes X is log-scale, shape = (n_features, n_samples).
    """

    def __init__(self, quantile=0.01, tune_sigma=1.0, random_state=42):
        """
        Args:
            quantile (float): Low-tail quantile per column used as the draw centre.
            tune_sigma (float): Multiplier of the median feature SD.
            random_state (int|None): seed of the draws.
        """
        self.quantile = float(quantile)
        self.tune_sigma = float(tune_sigma)
        self.random_state = random_state

    def fit(self, X, y=None):
        X = np.asarray(X, dtype=np.float64)
        if not np.any(np.isfinite(X)):
            raise ValueError("MinProb needs at least one observed value to fit.")

        self.col_mu_ = _column_low_quantile(X, self.quantile)

        enough = np.sum(np.isfinite(X), axis=1) >= 2
        if np.any(enough):
            sds = np.nanstd(X[enough], axis=1, ddof=1)
            sd = float(np.median(sds))
        else:
            sd = float(np.nanstd(X)) if np.sum(np.isfinite(X)) > 1 else 1.0
        self.sigma_ = max(self.tune_sigma * sd, _EPS)
        return self

    def transform(self, X):
        X_imp = np.array(X, dtype=np.float64, copy=True)
        rows, cols = np.nonzero(np.isnan(X_imp))
        if rows.size:
            rng = np.random.default_rng(self.random_state)
            X_imp[rows, cols] = rng.normal(loc=self.col_mu_[cols], scale=self.sigma_)
        return X_imp
