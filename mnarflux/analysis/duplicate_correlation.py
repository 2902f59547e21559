"""Consensus within-block correlation for blocked linear models.

Each protein gets a random-intercept mixed model (fixed effects = design matrix,
groups = block labels). Its intra-block correlation is
var_block / (var_block + var_resid); the consensus is the back-transformed
trimmed mean of the Fisher-transformed per-protein values.
"""

import warnings
from typing import Optional, Sequence

import numpy as np
import statsmodels.api as sm
from scipy.stats import trim_mean
from statsmodels.tools.sm_exceptions import ConvergenceWarning

from mnarflux.utils.utils import log_info, log_time, log_warning

RHO_MAX = 0.99


def _protein_correlation(y: np.ndarray, design: np.ndarray, groups: np.ndarray) -> float:
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", ConvergenceWarning)
        warnings.simplefilter("ignore", RuntimeWarning)
        warnings.simplefilter("ignore", UserWarning)
        result = sm.MixedLM(y, design, groups=groups).fit(reml=True, method=["lbfgs"])
    if not result.converged:
        return np.nan
    var_block = float(np.asarray(result.cov_re)[0, 0])
    var_resid = float(result.scale)
    total = var_block + var_resid
    if not np.isfinite(total) or total <= 0:
        return np.nan
    return var_block / total


def has_repeated_blocks(block: Sequence) -> bool:
    """True when there are at least two blocks and one holds more than one sample."""
    _, counts = np.unique(np.asarray(block).astype(str), return_counts=True)
    return counts.size >= 2 and bool(np.any(counts > 1))


@log_time("Block correlation")
def estimate_block_correlation(
    expression: np.ndarray,
    design: np.ndarray,
    block: Sequence,
    trim: float = 0.15,
    max_proteins: Optional[int] = None,
    random_state: Optional[int] = 0,
) -> dict:
    """
    Estimate the consensus correlation between samples of the same block.

    Parameters:
    - expression: (n_samples x n_proteins), no missing values
    - design: (n_samples x n_covariates) fixed-effect design
    - block: per-sample block labels (donor)
    - max_proteins: fit a seeded random subset of this size (all when None)

    Returns a dict with `consensus`, `per_protein`, `n_fitted`, `n_failed`.
    Raises ValueError when no protein model converges.
    """
    Y = np.asarray(expression, dtype=np.float64)
    X = np.asarray(design, dtype=np.float64)
    groups = np.asarray(block).astype(str)

    if not has_repeated_blocks(groups):
        log_warning("No block holds repeated samples; within-block correlation set to 0.")
        return {"consensus": 0.0, "per_protein": np.full(Y.shape[1], np.nan), "n_fitted": 0, "n_failed": 0}

    idx = np.arange(Y.shape[1])
    if max_proteins is not None and idx.size > int(max_proteins):
        rng = np.random.default_rng(random_state)
        idx = np.sort(rng.choice(idx, size=int(max_proteins), replace=False))

    rho = np.full(Y.shape[1], np.nan)
    n_failed = 0
    for g in idx:
        y = Y[:, g]
        if not np.all(np.isfinite(y)) or np.var(y) == 0:
            n_failed += 1
            continue
        try:
            rho[g] = _protein_correlation(y, X, groups)
        except (np.linalg.LinAlgError, ValueError):
            rho[g] = np.nan
        if not np.isfinite(rho[g]):
            n_failed += 1

    fitted = rho[np.isfinite(rho)]
    if fitted.size == 0:
        raise ValueError(f"Mixed-model fit failed for all {idx.size} protein(s); "
                         "set analysis.correlation to a fixed value.")
    if n_failed:
        log_info(f"Skipped {n_failed} protein(s) whose mixed model did not converge.")

    z = np.arctanh(np.clip(fitted, 0.0, RHO_MAX))
    consensus = float(np.tanh(trim_mean(z, trim)))
    log_info(f"Consensus within-block correlation = {consensus:.4f} ({fitted.size} proteins)")
    return {"consensus": consensus, "per_protein": rho, "n_fitted": int(fitted.size), "n_failed": int(n_failed)}
