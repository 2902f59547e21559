from __future__ import annotations

import numpy as np
from scipy.stats import t as t_dist
from statsmodels.stats.multitest import multipletests


def raw_stats_from_fit(
    *,
    coefs: np.ndarray,
    stdu: np.ndarray,
    sigma: np.ndarray,
    df_res: float,
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Unmoderated statistics:
      se = stdu * sigma[:, None]
      t  = coefs / se
      p  = 2 * t.sf(|t|, df=df_res)
    """
    se = stdu * sigma[:, None]
    t = coefs / se
    p = 2 * t_dist.sf(np.abs(t), df=df_res)
    return se, t, p


def bh_qvalues(p: np.ndarray) -> np.ndarray:
    """Benjamini-Hochberg adjusted p-values per contrast column; NaN p-values stay NaN."""
    if p.ndim != 2:
        raise ValueError(f"Expected 2D p-value array (n_features x n_contrasts), got shape {p.shape}")
    q = np.full_like(p, np.nan, dtype=np.float64)
    for j in range(p.shape[1]):
        ok = np.isfinite(p[:, j])
        if ok.any():
            q[ok, j] = multipletests(p[ok, j], method="fdr_bh")[1]
    return q
