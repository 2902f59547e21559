from typing import List, Sequence, Tuple

import numpy as np

from mnarflux.utils.utils import log_time


def make_contrast(levels: Sequence[str], pairs: Sequence[Tuple[str, str]]) -> Tuple[np.ndarray, List[str]]:
    """
    Contrast matrix (p x m) for cell-means coefficients, one column per `(A, B)` pair
    meaning `A - B`. Names are `A_vs_B`.
    """
    levels = list(levels)
    cols, names = [], []
    for a, b in pairs:
        if a not in levels or b not in levels:
            raise ValueError(f"Contrast '{a} - {b}': conditions must be in {levels}")
        if a == b:
            raise ValueError(f"Contrast '{a} - {b}' compares a condition with itself.")
        vec = np.zeros(len(levels))
        vec[levels.index(a)] = 1.0
        vec[levels.index(b)] = -1.0
        cols.append(vec)
        names.append(f"{a}_vs_{b}")
    return np.vstack(cols).T, names


@log_time("Apply Contrasts")
def apply_contrasts(fit_results, contrast_matrix):
    """
    Applies a contrast matrix to fitted model results.

    Parameters:
    - fit_results: output of LinearModelFitter.get_results()
    - contrast_matrix: shape (p x m), p = design coefficients, m = contrasts

    Returns:
    - beta_contrasts: (n_proteins x m) log2 fold changes
    - stdev_unscaled: (n_proteins x m), sqrt(c^T (X'X)^-1 c) broadcast over proteins
    - contrast_variances: (m,) c^T (X'X)^-1 c
    """
    B = fit_results["coefficients"]   # (n_proteins x p)
    XtX_inv = fit_results["xtx_inv"]  # (p x p)
    C = np.asarray(contrast_matrix, dtype=np.float64)

    beta_contrasts = B @ C
    contrast_variances = np.einsum("pm,pq,qm->m", C, XtX_inv, C)
    stdev_unscaled = np.tile(np.sqrt(contrast_variances), (B.shape[0], 1))
    return beta_contrasts, stdev_unscaled, contrast_variances
