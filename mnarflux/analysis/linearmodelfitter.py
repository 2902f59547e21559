from typing import Optional, Sequence

import numpy as np

from mnarflux.utils.utils import log_info, log_time


def block_correlation_matrix(block: Sequence, rho: float) -> np.ndarray:
    """V = (1 - rho) I + rho * S, S[i, j] = 1 when samples i and j share a block."""
    b = np.asarray(block).astype(str)
    same = (b[:, None] == b[None, :]).astype(np.float64)
    return (1.0 - rho) * np.eye(b.size) + rho * same


def whitening_matrix(block: Optional[Sequence], rho: float, n_samples: int) -> np.ndarray:
    """Inverse Cholesky factor of the block correlation matrix (identity when unblocked)."""
    if block is None or rho == 0.0:
        return np.eye(n_samples)
    V = block_correlation_matrix(block, rho)
    L = np.linalg.cholesky(V)
    return np.linalg.solve(L, np.eye(n_samples))


class LinearModelFitter:
    def __init__(self, expression: np.ndarray, design_matrix: np.ndarray,
                 block: Optional[Sequence] = None, correlation: float = 0.0):
        """
        Parameters:
        - expression: (n_samples x n_proteins) matrix (adata.X or a layer)
        - design_matrix: (n_samples x n_covariates) matrix from DesignMatrixBuilder
        - block: per-sample block labels (e.g. donor); None fits plain OLS
        - correlation: consensus within-block correlation
        """
        self.Y = np.asarray(expression, dtype=np.float64)
        self.X = np.asarray(design_matrix, dtype=np.float64)
        self.block = None if block is None else np.asarray(block).astype(str)
        self.correlation = float(correlation)
        self.coefficients = None
        self.residuals = None
        self.residual_variance = None
        self.df_residual = self.X.shape[0] - np.linalg.matrix_rank(self.X)
        self.xtx_inv = None  # (Xw^T Xw)^(-1)

    @log_time("Linear Regressions")
    def fit(self):
        """
        Generalized least squares for all proteins at once: both sides are
        whitened with the block correlation, then OLS is vectorized across proteins.
        """
        if np.isnan(self.Y).any():
            raise ValueError("Expression matrix contains missing values; impute before fitting.")

        W = whitening_matrix(self.block, self.correlation, self.X.shape[0])
        if self.block is not None and self.correlation != 0.0:
            log_info(f"Blocking on {len(set(self.block))} blocks, correlation={self.correlation:.4f}")
        Xw = W @ self.X
        Yw = W @ self.Y

        self.xtx_inv = np.linalg.inv(Xw.T @ Xw)

        betas = self.xtx_inv @ Xw.T @ Yw    # (n_covariates x n_proteins)
        self.coefficients = betas.T         # (n_proteins x n_covariates)

        resid = Yw - Xw @ betas             # (n_samples x n_proteins)
        self.residuals = resid.T

        if self.df_residual > 0:
            self.residual_variance = np.sum(resid ** 2, axis=0) / self.df_residual
        else:
            self.residual_variance = np.full(self.Y.shape[1], np.nan)

        self.ave_expr = self.Y.mean(axis=0)
        return self

    def get_results(self) -> dict:
        return {
            "coefficients": self.coefficients,
            "residuals": self.residuals,
            "residual_variance": self.residual_variance,
            "df_residual": self.df_residual,
            "xtx_inv": self.xtx_inv,
            "ave_expr": self.ave_expr,
        }
