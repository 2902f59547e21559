import numpy as np
from scipy.stats import t as t_dist

from mnarflux.analysis.ebayes_prior import fit_fdist
from mnarflux.analysis.stats_ops import bh_qvalues
from mnarflux.utils.utils import log_info, log_time


class EbayesModerator:
    def __init__(self, sigma2, df_residual):
        """
        Parameters:
        - sigma2: (n_proteins,) vector of residual variances
        - df_residual: scalar degrees of freedom shared by all proteins
        """
        self.sigma2 = np.asarray(sigma2, dtype=np.float64)
        self.df_residual = float(df_residual)
        self.s2_prior = None
        self.df_prior = None
        self.df_total = None

    def fit(self):
        self.s2_prior, self.df_prior = fit_fdist(self.sigma2, self.df_residual)
        log_info(f"eBayes prior: s2_prior={self.s2_prior:.4g}, df_prior={self.df_prior:.4g}")
        return self.df_prior, self.s2_prior

    def moderate(self):
        """
        Returns:
        - posterior variances
        - total degrees of freedom, capped at the pooled residual df
        """
        d = self.df_residual
        s2 = self.sigma2
        if not np.isfinite(self.s2_prior):
            self.df_total = d
            return s2, d

        if np.isinf(self.df_prior):
            s2_post = np.full_like(s2, self.s2_prior)
        else:
            s2_post = (self.df_prior * self.s2_prior + d * s2) / (self.df_prior + d)

        df_pooled = d * np.sum(np.isfinite(s2))
        self.df_total = float(min(self.df_prior + d, df_pooled))
        return s2_post, self.df_total

    @log_time("EBayes Computation")
    def apply_to_contrasts(self, log2fc, stdev_unscaled):
        """
        Moderated t, p, q.

        Parameters:
        - log2fc: (n_proteins x n_contrasts)
        - stdev_unscaled: (n_proteins x n_contrasts)

        Returns:
        - dict: se, t, p, q (each of shape n_proteins x n_contrasts), s2_post
        """
        if self.s2_prior is None:
            self.fit()
        s2_post, df_total = self.moderate()
        se = stdev_unscaled * np.sqrt(s2_post)[:, None]
        t_stat = log2fc / se
        p_val = 2 * t_dist.sf(np.abs(t_stat), df=df_total)
        return {
            "se_ebayes": se,
            "t_ebayes": t_stat,
            "p_ebayes": p_val,
            "q_ebayes": bh_qvalues(p_val),
            "s2_post": s2_post,
        }
