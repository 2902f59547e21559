"""Tests for the blocked linear model, empirical Bayes moderation and the limma stage."""

import anndata as ad
import numpy as np
import pandas as pd
import pytest
from scipy.special import polygamma

from mnarflux.analysis.duplicate_correlation import estimate_block_correlation, has_repeated_blocks
from mnarflux.analysis.ebayes_moderator import EbayesModerator
from mnarflux.analysis.ebayes_prior import fit_fdist, trigamma_inverse
from mnarflux.analysis.limma_pipeline import resolve_contrast, run_limma_pipeline
from mnarflux.analysis.linearmodelfitter import (
    LinearModelFitter,
    block_correlation_matrix,
    whitening_matrix,
)
from mnarflux.analysis.stats_ops import bh_qvalues
from mnarflux.design.contrast import apply_contrasts, make_contrast
from mnarflux.design.designmatrixbuilder import DesignMatrixBuilder


def _blocked_samples(n_donors=8, n_reps=2):
    rows = []
    for cond in ("Pos", "Neg"):
        for d in range(n_donors):
            for r in range(n_reps):
                rows.append({"CONDITION": cond, "DONOR": f"D{d}", "REPLICATE": str(r + 1)})
    obs = pd.DataFrame(rows)
    obs.index = [f"{o.DONOR}_{o.CONDITION}_{o.REPLICATE}" for o in obs.itertuples()]
    return obs


def _simulate(obs, n_proteins=60, rho=0.5, n_de=10, shift=2.0, seed=11):
    """Log intensities (samples x proteins) with donor effects of variance rho and unit total variance."""
    rng = np.random.default_rng(seed)
    donors = sorted(obs["DONOR"].unique())
    didx = obs["DONOR"].map({d: i for i, d in enumerate(donors)}).to_numpy()
    donor_eff = rng.normal(0, np.sqrt(rho), size=(len(donors), n_proteins))
    Y = 20.0 + donor_eff[didx] + rng.normal(0, np.sqrt(1 - rho), size=(len(obs), n_proteins))
    Y[(obs["CONDITION"] == "Pos").to_numpy()[:, None] & (np.arange(n_proteins) < n_de)[None, :]] += shift
    return Y


@pytest.fixture
def imputed_adata():
    obs = _blocked_samples()
    Y = _simulate(obs)
    var = pd.DataFrame(index=[f"G{j}" for j in range(Y.shape[1])])
    return ad.AnnData(X=Y, obs=obs, var=var)


class TestDesign:
    def test_cell_means_design(self):
        obs = _blocked_samples(n_donors=2, n_reps=1)
        builder = DesignMatrixBuilder(obs, {"group_column": "CONDITION", "levels": ["Pos", "Neg"]})
        X, _ = builder.build()

        assert builder.levels == ["Pos", "Neg"]
        assert list(builder.design_df.columns) == ["Pos", "Neg"]
        np.testing.assert_array_equal(X[:, 0], (obs["CONDITION"] == "Pos").astype(float))
        np.testing.assert_array_equal(X.sum(axis=1), 1.0)

    def test_unknown_level(self):
        obs = _blocked_samples(n_donors=2, n_reps=1)
        with pytest.raises(ValueError, match="Ctrl"):
            DesignMatrixBuilder(obs, {"group_column": "CONDITION", "levels": ["Ctrl"]}).build()

    def test_make_contrast(self):
        C, names = make_contrast(["Pos", "Neg"], [("Pos", "Neg")])
        np.testing.assert_array_equal(C, [[1.0], [-1.0]])
        assert names == ["Pos_vs_Neg"]

    @pytest.mark.parametrize("pair", [("Pos", "Ctrl"), ("Pos", "Pos")])
    def test_invalid_contrast(self, pair):
        with pytest.raises(ValueError):
            make_contrast(["Pos", "Neg"], [pair])

    def test_resolve_contrast(self):
        assert resolve_contrast(["Neg", "Pos"], ["Pos", "Neg"]) == ["Pos", "Neg"]
        assert resolve_contrast(["Neg", "Pos"], None, conditions=["Pos", "Neg"]) == ["Pos", "Neg"]
        assert resolve_contrast(["Neg", "Pos"], None) == ["Neg", "Pos"]
        with pytest.raises(ValueError):
            resolve_contrast(["Neg", "Pos"], ["Pos"])


class TestLinearModel:
    def test_whitening(self):
        block = ["a", "a", "b", "b", "c"]
        V = block_correlation_matrix(block, 0.4)
        W = whitening_matrix(block, 0.4, len(block))

        np.testing.assert_allclose(W @ V @ W.T, np.eye(len(block)), atol=1e-10)
        np.testing.assert_array_equal(whitening_matrix(None, 0.4, 3), np.eye(3))

    def test_balanced_gls_gives_group_means(self, imputed_adata):
        obs = imputed_adata.obs
        X, _ = DesignMatrixBuilder(obs, {"levels": ["Pos", "Neg"]}).build()
        fit = LinearModelFitter(imputed_adata.X, X, block=obs["DONOR"], correlation=0.5).fit()

        pos = (obs["CONDITION"] == "Pos").to_numpy()
        np.testing.assert_allclose(fit.coefficients[:, 0], imputed_adata.X[pos].mean(axis=0))
        np.testing.assert_allclose(fit.coefficients[:, 1], imputed_adata.X[~pos].mean(axis=0))
        assert fit.df_residual == imputed_adata.n_obs - 2
        np.testing.assert_allclose(fit.ave_expr, imputed_adata.X.mean(axis=0))

    def test_ols_residual_variance(self):
        X = np.array([[1.0, 0.0], [1.0, 0.0], [0.0, 1.0], [0.0, 1.0]])
        Y = np.array([[1.0], [3.0], [5.0], [5.0]])
        fit = LinearModelFitter(Y, X).fit()

        np.testing.assert_allclose(fit.coefficients, [[2.0, 5.0]])
        np.testing.assert_allclose(fit.residual_variance, [1.0])

    def test_missing_values_rejected(self):
        Y = np.array([[1.0], [np.nan]])
        with pytest.raises(ValueError, match="missing values"):
            LinearModelFitter(Y, np.ones((2, 1))).fit()

    def test_contrast_stdev_unscaled(self):
        X = np.array([[1.0, 0.0], [1.0, 0.0], [0.0, 1.0], [0.0, 1.0]])
        Y = np.random.default_rng(0).normal(size=(4, 3))
        fit = LinearModelFitter(Y, X).fit().get_results()
        C, _ = make_contrast(["A", "B"], [("A", "B")])
        beta, stdu, cvar = apply_contrasts(fit, C)

        np.testing.assert_allclose(beta[:, 0], fit["coefficients"][:, 0] - fit["coefficients"][:, 1])
        np.testing.assert_allclose(cvar, [1.0])
        assert stdu.shape == (3, 1)


class TestEbayes:
    def test_trigamma_inverse(self):
        for y in (0.1, 1.0, 10.0):
            assert float(polygamma(1, trigamma_inverse(y))) == pytest.approx(y, rel=1e-6)

    def test_fit_fdist_recovers_prior(self):
        rng = np.random.default_rng(5)
        d, d0, s0 = 4.0, 5.0, 1.0
        sigma2 = s0 * d0 / rng.chisquare(d0, size=5000)
        s2 = sigma2 * rng.chisquare(d, size=5000) / d
        s2_prior, df_prior = fit_fdist(s2, d)

        assert s2_prior == pytest.approx(1.0, rel=0.15)
        assert 3.0 < df_prior < 8.0

    def test_fit_fdist_without_prior_spread(self):
        rng = np.random.default_rng(5)
        s2 = rng.chisquare(4, size=5000) / 4.0
        _, df_prior = fit_fdist(s2, 4.0)
        assert df_prior > 20

    def test_fit_fdist_too_few_values(self):
        s2_prior, df_prior = fit_fdist(np.array([1.0, np.nan]), 3)
        assert np.isnan(s2_prior) and np.isnan(df_prior)

    def test_posterior_variance(self):
        mod = EbayesModerator(np.array([0.5, 1.0, 2.0]), 4)
        mod.s2_prior, mod.df_prior = 1.0, 6.0
        s2_post, df_total = mod.moderate()

        np.testing.assert_allclose(s2_post, (6 * 1.0 + 4 * np.array([0.5, 1.0, 2.0])) / 10)
        assert df_total == 10.0

    def test_infinite_prior_df(self):
        mod = EbayesModerator(np.array([0.5, 1.0, 2.0]), 4)
        mod.s2_prior, mod.df_prior = 1.2, np.inf
        s2_post, df_total = mod.moderate()

        np.testing.assert_allclose(s2_post, 1.2)
        assert df_total == 12.0

    def test_bh_qvalues(self):
        p = np.array([[0.01], [0.04], [0.03], [np.nan]])
        q = bh_qvalues(p)

        np.testing.assert_allclose(q[:3, 0], [0.03, 0.04, 0.04])
        assert np.isnan(q[3, 0])
        with pytest.raises(ValueError):
            bh_qvalues(p.ravel())


class TestBlockCorrelation:
    def test_has_repeated_blocks(self):
        assert has_repeated_blocks(["a", "a", "b"])
        assert not has_repeated_blocks(["a", "b", "c"])
        assert not has_repeated_blocks(["a", "a"])

    def test_consensus_near_truth(self, imputed_adata):
        obs = imputed_adata.obs
        X, _ = DesignMatrixBuilder(obs, {"levels": ["Pos", "Neg"]}).build()
        est = estimate_block_correlation(imputed_adata.X, X, obs["DONOR"])

        assert 0.25 < est["consensus"] < 0.75
        assert est["n_fitted"] + est["n_failed"] == imputed_adata.n_vars

    def test_subset(self, imputed_adata):
        obs = imputed_adata.obs
        X, _ = DesignMatrixBuilder(obs, {"levels": ["Pos", "Neg"]}).build()
        est = estimate_block_correlation(imputed_adata.X, X, obs["DONOR"], max_proteins=10, random_state=1)

        assert est["n_fitted"] + est["n_failed"] == 10
        assert np.sum(np.isfinite(est["per_protein"])) == est["n_fitted"]

    def test_no_repeated_blocks(self):
        Y = np.random.default_rng(0).normal(size=(4, 5))
        X = np.array([[1.0, 0.0], [1.0, 0.0], [0.0, 1.0], [0.0, 1.0]])
        est = estimate_block_correlation(Y, X, ["a", "b", "c", "d"])
        assert est["consensus"] == 0.0


class TestLimmaPipeline:
    def test_fixed_correlation(self, imputed_adata):
        cfg = {"analysis": {"contrast": ["Pos", "Neg"], "correlation": 0.3}}
        out = run_limma_pipeline(imputed_adata, cfg)

        corr = out.uns["block_correlation"]
        assert corr["source"] == "config"
        assert corr["consensus"] == 0.3
        assert out.uns["contrast_names"] == ["Pos_vs_Neg"]
        assert out.uns["pilot_study_mode"] is False

    def test_detects_shifted_proteins(self, imputed_adata):
        cfg = {"analysis": {"contrast": ["Pos", "Neg"], "correlation_max_proteins": 20}}
        out = run_limma_pipeline(imputed_adata, cfg)

        q = out.varm["q_ebayes"][:, 0]
        lfc = out.varm["log2fc"][:, 0]
        assert out.uns["block_correlation"]["source"] == "estimated"
        assert np.all(q[:10] < 0.05)
        assert np.median(lfc[:10]) == pytest.approx(2.0, abs=0.5)
        assert np.median(q[10:]) > 0.05
        for key in ("se_raw", "t_raw", "p_raw", "q_raw", "se_ebayes", "t_ebayes", "p_ebayes"):
            assert out.varm[key].shape == (imputed_adata.n_vars, 1)
        prior = out.uns["ebayes_prior"]
        assert prior["df_total"] <= prior["df_residual"] * imputed_adata.n_vars

    def test_invalid_correlation(self, imputed_adata):
        with pytest.raises(ValueError, match="analysis.correlation"):
            run_limma_pipeline(imputed_adata, {"analysis": {"correlation": 1.0}})

    def test_missing_block_column(self, imputed_adata):
        with pytest.raises(ValueError, match="BATCH"):
            run_limma_pipeline(imputed_adata, {"analysis": {"block_column": "BATCH", "correlation": 0.1}})

    def test_unblocked(self, imputed_adata):
        out = run_limma_pipeline(imputed_adata, {"analysis": {"block_column": None}})
        assert out.uns["block_correlation"]["source"] == "none"
        assert "p_ebayes" in out.varm

    def test_pilot_mode(self, imputed_adata):
        pilot = imputed_adata[["D0_Pos_1", "D0_Neg_1"]].copy()
        out = run_limma_pipeline(pilot, {"analysis": {"contrast": ["Pos", "Neg"]}})

        assert out.uns["pilot_study_mode"] is True
        np.testing.assert_allclose(out.varm["log2fc"][:, 0], pilot.X[0] - pilot.X[1])
        assert "p_ebayes" not in out.varm
        assert "ebayes_prior" not in out.uns
