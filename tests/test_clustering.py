"""Tests for PCA/hierarchical sample clustering."""

import anndata as ad
import numpy as np
import pandas as pd
import pytest

from mnarflux.analysis.clustering import exclude_clusters, run_clustering


@pytest.fixture
def two_group_adata():
    rng = np.random.default_rng(2)
    X = rng.normal(20.0, 0.2, size=(8, 50))
    X[4:, :25] += 3.0
    X[0, 10] = np.nan
    obs = pd.DataFrame({"CONDITION": ["A"] * 4 + ["B"] * 4, "DONOR": ["d1", "d2", "d3", "d4"] * 2},
                       index=[f"s{i}" for i in range(8)])
    adata = ad.AnnData(X=X, obs=obs, var=pd.DataFrame(index=[f"g{j}" for j in range(50)]))
    adata.layers["normalized"] = X.copy()
    return adata


class TestClustering:
    def test_pca_and_clusters(self, two_group_adata):
        out = run_clustering(two_group_adata, n_pcs=3, n_clusters=2)

        assert out.obsm["X_pca"].shape == (8, 3)
        assert out.uns["pca"]["n_proteins"] == 49
        labels = out.obs["PCA_CLUSTER"].astype(str)
        assert labels.iloc[:4].nunique() == 1
        assert labels.iloc[4:].nunique() == 1
        assert labels.iloc[0] != labels.iloc[4]
        assert sorted(out.uns["clustering"]["sample_order"]) == sorted(out.obs_names)
        assert "PCA_CLUSTER" not in two_group_adata.obs

    def test_exclude_clusters(self, two_group_adata):
        out = run_clustering(two_group_adata, n_pcs=3, n_clusters=2)
        drop = out.obs.loc["s0", "PCA_CLUSTER"]
        kept = exclude_clusters(out, [drop])

        assert kept.n_obs == 4
        assert "s0" not in kept.obs_names
        assert list(kept.obs["PCA_CLUSTER"].cat.categories) != list(out.obs["PCA_CLUSTER"].cat.categories)

    def test_exclude_nothing(self, two_group_adata):
        out = run_clustering(two_group_adata, n_pcs=3, n_clusters=2)
        assert exclude_clusters(out, []).n_obs == 8

    def test_exclude_everything_rejected(self, two_group_adata):
        out = run_clustering(two_group_adata, n_pcs=3, n_clusters=1)
        with pytest.raises(ValueError, match="every sample"):
            exclude_clusters(out, ["1"])

    def test_too_few_complete_proteins(self, two_group_adata):
        two_group_adata.layers["normalized"][1, :] = np.nan
        with pytest.raises(ValueError, match="complete proteins"):
            run_clustering(two_group_adata)
