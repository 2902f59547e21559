"""PCA and sample clustering for quality control.

Provides:
  - run_clustering: PCA on the complete proteins of a layer, then hierarchical
                    clustering of samples in PC space cut into flat clusters.
  - exclude_clusters: drop every sample of the given flat clusters.
"""

from typing import Iterable, Optional

import anndata as ad
import numpy as np
import pandas as pd
import scanpy as sc
import scipy.cluster.hierarchy as sch

from mnarflux.analysis import adata_schema as schema
from mnarflux.utils.utils import log_info, log_time


@log_time("Running clustering")
def run_clustering(
    adata: ad.AnnData,
    layer: Optional[str] = "normalized",
    n_pcs: int = 10,
    n_clusters: int = 2,
    hierarchical_method: str = "ward",
    hierarchical_metric: str = "euclidean",
    random_seed: int = 0,
) -> ad.AnnData:
    """
    PCA + hierarchical clustering of samples.

    Only proteins observed in every sample enter the PCA. Results are written to
    a copy: `obsm["X_pca"]`, `uns["pca"]` (variance ratios), `obs["PCA_CLUSTER"]`
    and `uns["clustering"]` (linkage and leaf order).
    """
    out = adata.copy()
    data = np.asarray(out.layers[layer] if layer is not None else out.X, dtype=np.float64)

    complete = np.all(np.isfinite(data), axis=0)
    n_comps = min(int(n_pcs), out.n_obs - 1, int(complete.sum()) - 1)
    if n_comps < 1:
        raise ValueError(f"PCA needs at least 2 samples and 2 complete proteins "
                         f"(got {out.n_obs} samples, {int(complete.sum())} complete proteins).")

    A = ad.AnnData(X=data[:, complete], obs=pd.DataFrame(index=out.obs_names))
    sc.tl.pca(A, n_comps=n_comps, svd_solver="arpack", random_state=random_seed)
    log_info(f"PCA on {int(complete.sum())} complete proteins, {n_comps} components.")

    pcs = A.obsm["X_pca"][:, :n_comps]
    out.obsm["X_pca"] = pcs
    out.uns[schema.UNS_PCA] = {
        "variance_ratio": np.asarray(A.uns["pca"]["variance_ratio"]),
        "variance": np.asarray(A.uns["pca"]["variance"]),
        "n_proteins": int(complete.sum()),
    }

    k = max(1, min(int(n_clusters), out.n_obs))
    linkage = sch.linkage(pcs, method=hierarchical_method, metric=hierarchical_metric)
    labels = sch.fcluster(linkage, t=k, criterion="maxclust")
    out.obs[schema.OBS_PCA_CLUSTER] = pd.Categorical([str(lab) for lab in labels])
    out.uns[schema.UNS_CLUSTERING] = {
        "sample_linkage": linkage,
        "sample_order": out.obs_names[sch.leaves_list(linkage)].tolist(),
        "n_clusters": k,
        "method": hierarchical_method,
    }

    sizes = out.obs[schema.OBS_PCA_CLUSTER].value_counts().sort_index()
    log_info("Sample clusters: " + ", ".join(f"{c}={n}" for c, n in sizes.items()))
    return out


def exclude_clusters(adata: ad.AnnData, clusters: Optional[Iterable] = None) -> ad.AnnData:
    """Return a copy without the samples of the listed `PCA_CLUSTER` labels."""
    drop = {str(c) for c in (clusters or [])}
    if not drop:
        return adata.copy()
    if schema.OBS_PCA_CLUSTER not in adata.obs:
        raise ValueError("No PCA clusters found; run_clustering must run before excluding clusters.")
    mask = adata.obs[schema.OBS_PCA_CLUSTER].astype(str).isin(drop).to_numpy()
    if mask.all():
        raise ValueError(f"Excluding clusters {sorted(drop)} would remove every sample.")
    log_info(f"Excluding {int(mask.sum())} sample(s) from cluster(s) {sorted(drop)}: "
             f"{adata.obs_names[mask].tolist()}")
    out = adata[~mask].copy()
    out.obs[schema.OBS_PCA_CLUSTER] = out.obs[schema.OBS_PCA_CLUSTER].cat.remove_unused_categories()
    return out
