"""Preprocessing stages for MNARflux.

This module performs:
1) Filtering (explicit sample exclusion, sample missingness, protein valid-value count)
2) Normalization (log2, VSN, median equalization; chainable)

Each stage takes an AnnData (samples x proteins) and returns a new one; the input
is never modified. Intermediate matrices are kept as layers and the applied
settings are recorded in `uns["preprocessing"]`.
"""

from typing import Iterable, List, Optional

import anndata as ad
import numpy as np

from mnarflux.workflow.normalizers.vsn import VSNNormalizer
from mnarflux.utils.utils import log_info, log_time, log_warning


def _to_list(x) -> List[str]:
    if x is None:
        return []
    if isinstance(x, str):
        return [x.strip()] if x.strip() else []
    return [str(v).strip() for v in x if str(v).strip()]


class Preprocessor:
    """Handles filtering and normalization of the protein matrix."""

    available_normalization = ["log2", "vsn", "median_equalization", "none"]

    def __init__(self, config: Optional[dict] = None):
        """Initialize from the `preprocessing` section of the config."""
        config = config or {}

        self.filtering = config.get("filtering") or {}
        self.max_sample_missing = self.filtering.get("max_sample_missing", None)
        self.min_valid = int(self.filtering.get("min_valid", 1))

        self.normalization = config.get("normalization") or {"method": "vsn"}
        methods = self.normalization.get("method", "vsn")
        self.normalization_methods = [methods] if isinstance(methods, str) else list(methods)
        for m in self.normalization_methods:
            if m not in self.available_normalization:
                raise ValueError(f"Invalid normalization method: {m}. "
                                 f"Options: {', '.join(self.available_normalization)}")

    @log_time("Filtering")
    def filter(self, adata: ad.AnnData, exclude_samples: Optional[Iterable[str]] = None) -> ad.AnnData:
        """Drop excluded/overly-missing samples, then proteins with too few valid values."""
        out = adata.copy()
        meta = {}

        excl = set(_to_list(exclude_samples))
        if excl:
            present = set(out.obs_names)
            missing = sorted(excl - present)
            if missing:
                log_info(f"Exclude samples: {len(missing)} not found in data, ignored: {missing[:10]}")
            to_drop = sorted(excl & present)
            out = out[~out.obs_names.isin(to_drop)].copy()
            log_info(f"Exclude samples: dropped {len(to_drop)} sample(s).")
            meta["excluded_samples"] = to_drop

        if self.max_sample_missing is not None:
            frac = np.isnan(out.X).mean(axis=1)
            bad = frac > float(self.max_sample_missing)
            dropped = out.obs_names[bad].tolist()
            if dropped:
                log_warning(f"Sample missingness > {self.max_sample_missing:.0%}: dropping {dropped}")
            out = out[~bad].copy()
            meta["missing_samples_dropped"] = dropped

        n_valid = np.sum(~np.isnan(out.X), axis=0)
        keep = n_valid >= self.min_valid
        log_info(f"Protein filtering: kept={int(keep.sum())} dropped={int((~keep).sum())} "
                 f"(min_valid={self.min_valid}).")
        out = out[:, keep].copy()
        meta["proteins_dropped"] = int((~keep).sum())

        if out.n_obs == 0 or out.n_vars == 0:
            raise ValueError(f"Filtering left an empty matrix ({out.n_obs} samples x {out.n_vars} proteins).")

        out.uns.setdefault("preprocessing", {})
        out.uns["preprocessing"]["filtering"] = meta
        return out

    @log_time("Normalization")
    def normalize(self, adata: ad.AnnData) -> ad.AnnData:
        """Apply the normalization chain to `raw`-scale X; writes `log2` and `normalized` layers."""
        out = adata.copy()
        mat = np.asarray(out.X, dtype=np.float64).T  # (proteins x samples)
        log2_mat = np.log2(np.where(mat > 0, mat, np.nan))
        is_log = False
        vsn_meta = None

        for method in self.normalization_methods:
            if method == "log2":
                mat = np.log2(np.clip(mat, 1e-10, None))
                is_log = True

            elif method == "vsn":
                if is_log:
                    raise ValueError("VSN expects linear intensities; do not chain it after log2.")
                vsn = VSNNormalizer(
                    offset_quantile=self.normalization.get("vsn_offset_quantile", 0.05),
                    optimize=self.normalization.get("vsn_optimize", False),
                )
                mat = vsn.fit_transform(mat)
                is_log = True
                vsn_meta = {"offset": float(vsn.offset_),
                            "heterogeneity": float(vsn.heterogeneity_)}
                log_info(f"VSN: offset={vsn.offset_:.4g}, sd/mean heterogeneity={vsn.heterogeneity_:.3f}")

            elif method == "median_equalization":
                if is_log:
                    # additive on log scale
                    medians = np.nanmedian(mat, axis=0, keepdims=True)
                    mat = mat - medians + np.nanmedian(mat)
                else:
                    global_median = np.nanmedian(mat)
                    medians = np.nanmedian(mat, axis=0, keepdims=True)
                    mat = mat * (global_median / medians)

            elif method == "none":
                log_info("Skipping normalization (raw data)")

        if not is_log:
            log_warning("No log/VSN step in the normalization chain; downstream statistics assume log scale.")

        out.layers["log2"] = log2_mat.T
        out.layers["normalized"] = mat.T
        out.X = mat.T.copy()
        out.uns.setdefault("preprocessing", {})
        out.uns["preprocessing"]["normalization"] = {
            "method": list(self.normalization_methods),
            **({"vsn": vsn_meta} if vsn_meta else {}),
        }
        return out
