"""Condition-aware imputation driven by the per-condition missingness tags."""

from typing import Dict, Optional, Sequence

import anndata as ad
import numpy as np

from mnarflux.analysis import adata_schema as schema
from mnarflux.analysis.missingness import MAR, MNAR, condition_order
from mnarflux.workflow.imputer_factory import get_imputer
from mnarflux.utils.utils import log_indent, log_info, log_time, log_warning


def _imputer_kwargs(block_cfg: Optional[dict], default_method: str, random_state) -> dict:
    kwargs = dict(block_cfg or {})
    kwargs.setdefault("method", default_method)
    kwargs.setdefault("random_state", random_state)
    return kwargs


def _impute_rows(block: np.ndarray, rows: np.ndarray, imputer, fit_block: np.ndarray) -> np.ndarray:
    if rows.size == 0:
        return block
    out = block.copy()
    out[rows] = imputer.fit(fit_block).transform(block[rows])
    return out


@log_time("Imputation")
def impute_by_condition(adata: ad.AnnData, config: Optional[dict] = None,
                        conditions: Optional[Sequence[str]] = None) -> ad.AnnData:
    """
    Impute the missing values of each condition block separately.

    For condition C, proteins tagged MNAR in `var["MISSINGNESS_<C>"]` are imputed
    with the `imputation.mnar` imputer (MinProb by default, fitted on the whole C
    block) and proteins tagged MAR with the `imputation.mar` imputer (kNN over
    proteins, fitted on the MAR rows of C). Writes layer `imputed` and sets X.
    """
    cfg = config or {}
    seed = cfg.get("random_state", 42)
    mnar_kwargs = _imputer_kwargs(cfg.get("mnar"), "minprob", seed)
    mar_kwargs = _imputer_kwargs(cfg.get("mar"), "knn", seed)

    X = np.asarray(adata.X, dtype=np.float64).T  # (proteins x samples)
    cond_arr = adata.obs[schema.OBS_CONDITION].astype(str).to_numpy()
    out = X.copy()
    record: Dict[str, Dict] = {}

    for cond in condition_order(cond_arr, conditions):
        tag_col = f"{schema.VAR_MISSINGNESS_PREFIX}{cond}"
        if tag_col not in adata.var:
            raise ValueError(f"Missing '{tag_col}' in var; run the missingness classification first.")
        tags = adata.var[tag_col].astype(str).to_numpy()
        unexpected = sorted(set(tags) - {MNAR, MAR})
        if unexpected:
            raise ValueError(f"{cond}: unexpected missingness tags {unexpected} among retained proteins.")

        cols = np.flatnonzero(cond_arr == cond)
        block = X[:, cols]
        mnar_rows = np.flatnonzero(tags == MNAR)
        mar_rows = np.flatnonzero(tags == MAR)

        with log_indent():
            imputed = _impute_rows(block, mnar_rows, get_imputer(**dict(mnar_kwargs)), block)

            if mar_rows.size:
                mar_block = imputed[mar_rows]
                empty = np.all(np.isnan(mar_block), axis=0)
                usable = np.flatnonzero(~empty)
                knn = get_imputer(**dict(mar_kwargs))
                filled = mar_block.copy()
                filled[:, usable] = knn.fit_transform(mar_block[:, usable])
                imputed[mar_rows] = filled
                if np.any(empty):
                    log_warning(f"{cond}: {int(empty.sum())} sample(s) have no MAR value; "
                                f"falling back to the MNAR imputer for them.")
                    fallback = get_imputer(**dict(mnar_kwargs))
                    imputed[mar_rows] = fallback.fit(block).transform(imputed[mar_rows])

            n_mnar = int(np.isnan(block[mnar_rows]).sum())
            n_mar = int(np.isnan(block[mar_rows]).sum())
            log_info(f"{cond}: imputed {n_mnar} MNAR value(s) ({mnar_kwargs['method']}) "
                     f"and {n_mar} MAR value(s) ({mar_kwargs['method']}).")

        out[:, cols] = imputed
        record[cond] = {"n_mnar_values": n_mnar, "n_mar_values": n_mar,
                        "n_mnar_proteins": int(mnar_rows.size), "n_mar_proteins": int(mar_rows.size)}

    if np.isnan(out).any():
        raise ValueError(f"{int(np.isnan(out).sum())} value(s) still missing after imputation.")

    result = adata.copy()
    result.layers["imputed"] = out.T
    result.X = out.T.copy()
    result.uns["imputation"] = {
        "mnar_method": mnar_kwargs["method"],
        "mar_method": mar_kwargs["method"],
        "random_state": int(seed) if seed is not None else -1,
        "per_condition": record,
    }
    return result
