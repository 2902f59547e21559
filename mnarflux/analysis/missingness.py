"""Missingness handling: per-condition substitution, MNAR/MAR classification and reconciliation.

Provides:
  - `substitute_absent_proteins`: fill proteins with no value in a condition with that
    condition's minimum, at seeded positions.
  - `classify_condition`: MNAR / MAR / discarded calls for one condition.
  - `run_missingness_classification`: the AnnData stage chaining substitution,
    cutoff resolution, classification, reconciliation and protein removal.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import anndata as ad
import numpy as np
import pandas as pd

from mnarflux.analysis import adata_schema as schema
from mnarflux.analysis.elbow import NoElbowFoundError, find_elbow, intensity_density
from mnarflux.analysis.reconciliation import get_reconciler
from mnarflux.utils.utils import log_info, log_time, log_warning

MNAR = "MNAR"
MAR = "MAR"
DISCARDED = "discarded"


class UndefinedMeanError(ValueError):
    """A protein has no observed value in a condition, so its mean intensity is undefined."""


@dataclass(frozen=True, eq=False)
class ConditionCalls:
    condition: str
    cutoff: float
    cutoff_source: str
    means: pd.Series
    n_observed: pd.Series
    mnar: frozenset
    passed: frozenset
    discarded: frozenset

    def tags(self) -> pd.Series:
        tags = pd.Series(MAR, index=self.means.index, dtype=object)
        tags[list(self.mnar)] = MNAR
        tags[list(self.discarded)] = DISCARDED
        return tags


def condition_order(conditions: Sequence[str], preferred: Optional[Sequence[str]] = None) -> List[str]:
    """Conditions present in the data, in `preferred` order first, then order of appearance."""
    present = list(pd.unique(np.asarray(conditions, dtype=str)))
    if not preferred:
        return present
    head = [str(c) for c in preferred if str(c) in present]
    return head + [c for c in present if c not in head]


def missingness_counts(intensity_matrix_GxN: np.ndarray, conditions: Sequence[str],
                       feature_ids: Sequence[str]) -> pd.DataFrame:
    """Number of missing values per feature and condition."""
    cond_arr = np.asarray(conditions, dtype=str)
    out: Dict[str, np.ndarray] = {}
    for cond in condition_order(cond_arr):
        out[cond] = np.isnan(intensity_matrix_GxN[:, cond_arr == cond]).sum(axis=1)
    return pd.DataFrame(out, index=list(feature_ids))


def substitute_absent_proteins(
    matrix_GxN: np.ndarray,
    conditions: Sequence[str],
    random_state: Optional[int],
    replace: bool = False,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Give proteins with no observation in a condition a value in that condition.

    For each condition, every protein entirely missing there gets the minimum
    observed value of the whole condition block written at positions drawn from
    the condition's samples (as many draws as missing entries). With
    `replace=True` positions are drawn with replacement, so repeated draws leave
    some entries missing. Returns (new matrix, boolean mask of written cells).
    """
    X = np.asarray(matrix_GxN, dtype=np.float64)
    cond_arr = np.asarray(conditions, dtype=str)
    if cond_arr.shape[0] != X.shape[1]:
        raise ValueError(f"{cond_arr.shape[0]} condition labels for {X.shape[1]} samples.")

    rng = np.random.default_rng(random_state)
    out = X.copy()
    written = np.zeros_like(X, dtype=bool)

    for cond in condition_order(cond_arr):
        cols = np.flatnonzero(cond_arr == cond)
        block = X[:, cols]
        if not np.any(np.isfinite(block)):
            raise ValueError(f"Condition '{cond}' has no observed value at all.")
        cond_min = float(np.nanmin(block))

        absent = np.flatnonzero(np.all(np.isnan(block), axis=1))
        for i in absent:
            n_missing = int(np.isnan(block[i]).sum())
            picks = rng.choice(cols, size=n_missing, replace=replace)
            out[i, picks] = cond_min
            written[i, picks] = True
        if absent.size:
            log_info(f"{cond}: {absent.size} absent protein(s) set to condition minimum {cond_min:.3f}.")

    return out, written


def classify_condition(
    values_GxN: np.ndarray,
    protein_ids: Sequence[str],
    cutoff: float,
    min_count: int = 5,
    n_observed: Optional[np.ndarray] = None,
    condition: str = "",
    cutoff_source: str = "manual",
) -> ConditionCalls:
    """
    Classify proteins of one condition.

    Args:
        values_GxN: intensities of the condition's samples (proteins x samples).
        protein_ids: row labels.
        cutoff: mean intensity below which a protein is MNAR.
        min_count: MAR candidates need at least this many observations.
        n_observed: per-protein observation counts; defaults to the non-missing
            count of `values_GxN`. Pass the pre-substitution counts when the
            matrix has been through `substitute_absent_proteins`.
    """
    V = np.asarray(values_GxN, dtype=np.float64)
    ids = pd.Index([str(p) for p in protein_ids])

    all_missing = np.all(np.isnan(V), axis=1)
    if np.any(all_missing):
        bad = ids[all_missing].tolist()
        raise UndefinedMeanError(
            f"Condition '{condition}': {len(bad)} protein(s) have no observed value, mean intensity "
            f"is undefined (run the absent-protein substitution first): {bad[:10]}"
        )

    means = pd.Series(np.nanmean(V, axis=1), index=ids)
    n_obs = np.sum(~np.isnan(V), axis=1) if n_observed is None else np.asarray(n_observed)
    n_obs = pd.Series(n_obs.astype(int), index=ids)

    is_mnar = means.to_numpy() < cutoff
    enough = n_obs.to_numpy() >= int(min_count)

    return ConditionCalls(
        condition=str(condition),
        cutoff=float(cutoff),
        cutoff_source=cutoff_source,
        means=means,
        n_observed=n_obs,
        mnar=frozenset(ids[is_mnar]),
        passed=frozenset(ids[~is_mnar & enough]),
        discarded=frozenset(ids[~is_mnar & ~enough]),
    )


def resolve_cutoff(
    means: np.ndarray,
    condition: str,
    manual: Optional[float],
    threshold: float = 0.35,
    n_points: int = 512,
    bw_method=None,
) -> Tuple[float, str, Dict]:
    """
    Manual cutoff when configured, otherwise the elbow of the mean-intensity density.

    The elbow is always attempted so it can be reported next to a manual value.
    Without a manual cutoff, a failed detection propagates (NoElbowFoundError
    when no curvature point qualifies).
    """
    curve: Dict = {"elbow": np.nan, "density_x": np.array([]), "density_y": np.array([])}
    elbow_error = None
    try:
        x, y = intensity_density(means, n_points=n_points, bw_method=bw_method)
        curve.update(density_x=x, density_y=y)
        curve["elbow"] = find_elbow(x, y, threshold=threshold)
    except ValueError as err:
        elbow_error = err

    if manual is not None:
        if elbow_error is None:
            log_info(f"{condition}: manual cutoff {float(manual):.3f} (elbow would be {curve['elbow']:.3f}).")
        else:
            log_info(f"{condition}: manual cutoff {float(manual):.3f} (no elbow: {elbow_error}).")
        return float(manual), "manual", curve

    if elbow_error is not None:
        if not isinstance(elbow_error, NoElbowFoundError):
            raise elbow_error
        raise NoElbowFoundError(
            f"Condition '{condition}': {elbow_error} Set missingness.cutoffs.{condition} "
            f"or lower missingness.elbow_threshold."
        )
    log_info(f"{condition}: elbow cutoff {curve['elbow']:.3f}.")
    return float(curve["elbow"]), "elbow", curve


@log_time("Missingness classification")
def run_missingness_classification(adata: ad.AnnData, config: dict,
                                   conditions: Optional[Sequence[str]] = None) -> ad.AnnData:
    """
    Substitute, classify per condition, reconcile and drop non-retained proteins.

    Reads `adata.X` (normalized, log scale). Returns a new AnnData restricted to the
    retained proteins, with X/`substituted` holding the substituted matrix and the
    per-condition tags in `var["MISSINGNESS_<condition>"]`.
    """
    cfg = config or {}
    sub_cfg = cfg.get("substitution") or {}
    manual_cutoffs = cfg.get("cutoffs") or {}
    min_count = int(cfg.get("min_count", 5))

    X = np.asarray(adata.X, dtype=np.float64).T  # (proteins x samples)
    cond_arr = adata.obs[schema.OBS_CONDITION].astype(str).to_numpy()
    order = condition_order(cond_arr, conditions)
    ids = adata.var_names.astype(str)

    n_observed = {c: np.sum(~np.isnan(X[:, cond_arr == c]), axis=1) for c in order}

    if sub_cfg.get("enabled", True):
        X_sub, written = substitute_absent_proteins(
            X, cond_arr,
            random_state=sub_cfg.get("random_state", 42),
            replace=bool(sub_cfg.get("replace", False)),
        )
    else:
        X_sub, written = X.copy(), np.zeros_like(X, dtype=bool)

    calls: Dict[str, ConditionCalls] = {}
    summary: Dict[str, Dict] = {}
    for cond in order:
        block = X_sub[:, cond_arr == cond]
        with np.errstate(invalid="ignore"):
            means = np.nanmean(block, axis=1)
        cutoff, source, curve = resolve_cutoff(
            means[np.isfinite(means)],
            condition=cond,
            manual=manual_cutoffs.get(cond),
            threshold=float(cfg.get("elbow_threshold", 0.35)),
            n_points=int(cfg.get("density_points", 512)),
            bw_method=cfg.get("bw_method"),
        )
        calls[cond] = classify_condition(
            block, ids, cutoff=cutoff, min_count=min_count,
            n_observed=n_observed[cond], condition=cond, cutoff_source=source,
        )
        c = calls[cond]
        log_info(f"{cond}: MNAR={len(c.mnar)} MAR={len(c.passed)} low-confidence MAR={len(c.discarded)}")
        summary[cond] = {
            "cutoff": cutoff,
            "cutoff_source": source,
            "elbow": float(curve["elbow"]),
            "density_x": np.asarray(curve["density_x"]),
            "density_y": np.asarray(curve["density_y"]),
            "means": np.asarray(c.means.to_numpy()),
            "n_MNAR": len(c.mnar),
            "n_MAR": len(c.passed),
            "n_discarded": len(c.discarded),
        }

    reconciler = get_reconciler(cfg.get("reconciliation", "pairwise"))
    retained = reconciler.reconcile(calls)
    keep = np.asarray([p in retained for p in ids], dtype=bool)
    if not keep.any():
        raise ValueError("No protein retained after missingness reconciliation.")
    log_info(f"Retained {int(keep.sum())} / {len(ids)} proteins after reconciliation.")

    annotated = adata.copy()
    for cond, c in calls.items():
        annotated.var[f"{schema.VAR_MEAN_PREFIX}{cond}"] = c.means.reindex(ids).to_numpy()
        annotated.var[f"{schema.VAR_NOBS_PREFIX}{cond}"] = c.n_observed.reindex(ids).to_numpy()
        annotated.var[f"{schema.VAR_MISSINGNESS_PREFIX}{cond}"] = c.tags().reindex(ids).to_numpy()
    annotated.var[schema.VAR_RETAINED] = keep
    annotated.layers["substituted"] = X_sub.T
    annotated.X = X_sub.T.copy()

    out = annotated[:, keep].copy()
    out.uns[schema.UNS_MISSINGNESS] = missingness_counts(
        np.asarray(adata.layers["raw"]).T[keep] if "raw" in adata.layers else X[keep],
        cond_arr, ids[keep],
    )
    out.uns[schema.UNS_MISSINGNESS_CLASSIFICATION] = {
        "conditions": summary,
        "condition_order": list(order),
        "min_count": min_count,
        "reconciliation": {"method": cfg.get("reconciliation", "pairwise"), **reconciler.details()},
        "n_input": int(len(ids)),
        "n_retained": int(keep.sum()),
        "substitution": {
            "enabled": bool(sub_cfg.get("enabled", True)),
            "random_state": int(sub_cfg.get("random_state", 42)),
            "replace": bool(sub_cfg.get("replace", False)),
            "n_values": int(written.sum()),
        },
    }
    if len(order) != 2:
        log_warning(f"{len(order)} conditions present; reconciliation expects exactly two.")
    return out
