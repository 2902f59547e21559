"""Limma-style differential analysis with donor blocking.

`run_limma_pipeline` fits `0 + condition` per protein by generalized least squares
(consensus within-donor correlation), moderates the residual variances with
empirical Bayes and reports the configured `A - B` contrast.
"""

from typing import List, Optional, Sequence

import anndata as ad
import numpy as np

from mnarflux.analysis import adata_schema as schema
from mnarflux.analysis.duplicate_correlation import estimate_block_correlation
from mnarflux.analysis.ebayes_moderator import EbayesModerator
from mnarflux.analysis.linearmodelfitter import LinearModelFitter
from mnarflux.analysis.stats_ops import bh_qvalues, raw_stats_from_fit
from mnarflux.design.contrast import apply_contrasts, make_contrast
from mnarflux.design.designmatrixbuilder import DesignMatrixBuilder
from mnarflux.utils.utils import log_info, log_time, log_warning


def resolve_contrast(levels: Sequence[str], contrast: Optional[Sequence[str]],
                     conditions: Optional[Sequence[str]] = None) -> List[str]:
    """`[A, B]` from `analysis.contrast`, else the first two configured/observed conditions."""
    if contrast:
        pair = [str(c) for c in contrast]
        if len(pair) != 2:
            raise ValueError(f"analysis.contrast must name exactly two conditions, got {pair}")
        return pair
    order = [str(c) for c in (conditions or []) if str(c) in levels]
    order += [lvl for lvl in levels if lvl not in order]
    if len(order) < 2:
        raise ValueError(f"Need at least 2 conditions for a contrast; found {list(levels)}")
    return order[:2]


@log_time("Analysis pipeline")
def run_limma_pipeline(adata: ad.AnnData, config: dict,
                       conditions: Optional[Sequence[str]] = None) -> ad.AnnData:
    """Blocked limma workflow on `adata.X` (imputed, log scale).

    Pilot mode (any condition with fewer than 2 samples) stores log2 fold changes only.
    """
    analysis_cfg = (config or {}).get("analysis", {}) or {}
    obs = adata.obs.copy()
    obs[schema.OBS_CONDITION] = obs[schema.OBS_CONDITION].astype(str)

    levels = sorted(obs[schema.OBS_CONDITION].unique())
    pair = resolve_contrast(levels, analysis_cfg.get("contrast"), conditions)

    builder = DesignMatrixBuilder(obs, {"group_column": schema.OBS_CONDITION, "levels": pair})
    design, _ = builder.build()
    C, contrast_names = make_contrast(builder.levels, [tuple(pair)])
    log_info(f"Design: 0 + {' + '.join(builder.levels)}; contrast {contrast_names[0]}")

    repl_counts = obs[schema.OBS_CONDITION].value_counts()
    pilot_mode = bool(repl_counts.reindex(pair).min() <= 1)
    if pilot_mode:
        log_warning("Pilot study mode: a contrasted condition has only 1 replicate; "
                    "reporting log2 fold changes only.")

    Y = np.asarray(adata.X, dtype=np.float64)  # (samples x proteins)

    block_col = analysis_cfg.get("block_column", schema.OBS_DONOR)
    block = None
    corr_info = {"block_column": str(block_col or ""), "source": "none", "consensus": 0.0}
    if block_col and not pilot_mode:
        if block_col not in obs.columns:
            raise ValueError(f"Block column '{block_col}' not found in sample metadata.")
        block = obs[block_col].astype(str).to_numpy()
        fixed = analysis_cfg.get("correlation")
        if fixed is not None:
            rho = float(fixed)
            if not -1.0 < rho < 1.0:
                raise ValueError(f"analysis.correlation must lie in (-1, 1), got {rho}")
            corr_info.update(source="config", consensus=rho)
            log_info(f"Using configured within-block correlation {rho:.4f}")
        else:
            est = estimate_block_correlation(
                Y, design, block,
                trim=float(analysis_cfg.get("correlation_trim", 0.15)),
                max_proteins=analysis_cfg.get("correlation_max_proteins"),
                random_state=analysis_cfg.get("random_state", 0),
            )
            corr_info.update(source="estimated", consensus=est["consensus"],
                             n_fitted=est["n_fitted"], n_failed=est["n_failed"])

    fitter = LinearModelFitter(Y, design, block=block, correlation=corr_info["consensus"]).fit()
    fit = fitter.get_results()
    coefs, stdu, _ = apply_contrasts(fit, C)

    out = adata.copy()
    out.varm[schema.VARM_LOG2FC] = coefs
    out.varm[schema.VARM_AVE_EXPR] = fit["ave_expr"][:, None]

    if not pilot_mode:
        sigma = np.sqrt(fit["residual_variance"])
        df_res = float(fit["df_residual"])
        with np.errstate(divide="ignore", invalid="ignore"):
            se_raw, t_raw, p_raw = raw_stats_from_fit(coefs=coefs, stdu=stdu, sigma=sigma, df_res=df_res)
            moderator = EbayesModerator(fit["residual_variance"], df_res)
            moderator.fit()
            eb = moderator.apply_to_contrasts(coefs, stdu)

        out.varm[schema.VARM_SE_RAW] = se_raw
        out.varm[schema.VARM_T_RAW] = t_raw
        out.varm[schema.VARM_P_RAW] = p_raw
        out.varm[schema.VARM_Q_RAW] = bh_qvalues(p_raw)

        out.varm[schema.VARM_SE_EBAYES] = eb["se_ebayes"]
        out.varm[schema.VARM_T_EBAYES] = eb["t_ebayes"]
        out.varm[schema.VARM_P_EBAYES] = eb["p_ebayes"]
        out.varm[schema.VARM_Q_EBAYES] = eb["q_ebayes"]

        out.uns[schema.UNS_RESIDUAL_VARIANCE] = np.asarray(fit["residual_variance"], dtype=np.float32)
        out.uns[schema.UNS_PRIOR] = {
            "s2_prior": float(moderator.s2_prior),
            "df_prior": float(moderator.df_prior),
            "df_residual": df_res,
            "df_total": float(moderator.df_total),
        }
        n_sig = int(np.sum(eb["q_ebayes"][:, 0] < float(analysis_cfg.get("sign_threshold", 0.05))))
        log_info(f"{contrast_names[0]}: {n_sig} protein(s) with adj.P.Val < "
                 f"{analysis_cfg.get('sign_threshold', 0.05)}")

    out.uns[schema.UNS_CONTRAST_NAMES] = list(contrast_names)
    out.uns[schema.UNS_PILOT_MODE] = pilot_mode
    out.uns[schema.UNS_BLOCK_CORRELATION] = corr_info
    return out
