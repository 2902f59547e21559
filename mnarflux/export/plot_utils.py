"""
Plotly figures for the MNARflux HTML report.
"""

from typing import Dict, List, Optional

import numpy as np
import pandas as pd
import plotly.express as px
import plotly.graph_objects as go
from anndata import AnnData

from mnarflux.analysis import adata_schema as schema

_SYMBOLS = ["circle", "square", "diamond", "cross", "x", "triangle-up", "triangle-down",
            "star", "hexagon", "pentagon"]


def get_color_map(labels: List[str], palette: Optional[List[str]] = None) -> Dict[str, str]:
    """Stable mapping label -> color (labels sorted, palette cycled)."""
    palette = palette or px.colors.qualitative.Plotly
    return {lbl: palette[i % len(palette)] for i, lbl in enumerate(sorted(set(labels)))}


def _style(fig: go.Figure, title: str, width: int, height: int) -> go.Figure:
    fig.update_layout(title=dict(text=title, x=0.5), width=width, height=height, template="plotly_white")
    fig.update_xaxes(showline=True, mirror=True, linecolor="black")
    fig.update_yaxes(showline=True, mirror=True, linecolor="black")
    return fig


def plot_ids_per_sample(
    adata: AnnData,
    layer: Optional[str] = "raw",
    title: str = "Proteins Identified per Sample",
    width: int = 900,
    height: int = 450,
) -> go.Figure:
    """Bar plot of non-missing proteins per sample, colored by condition."""
    M = np.asarray(adata.layers[layer] if layer is not None else adata.X)
    counts = pd.Series(np.sum(np.isfinite(M), axis=1), index=adata.obs_names)
    conds = adata.obs[schema.OBS_CONDITION].astype(str)
    colors = get_color_map(conds.tolist())

    fig = go.Figure()
    for cond in sorted(colors):
        samples = conds.index[conds == cond]
        fig.add_trace(go.Bar(
            x=samples.tolist(),
            y=counts.loc[samples].tolist(),
            name=cond,
            marker_color=colors[cond],
            hovertemplate="Sample: %{x}<br>Proteins: %{y}<extra></extra>",
        ))
    fig.update_yaxes(title="Proteins")
    fig.update_xaxes(tickangle=45)
    return _style(fig, title, width, height)


def plot_density_cutoffs(
    classification: dict,
    title: str = "Mean Intensity Density and MNAR Cutoff",
    width: int = 900,
    height: int = 450,
) -> go.Figure:
    """Per-condition density curves with the applied cutoff (solid) and detected elbow (dotted)."""
    conditions = classification.get("conditions", {})
    colors = get_color_map(list(conditions))
    fig = go.Figure()
    for cond, info in conditions.items():
        x = np.asarray(info.get("density_x", []))
        y = np.asarray(info.get("density_y", []))
        if x.size:
            fig.add_trace(go.Scatter(x=x, y=y, mode="lines", name=f"{cond} density",
                                     line=dict(color=colors[cond])))
        fig.add_vline(x=float(info["cutoff"]), line=dict(color=colors[cond], dash="solid"),
                      annotation_text=f"{cond} cutoff ({info['cutoff_source']})",
                      annotation_position="top")
        elbow = float(info.get("elbow", np.nan))
        if np.isfinite(elbow) and info["cutoff_source"] != "elbow":
            fig.add_vline(x=elbow, line=dict(color=colors[cond], dash="dot"))
    fig.update_xaxes(title="Mean intensity (normalized)")
    fig.update_yaxes(title="Density")
    return _style(fig, title, width, height)


def plot_pca_2d(
    adata: AnnData,
    color_key: str = schema.OBS_CONDITION,
    symbol_key: str = schema.OBS_DONOR,
    title: str = "PCA",
    width: int = 900,
    height: int = 500,
) -> go.Figure:
    """
    2D PCA scatter of samples, colored by adata.obs[color_key], one marker symbol per donor.
    """
    if "X_pca" not in adata.obsm:
        raise ValueError("No PCA found in obsm; run_clustering must run first.")
    pcs = np.asarray(adata.obsm["X_pca"])
    df = pd.DataFrame({"PC1": pcs[:, 0], "PC2": pcs[:, 1] if pcs.shape[1] > 1 else 0.0},
                      index=adata.obs_names)
    df[color_key] = adata.obs[color_key].astype(str).values
    df[symbol_key] = adata.obs[symbol_key].astype(str).values if symbol_key in adata.obs else ""

    colors = get_color_map(df[color_key].tolist())
    donors = sorted(df[symbol_key].unique())
    symbols = {d: _SYMBOLS[i % len(_SYMBOLS)] for i, d in enumerate(donors)}

    fig = go.Figure()
    for lv in sorted(colors):
        sub = df[df[color_key] == lv]
        fig.add_trace(go.Scatter(
            x=sub["PC1"],
            y=sub["PC2"],
            mode="markers",
            text=sub.index.to_list(),
            customdata=sub[symbol_key].to_list(),
            name=lv,
            marker=dict(color=colors[lv], size=10, symbol=[symbols[d] for d in sub[symbol_key]],
                        line=dict(width=1, color="black")),
            hovertemplate="Sample: %{text}<br>Donor: %{customdata}<extra></extra>",
        ))
    var = np.asarray(adata.uns.get(schema.UNS_PCA, {}).get("variance_ratio", [np.nan, np.nan]))
    fig.update_xaxes(title=f"PC1 ({var[0] * 100:.1f}% var)")
    if var.size > 1:
        fig.update_yaxes(title=f"PC2 ({var[1] * 100:.1f}% var)")
    return _style(fig, title, width, height)


def plot_volcano(
    table: pd.DataFrame,
    sign_threshold: float = 0.05,
    title: str = "Volcano",
    width: int = 900,
    height: int = 550,
) -> go.Figure:
    """logFC against -log10(P.Value); proteins with adj.P.Val below the threshold highlighted."""
    df = table.dropna(subset=["logFC", "P.Value"]).copy()
    df["minus_log10_p"] = -np.log10(df["P.Value"].clip(lower=1e-300))
    sig = df["adj.P.Val"] < sign_threshold
    labels = df["GENE_NAMES"] if "GENE_NAMES" in df.columns else pd.Series(df.index, index=df.index)
    labels = labels.where(labels.astype(str) != "", pd.Series(df.index, index=df.index))

    fig = go.Figure()
    for mask, name, color in ((~sig, "not significant", "lightgrey"),
                              (sig, f"adj.P.Val < {sign_threshold}", "crimson")):
        sub = df[mask]
        fig.add_trace(go.Scatter(
            x=sub["logFC"],
            y=sub["minus_log10_p"],
            mode="markers",
            name=name,
            text=labels[mask].astype(str).tolist(),
            marker=dict(color=color, size=6, line=dict(width=0.5, color="black")),
            hovertemplate="%{text}<br>logFC: %{x:.3f}<br>-log10 p: %{y:.2f}<extra></extra>",
        ))
    fig.update_xaxes(title="log2 fold change")
    fig.update_yaxes(title="-log10(P.Value)")
    return _style(fig, title, width, height)
