"""HTML report exporter for MNARflux results.

Writes one self-contained page with:
  1) title, date, pipeline settings and package versions
  2) identifications per sample, density curves with the MNAR cutoffs, PCA
  3) volcano plot and the top of the results table
"""

import html
from datetime import datetime
from importlib.metadata import PackageNotFoundError, version as _pkg_version
from pathlib import Path
from typing import Dict, List, Optional

import pandas as pd
import plotly.graph_objects as go
from anndata import AnnData

from mnarflux.analysis import adata_schema as schema
from mnarflux.export.plot_utils import (
    plot_density_cutoffs,
    plot_ids_per_sample,
    plot_pca_2d,
    plot_volcano,
)
from mnarflux.utils.utils import log_time

_PACKAGES = ["mnarflux", "numpy", "pandas", "polars", "scipy", "statsmodels",
             "scikit-learn", "anndata", "scanpy", "plotly"]

_CSS = """
body { font-family: Helvetica, Arial, sans-serif; margin: 2em auto; max-width: 1000px; color: #222; }
h1 { text-align: center; } .date { text-align: center; color: #555; }
table.settings td { padding: 2px 12px 2px 0; vertical-align: top; }
table.dataframe { border-collapse: collapse; font-size: 12px; }
table.dataframe td, table.dataframe th { border: 1px solid #ccc; padding: 2px 6px; }
"""


def package_versions(packages: List[str] = _PACKAGES) -> Dict[str, str]:
    out = {}
    for pkg in packages:
        try:
            out[pkg] = _pkg_version(pkg)
        except PackageNotFoundError:
            out[pkg] = "not installed"
    return out


class HTMLReportExporter:
    """Assemble the report from the final AnnData, the loaded AnnData and the results table."""

    def __init__(
        self,
        adata: AnnData,
        config: Dict,
        results: Optional[pd.DataFrame] = None,
        loaded: Optional[AnnData] = None,
        max_rows: int = 500,
    ):
        self.adata = adata
        self.config = config or {}
        self.analysis_config = self.config.get("analysis", {}) or {}
        self.results = results
        self.loaded = loaded if loaded is not None else adata
        self.max_rows = int(max_rows)
        self.sign_threshold = float(self.analysis_config.get("sign_threshold", 0.05))
        self.pilot_mode = bool(adata.uns.get(schema.UNS_PILOT_MODE, False))

    def figures(self) -> List[go.Figure]:
        figs = [plot_ids_per_sample(self.loaded, layer="raw" if "raw" in self.loaded.layers else None)]
        classification = self.adata.uns.get(schema.UNS_MISSINGNESS_CLASSIFICATION)
        if classification:
            figs.append(plot_density_cutoffs(classification))
        if "X_pca" in self.adata.obsm:
            figs.append(plot_pca_2d(self.adata))
        if self.results is not None and not self.pilot_mode and "P.Value" in self.results.columns:
            contrast = (self.adata.uns.get(schema.UNS_CONTRAST_NAMES) or ["contrast"])[0]
            figs.append(plot_volcano(self.results, self.sign_threshold, title=f"Volcano: {contrast}"))
        return figs

    def settings(self) -> List[tuple]:
        """(label, value) rows summarizing what each stage did."""
        uns = self.adata.uns
        rows = [("Input file", self.config.get("dataset", {}).get("input_file", ""))]

        pre = uns.get("preprocessing", {})
        flt = pre.get("filtering", {})
        rows.append(("Filtering", f"excluded samples: {list(flt.get('excluded_samples', []))}; "
                                  f"dropped for missingness: {list(flt.get('missing_samples_dropped', []))}; "
                                  f"proteins dropped: {flt.get('proteins_dropped', 0)}"))
        norm = pre.get("normalization", {})
        rows.append(("Normalization", ", ".join(map(str, norm.get("method", [])))))

        clustering = uns.get(schema.UNS_CLUSTERING)
        if clustering:
            rows.append(("Sample clusters", f"{clustering.get('n_clusters')} ({clustering.get('method')} linkage on PCs)"))

        mc = uns.get(schema.UNS_MISSINGNESS_CLASSIFICATION, {})
        for cond, info in mc.get("conditions", {}).items():
            rows.append((f"Cutoff {cond}",
                         f"{float(info['cutoff']):.3f} ({info['cutoff_source']}); MNAR={info['n_MNAR']}, "
                         f"MAR={info['n_MAR']}, low-confidence MAR={info['n_discarded']}"))
        if mc:
            rec = {k: v for k, v in mc.get("reconciliation", {}).items() if k != "method"}
            rows.append(("Reconciliation", ", ".join(f"{k}={v}" for k, v in rec.items())))
            rows.append(("Retained proteins", f"{mc.get('n_retained')} / {mc.get('n_input')}"))
            sub = mc.get("substitution", {})
            rows.append(("Absent-protein substitution", f"{sub.get('n_values', 0)} value(s), seed {sub.get('random_state')}"))

        imp = uns.get("imputation")
        if imp:
            rows.append(("Imputation", f"MNAR: {imp['mnar_method']}, MAR: {imp['mar_method']}, seed {imp['random_state']}"))

        corr = uns.get(schema.UNS_BLOCK_CORRELATION)
        if corr:
            rows.append(("Blocking", f"{corr.get('block_column')}: correlation {float(corr.get('consensus', 0.0)):.4f} "
                                     f"({corr.get('source')})"))
        prior = uns.get(schema.UNS_PRIOR)
        if prior:
            rows.append(("eBayes prior", f"s2_prior={float(prior['s2_prior']):.4g}, df_prior={float(prior['df_prior']):.4g}"))
        if self.pilot_mode:
            rows.append(("Mode", "pilot study (log2 fold changes only)"))
        return rows

    def _table_html(self) -> str:
        if self.results is None:
            return "<p>No results table.</p>"
        keep = [c for c in ["GENE_NAMES", "PROTEIN_GROUP", "logFC", "AveExpr", "t", "P.Value", "adj.P.Val"]
                if c in self.results.columns]
        top = self.results[keep].head(self.max_rows)
        note = ""
        if len(self.results) > self.max_rows:
            note = f"<p>Showing the first {self.max_rows} of {len(self.results)} proteins.</p>"
        return note + top.to_html(float_format=lambda v: f"{v:.4g}", na_rep="NA", border=0)

    def render(self) -> str:
        title = self.analysis_config.get("title") or "MNARflux report"
        parts = [
            "<!DOCTYPE html><html><head><meta charset='utf-8'>",
            f"<title>{html.escape(title)}</title><style>{_CSS}</style></head><body>",
            f"<h1>{html.escape(title)}</h1>",
            f"<p class='date'>{datetime.now().strftime('%Y-%m-%d')}</p>",
        ]
        intro = self.analysis_config.get("intro_text")
        if intro:
            parts.append(f"<p>{html.escape(str(intro))}</p>")

        parts.append("<h2>Pipeline settings</h2><table class='settings'>")
        for label, value in self.settings():
            parts.append(f"<tr><td><b>{html.escape(str(label))}</b></td><td>{html.escape(str(value))}</td></tr>")
        parts.append("</table>")

        parts.append("<h2>Figures</h2>")
        for i, fig in enumerate(self.figures()):
            parts.append(fig.to_html(full_html=False, include_plotlyjs=(i == 0)))

        parts.append("<h2>Results</h2>")
        parts.append(self._table_html())

        versions = ", ".join(f"{k} {v}" for k, v in package_versions().items())
        parts.append(f"<h2>Software</h2><p>{html.escape(versions)}</p>")
        parts.append("</body></html>")
        return "\n".join(parts)

    @log_time("Preparing HTML Report")
    def export(self, path) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.render(), encoding="utf-8")
        return path
