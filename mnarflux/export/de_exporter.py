"""Export differential-expression results to TSV/XLSX and write the .h5ad snapshot.

The results table follows limma's topTable naming (logFC, AveExpr, t, P.Value,
adj.P.Val) and appends the unmoderated statistics, the per-condition
missingness calls and the processed and raw intensities.
"""

from datetime import datetime
from importlib.metadata import PackageNotFoundError, version as _pkg_version
from pathlib import Path
from typing import Dict, Optional

import numpy as np
import pandas as pd

from mnarflux.analysis import adata_schema as schema
from mnarflux.utils.utils import log_info, log_time

RESULT_COLUMNS = {
    schema.VARM_LOG2FC: "logFC",
    schema.VARM_T_EBAYES: "t",
    schema.VARM_P_EBAYES: "P.Value",
    schema.VARM_Q_EBAYES: "adj.P.Val",
    schema.VARM_SE_EBAYES: "SE",
    schema.VARM_T_RAW: "t_raw",
    schema.VARM_P_RAW: "p_raw",
    schema.VARM_Q_RAW: "q_raw",
}


class DEExporter:
    def __init__(self, adata, output_path, use_xlsx=False, sig_threshold=0.05):
        """TSV/XLSX and .h5ad exporter for a processed `AnnData`."""
        self.adata = adata
        self.output_path = Path(output_path)
        self.use_xlsx = use_xlsx
        self.sig_threshold = sig_threshold
        self.contrasts = list(self.adata.uns.get(schema.UNS_CONTRAST_NAMES, []))

    def _get_series(self, matrix_name: str, contrast_idx: int = 0) -> Optional[pd.Series]:
        """Return one contrast column of varm[matrix_name] as a Series, or None."""
        if matrix_name not in self.adata.varm:
            return None
        mat = np.asarray(self.adata.varm[matrix_name])
        return pd.Series(mat[:, contrast_idx], index=self.adata.var_names)

    def _intensities(self, layer: Optional[str], prefix: str) -> Optional[pd.DataFrame]:
        if layer is not None and layer not in self.adata.layers:
            return None
        M = self.adata.layers[layer] if layer is not None else self.adata.X
        return pd.DataFrame(np.asarray(M), index=self.adata.obs_names,
                            columns=self.adata.var_names).T.add_prefix(prefix)

    def results_table(self, contrast_idx: int = 0) -> pd.DataFrame:
        """One row per protein, sorted by P.Value (unsorted in pilot mode)."""
        ad = self.adata
        if schema.VARM_LOG2FC not in ad.varm:
            raise ValueError("Missing varm['log2fc']; run the differential analysis first.")

        meta_cols = [c for c in (schema.VAR_GENE_NAMES, schema.VAR_PROTEIN_GROUP) if c in ad.var.columns]
        blocks = [ad.var[meta_cols].copy()]

        stats = {}
        for key, name in RESULT_COLUMNS.items():
            s = self._get_series(key, contrast_idx)
            if s is not None:
                stats[name] = s
            if key == schema.VARM_LOG2FC and schema.VARM_AVE_EXPR in ad.varm:
                stats["AveExpr"] = self._get_series(schema.VARM_AVE_EXPR, 0)
        blocks.append(pd.DataFrame(stats))

        calls = [c for c in ad.var.columns
                 if c.startswith((schema.VAR_MISSINGNESS_PREFIX, schema.VAR_MEAN_PREFIX, schema.VAR_NOBS_PREFIX))]
        if calls:
            blocks.append(ad.var[calls])

        for layer, prefix in ((None, "processed_log2_"), ("raw", "Raw_")):
            df = self._intensities(layer, prefix)
            if df is not None:
                blocks.append(df)

        table = pd.concat(blocks, axis=1)
        table.index.name = "PROTEIN"
        if "P.Value" in table.columns:
            table = table.sort_values("P.Value", kind="mergesort", na_position="last")
        return table

    def _export_excel(self, tables: Dict[str, pd.DataFrame], readme: str) -> Path:
        """Write tables to a single XLSX with a README sheet."""
        out_file = self.output_path.with_suffix(".xlsx")
        with pd.ExcelWriter(out_file, engine="xlsxwriter") as writer:
            pd.DataFrame({"README": readme.split("\n")}).to_excel(writer, index=False, sheet_name="README")
            header_fmt = writer.book.add_format({"bold": False, "align": "left", "border": 0})
            for name, df in tables.items():
                df_out = df.reset_index()
                ws = writer.book.add_worksheet(name)
                ws.write_row(0, 0, list(df_out.columns), header_fmt)
                df_out.to_excel(writer, sheet_name=name, startrow=1, index=False, header=False)
                ws.set_column(0, len(df_out.columns) - 1, 14)
        return out_file

    @log_time("Differential Expression - exporting table")
    def export(self) -> Path:
        """Write the results TSV (and the XLSX workbook when enabled); returns the TSV path."""
        self.output_path.parent.mkdir(parents=True, exist_ok=True)
        table = self.results_table()

        tsv_path = self.output_path.with_suffix(".tsv")
        table.to_csv(tsv_path, sep="\t", na_rep="NA")
        log_info(f"Results table: {tsv_path} ({table.shape[0]} proteins)")

        if "adj.P.Val" in table.columns:
            n_sig = int((table["adj.P.Val"] < self.sig_threshold).sum())
            log_info(f"{n_sig} protein(s) with adj.P.Val < {self.sig_threshold}")

        if self.use_xlsx:
            contrast = self.contrasts[0] if self.contrasts else "contrast"
            readme = (
                "MNARflux Differential Expression Export\n\n"
                f"Contrast: {contrast}\n"
                "Sheet Descriptions:\n"
                "- Results: logFC, AveExpr, moderated and raw statistics, missingness calls, intensities.\n"
                "- Missingness: number of missing raw values per protein and condition.\n"
            )
            tables = {"Results": table}
            miss = self.adata.uns.get(schema.UNS_MISSINGNESS)
            if isinstance(miss, pd.DataFrame):
                tables["Missingness"] = miss.rename_axis("PROTEIN")
            xlsx_path = self._export_excel(tables, readme)
            log_info(f"Workbook: {xlsx_path}")
        return tsv_path

    @log_time("Exporting .h5ad")
    def export_adata(self, h5ad_path: str) -> Path:
        """Write a compact .h5ad with categorical metadata and version provenance."""
        path = Path(h5ad_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        adata = self.adata.copy()

        for col in (schema.OBS_CONDITION, schema.OBS_DONOR, schema.OBS_REPLICATE):
            if col in adata.obs.columns:
                adata.obs[col] = adata.obs[col].astype(str).astype("category")
        for col in adata.var.columns:
            if col.startswith(schema.VAR_MISSINGNESS_PREFIX):
                adata.var[col] = adata.var[col].astype(str).astype("category")

        try:
            mf_version = _pkg_version("mnarflux")
        except PackageNotFoundError:
            mf_version = "0+unknown"
        adata.uns["mnarflux"] = {
            "version": mf_version,
            "created_at": datetime.now().isoformat(timespec="seconds"),
        }
        adata.write_h5ad(path, compression="gzip")
        return path
