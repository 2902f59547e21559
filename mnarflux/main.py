import anndata as ad

from mnarflux.analysis.clustering import exclude_clusters, run_clustering
from mnarflux.analysis.limma_pipeline import run_limma_pipeline
from mnarflux.analysis.missingness import run_missingness_classification
from mnarflux.export.de_exporter import DEExporter
from mnarflux.export.html_report_exporter import HTMLReportExporter
from mnarflux.workflow.dataset import Dataset
from mnarflux.workflow.imputation import impute_by_condition
from mnarflux.workflow.preprocessing import Preprocessor
from mnarflux.utils.utils import log_info, log_time

DEFAULT_EXPORTS = {
    "path_table": "mnarflux_results/results.tsv",
    "path_h5ad": "mnarflux_results/results.h5ad",
    "path_report": "mnarflux_results/report.html",
    "use_xlsx": False,
}


def preprocess(loaded: ad.AnnData, config: dict) -> ad.AnnData:
    """Filtering, normalization and QC clustering (with optional cluster exclusion)."""
    dataset_cfg = config.get("dataset", {}) or {}
    pre = Preprocessor(config.get("preprocessing"))
    adata = pre.normalize(pre.filter(loaded, exclude_samples=dataset_cfg.get("exclude_samples")))

    clu_cfg = config.get("clustering") or {}
    if not clu_cfg.get("enabled", True):
        return adata

    adata = run_clustering(
        adata,
        layer="normalized",
        n_pcs=int(clu_cfg.get("n_pcs", 10)),
        n_clusters=int(clu_cfg.get("n_clusters", 2)),
        hierarchical_method=clu_cfg.get("method", "ward"),
        random_seed=int(clu_cfg.get("random_state", 0)),
    )
    if clu_cfg.get("exclude_clusters"):
        kept = exclude_clusters(adata, clu_cfg["exclude_clusters"])
        excluded = sorted(set(adata.obs_names) - set(kept.obs_names))
        # normalization depends on the sample set, so redo it from raw
        kept.X = kept.layers["raw"].copy()
        adata = pre.normalize(pre.filter(kept))
        adata.uns["clustering"]["excluded_samples"] = excluded
    return adata


@log_time("MNARflux Pipeline")
def run_pipeline(config: dict) -> ad.AnnData:
    """Run every stage on the configured dataset and write the exports. Returns the final AnnData."""
    config = config or {}
    conditions = (config.get("dataset", {}) or {}).get("conditions")

    loaded = Dataset(**config).get_anndata()
    adata = preprocess(loaded, config)
    adata = run_missingness_classification(adata, config.get("missingness") or {}, conditions=conditions)
    adata = impute_by_condition(adata, config.get("imputation") or {}, conditions=conditions)
    adata = run_limma_pipeline(adata, config, conditions=conditions)

    analysis_config = config.get("analysis", {}) or {}
    export_config = {**DEFAULT_EXPORTS, **(analysis_config.get("exports") or {})}

    exporter = DEExporter(adata,
                          output_path=export_config["path_table"],
                          use_xlsx=bool(export_config.get("use_xlsx", False)),
                          sig_threshold=float(analysis_config.get("sign_threshold", 0.05)))
    results = exporter.results_table()

    if analysis_config.get("export_table", True):
        exporter.export()
    if export_config.get("path_h5ad"):
        exporter.export_adata(export_config["path_h5ad"])
    if analysis_config.get("export_report", True):
        report = HTMLReportExporter(adata, config, results=results, loaded=loaded,
                                    max_rows=int(analysis_config.get("report_max_rows", 500)))
        path = report.export(export_config["path_report"])
        log_info(f"Report: {path}")
    return adata
