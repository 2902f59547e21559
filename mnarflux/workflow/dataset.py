import warnings
from typing import List, Union

import anndata as ad
import numpy as np
import pandas as pd
import polars as pl
import pyarrow.csv as pv_csv

from mnarflux.utils.harmonizer import DataHarmonizer
from mnarflux.utils.utils import log_info, log_time, polars_matrix_to_numpy

# Supress the ImplicitModificationWarning from AnnData
warnings.filterwarnings("ignore", category=UserWarning, message=".*Transforming to str index.*")


class Dataset:
    """Loads the protein matrix, parses sample metadata and converts to AnnData."""

    def __init__(self, **kwargs):
        """
        Initialize the dataset object.

        Args:
            kwargs: dict with all the config elements (only the `dataset` section is read)
        """
        dataset_cfg = kwargs.get("dataset", {}) or {}
        self.file_path = dataset_cfg.get("input_file", None)
        self.load_method = dataset_cfg.get("load_method", "polars")
        if self.file_path is None:
            raise ValueError("dataset.input_file is required.")

        self.harmonizer = DataHarmonizer(dataset_cfg)

        self._load_and_process()

    def _load_and_process(self):
        self.rawinput = self._load_rawdata(str(self.file_path))
        self.sample_meta = self.harmonizer.sample_metadata(self.rawinput)
        self.wide = self.harmonizer.harmonize(self.rawinput)
        self._convert_to_anndata()

    @log_time("Data Loading")
    def _load_rawdata(self, file_path: str) -> Union[pl.DataFrame, pd.DataFrame]:
        """Load raw data from a CSV or TSV file using different libraries."""
        if not file_path.endswith((".csv", ".tsv", ".txt")):
            raise ValueError("Only CSV or TSV files are supported.")

        delimiter = "," if file_path.endswith(".csv") else "\t"

        if self.load_method == "polars":
            return pl.read_csv(file_path,
                               separator=delimiter,
                               infer_schema_length=10000,
                               null_values=["NA", "NaN", "N/A", ""])
        elif self.load_method == "pyarrow":
            parse_options = pv_csv.ParseOptions(delimiter=delimiter)
            arrow_table = pv_csv.read_csv(file_path, parse_options=parse_options)
            return pl.from_arrow(arrow_table)
        elif self.load_method == "pandas":
            df = pd.read_csv(file_path, delimiter=delimiter)
            return pl.from_pandas(df)
        else:
            raise ValueError(f"Unknown load method: {self.load_method}")

    @log_time("Conversion to AnnData")
    def _convert_to_anndata(self):
        sample_names: List[str] = self.sample_meta["Sample"].to_list()
        numeric = self.wide.select(["INDEX"] + sample_names)
        raw, protein_index = polars_matrix_to_numpy(numeric, index_col="INDEX")

        # zeros and negatives are non-detections
        n_nonpos = int(np.sum(raw <= 0))
        raw = np.where(raw > 0, raw, np.nan)
        if n_nonpos:
            log_info(f"{n_nonpos} non-positive intensities set to missing.")

        var = (
            self.wide.select(["INDEX", "GENE_NAMES", "PROTEIN_GROUP"])
                     .to_pandas()
                     .set_index("INDEX")
        )
        var.index = var.index.astype(str)
        obs = self.sample_meta.to_pandas().set_index("Sample")
        obs.index = obs.index.astype(str)

        self.adata = ad.AnnData(X=raw.T.copy(), obs=obs, var=var)
        self.adata.layers["raw"] = raw.T.copy()
        self.adata.uns["dataset"] = {
            "input_file": str(self.file_path),
            "n_proteins_loaded": int(self.adata.n_vars),
            "n_samples_loaded": int(self.adata.n_obs),
        }
        assert list(self.adata.var_names) == [str(i) for i in protein_index]
        log_info(f"AnnData: {self.adata.n_obs} samples x {self.adata.n_vars} proteins, "
                 f"{np.isnan(raw).mean():.1%} missing.")

    def get_anndata(self) -> ad.AnnData:
        """Export the loaded dataset as an AnnData object."""
        return self.adata
