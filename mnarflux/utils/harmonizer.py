import re
from pathlib import PureWindowsPath
from typing import Dict, List, Optional

import polars as pl

from mnarflux.utils.utils import log_info, log_warning


class SampleNameError(ValueError):
    """Raised when a sample header does not follow the configured naming convention."""


DEFAULT_SAMPLE_PATTERN = r"^(?P<donor>[^_]+)_(?P<condition>[^_]+)_(?P<replicate>[^_]+)"

# DIA-NN pg_matrix annotation columns
DEFAULT_ANNOTATION_COLUMNS = [
    "Protein.Group",
    "Protein.Ids",
    "Protein.Names",
    "Genes",
    "First.Protein.Description",
]

_RUN_EXTENSIONS = (".raw", ".d", ".mzml", ".mzxml", ".wiff", ".dia")


def clean_sample_name(header: str) -> str:
    """Strip directories and common MS run extensions from a column header."""
    name = PureWindowsPath(str(header).strip()).name  # handles both / and \\
    for ext in _RUN_EXTENSIONS:
        if name.lower().endswith(ext):
            return name[: -len(ext)]
    return name


def make_unique(keys: List[str]) -> List[str]:
    """Deduplicate keys by suffixing repeats with .1, .2, ... (first occurrence untouched)."""
    seen: Dict[str, int] = {}
    taken = set(keys)
    out = []
    for k in keys:
        if k not in seen:
            seen[k] = 0
            out.append(k)
            continue
        n = seen[k]
        while True:
            n += 1
            candidate = f"{k}.{n}"
            if candidate not in taken:
                break
        seen[k] = n
        taken.add(candidate)
        out.append(candidate)
    return out


class DataHarmonizer:
    """Maps a wide protein matrix to standard columns and parses sample metadata from headers."""

    def __init__(self, column_config: dict):
        self.gene_column = column_config.get("gene_column", "Genes")
        self.protein_column = column_config.get("protein_column", "Protein.Group")
        self.annotation_columns = list(column_config.get("annotation_columns") or DEFAULT_ANNOTATION_COLUMNS)
        for col in (self.gene_column, self.protein_column):
            if col and col not in self.annotation_columns:
                self.annotation_columns.append(col)

        self.sample_pattern = re.compile(column_config.get("sample_pattern") or DEFAULT_SAMPLE_PATTERN)
        missing_groups = {"donor", "condition", "replicate"} - set(self.sample_pattern.groupindex)
        if missing_groups:
            raise ValueError(f"sample_pattern must define named groups {sorted(missing_groups)}.")

        conditions = column_config.get("conditions")
        self.conditions: Optional[List[str]] = [str(c) for c in conditions] if conditions else None

    def sample_columns(self, df: pl.DataFrame) -> List[str]:
        """Numeric, non-annotation columns are treated as sample intensities."""
        numeric = {pl.Float64, pl.Float32, pl.Int64, pl.Int32, pl.UInt64, pl.UInt32}
        cols = [c for c, t in df.schema.items() if c not in self.annotation_columns and t in numeric]
        if not cols:
            raise ValueError("No numeric sample columns found in the input matrix.")
        return cols

    def parse_sample(self, header: str) -> Dict[str, str]:
        name = clean_sample_name(header)
        m = self.sample_pattern.match(name)
        if m is None:
            raise SampleNameError(
                f"Sample '{header}' does not match the naming convention "
                f"'{self.sample_pattern.pattern}' (<donor>_<condition>_<techrep>_...)."
            )
        return {
            "Sample": name,
            "FILENAME": str(header),
            "DONOR": m.group("donor"),
            "CONDITION": m.group("condition"),
            "REPLICATE": m.group("replicate"),
        }

    def sample_metadata(self, df: pl.DataFrame) -> pl.DataFrame:
        """One metadata record per sample column, in column order."""
        records = [self.parse_sample(c) for c in self.sample_columns(df)]
        meta = pl.DataFrame(records)

        dup = meta.filter(pl.col("Sample").is_duplicated())
        if dup.height:
            raise SampleNameError(f"Duplicated sample names after cleaning: {sorted(set(dup['Sample']))}")

        found = sorted(set(meta["CONDITION"]))
        if self.conditions is not None:
            unknown = sorted(set(found) - set(self.conditions))
            if unknown:
                raise SampleNameError(f"Conditions {unknown} are not among configured conditions {self.conditions}.")
            absent = [c for c in self.conditions if c not in found]
            if absent:
                log_warning(f"Configured conditions without samples: {absent}")
        log_info(f"Parsed {meta.height} samples; conditions={found}, donors={meta['DONOR'].n_unique()}")
        return meta

    def protein_keys(self, df: pl.DataFrame) -> List[str]:
        """Unique row keys: gene names, falling back to the protein group when empty."""
        if self.gene_column not in df.columns and self.protein_column not in df.columns:
            raise ValueError(f"Neither '{self.gene_column}' nor '{self.protein_column}' found in input.")

        genes = (df[self.gene_column].cast(pl.Utf8).to_list()
                 if self.gene_column in df.columns else [None] * df.height)
        groups = (df[self.protein_column].cast(pl.Utf8).to_list()
                  if self.protein_column in df.columns else [None] * df.height)

        keys = []
        for i, (g, p) in enumerate(zip(genes, groups)):
            g = (g or "").strip()
            p = (p or "").strip()
            keys.append(g or p or f"row{i + 1}")
        n_dup = len(keys) - len(set(keys))
        if n_dup:
            log_info(f"{n_dup} duplicated protein keys made unique.")
        return make_unique(keys)

    def harmonize(self, df: pl.DataFrame) -> pl.DataFrame:
        """Return a wide frame: INDEX, GENE_NAMES, PROTEIN_GROUP, then one column per cleaned sample name."""
        sample_cols = self.sample_columns(df)
        renamed = {c: clean_sample_name(c) for c in sample_cols}

        out = pl.DataFrame({"INDEX": self.protein_keys(df)})
        out = out.with_columns(
            (df[self.gene_column].cast(pl.Utf8) if self.gene_column in df.columns
             else pl.Series([None] * df.height, dtype=pl.Utf8)).fill_null("").alias("GENE_NAMES"),
            (df[self.protein_column].cast(pl.Utf8) if self.protein_column in df.columns
             else pl.Series([None] * df.height, dtype=pl.Utf8)).fill_null("").alias("PROTEIN_GROUP"),
        )
        values = df.select([pl.col(c).cast(pl.Float64).alias(renamed[c]) for c in sample_cols])
        return pl.concat([out, values], how="horizontal")
