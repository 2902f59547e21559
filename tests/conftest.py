"""Shared test fixtures for MNARflux tests."""

import anndata as ad
import numpy as np
import pandas as pd
import pytest

DONORS = ["D1", "D2", "D3", "D4"]
CONDITIONS = ["Pos", "Neg"]
N_PROTEINS = 200
N_DE = 20
ABSENT_IN_NEG = list(range(180, 186))


def _synthetic_log2(seed=7):
    """Log2 intensities (proteins x samples) with donor effects, DE proteins and censoring."""
    rng = np.random.default_rng(seed)
    headers, conds, donors = [], [], []
    for cond in CONDITIONS:
        for donor in DONORS:
            for rep in ("1", "2"):
                headers.append(f"/data/raw/{donor}_{cond}_{rep}_DIA.raw")
                conds.append(cond)
                donors.append(donor)
    conds = np.asarray(conds)
    donor_idx = np.asarray([DONORS.index(d) for d in donors])

    mu = rng.normal(20.0, 2.0, size=N_PROTEINS)
    donor_eff = rng.normal(0.0, 0.4, size=(N_PROTEINS, len(DONORS)))
    M = mu[:, None] + donor_eff[:, donor_idx] + rng.normal(0.0, 0.3, size=(N_PROTEINS, len(headers)))
    M[:N_DE, conds == "Pos"] += 1.5

    censored = (M < 17.5) & (rng.random(M.shape) < 0.8)
    M[censored] = np.nan
    M[rng.random(M.shape) < 0.03] = np.nan
    for i in ABSENT_IN_NEG:
        M[i, conds == "Neg"] = np.nan
        M[i, conds == "Pos"] = rng.normal(21.0, 0.3, size=int((conds == "Pos").sum()))
    return M, headers


@pytest.fixture
def pg_matrix_file(tmp_path):
    """DIA-NN style pg_matrix TSV (linear intensities) with 16 samples and 200 proteins."""
    M, headers = _synthetic_log2()
    genes = [f"GENE{i}" for i in range(N_PROTEINS)]
    genes[5] = ""              # falls back to Protein.Group
    genes[7] = genes[6]        # duplicated key
    df = pd.DataFrame({
        "Protein.Group": [f"P{i:05d}" for i in range(N_PROTEINS)],
        "Protein.Ids": [f"P{i:05d}" for i in range(N_PROTEINS)],
        "Protein.Names": [f"PROT{i}_HUMAN" for i in range(N_PROTEINS)],
        "Genes": genes,
        "First.Protein.Description": ["synthetic protein"] * N_PROTEINS,
    })
    lin = pd.DataFrame(np.power(2.0, M), columns=headers)
    path = tmp_path / "report.pg_matrix.tsv"
    pd.concat([df, lin], axis=1).to_csv(path, sep="\t", index=False, na_rep="")
    return path


@pytest.fixture
def pipeline_config(pg_matrix_file, tmp_path):
    out = tmp_path / "results"
    return {
        "dataset": {
            "input_file": str(pg_matrix_file),
            "conditions": CONDITIONS,
        },
        "preprocessing": {
            "filtering": {"max_sample_missing": 0.8, "min_valid": 1},
            "normalization": {"method": "vsn"},
        },
        "clustering": {"n_pcs": 3, "n_clusters": 2},
        "missingness": {
            "min_count": 5,
            "cutoffs": {"Pos": 18.5, "Neg": 18.5},
            "substitution": {"random_state": 42},
        },
        "imputation": {"random_state": 42, "mar": {"method": "knn", "n_neighbors": 5}},
        "analysis": {
            "title": "Synthetic Pos vs Neg",
            "contrast": ["Pos", "Neg"],
            "block_column": "DONOR",
            "correlation": None,
            "correlation_max_proteins": 30,
            "exports": {
                "path_table": str(out / "results.tsv"),
                "path_h5ad": str(out / "results.h5ad"),
                "path_report": str(out / "report.html"),
                "use_xlsx": True,
            },
        },
    }


@pytest.fixture
def toy_adata():
    """4 proteins x 6 samples (3 per condition, one sample per donor and condition), log scale."""
    X = np.array([
        # A1    A2     A3     B1     B2     B3
        [21.0, 21.2, 20.8, 20.5, np.nan, 20.7],           # P1: MAR in both
        [19.5, 19.8, 19.6, np.nan, np.nan, np.nan],       # P2: absent in B
        [16.0, np.nan, 16.4, 19.0, 19.3, 19.1],           # P3: MNAR in A, MAR in B
        [15.5, np.nan, np.nan, 15.8, np.nan, 15.6],       # P4: MNAR in both
    ])
    obs = pd.DataFrame(
        {
            "CONDITION": ["A", "A", "A", "B", "B", "B"],
            "DONOR": ["d1", "d2", "d3", "d1", "d2", "d3"],
            "REPLICATE": ["1"] * 6,
        },
        index=["A1", "A2", "A3", "B1", "B2", "B3"],
    )
    var = pd.DataFrame(index=["P1", "P2", "P3", "P4"])
    adata = ad.AnnData(X=X.T.copy(), obs=obs, var=var)
    adata.layers["raw"] = np.power(2.0, X.T)
    return adata


@pytest.fixture
def toy_config():
    return {
        "missingness": {
            "min_count": 2,
            "cutoffs": {"A": 18.0, "B": 18.0},
            "substitution": {"random_state": 42},
        },
        "imputation": {"random_state": 42, "mar": {"method": "knn", "n_neighbors": 2}},
    }
