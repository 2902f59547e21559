"""
Centralized AnnData key schema for MNARflux.

Canonical keys used in .obs / .var / .uns / .varm by the pipeline stages.
"""

# -----------------------
# .obs (sample metadata)
# -----------------------
OBS_CONDITION = "CONDITION"
OBS_DONOR = "DONOR"
OBS_REPLICATE = "REPLICATE"
OBS_FILENAME = "FILENAME"
OBS_PCA_CLUSTER = "PCA_CLUSTER"

# -----------------------
# .var (protein annotation)
# -----------------------
VAR_GENE_NAMES = "GENE_NAMES"
VAR_PROTEIN_GROUP = "PROTEIN_GROUP"
VAR_MEAN_PREFIX = "MEAN_"
VAR_NOBS_PREFIX = "NOBS_"
VAR_MISSINGNESS_PREFIX = "MISSINGNESS_"
VAR_RETAINED = "RETAINED"

# -----------------------
# .uns (analysis metadata)
# -----------------------
UNS_CONTRAST_NAMES = "contrast_names"
UNS_PILOT_MODE = "pilot_study_mode"
UNS_BLOCK_CORRELATION = "block_correlation"
UNS_PRIOR = "ebayes_prior"
UNS_RESIDUAL_VARIANCE = "residual_variance"

UNS_MISSINGNESS = "missingness"
UNS_MISSINGNESS_CLASSIFICATION = "missingness_classification"

UNS_PCA = "pca"
UNS_CLUSTERING = "clustering"

# -----------------------
# .varm (analysis outputs)
# -----------------------
VARM_LOG2FC = "log2fc"
VARM_AVE_EXPR = "ave_expr"

VARM_SE_RAW = "se_raw"
VARM_T_RAW = "t_raw"
VARM_P_RAW = "p_raw"
VARM_Q_RAW = "q_raw"

VARM_SE_EBAYES = "se_ebayes"
VARM_T_EBAYES = "t_ebayes"
VARM_P_EBAYES = "p_ebayes"
VARM_Q_EBAYES = "q_ebayes"
