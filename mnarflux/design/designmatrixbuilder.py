from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd
import patsy


class DesignMatrixBuilder:
    """
    Cell-means design `0 + <level> + <level> ...` for one categorical column.

    Columns of the built matrix are named after the levels, in `levels` order.
    """

    def __init__(
        self,
        sample_metadata: pd.DataFrame,
        config: Optional[Dict[str, Any]] = None,
    ):
        self.meta = sample_metadata.copy()
        self.config = config or {}
        self.group_col = self.config.get("group_column", "CONDITION")
        self.levels: List[str] = []
        self.formula: Optional[str] = None
        self.design_matrix: Optional[np.ndarray] = None
        self.design_info: Optional[patsy.DesignInfo] = None
        self.design_df: Optional[pd.DataFrame] = None

    def build(self):
        if self.group_col not in self.meta.columns:
            raise ValueError(f"{self.group_col} not found in sample metadata.")

        present = [str(v) for v in pd.unique(self.meta[self.group_col].astype(str))]
        wanted = [str(v) for v in (self.config.get("levels") or [])]
        unknown = sorted(set(wanted) - set(present))
        if unknown:
            raise ValueError(f"Levels {unknown} not found in '{self.group_col}' (present: {present}).")
        self.levels = wanted + [lvl for lvl in sorted(present) if lvl not in wanted]

        for lvl in self.levels:
            self.meta[lvl] = (self.meta[self.group_col].astype(str) == lvl).astype(int)

        self.formula = "0 + " + " + ".join(f"Q('{lvl}')" for lvl in self.levels)
        dm = patsy.dmatrix(self.formula, self.meta, return_type="dataframe")
        self.design_info = dm.design_info
        dm.columns = self.levels

        self.design_df = dm
        self.design_matrix = dm.to_numpy(dtype=np.float64)
        return self.design_matrix, self.design_info
