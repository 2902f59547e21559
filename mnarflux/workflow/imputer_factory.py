from typing import Any

import sklearn.impute


def get_imputer(**kwargs) -> Any:
    """
    Returns an imputer instance based on the given method.

    Valid methods:
        - "minprob": MinProbImputer (left-censored draws, for MNAR proteins).
        - "mindet": MinDetImputer (column low quantile, for MNAR proteins).
        - "knn": KNNImputer from scikit-learn (for MAR proteins).

    Imputers work on (n_features, n_samples) matrices, so kNN neighbours are
    proteins compared across samples. kwargs are passed to the constructors.
    """
    method = kwargs.pop("method", None)

    if method == "minprob":
        from mnarflux.workflow.imputers.min_imputers import MinProbImputer
        return MinProbImputer(
            quantile=kwargs.get("quantile", 0.01),
            tune_sigma=kwargs.get("tune_sigma", 1.0),
            random_state=kwargs.get("random_state", 42),
        )
    elif method == "mindet":
        from mnarflux.workflow.imputers.min_imputers import MinDetImputer
        return MinDetImputer(quantile=kwargs.get("quantile", 0.01))
    elif method == "knn":
        return sklearn.impute.KNNImputer(
            n_neighbors=kwargs.get("n_neighbors", 10),
            weights=kwargs.get("weights", "uniform"),
            keep_empty_features=True,
        )
    else:
        raise ValueError(f"Invalid imputation method: {method}. "
                         "Options: minprob, mindet, knn")
