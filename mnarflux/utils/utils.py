import logging
import time
from contextlib import contextmanager
from functools import wraps

import numpy as np
import polars as pl

logger = logging.getLogger("mnarflux")

_INDENT = {"level": 0}


def setup_logging(level: int = logging.INFO) -> None:
    """Attach a stream handler to the package logger (idempotent)."""
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(asctime)s | %(levelname)-7s | %(message)s",
                                               datefmt="%H:%M:%S"))
        logger.addHandler(handler)
    logger.setLevel(level)


def _indented(msg: str) -> str:
    return "  " * _INDENT["level"] + str(msg)


def log_info(msg: str) -> None:
    logger.info(_indented(msg))


def log_warning(msg: str) -> None:
    logger.warning(_indented(msg))


@contextmanager
def log_indent():
    """Indent every log line emitted inside the block by one level."""
    _INDENT["level"] += 1
    try:
        yield
    finally:
        _INDENT["level"] -= 1


def log_time(label: str):
    """Decorator logging start and wall-clock duration of a pipeline step."""
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            log_info(f"{label}...")
            start = time.perf_counter()
            with log_indent():
                result = func(*args, **kwargs)
            log_info(f"{label} done in {time.perf_counter() - start:.2f}s")
            return result
        return wrapper
    return decorator


def polars_matrix_to_numpy(df, index_col: str = "INDEX"):
    """Split a wide polars frame into (float matrix, index array). None passes through."""
    if df is None:
        return None, None
    index = df.select(index_col).to_series().to_numpy()
    mat = (
        df.drop(index_col)
          .with_columns(pl.all().cast(pl.Float64, strict=False))
          .to_numpy()
    )
    return np.asarray(mat, dtype=np.float64), index
