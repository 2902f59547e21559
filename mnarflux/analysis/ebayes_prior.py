import numpy as np
from scipy.special import digamma, polygamma


def squeeze_var_input_filter(s2: np.ndarray, df) -> tuple[np.ndarray, np.ndarray]:
    """Keep finite, positive variances with positive finite degrees of freedom."""
    s2 = np.asarray(s2, dtype=np.float64)
    if np.isscalar(df) or np.ndim(df) == 0:
        df = np.full_like(s2, float(df))
    df = np.asarray(df, dtype=np.float64)

    mask = np.isfinite(s2) & (s2 > 0) & np.isfinite(df) & (df > 0)
    return s2[mask], df[mask]


def trigamma_inverse(y, tol=1e-8):
    """Solve trigamma(x) = y by Newton iteration (limma's trigammaInverse)."""
    y = float(y)
    if y > 1e7:
        return 1.0 / np.sqrt(y)
    if y < 1e-6:
        return 1.0 / y

    x = 0.5 + 1.0 / y
    for _ in range(50):
        tri = polygamma(1, x)
        dif = tri * (1.0 - tri / y) / polygamma(2, x)
        x = x + dif
        if -dif / x < tol:
            break
    return float(x)


def fit_fdist(s2: np.ndarray, df1) -> tuple[float, float]:
    """
    Moment estimation of a scaled F prior on the residual variances (limma fitFDist).

    Returns (s2_prior, df_prior). df_prior is inf when the observed spread of
    log-variances is fully explained by sampling noise.
    """
    x, d = squeeze_var_input_filter(s2, df1)
    if x.size < 2:
        return np.nan, np.nan

    x = np.maximum(x, 1e-5 * np.median(x))
    z = np.log(x)
    e = z - digamma(d / 2.0) + np.log(d / 2.0)
    emean = np.mean(e)
    evar = np.var(e, ddof=1) - np.mean(polygamma(1, d / 2.0))

    if evar > 0:
        df2 = 2.0 * trigamma_inverse(evar)
        s20 = float(np.exp(emean + digamma(df2 / 2.0) - np.log(df2 / 2.0)))
    else:
        df2 = np.inf
        s20 = float(np.exp(emean))
    return s20, float(df2)
