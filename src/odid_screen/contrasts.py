from __future__ import annotations

from typing import Literal, Tuple

import numpy as np
from scipy.stats import norm

Alternative = Literal["less", "greater", "two-sided"]

LN2 = np.log(2.0)


def timepoint_vs_baseline(fit, timepoint: int) -> Tuple[np.ndarray, str]:
    """
    Build contrast vector for (beta_timepoint - beta_baseline).
    The baseline is the reference level, so this selects a single coefficient.
    """
    if timepoint == fit.baseline:
        raise KeyError(f"Timepoint {timepoint} is the baseline; nothing to contrast")
    cols = fit.data_cols
    cn = fit.coef_name(timepoint)
    if cn not in cols:
        raise KeyError(f"Missing coefficient: {cn}")

    L = np.zeros(len(cols))
    L[cols.index(cn)] = 1.0
    name = f"t{timepoint} - t{fit.baseline}"
    return L, name


def one_sided_pvalue(stat: np.ndarray, alternative: Alternative = "less") -> np.ndarray:
    """
    P-value of a standard-normal Wald statistic for the given alternative.
    NaN statistics give NaN p-values.
    """
    stat = np.asarray(stat, dtype=float)
    if alternative == "less":
        return norm.cdf(stat)
    if alternative == "greater":
        return norm.sf(stat)
    if alternative == "two-sided":
        return 2.0 * norm.sf(np.abs(stat))
    raise ValueError(f"Unknown alternative='{alternative}'. Use 'less', 'greater' or 'two-sided'.")


def wald_contrast(
    fit,
    L: np.ndarray,
    alternative: Alternative = "less",
) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """
    Returns (log2 estimate, log2 SE, Wald statistic, p-value) per feature
    for the linear contrast L' beta.
    """
    B = fit.coefficients.to_numpy(dtype=float)
    est = B @ L
    var = np.einsum("i,fij,j->f", L, fit.covariance, L)
    with np.errstate(invalid="ignore", divide="ignore"):
        se = np.sqrt(var)
        stat = est / se
    stat = np.where(np.isfinite(stat), stat, np.nan)
    pvalue = one_sided_pvalue(stat, alternative)
    return est / LN2, se / LN2, stat, pvalue
