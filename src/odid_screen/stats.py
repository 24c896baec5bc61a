"""
Statistical utilities for hypothesis testing and multiple comparison correction.

This module provides FDR correction, independent filtering of low-count
features, and the per-feature contrast table for a timepoint versus the
baseline.

Functions
---------
bh_fdr
    Benjamini-Hochberg FDR adjustment.
independent_filtering
    Choose a base-mean cutoff that maximises discoveries, then adjust.
contrast_results
    One-sided Wald test of a timepoint against baseline, with filtering and BH.
"""
from __future__ import annotations

import logging
from typing import Tuple

import numpy as np
import pandas as pd
from statsmodels.nonparametric.smoothers_lowess import lowess

from .contrasts import Alternative, timepoint_vs_baseline, wald_contrast

logger = logging.getLogger(__name__)


def bh_fdr(pvals: np.ndarray) -> np.ndarray:
    """Benjamini-Hochberg FDR adjustment.

    Adjusts p-values to control the false discovery rate using the
    Benjamini-Hochberg procedure. NaN p-values are ignored (they do not
    count towards the number of tests) and stay NaN.

    Parameters
    ----------
    pvals : array-like
        Raw p-values.

    Returns
    -------
    qvals : np.ndarray
        BH-adjusted q-values, same shape as pvals.

    Notes
    -----
    The procedure ranks p-values and computes q_i = p_i * n / rank_i,
    then enforces monotonicity (q_i >= q_{i-1} for sorted p-values).

    Examples
    --------
    >>> pvals = np.array([0.001, 0.01, 0.05, 0.1])
    >>> qvals = bh_fdr(pvals)
    >>> qvals
    array([0.004, 0.02 , 0.067, 0.1  ])
    """
    pvals = np.asarray(pvals, dtype=float)
    out = np.full(pvals.shape, np.nan, dtype=float)

    ok = np.isfinite(pvals)
    if ok.sum() == 0:
        return out

    p = pvals[ok]
    order = np.argsort(p, kind="mergesort")
    ranks = np.arange(1, p.size + 1)

    q = p[order] * p.size / ranks
    # enforce monotonicity
    q = np.minimum.accumulate(q[::-1])[::-1]
    q = np.clip(q, 0.0, 1.0)
    # rounding in p * n / rank can land one ulp below p
    q = np.maximum(q, p[order])

    out_idx = np.where(ok)[0][order]
    out[out_idx] = q
    return out


def independent_filtering(
    pvals: np.ndarray,
    filter_stat: np.ndarray,
    alpha: float = 0.1,
    n_theta: int = 50,
) -> Tuple[np.ndarray, np.ndarray, float, pd.DataFrame]:
    """Independent filtering by mean count, then BH adjustment.

    Features whose ``filter_stat`` (base mean) lies below a quantile cutoff
    are removed from the multiple-testing set; their p-values and adjusted
    p-values become NaN.

    The cutoff quantile ``theta`` is chosen on a grid of ``n_theta`` values
    from the fraction of zero base means up to 0.95. For each ``theta`` the
    number of rejections at ``alpha`` is counted. A lowess curve is fit
    through rejections vs ``theta``; the chosen ``theta`` is the first whose
    rejection count exceeds the curve's maximum minus the residual RMS.
    When 10 or fewer features are ever rejected no filtering is applied.

    Parameters
    ----------
    pvals : np.ndarray
        Raw p-values (NaN allowed).
    filter_stat : np.ndarray
        Filter statistic, independent of the p-value under the null.
    alpha : float, default 0.1
        Significance level used to count rejections.
    n_theta : int, default 50
        Grid size.

    Returns
    -------
    pvals_filtered : np.ndarray
        P-values with filtered features set to NaN.
    padj : np.ndarray
        BH-adjusted p-values (NaN where filtered).
    cutoff : float
        Filter statistic threshold; features with ``filter_stat >= cutoff``
        are kept.
    rejections : pd.DataFrame
        ``theta``, ``cutoff``, ``num_rej`` and ``lowess`` per grid point.
    """
    pvals = np.asarray(pvals, dtype=float)
    filter_stat = np.asarray(filter_stat, dtype=float)

    lower = float(np.mean(filter_stat == 0))
    upper = 0.95 if lower < 0.95 else 1.0
    theta = np.linspace(lower, upper, n_theta)
    cutoffs = np.quantile(filter_stat, theta)

    num_rej = np.empty(n_theta)
    for i, cut in enumerate(cutoffs):
        keep = filter_stat >= cut
        padj = bh_fdr(np.where(keep, pvals, np.nan))
        num_rej[i] = np.sum(padj < alpha)

    if num_rej.max() <= 10:
        fitted = num_rej.copy()
        j = 0
    else:
        fitted = lowess(num_rej, theta, frac=1 / 5, return_sorted=False)
        pos = num_rej > 0
        resid = num_rej[pos] - fitted[pos]
        thresh = fitted.max() - np.sqrt(np.mean(resid**2))
        above = np.where(num_rej > thresh)[0]
        j = int(above[0]) if above.size else 0

    cutoff = float(cutoffs[j])
    keep = filter_stat >= cutoff
    pvals_filtered = np.where(keep, pvals, np.nan)
    padj = bh_fdr(pvals_filtered)

    rejections = pd.DataFrame(
        {"theta": theta, "cutoff": cutoffs, "num_rej": num_rej, "lowess": fitted}
    )
    logger.info(
        f"Independent filtering: theta={theta[j]:.3f}, baseMean cutoff={cutoff:.3g}, "
        f"{int((~keep).sum())} features excluded, {int(np.sum(padj < alpha))} rejections"
    )
    return pvals_filtered, padj, cutoff, rejections


def contrast_results(
    fit,
    timepoint: int,
    *,
    alternative: Alternative = "less",
    alpha: float = 0.1,
    independent_filter: bool = True,
) -> pd.DataFrame:
    """Test one timepoint against the baseline for every feature.

    Parameters
    ----------
    fit : ModelFit
        Fitted model from :func:`~odid_screen.model.fit_model`.
    timepoint : int
        Non-baseline timepoint to contrast.
    alternative : {"less", "greater", "two-sided"}, default "less"
        Alternative hypothesis on the log fold change. ``"less"`` tests for
        depletion: ``p = Phi(stat)``.
    alpha : float, default 0.1
        Target FDR used to choose the filtering threshold.
    independent_filter : bool, default True
        If False, BH is applied to all features.

    Returns
    -------
    pd.DataFrame
        Indexed by feature with columns ``baseMean``, ``log2FoldChange``,
        ``lfcSE``, ``stat``, ``pvalue`` and ``padj``. The filter cutoff and
        contrast name are stored in ``.attrs``.

    Examples
    --------
    >>> res = contrast_results(fit, 3, alternative="less")
    >>> res[res["padj"] < 0.1].sort_values("log2FoldChange").head()
    """
    L, name = timepoint_vs_baseline(fit, timepoint)
    lfc, se, stat, pvalue = wald_contrast(fit, L, alternative=alternative)
    bm = fit.base_mean.to_numpy(dtype=float)

    if independent_filter:
        pvalue, padj, cutoff, _ = independent_filtering(pvalue, bm, alpha=alpha)
    else:
        padj = bh_fdr(pvalue)
        cutoff = 0.0

    df = pd.DataFrame(
        {
            "baseMean": bm,
            "log2FoldChange": lfc,
            "lfcSE": se,
            "stat": stat,
            "pvalue": pvalue,
            "padj": padj,
        },
        index=fit.feature_ids,
    )
    df.attrs["contrast"] = name
    df.attrs["alternative"] = alternative
    df.attrs["filter_cutoff"] = cutoff
    return df
