"""
Empirical-Bayes shrinkage of log fold changes.

For one timepoint-vs-baseline contrast, a zero-centred normal prior on the
contrast coefficient is estimated from the maximum-likelihood fold changes of
all features. Each feature is then refit by penalised IRLS to its posterior
mode, and the posterior SD is read from the inverse penalised information.

The prior fit is a barrier over all features; the per-feature refits are an
independent map. Shrinkage is two-sided and unaware of the one-sided test.

Functions
---------
weighted_quantile
    Quantile of weighted data.
estimate_lfc_prior_variance
    Prior variance of log2 fold changes by upper-quantile matching.
map_nb_glm
    Posterior-mode NB GLM fit with per-coefficient ridge penalties.
shrink_lfc
    Shrunken log2 fold changes and posterior SDs for one contrast.
"""
from __future__ import annotations

import logging
from typing import Tuple

import numpy as np
import pandas as pd
from scipy.stats import norm

from .constants import WEAK_PRIOR_PRECISION
from .contrasts import LN2, timepoint_vs_baseline
from .exceptions import DispersionTrendError
from .model import chunk_indices, run_chunks

logger = logging.getLogger(__name__)


def weighted_quantile(x: np.ndarray, weights: np.ndarray, q: float) -> float:
    """Quantile ``q`` of ``x`` under ``weights`` (inverse of the weighted ECDF).

    Examples
    --------
    >>> weighted_quantile(np.array([1.0, 2.0, 3.0]), np.ones(3), 0.5)
    2.0
    """
    order = np.argsort(x, kind="mergesort")
    x = np.asarray(x, dtype=float)[order]
    w = np.asarray(weights, dtype=float)[order]
    cdf = np.cumsum(w) / np.sum(w)
    i = int(np.searchsorted(cdf, q, side="left"))
    return float(x[min(i, len(x) - 1)])


def estimate_lfc_prior_variance(
    lfc: np.ndarray,
    base_mean: np.ndarray,
    dispersion: np.ndarray,
    upper_quantile: float = 0.05,
) -> float:
    """Prior variance of log2 fold changes by weighted upper-quantile matching.

    The ``1 - upper_quantile`` weighted quantile of ``|lfc|`` is matched to
    the same quantile of a zero-centred normal. Weights
    ``1 / (1/baseMean + dispersion)`` down-weight noisy low-count features.

    Parameters
    ----------
    lfc : np.ndarray
        Maximum-likelihood log2 fold changes.
    base_mean : np.ndarray
        Mean normalized count per feature.
    dispersion : np.ndarray
        Final dispersion per feature.
    upper_quantile : float, default 0.05
        Tail probability used for matching.

    Returns
    -------
    float
        Prior variance on the log2 scale (at least 1e-6).

    Raises
    ------
    DispersionTrendError
        If no feature has a finite fold change.
    """
    lfc = np.asarray(lfc, dtype=float)
    base_mean = np.asarray(base_mean, dtype=float)
    dispersion = np.asarray(dispersion, dtype=float)
    ok = np.isfinite(lfc) & (base_mean > 0) & np.isfinite(dispersion)
    if not ok.any():
        raise DispersionTrendError("No finite fold changes to estimate the LFC prior")

    w = 1.0 / (1.0 / base_mean[ok] + dispersion[ok])
    q = weighted_quantile(np.abs(lfc[ok]), w, 1.0 - upper_quantile)
    sd = q / norm.ppf(1.0 - upper_quantile / 2.0)
    return float(max(sd**2, 1e-6))


def map_nb_glm(
    y: np.ndarray,
    X: np.ndarray,
    offset: np.ndarray,
    alpha: float,
    precision: np.ndarray,
    start_params: np.ndarray,
    *,
    max_iter: int = 100,
    tol: float = 1e-8,
) -> Tuple[np.ndarray, np.ndarray, bool]:
    """Posterior-mode NB GLM by penalised IRLS.

    Maximises ``loglik(beta) - 0.5 * sum(precision * beta**2)``.

    Parameters
    ----------
    y : np.ndarray
        Counts for one feature.
    X : np.ndarray
        Design matrix.
    offset : np.ndarray
        Log size factors.
    alpha : float
        Dispersion.
    precision : np.ndarray
        Prior precision per coefficient (natural-log scale).
    start_params : np.ndarray
        Starting coefficients; if any is non-finite the fit starts from the
        intercept-only mean.
    max_iter : int, default 100
        Iteration cap.
    tol : float, default 1e-8
        Absolute tolerance on coefficient change.

    Returns
    -------
    beta : np.ndarray
        Posterior mode.
    cov : np.ndarray
        Inverse penalised information at the mode.
    converged : bool
    """
    y = np.asarray(y, dtype=float)
    if np.all(np.isfinite(start_params)):
        beta = np.asarray(start_params, dtype=float).copy()
    else:
        # design has the intercept first
        beta = np.zeros(X.shape[1])
        beta[0] = np.log(max(np.mean(y / np.exp(offset)), 1e-8))
    penalty = np.diag(precision)
    converged = False

    for _ in range(max_iter):
        eta = np.clip(X @ beta + offset, -30.0, 30.0)
        mu = np.exp(eta)
        w = mu / (1.0 + alpha * mu)
        z = eta - offset + (y - mu) / mu
        info = X.T @ (w[:, None] * X) + penalty
        beta_new = np.linalg.solve(info, X.T @ (w * z))
        step = np.max(np.abs(beta_new - beta))
        beta = beta_new
        if step < tol:
            converged = True
            break

    mu = np.exp(np.clip(X @ beta + offset, -30.0, 30.0))
    w = mu / (1.0 + alpha * mu)
    cov = np.linalg.inv(X.T @ (w[:, None] * X) + penalty)
    return beta, cov, converged


def _shrink_chunk(
    Y: np.ndarray,
    X: np.ndarray,
    offset: np.ndarray,
    dispersion: np.ndarray,
    start: np.ndarray,
    precision: np.ndarray,
    k: int,
    max_iter: int,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    n = Y.shape[0]
    shrunk = np.full(n, np.nan)
    post_sd = np.full(n, np.nan)
    converged = np.zeros(n, dtype=bool)
    for i in range(n):
        try:
            beta, cov, converged[i] = map_nb_glm(
                Y[i], X, offset, dispersion[i], precision, start[i], max_iter=max_iter
            )
        except np.linalg.LinAlgError as e:
            logger.debug(f"MAP fit failed for row {i}: {e}")
            continue
        shrunk[i] = beta[k] / LN2
        post_sd[i] = np.sqrt(cov[k, k]) / LN2
    return shrunk, post_sd, converged


def shrink_lfc(
    fit,
    timepoint: int,
    *,
    max_iter: int = 100,
    n_jobs: int = 1,
) -> pd.DataFrame:
    """Shrunken log2 fold change of ``timepoint`` vs baseline for every feature.

    Parameters
    ----------
    fit : ModelFit
        Fitted model from :func:`~odid_screen.model.fit_model`.
    timepoint : int
        Non-baseline timepoint.
    max_iter : int, default 100
        Iteration cap for each penalised refit.
    n_jobs : int, default 1
        Worker processes for the per-feature refits.

    Returns
    -------
    pd.DataFrame
        Indexed by feature with columns ``shrunkLogFoldChange_t{k}`` and
        ``posteriorSD_t{k}``; the prior variance is stored in ``.attrs``.
    """
    L, name = timepoint_vs_baseline(fit, timepoint)
    k = int(np.argmax(L))
    B = fit.coefficients.to_numpy(dtype=float)
    lfc_mle = B[:, k] / LN2
    disp = fit.dispersion["dispersion"].to_numpy(dtype=float)

    prior_var = estimate_lfc_prior_variance(lfc_mle, fit.base_mean.to_numpy(), disp)
    precision = np.full(B.shape[1], WEAK_PRIOR_PRECISION)
    # prior is on log2; coefficients are natural log
    precision[k] = 1.0 / (prior_var * LN2**2)
    logger.info(f"LFC prior for {name}: sd={np.sqrt(prior_var):.3f} (log2)")

    X = fit.design.to_numpy(dtype=float)
    Y = fit.counts.to_numpy(dtype=float)
    offset = fit.offset
    chunks = chunk_indices(Y.shape[0], n_jobs)
    results = run_chunks(
        _shrink_chunk,
        [(Y[c], X, offset, disp[c], B[c], precision, k, max_iter) for c in chunks],
        n_jobs=n_jobs,
    )
    shrunk = np.concatenate([r[0] for r in results])
    post_sd = np.concatenate([r[1] for r in results])
    converged = np.concatenate([r[2] for r in results])
    if (~converged).any():
        logger.info(f"{int((~converged).sum())} MAP refits for {name} hit the iteration cap")

    df = pd.DataFrame(
        {
            f"shrunkLogFoldChange_t{timepoint}": shrunk,
            f"posteriorSD_t{timepoint}": post_sd,
        },
        index=fit.feature_ids,
    )
    df.attrs["contrast"] = name
    df.attrs["prior_var"] = prior_var
    return df
