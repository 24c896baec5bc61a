"""
Negative binomial GLM fitting with shrunken per-feature dispersions.

This module provides the core statistical modeling functionality: a
negative binomial GLM (NB2, log link, size-factor offset) is fit for every
feature under the batch + timepoint design, with dispersions estimated in
two phases separated by a cross-feature barrier (see
:mod:`odid_screen.dispersion`).

Functions
---------
fit_nb_glm
    Fit one feature's NB GLM at a fixed dispersion.
fit_nb_glm_bounded
    Ridge-penalised, coefficient-bounded refit for zero-count groups.
fit_model
    Fit all features: raw dispersions, trend, shrinkage, final refit.
run_chunks
    Map a worker over feature chunks, serially or with a process pool.

Classes
-------
ModelFit
    Container for fitted model results across features.
"""
from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from multiprocessing import Pool
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import statsmodels.api as sm
from scipy.optimize import minimize
from statsmodels.tools.sm_exceptions import PerfectSeparationError

from .constants import (
    DISPERSION_OUTLIER_SD,
    MAX_LOG2_FOLD_CHANGE,
    MIN_DISPERSION,
    WEAK_PRIOR_PRECISION,
)
from .design import build_design_matrix, coef_name_for_timepoint
from .diagnostics import estimate_alpha_nb2_moments
from .dispersion import (
    DispersionTrend,
    dispersion_prior_variance,
    fit_dispersion_trend,
    is_dispersion_outlier,
    optimize_dispersion,
    shrink_dispersion,
)
from .exceptions import ConvergenceWarning
from .metadata_setup import timepoint_levels
from .preprocess import base_means, estimate_size_factors

logger = logging.getLogger(__name__)


@dataclass
class ModelFit:
    """Container for fitted negative binomial GLM results across features."""

    #: Filtered count matrix the model was fit to (features x samples).
    counts: pd.DataFrame
    #: Sample metadata (timepoint, batch) aligned to the count columns.
    sample_meta: pd.DataFrame
    #: Design matrix (samples x coefficients).
    design: pd.DataFrame
    #: Size factor per sample.
    size_factors: pd.Series
    #: Mean normalized count per feature.
    base_mean: pd.Series
    #: Natural-log coefficients, features x design columns.
    coefficients: pd.DataFrame
    #: Coefficient covariance per feature, shape (n_features, p, p).
    covariance: np.ndarray
    #: Per-feature dispersion table: raw, trend, final, outlier flag.
    dispersion: pd.DataFrame
    #: Per-feature convergence of the final refit.
    converged: pd.Series
    #: Fitted mean-dispersion trend.
    trend: DispersionTrend
    #: Prior variance of log dispersion around the trend.
    dispersion_prior_var: float

    @property
    def feature_ids(self) -> pd.Index:
        return self.counts.index

    @property
    def data_cols(self) -> List[str]:
        return list(self.design.columns)

    @property
    def timepoints(self) -> List[int]:
        return timepoint_levels(self.sample_meta)

    @property
    def baseline(self) -> int:
        return self.timepoints[0]

    @property
    def offset(self) -> np.ndarray:
        return np.log(self.size_factors.reindex(self.counts.columns).to_numpy(dtype=float))

    def coef_name(self, timepoint: int) -> str:
        return coef_name_for_timepoint(timepoint, self.baseline)


def run_chunks(
    func: Callable,
    arguments: Sequence[tuple],
    n_jobs: int = 1,
) -> list:
    """Apply ``func`` to each argument tuple, in order.

    With ``n_jobs > 1`` the calls are distributed over a process pool;
    ``func`` must then be a module-level function.
    """
    if n_jobs is None or n_jobs <= 1 or len(arguments) <= 1:
        return [func(*a) for a in arguments]
    with Pool(processes=n_jobs) as pool:
        return pool.starmap(func, arguments)


def chunk_indices(n: int, n_jobs: int) -> List[np.ndarray]:
    n_chunks = 1 if n_jobs <= 1 else min(n, 4 * n_jobs)
    return [c for c in np.array_split(np.arange(n), max(n_chunks, 1)) if len(c)]


def fit_nb_glm(
    y: np.ndarray,
    X: np.ndarray,
    offset: np.ndarray,
    alpha: float,
    *,
    max_iter: int = 100,
    tol: float = 1e-6,
    start_params: Optional[np.ndarray] = None,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray, bool]:
    """Fit one feature's NB GLM at a fixed dispersion by IRLS.

    Iterates until every coefficient changes by less than ``tol`` or
    ``max_iter`` passes are reached. If a non-intercept coefficient ends up
    beyond ``MAX_LOG2_FOLD_CHANGE`` (a group with no counts) the feature is
    refit by :func:`fit_nb_glm_bounded`.

    Parameters
    ----------
    y : np.ndarray
        Counts for one feature.
    X : np.ndarray
        Design matrix.
    offset : np.ndarray
        Log size factors.
    alpha : float
        NB2 dispersion, Var(Y) = mu + alpha * mu^2.
    max_iter : int, default 100
        IRLS iteration cap.
    tol : float, default 1e-6
        Absolute tolerance on coefficient change.
    start_params : np.ndarray or None
        Starting coefficients.

    Returns
    -------
    params : np.ndarray
        Natural-log coefficients (last iterate if not converged; NaN if the
        fit failed numerically).
    cov : np.ndarray
        Coefficient covariance.
    mu : np.ndarray
        Fitted means.
    converged : bool
        Whether the tolerance was met (or the bounded refit converged).
    """
    p = X.shape[1]
    if start_params is not None and not np.all(np.isfinite(start_params)):
        start_params = None

    model = sm.GLM(y, X, family=sm.families.NegativeBinomial(alpha=alpha), offset=offset)
    try:
        with warnings.catch_warnings():
            # zero-count groups are caught by the coefficient bound below
            warnings.simplefilter("ignore")
            res = model.fit(
                start_params=start_params,
                maxiter=max_iter,
                tol=tol,
                tol_criterion="params",
            )
    except PerfectSeparationError:
        return fit_nb_glm_bounded(y, X, offset, alpha, start_params, max_iter=max_iter)
    except (ValueError, np.linalg.LinAlgError) as e:
        logger.debug(f"NB GLM fit failed: {e}")
        nan = np.full(p, np.nan)
        return nan, np.full((p, p), np.nan), np.full(len(y), np.nan), False

    params = np.asarray(res.params, dtype=float)
    bound = MAX_LOG2_FOLD_CHANGE * np.log(2.0)
    if not np.all(np.abs(params[1:]) <= bound):
        # a zero-count group sends its coefficient off to -inf
        return fit_nb_glm_bounded(y, X, offset, alpha, params, max_iter=max_iter)
    cov = np.asarray(res.cov_params(), dtype=float)
    mu = np.asarray(res.fittedvalues, dtype=float)
    return params, cov, mu, bool(res.converged)


def fit_nb_glm_bounded(
    y: np.ndarray,
    X: np.ndarray,
    offset: np.ndarray,
    alpha: float,
    start_params: Optional[np.ndarray] = None,
    *,
    max_iter: int = 100,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray, bool]:
    """Ridge-penalised NB GLM with bounded non-intercept coefficients.

    Maximises ``loglik(beta) - 0.5 * WEAK_PRIOR_PRECISION * sum(beta[1:]**2)``
    by L-BFGS-B with every non-intercept coefficient held within
    ``+/- MAX_LOG2_FOLD_CHANGE`` (log2 scale). The covariance is the inverse
    penalised Fisher information at the solution, so a group with no counts
    gets a finite estimate and a standard error set by how many counts the
    baseline would have predicted there.

    Returns the same tuple as :func:`fit_nb_glm`.
    """
    y = np.asarray(y, dtype=float)
    p = X.shape[1]
    bound = MAX_LOG2_FOLD_CHANGE * np.log(2.0)
    precision = np.full(p, WEAK_PRIOR_PRECISION)
    precision[0] = 0.0

    if start_params is not None and np.all(np.isfinite(start_params)):
        start = np.asarray(start_params, dtype=float).copy()
        start[1:] = np.clip(start[1:], -bound, bound)
    else:
        # design has the intercept first
        start = np.zeros(p)
        start[0] = np.log(max(np.mean(y / np.exp(offset)), 1e-8))

    def neg_ll_and_grad(beta):
        eta = np.clip(X @ beta + offset, -30.0, 30.0)
        mu = np.exp(eta)
        ll = np.sum(y * eta - (y + 1.0 / alpha) * np.log1p(alpha * mu))
        grad = X.T @ ((y - mu) / (1.0 + alpha * mu))
        return (
            -(ll - 0.5 * np.sum(precision * beta**2)),
            -(grad - precision * beta),
        )

    bounds = [(None, None)] + [(-bound, bound)] * (p - 1)
    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        result = minimize(
            neg_ll_and_grad,
            x0=start,
            jac=True,
            method="L-BFGS-B",
            bounds=bounds,
            options={"maxiter": 10 * max_iter},
        )

    params = np.asarray(result.x, dtype=float)
    mu = np.exp(np.clip(X @ params + offset, -30.0, 30.0))
    w = mu / (1.0 + alpha * mu)
    try:
        cov = np.linalg.inv(X.T @ (w[:, None] * X) + np.diag(precision))
    except np.linalg.LinAlgError as e:
        logger.debug(f"Bounded NB GLM covariance failed: {e}")
        nan = np.full(p, np.nan)
        return nan, np.full((p, p), np.nan), np.full(len(y), np.nan), False
    return params, cov, mu, bool(result.success)


def _raw_dispersion_chunk(
    Y: np.ndarray,
    X: np.ndarray,
    offset: np.ndarray,
    mu_start: np.ndarray,
    min_disp: float,
    max_iter: int,
    tol: float,
    n_rounds: int,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Phase 1 worker: raw dispersion and mean fit for a block of features."""
    n_features, n_samples = Y.shape
    raw = np.empty(n_features)
    mu_out = np.empty((n_features, n_samples))
    params_out = np.full((n_features, X.shape[1]), np.nan)

    for i in range(n_features):
        y = Y[i]
        mu = mu_start[i]
        alpha = float(np.clip(estimate_alpha_nb2_moments(y, mu), min_disp, 10.0))
        params = None
        for _ in range(n_rounds):
            fit_params, _, fit_mu, _ = fit_nb_glm(
                y, X, offset, alpha, max_iter=max_iter, tol=tol, start_params=params
            )
            if np.all(np.isfinite(fit_params)):
                params, mu = fit_params, fit_mu
            alpha = optimize_dispersion(y, mu, X, min_disp=min_disp)
        raw[i] = alpha
        mu_out[i] = mu
        if params is not None:
            params_out[i] = params
    return raw, mu_out, params_out


def _final_fit_chunk(
    Y: np.ndarray,
    X: np.ndarray,
    offset: np.ndarray,
    mu: np.ndarray,
    start: np.ndarray,
    raw: np.ndarray,
    trend: np.ndarray,
    outlier: np.ndarray,
    prior_var: float,
    min_disp: float,
    max_iter: int,
    tol: float,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """Phase 2 worker: shrunken dispersion and final coefficient refit."""
    n_features = Y.shape[0]
    p = X.shape[1]
    final = np.empty(n_features)
    params_out = np.empty((n_features, p))
    cov_out = np.empty((n_features, p, p))
    converged = np.zeros(n_features, dtype=bool)

    for i in range(n_features):
        final[i] = shrink_dispersion(
            Y[i], mu[i], X, raw[i], trend[i], prior_var,
            outlier=bool(outlier[i]), min_disp=min_disp,
        )
        params_out[i], cov_out[i], _, converged[i] = fit_nb_glm(
            Y[i], X, offset, final[i], max_iter=max_iter, tol=tol, start_params=start[i]
        )
    return final, params_out, cov_out, converged


def fit_model(
    counts: pd.DataFrame,
    sample_meta: pd.DataFrame,
    *,
    max_iter: int = 100,
    tol: float = 1e-6,
    outlier_sd: float = DISPERSION_OUTLIER_SD,
    min_disp: float = MIN_DISPERSION,
    n_rounds: int = 2,
    n_jobs: int = 1,
) -> ModelFit:
    """Fit the NB GLM with shrunken dispersions for every feature.

    Steps:

    1. size factors and design matrix;
    2. per feature: alternate mean fit and Cox-Reid dispersion optimisation
       (``n_rounds`` times) to get the raw dispersion;
    3. barrier: fit the mean-dispersion trend and the log-dispersion prior
       over all features;
    4. per feature: shrink the dispersion toward the trend (outliers keep
       their raw value) and refit the coefficients with it.

    Parameters
    ----------
    counts : pd.DataFrame
        Filtered count matrix (features x samples).
    sample_meta : pd.DataFrame
        Sample metadata indexed by sample ID, covering every count column.
    max_iter : int, default 100
        IRLS iteration cap per fit.
    tol : float, default 1e-6
        Coefficient-change tolerance for IRLS.
    outlier_sd : float, default 2.0
        Outlier threshold in SDs of the log-dispersion residuals.
    min_disp : float
        Lower dispersion bound.
    n_rounds : int, default 2
        Mean-fit / dispersion alternations in phase 1.
    n_jobs : int, default 1
        Worker processes for the per-feature phases.

    Returns
    -------
    ModelFit

    Raises
    ------
    InvalidDesignError
        If the design cannot be built.
    DispersionTrendError
        If the trend or dispersion prior cannot be fit.

    Warns
    -----
    ConvergenceWarning
        If any feature's final refit hit ``max_iter``.

    Examples
    --------
    >>> smeta = build_sample_metadata(counts.columns)
    >>> fit = fit_model(counts, smeta)
    >>> fit.dispersion[["raw_dispersion", "trend_dispersion", "dispersion"]].head()
    """
    sample_meta = sample_meta.loc[counts.columns]
    design = build_design_matrix(sample_meta)
    X = design.to_numpy(dtype=float)
    n_samples, n_coef = X.shape

    size_factors = estimate_size_factors(counts)
    offset = np.log(size_factors.to_numpy(dtype=float))
    bm = base_means(counts, size_factors)
    Y = counts.to_numpy(dtype=float)
    mu_start = bm.to_numpy()[:, None] * size_factors.to_numpy()[None, :]

    logger.info(
        f"Fitting {Y.shape[0]} features x {n_samples} samples "
        f"({n_coef} coefficients, n_jobs={n_jobs})"
    )

    # phase 1: raw dispersions
    chunks = chunk_indices(Y.shape[0], n_jobs)
    results = run_chunks(
        _raw_dispersion_chunk,
        [(Y[c], X, offset, mu_start[c], min_disp, max_iter, tol, n_rounds) for c in chunks],
        n_jobs=n_jobs,
    )
    raw = np.concatenate([r[0] for r in results])
    mu = np.concatenate([r[1] for r in results])
    start = np.concatenate([r[2] for r in results])

    # barrier: trend and prior over all features
    trend = fit_dispersion_trend(bm.to_numpy(), raw, min_disp=min_disp)
    trend_disp = trend(bm.to_numpy())
    var_log_resid, prior_var = dispersion_prior_variance(
        raw, trend_disp, n_samples, n_coef, min_disp=min_disp
    )
    outlier = is_dispersion_outlier(raw, trend_disp, var_log_resid, outlier_sd=outlier_sd)
    logger.info(
        f"Dispersion prior variance {prior_var:.3f}; "
        f"{int(outlier.sum())} dispersion outliers keep their raw estimate"
    )

    # phase 2: shrink and refit
    results = run_chunks(
        _final_fit_chunk,
        [
            (Y[c], X, offset, mu[c], start[c], raw[c], trend_disp[c], outlier[c],
             prior_var, min_disp, max_iter, tol)
            for c in chunks
        ],
        n_jobs=n_jobs,
    )
    final = np.concatenate([r[0] for r in results])
    params = np.concatenate([r[1] for r in results])
    cov = np.concatenate([r[2] for r in results])
    converged = np.concatenate([r[3] for r in results])

    n_bad = int((~converged).sum())
    if n_bad:
        warnings.warn(
            f"{n_bad} of {len(converged)} features did not converge within "
            f"{max_iter} iterations; their last iterates are kept",
            ConvergenceWarning,
        )

    index = counts.index
    dispersion = pd.DataFrame(
        {
            "raw_dispersion": raw,
            "trend_dispersion": trend_disp,
            "dispersion": final,
            "dispersion_outlier": outlier,
        },
        index=index,
    )
    return ModelFit(
        counts=counts,
        sample_meta=sample_meta,
        design=design,
        size_factors=size_factors,
        base_mean=bm,
        coefficients=pd.DataFrame(params, index=index, columns=design.columns),
        covariance=cov,
        dispersion=dispersion,
        converged=pd.Series(converged, index=index, name="converged"),
        trend=trend,
        dispersion_prior_var=prior_var,
    )
