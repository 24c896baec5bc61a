"""
Dispersion estimation: per-feature estimates, mean-dispersion trend, and
empirical-Bayes shrinkage toward the trend.

The three stages follow the usual count-modelling recipe:

1. each feature's dispersion is estimated from its own counts by maximising
   the Cox-Reid adjusted profile likelihood;
2. a trend ``alpha(mean) = a0 + a1 / mean`` is fit across all features;
3. each feature's final dispersion is the posterior mode under a log-normal
   prior centred on the trend, unless the feature is a dispersion outlier
   (far above the trend), in which case its raw estimate is kept.

Stage 2 needs every feature's raw estimate, and stage 3 needs the trend, so
the trend fit is a barrier between two per-feature maps.

Classes
-------
DispersionTrend
    Fitted mean-dispersion trend.

Functions
---------
optimize_dispersion
    Maximise the (optionally penalised) Cox-Reid likelihood for one feature.
fit_dispersion_trend
    Fit the parametric mean-dispersion trend across features.
dispersion_prior_variance
    Prior variance of log dispersions around the trend.
is_dispersion_outlier
    Flag features whose raw dispersion lies far above the trend.
"""
from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
import statsmodels.api as sm
from scipy import stats
from scipy.optimize import minimize_scalar
from scipy.special import polygamma
from statsmodels.tools.sm_exceptions import DomainWarning, PerfectSeparationError

from .constants import (
    DISPERSION_OUTLIER_SD,
    MIN_DISPERSION,
    MIN_LOG_DISPERSION_PRIOR_VAR,
    TREND_RATIO_BOUNDS,
)
from .diagnostics import cox_reid_log_likelihood
from .exceptions import DispersionTrendError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DispersionTrend:
    """Fitted mean-dispersion trend ``alpha(mean) = asympt_disp + extra_pois / mean``."""

    #: Dispersion approached at high mean count.
    asympt_disp: float
    #: Extra-Poisson term, decays with the mean.
    extra_pois: float
    #: "parametric" or "mean" (constant fallback).
    fit_type: str = "parametric"

    def __call__(self, means: np.ndarray) -> np.ndarray:
        means = np.clip(np.asarray(means, dtype=float), 1e-8, None)
        return self.asympt_disp + self.extra_pois / means


def _grid_then_bounded(objective, lower: float, upper: float, n_grid: int = 20) -> float:
    # coarse grid guards the bounded Brent search against local optima
    grid = np.linspace(lower, upper, n_grid)
    vals = np.array([objective(g) for g in grid])
    i = int(np.nanargmin(vals))
    lo = grid[max(i - 1, 0)]
    hi = grid[min(i + 1, n_grid - 1)]
    res = minimize_scalar(objective, bounds=(lo, hi), method="bounded", options={"xatol": 1e-6})
    if res.success and res.fun <= vals[i]:
        return float(res.x)
    return float(grid[i])


def optimize_dispersion(
    y: np.ndarray,
    mu: np.ndarray,
    X: np.ndarray,
    *,
    min_disp: float = MIN_DISPERSION,
    max_disp: Optional[float] = None,
    log_prior_mean: Optional[float] = None,
    prior_var: Optional[float] = None,
) -> float:
    """Maximise the Cox-Reid adjusted likelihood of one feature's dispersion.

    With ``log_prior_mean`` and ``prior_var`` set, a normal prior on
    ``log(alpha)`` is added and the result is the posterior mode.

    Parameters
    ----------
    y : np.ndarray
        Counts for one feature.
    mu : np.ndarray
        Fitted means for that feature (held fixed).
    X : np.ndarray
        Design matrix.
    min_disp : float
        Lower bound for alpha.
    max_disp : float or None
        Upper bound for alpha; defaults to ``max(10, n_samples)``.
    log_prior_mean : float or None
        Prior centre on the log scale (log of the trend value).
    prior_var : float or None
        Prior variance on the log scale.

    Returns
    -------
    float
        Dispersion estimate.
    """
    if max_disp is None:
        max_disp = max(10.0, float(len(y)))
    y = np.asarray(y, dtype=float)
    mu = np.asarray(mu, dtype=float)

    use_prior = log_prior_mean is not None and prior_var is not None

    def objective(log_alpha: float) -> float:
        val = cox_reid_log_likelihood(log_alpha, y, mu, X)
        if use_prior:
            val -= (log_alpha - log_prior_mean) ** 2 / (2.0 * prior_var)
        return -val

    log_alpha = _grid_then_bounded(objective, np.log(min_disp), np.log(max_disp))
    return float(np.clip(np.exp(log_alpha), min_disp, max_disp))


def fit_dispersion_trend(
    means: np.ndarray,
    raw_disp: np.ndarray,
    *,
    min_disp: float = MIN_DISPERSION,
    max_iter: int = 10,
) -> DispersionTrend:
    """Fit the mean-dispersion trend across all features.

    A gamma-family GLM with identity link regresses the raw dispersions on
    ``[1, 1/mean]``. Features whose ratio of raw to fitted dispersion falls
    outside ``TREND_RATIO_BOUNDS`` are dropped and the fit is repeated until
    the coefficients stabilise. Only features with a raw dispersion of at
    least ``100 * min_disp`` take part.

    If the parametric fit fails (non-positive coefficients or no
    convergence) the trend falls back to a constant, the trimmed mean of the
    usable raw dispersions.

    Parameters
    ----------
    means : np.ndarray
        Mean normalized count per feature.
    raw_disp : np.ndarray
        Raw dispersion per feature.
    min_disp : float
        Lower dispersion bound used during raw estimation.
    max_iter : int, default 10
        Maximum number of fit / outlier-removal passes.

    Returns
    -------
    DispersionTrend

    Raises
    ------
    DispersionTrendError
        If no feature has a usable raw dispersion (e.g. all estimates sit at
        the lower bound).
    """
    means = np.asarray(means, dtype=float)
    raw_disp = np.asarray(raw_disp, dtype=float)
    usable = np.isfinite(raw_disp) & np.isfinite(means) & (means > 0) & (raw_disp >= 100 * min_disp)
    if not usable.any():
        raise DispersionTrendError(
            "No feature has a usable dispersion estimate; all raw dispersions "
            f"are below {100 * min_disp:g}"
        )

    try:
        trend = _parametric_trend(means, raw_disp, usable, max_iter=max_iter)
        logger.info(
            f"Dispersion trend: asymptDisp={trend.asympt_disp:.4g}, "
            f"extraPois={trend.extra_pois:.4g}"
        )
        return trend
    except (DispersionTrendError, ValueError, np.linalg.LinAlgError, PerfectSeparationError) as e:
        logger.warning(f"Parametric dispersion trend failed ({e}); using mean dispersion")

    mean_disp = float(stats.trim_mean(raw_disp[usable], 0.001))
    return DispersionTrend(asympt_disp=mean_disp, extra_pois=0.0, fit_type="mean")


def _parametric_trend(
    means: np.ndarray,
    raw_disp: np.ndarray,
    usable: np.ndarray,
    max_iter: int,
) -> DispersionTrend:
    lo, hi = TREND_RATIO_BOUNDS
    coefs = np.array([0.1, 1.0])
    keep = usable.copy()
    family = sm.families.Gamma(link=sm.families.links.Identity())

    for _ in range(max_iter):
        if keep.sum() < 3:
            raise DispersionTrendError(f"Only {keep.sum()} features left for trend fit")
        X = np.column_stack([np.ones(keep.sum()), 1.0 / means[keep]])
        with warnings.catch_warnings():
            # identity link is outside the canonical gamma domain
            warnings.simplefilter("ignore", DomainWarning)
            res = sm.GLM(raw_disp[keep], X, family=family).fit(start_params=coefs, maxiter=100)
        new = np.asarray(res.params, dtype=float)
        if not np.all(np.isfinite(new)) or np.any(new <= 0):
            raise DispersionTrendError(f"Non-positive trend coefficients {new}")

        ratio = raw_disp / (new[0] + new[1] / means)
        keep = usable & (ratio > lo) & (ratio < hi)
        delta = np.sum(np.log(new / coefs) ** 2)
        coefs = new
        if delta < 1e-6:
            return DispersionTrend(asympt_disp=float(coefs[0]), extra_pois=float(coefs[1]))

    raise DispersionTrendError(f"Trend fit did not converge in {max_iter} passes")


def dispersion_prior_variance(
    raw_disp: np.ndarray,
    trend_disp: np.ndarray,
    n_samples: int,
    n_coef: int,
    *,
    min_disp: float = MIN_DISPERSION,
) -> Tuple[float, float]:
    """Prior variance of log dispersions around the trend.

    The observed spread is the squared (normal-consistent) MAD of
    ``log(raw) - log(trend)``. Part of that spread is sampling noise, whose
    expected variance for ``m - p`` residual degrees of freedom is
    ``trigamma((m - p) / 2)``; the remainder is the prior variance,
    floored at ``MIN_LOG_DISPERSION_PRIOR_VAR``.

    Returns
    -------
    var_log_resid : float
        Observed variance of log residuals (used for outlier detection).
    prior_var : float
        Prior variance for the MAP step.
    """
    raw_disp = np.asarray(raw_disp, dtype=float)
    trend_disp = np.asarray(trend_disp, dtype=float)
    usable = np.isfinite(raw_disp) & (raw_disp >= 100 * min_disp) & (trend_disp > 0)
    if not usable.any():
        raise DispersionTrendError("No usable dispersions for the dispersion prior")

    resid = np.log(raw_disp[usable]) - np.log(trend_disp[usable])
    var_log_resid = float(stats.median_abs_deviation(resid, scale="normal") ** 2)
    df = max(n_samples - n_coef, 1)
    expected = float(polygamma(1, df / 2.0))
    prior_var = max(var_log_resid - expected, MIN_LOG_DISPERSION_PRIOR_VAR)
    return var_log_resid, prior_var


def is_dispersion_outlier(
    raw_disp: np.ndarray,
    trend_disp: np.ndarray,
    var_log_resid: float,
    outlier_sd: float = DISPERSION_OUTLIER_SD,
) -> np.ndarray:
    """Flag features with ``log(raw) > log(trend) + outlier_sd * sd``.

    Only upward deviations count: a dispersion well above the trend signals
    genuine extra variability the prior should not erase.
    """
    raw_disp = np.asarray(raw_disp, dtype=float)
    trend_disp = np.asarray(trend_disp, dtype=float)
    with np.errstate(divide="ignore", invalid="ignore"):
        dev = np.log(raw_disp) - np.log(trend_disp)
    return np.nan_to_num(dev, nan=-np.inf) > outlier_sd * np.sqrt(var_log_resid)


def shrink_dispersion(
    y: np.ndarray,
    mu: np.ndarray,
    X: np.ndarray,
    raw: float,
    trend: float,
    prior_var: float,
    *,
    outlier: bool = False,
    min_disp: float = MIN_DISPERSION,
    max_disp: Optional[float] = None,
) -> float:
    """Final dispersion for one feature.

    Outliers keep ``raw``; otherwise the posterior mode is computed and
    clamped to the interval spanned by ``raw`` and ``trend``.
    """
    if outlier or not np.isfinite(raw):
        return float(raw)
    map_disp = optimize_dispersion(
        y,
        mu,
        X,
        min_disp=min_disp,
        max_disp=max_disp,
        log_prior_mean=float(np.log(trend)),
        prior_var=prior_var,
    )
    return float(np.clip(map_disp, min(raw, trend), max(raw, trend)))
