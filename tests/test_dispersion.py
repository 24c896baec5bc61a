import numpy as np
import pytest

from odid_screen.constants import (
    DISPERSION_OUTLIER_SD,
    MIN_DISPERSION,
    MIN_LOG_DISPERSION_PRIOR_VAR,
)
from odid_screen.dispersion import (
    DispersionTrend,
    dispersion_prior_variance,
    fit_dispersion_trend,
    is_dispersion_outlier,
    optimize_dispersion,
    shrink_dispersion,
)
from odid_screen.exceptions import DispersionTrendError


def test_trend_call():
    trend = DispersionTrend(asympt_disp=0.1, extra_pois=2.0)
    np.testing.assert_allclose(trend(np.array([1.0, 10.0, 100.0])), [2.1, 0.3, 0.12])


def test_parametric_trend_recovers_coefficients():
    rng = np.random.default_rng(3)
    means = np.exp(rng.uniform(np.log(5), np.log(5000), size=400))
    true = 0.05 + 2.0 / means
    raw = true * np.exp(rng.normal(0, 0.3, size=means.size))
    trend = fit_dispersion_trend(means, raw)
    assert trend.fit_type == "parametric"
    assert trend.asympt_disp == pytest.approx(0.05, rel=0.3)
    assert trend.extra_pois == pytest.approx(2.0, rel=0.3)


def test_trend_all_at_lower_bound_raises():
    means = np.linspace(1, 100, 50)
    raw = np.full(50, MIN_DISPERSION)
    with pytest.raises(DispersionTrendError):
        fit_dispersion_trend(means, raw, min_disp=MIN_DISPERSION)


def test_trend_falls_back_to_mean(caplog):
    # dispersion rising with the mean has no positive a0 + a1/mean fit
    means = np.linspace(10, 200, 20)
    raw = 0.01 * means
    trend = fit_dispersion_trend(means, raw)
    assert trend.fit_type == "mean"
    assert trend.extra_pois == 0.0
    assert trend.asympt_disp == pytest.approx(raw.mean())
    assert "using mean dispersion" in caplog.text


def test_prior_variance_floor():
    raw = np.full(100, 0.1)
    var_log_resid, prior_var = dispersion_prior_variance(raw, raw.copy(), 12, 6)
    assert var_log_resid == pytest.approx(0.0)
    assert prior_var == MIN_LOG_DISPERSION_PRIOR_VAR


def test_outlier_only_upward():
    raw = np.array([0.1, 1.0, 0.001, np.nan])
    trend = np.full(4, 0.1)
    out = is_dispersion_outlier(raw, trend, var_log_resid=0.25, outlier_sd=2.0)
    assert out.tolist() == [False, True, False, False]


def test_outlier_default_threshold():
    trend = np.full(2, 0.1)
    dev = np.array([DISPERSION_OUTLIER_SD - 0.1, DISPERSION_OUTLIER_SD + 0.1]) * 0.5
    raw = trend * np.exp(dev)
    out = is_dispersion_outlier(raw, trend, var_log_resid=0.25)
    assert out.tolist() == [False, True]


def test_optimize_dispersion_near_truth():
    rng = np.random.default_rng(4)
    alpha, mu = 0.2, 100.0
    size = 1.0 / alpha
    y = rng.negative_binomial(size, size / (size + mu), size=300).astype(float)
    X = np.ones((y.size, 1))
    est = optimize_dispersion(y, np.full(y.size, y.mean()), X)
    assert 0.12 < est < 0.3


def test_shrink_dispersion_between_raw_and_trend():
    rng = np.random.default_rng(5)
    y = rng.negative_binomial(5, 5 / (5 + 80.0), size=12).astype(float)
    mu = np.full(12, y.mean())
    X = np.ones((12, 1))
    raw = optimize_dispersion(y, mu, X)
    for trend in (raw / 10, raw * 10):
        final = shrink_dispersion(y, mu, X, raw, trend, 0.5)
        assert min(raw, trend) <= final <= max(raw, trend)


def test_shrink_dispersion_outlier_keeps_raw():
    y = np.array([0.0, 100.0, 3.0, 250.0])
    X = np.ones((4, 1))
    final = shrink_dispersion(y, np.full(4, y.mean()), X, 2.5, 0.05, 0.5, outlier=True)
    assert final == 2.5


def test_fitted_dispersions_respect_trend(fit):
    d = fit.dispersion
    raw, trend, final = d["raw_dispersion"], d["trend_dispersion"], d["dispersion"]
    outl = d["dispersion_outlier"]
    assert np.all(final[outl] == raw[outl])
    lo = np.minimum(raw, trend)[~outl]
    hi = np.maximum(raw, trend)[~outl]
    assert np.all(final[~outl] >= lo - 1e-12)
    assert np.all(final[~outl] <= hi + 1e-12)
    assert fit.dispersion_prior_var >= MIN_LOG_DISPERSION_PRIOR_VAR
