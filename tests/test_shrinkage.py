import numpy as np
import pytest

from odid_screen.contrasts import LN2
from odid_screen.exceptions import DispersionTrendError
from odid_screen.shrinkage import (
    estimate_lfc_prior_variance,
    map_nb_glm,
    shrink_lfc,
    weighted_quantile,
)


def test_weighted_quantile():
    x = np.array([3.0, 1.0, 2.0])
    assert weighted_quantile(x, np.ones(3), 0.5) == 2.0
    assert weighted_quantile(x, np.array([0.0, 0.0, 1.0]), 0.9) == 2.0
    assert weighted_quantile(x, np.ones(3), 1.0) == 3.0


def test_prior_variance_from_normal_lfcs():
    rng = np.random.default_rng(0)
    lfc = rng.normal(0, 1.5, size=20000)
    var = estimate_lfc_prior_variance(lfc, np.full(lfc.size, 100.0), np.full(lfc.size, 0.1))
    assert np.sqrt(var) == pytest.approx(1.5, rel=0.05)


def test_prior_variance_requires_finite_lfc():
    with pytest.raises(DispersionTrendError):
        estimate_lfc_prior_variance(np.array([np.nan, np.inf]), np.ones(2), np.ones(2))


def test_map_without_penalty_matches_mle():
    rng = np.random.default_rng(1)
    X = np.column_stack([np.ones(12), np.repeat([0.0, 1.0], 6)])
    y = np.concatenate([rng.poisson(100, 6), rng.poisson(25, 6)]).astype(float)
    beta, cov, converged = map_nb_glm(y, X, np.zeros(12), 0.01, np.full(2, 1e-12), np.full(2, np.nan))
    assert converged
    assert beta[1] == pytest.approx(np.log(y[6:].mean() / y[:6].mean()), abs=1e-6)
    assert np.all(np.diag(cov) > 0)


def test_strong_prior_pulls_to_zero():
    rng = np.random.default_rng(2)
    X = np.column_stack([np.ones(12), np.repeat([0.0, 1.0], 6)])
    y = np.concatenate([rng.poisson(100, 6), rng.poisson(25, 6)]).astype(float)
    start = np.array([np.log(y.mean()), 0.0])
    weak, _, _ = map_nb_glm(y, X, np.zeros(12), 0.05, np.array([1e-6, 1e-6]), start)
    strong, _, _ = map_nb_glm(y, X, np.zeros(12), 0.05, np.array([1e-6, 1e4]), start)
    assert abs(strong[1]) < abs(weak[1])
    assert abs(strong[1]) < 0.05


def test_shrunken_lfc_bounded_by_mle(fit, pipeline_result):
    shrunk = pipeline_result.shrunk
    for t in fit.timepoints[1:]:
        lfc = fit.coefficients[fit.coef_name(t)] / LN2
        s = shrunk[f"shrunkLogFoldChange_t{t}"]
        ok = fit.converged & np.isfinite(lfc) & np.isfinite(s)
        assert ok.sum() > 0.9 * len(ok)
        assert np.all(np.abs(s[ok]) <= np.abs(lfc[ok]) + 1e-3)
        sd = shrunk[f"posteriorSD_t{t}"][ok]
        assert np.all(sd > 0)


def test_shrink_lfc_columns_and_attrs(fit):
    out = shrink_lfc(fit, 1)
    assert list(out.columns) == ["shrunkLogFoldChange_t1", "posteriorSD_t1"]
    assert out.index.equals(fit.feature_ids)
    assert out.attrs["contrast"] == "t1 - t0"
    assert out.attrs["prior_var"] > 0


def test_depleted_features_stay_negative(pipeline_result, truth):
    s = pipeline_result.shrunk["shrunkLogFoldChange_t3"]
    depleted = truth.index[truth["direction"] == "depleted"].intersection(s.index)
    assert (s[depleted] < 0).all()
