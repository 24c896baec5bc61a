import numpy as np
import pytest
from scipy.stats import norm

from odid_screen.contrasts import LN2, one_sided_pvalue, timepoint_vs_baseline, wald_contrast
from odid_screen.stats import contrast_results


def test_one_sided_pvalue():
    stat = np.array([-1.959964, 0.0, 1.959964, np.nan])
    np.testing.assert_allclose(one_sided_pvalue(stat, "less")[:3], [0.025, 0.5, 0.975], atol=1e-6)
    np.testing.assert_allclose(one_sided_pvalue(stat, "greater")[:3], [0.975, 0.5, 0.025], atol=1e-6)
    np.testing.assert_allclose(one_sided_pvalue(stat, "two-sided")[:3], [0.05, 1.0, 0.05], atol=1e-6)
    assert np.isnan(one_sided_pvalue(stat, "less")[3])


def test_one_sided_pvalue_unknown_alternative():
    with pytest.raises(ValueError, match="Unknown alternative"):
        one_sided_pvalue(np.array([0.0]), "lesser")


def test_timepoint_vs_baseline(fit):
    L, name = timepoint_vs_baseline(fit, 3)
    assert name == "t3 - t0"
    assert L.sum() == 1.0
    assert fit.data_cols[int(np.argmax(L))] == fit.coef_name(3)


def test_timepoint_vs_baseline_rejects_baseline(fit):
    with pytest.raises(KeyError):
        timepoint_vs_baseline(fit, 0)
    with pytest.raises(KeyError):
        timepoint_vs_baseline(fit, 7)


def test_wald_contrast_matches_coefficients(fit):
    L, _ = timepoint_vs_baseline(fit, 3)
    lfc, se, stat, p = wald_contrast(fit, L, alternative="less")
    k = int(np.argmax(L))
    np.testing.assert_allclose(lfc, fit.coefficients.iloc[:, k] / LN2)
    np.testing.assert_allclose(se, np.sqrt(fit.covariance[:, k, k]) / LN2)
    ok = np.isfinite(stat)
    np.testing.assert_allclose(p[ok], norm.cdf(stat[ok]))


def test_enriched_features_not_significant_when_testing_depletion(fit, truth):
    res = contrast_results(fit, 3, alternative="less", independent_filter=False)
    enriched = truth.index[truth["direction"] == "enriched"].intersection(res.index)
    assert len(enriched) > 0
    assert (res.loc[enriched, "pvalue"] >= 0.5).all()


def test_depleted_features_detected(fit, truth):
    res = contrast_results(fit, 3, alternative="less")
    depleted = truth.index[truth["direction"] == "depleted"].intersection(res.index)
    assert (res.loc[depleted, "log2FoldChange"] < 0).all()
    assert (res.loc[depleted, "padj"] < 0.1).mean() > 0.8
