import numpy as np
import pytest

from odid_screen.stats import bh_fdr, contrast_results, independent_filtering


def test_bh_fdr_known_values():
    q = bh_fdr(np.array([0.001, 0.01, 0.05, 0.1]))
    np.testing.assert_allclose(q, [0.004, 0.02, 0.0666667, 0.1], rtol=1e-5)


def test_bh_fdr_properties():
    rng = np.random.default_rng(0)
    p = rng.uniform(size=200) ** 2
    p[::17] = np.nan
    q = bh_fdr(p)
    ok = np.isfinite(p)
    assert np.all(np.isnan(q[~ok]))
    assert np.all(q[ok] >= p[ok])
    assert np.all(q[ok] <= 1.0)
    order = np.argsort(p[ok])
    assert np.all(np.diff(q[ok][order]) >= -1e-15)


def test_bh_fdr_never_below_pvalue():
    # p * n / n must not round below p at the largest rank
    for seed in range(20):
        rng = np.random.default_rng(seed)
        p = rng.uniform(size=rng.integers(3, 400)) ** 2
        q = bh_fdr(p)
        assert np.all(q >= p)
    p = np.array([0.01, 0.5, 0.99442766])
    assert bh_fdr(p)[2] >= p[2]


def test_bh_fdr_all_nan():
    assert np.all(np.isnan(bh_fdr(np.array([np.nan, np.nan]))))


def test_no_filtering_without_signal():
    rng = np.random.default_rng(1)
    p = rng.uniform(size=500)
    bm = rng.lognormal(3, 1, size=500)
    p_f, padj, cutoff, rej = independent_filtering(p, bm, alpha=0.1)
    assert cutoff == pytest.approx(bm.min())
    np.testing.assert_array_equal(p_f, p)
    assert len(rej) == 50
    assert list(rej.columns) == ["theta", "cutoff", "num_rej", "lowess"]


def test_filtering_drops_low_mean_features():
    rng = np.random.default_rng(2)
    n = 2000
    bm = rng.lognormal(3, 1.5, size=n)
    p = rng.uniform(size=n)
    # moderate signal, only at high counts; low-count features are pure noise
    high = bm > np.quantile(bm, 0.5)
    signal = high & (rng.uniform(size=n) < 0.4)
    p[signal] = rng.uniform(0, 0.04, size=signal.sum())
    p_f, padj, cutoff, _ = independent_filtering(p, bm, alpha=0.1)
    filtered = bm < cutoff
    assert cutoff > bm.min()
    assert np.all(np.isnan(padj[filtered]))
    assert np.all(np.isnan(p_f[filtered]))
    assert np.all(np.isfinite(padj[~filtered]))
    assert np.sum(padj < 0.1) >= np.sum(bh_fdr(p) < 0.1)


def test_contrast_results_table(fit):
    res = contrast_results(fit, 3, alternative="less")
    assert list(res.columns) == ["baseMean", "log2FoldChange", "lfcSE", "stat", "pvalue", "padj"]
    assert res.index.equals(fit.feature_ids)
    assert res.attrs["contrast"] == "t3 - t0"
    assert res.attrs["alternative"] == "less"
    defined = res["padj"].notna()
    assert defined.any()
    assert np.all(res.loc[defined, "padj"] >= res.loc[defined, "pvalue"] - 1e-12)
    # filtered features lose both p-values
    assert res.loc[res["pvalue"].isna(), "padj"].isna().all()
    assert np.all(res.loc[res["baseMean"] < res.attrs["filter_cutoff"], "padj"].isna())


def test_contrast_results_without_filter(fit):
    res = contrast_results(fit, 1, independent_filter=False)
    finite = np.isfinite(res["stat"])
    assert res.loc[finite, "padj"].notna().all()
    assert res.attrs["filter_cutoff"] == 0.0
