import numpy as np
import pandas as pd
import pytest

from odid_screen.diagnostics import (
    cox_reid_log_likelihood,
    estimate_alpha_nb2_moments,
    nb_log_likelihood,
    per_sample_dispersion,
    zero_fraction,
)
from odid_screen.preprocess import (
    base_means,
    estimate_size_factors,
    filter_features_by_total_counts,
    normalized_counts,
    split_counts_and_sequences,
)


def test_split_counts_and_sequences():
    df = pd.DataFrame(
        {
            "0A": [3, 0, 1],
            "1A": [1.0, 2.0, np.nan],
            "aa_seq": ["MK", "MR", "MT"],
            "note": ["x", "y", "z"],
        },
        index=["f1", "f2", "f3"],
    )
    counts, seqs = split_counts_and_sequences(df)
    assert list(counts.columns) == ["0A", "1A"]
    assert list(seqs.columns) == ["aa_seq", "note"]
    assert counts.loc["f3", "1A"] == 0
    assert all(np.issubdtype(t, np.integer) for t in counts.dtypes)


def test_split_counts_rejects_negative():
    df = pd.DataFrame({"0A": [3, -1], "1A": [1, 2]}, index=["f1", "f2"])
    with pytest.raises(ValueError, match="negative"):
        split_counts_and_sequences(df)


def test_filter_total_count_boundary():
    counts = pd.DataFrame(
        {"0A": [1, 1, 0, 5], "1A": [0, 1, 0, 5]},
        index=["one", "two", "zero", "ten"],
    )
    kept = filter_features_by_total_counts(counts, min_total=2)
    assert "one" not in kept.index
    assert "zero" not in kept.index
    assert list(kept.index) == ["two", "ten"]


def test_size_factors_recover_depth():
    rng = np.random.default_rng(0)
    base = rng.uniform(50, 500, size=100)
    depth = np.array([0.5, 1.0, 2.0, 4.0])
    counts = pd.DataFrame(
        np.round(base[:, None] * depth[None, :]).astype(int),
        columns=["0A", "0B", "1A", "1B"],
    )
    sf = estimate_size_factors(counts)
    assert sf.name == "size_factor"
    assert np.exp(np.log(sf).mean()) == pytest.approx(1.0)
    ratios = sf.to_numpy() / depth
    np.testing.assert_allclose(ratios / ratios[0], 1.0, rtol=0.05)


def test_size_factors_without_all_positive_features():
    counts = pd.DataFrame(
        {"0A": [10, 0, 4], "0B": [0, 20, 8], "1A": [5, 10, 0]},
    )
    sf = estimate_size_factors(counts)
    assert np.all(np.isfinite(sf)) and np.all(sf > 0)


def test_base_means_and_normalized_counts():
    counts = pd.DataFrame({"0A": [2, 4], "1A": [4, 8]}, index=["a", "b"])
    sf = pd.Series([1.0, 2.0], index=["0A", "1A"])
    norm = normalized_counts(counts, sf)
    assert norm.loc["a", "1A"] == pytest.approx(2.0)
    bm = base_means(counts, sf)
    assert bm.name == "baseMean"
    assert bm.loc["b"] == pytest.approx(4.0)


def test_zero_fraction_and_sample_dispersion():
    counts = pd.DataFrame({"0A": [0, 10, 0, 5], "1A": [1, 0, 3, 0]})
    np.testing.assert_allclose(zero_fraction(counts).to_numpy(), [0.5, 0.5])
    out = per_sample_dispersion(counts)
    assert list(out.columns) == ["mean", "var", "var_over_mean"]


def test_moment_alpha_close_to_truth():
    rng = np.random.default_rng(1)
    alpha, mu = 0.2, 100.0
    size = 1.0 / alpha
    y = rng.negative_binomial(size, size / (size + mu), size=5000)
    est = estimate_alpha_nb2_moments(y, np.full(y.size, mu))
    assert est == pytest.approx(alpha, rel=0.15)


def test_cox_reid_penalises_likelihood():
    rng = np.random.default_rng(2)
    y = rng.poisson(50, size=8).astype(float)
    mu = np.full(8, y.mean())
    X = np.column_stack([np.ones(8), np.repeat([0.0, 1.0], 4)])
    la = np.log(0.1)
    cr = cox_reid_log_likelihood(la, y, mu, X)
    assert cr < nb_log_likelihood(y, mu, 0.1)
