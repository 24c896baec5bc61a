import warnings

import numpy as np
import pandas as pd
import pytest

from odid_screen.exceptions import ConvergenceWarning
from odid_screen.metadata_setup import build_sample_metadata
from odid_screen.constants import MAX_LOG2_FOLD_CHANGE
from odid_screen.model import (
    chunk_indices,
    fit_model,
    fit_nb_glm,
    fit_nb_glm_bounded,
    run_chunks,
)
from odid_screen.preprocess import split_counts_and_sequences
from odid_screen.simulation import simulate_timecourse_counts


def test_chunk_indices_cover_all_features():
    chunks = chunk_indices(10, 3)
    np.testing.assert_array_equal(np.concatenate(chunks), np.arange(10))
    assert len(chunk_indices(10, 1)) == 1
    assert len(chunk_indices(2, 8)) == 2


def test_run_chunks_serial_and_pool():
    args = [(1, 2), (3, 4), (5, 6)]
    assert run_chunks(np.add, args, n_jobs=1) == [3, 7, 11]
    assert list(run_chunks(np.add, args, n_jobs=2)) == [3, 7, 11]


def test_fit_nb_glm_recovers_group_means():
    X = np.column_stack([np.ones(8), np.repeat([0.0, 1.0], 4)])
    y = np.array([10, 12, 8, 10, 40, 44, 36, 40], dtype=float)
    params, cov, mu, converged = fit_nb_glm(y, X, np.zeros(8), 0.05)
    assert converged
    np.testing.assert_allclose(params, [np.log(10.0), np.log(4.0)], atol=1e-5)
    np.testing.assert_allclose(mu, np.repeat([10.0, 40.0], 4), rtol=1e-5)
    assert cov.shape == (2, 2)


def test_fit_nb_glm_zero_group_is_bounded():
    X = np.column_stack([np.ones(8), np.repeat([0.0, 1.0], 4)])
    y = np.array([300, 310, 290, 305, 0, 0, 0, 0], dtype=float)
    params, cov, mu, converged = fit_nb_glm(y, X, np.zeros(8), 0.05)
    assert converged
    bound = MAX_LOG2_FOLD_CHANGE * np.log(2.0)
    assert params[1] == pytest.approx(-bound, rel=1e-6)
    assert params[0] == pytest.approx(np.log(301.25), abs=0.05)
    assert np.all(np.isfinite(cov))
    # 1200 baseline counts make an empty group strong evidence of depletion
    assert params[1] / np.sqrt(cov[1, 1]) < -3.0
    np.testing.assert_allclose(mu[4:], 301.25 * 2.0 ** -MAX_LOG2_FOLD_CHANGE, rtol=0.05)


def test_fit_nb_glm_bounded_from_intercept_start():
    X = np.column_stack([np.ones(6), np.repeat([0.0, 1.0], 3)])
    y = np.array([5, 0, 0, 20, 25, 15], dtype=float)
    params, cov, mu, converged = fit_nb_glm_bounded(y, X, np.zeros(6), 0.1, None)
    assert converged
    assert np.all(np.isfinite(params))
    assert abs(params[1]) < MAX_LOG2_FOLD_CHANGE * np.log(2.0)
    assert cov.shape == (2, 2)


def test_fit_tables(fit, counts_table):
    n = len(fit.feature_ids)
    assert fit.coefficients.shape == (n, fit.design.shape[1])
    assert list(fit.coefficients.columns) == fit.data_cols
    assert fit.covariance.shape == (n, len(fit.data_cols), len(fit.data_cols))
    assert list(fit.dispersion.columns) == [
        "raw_dispersion",
        "trend_dispersion",
        "dispersion",
        "dispersion_outlier",
    ]
    assert fit.converged.dtype == bool
    assert fit.timepoints == [0, 1, 2, 3]
    assert fit.baseline == 0
    assert list(fit.sample_meta.index) == list(fit.counts.columns)
    assert fit.base_mean.index.equals(fit.feature_ids)
    assert set(fit.feature_ids) <= set(counts_table.index)


def test_fit_recovers_depletion(fit, truth):
    lfc = fit.coefficients[fit.coef_name(3)] / np.log(2)
    depleted = truth.index[truth["direction"] == "depleted"].intersection(lfc.index)
    assert lfc[depleted].median() == pytest.approx(-3.0, abs=0.5)


def test_nonconvergence_warns():
    table, _ = simulate_timecourse_counts(n_features=30, n_depleted=5, n_enriched=2,
                                          n_duplicate_aa=0, seed=11)
    counts, _ = split_counts_and_sequences(table)
    smeta = build_sample_metadata(counts.columns)
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", RuntimeWarning)
        warnings.simplefilter("always", ConvergenceWarning)
        with pytest.warns(ConvergenceWarning, match="did not converge"):
            fit = fit_model(counts, smeta, max_iter=1)
    assert (~fit.converged).any()
    # non-converged features keep finite last-iterate coefficients
    assert np.isfinite(fit.coefficients.to_numpy()).all()


def test_parallel_fit_matches_serial():
    table, _ = simulate_timecourse_counts(n_features=40, n_depleted=5, n_enriched=2,
                                          n_duplicate_aa=0, seed=3)
    counts, _ = split_counts_and_sequences(table)
    smeta = build_sample_metadata(counts.columns)
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", ConvergenceWarning)
        serial = fit_model(counts, smeta, n_jobs=1)
        parallel = fit_model(counts, smeta, n_jobs=2)
    pd.testing.assert_frame_equal(serial.coefficients, parallel.coefficients)
    pd.testing.assert_frame_equal(serial.dispersion, parallel.dispersion)
