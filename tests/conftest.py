import warnings

import matplotlib

matplotlib.use("Agg")

import pytest

from odid_screen.exceptions import ConvergenceWarning
from odid_screen.pipeline import run_pipeline
from odid_screen.simulation import simulate_timecourse_counts


@pytest.fixture(scope="session")
def simulated():
    return simulate_timecourse_counts(n_features=200, seed=7)


@pytest.fixture(scope="session")
def counts_table(simulated):
    return simulated[0]


@pytest.fixture(scope="session")
def truth(simulated):
    return simulated[1]


@pytest.fixture(scope="session")
def pipeline_result(counts_table):
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", ConvergenceWarning)
        return run_pipeline(counts_table)


@pytest.fixture(scope="session")
def fit(pipeline_result):
    return pipeline_result.fit
