"""
Design matrix construction.

The experimental design has two categorical factors, ``batch`` and
``timepoint``. The timepoint factor is last and treatment-coded against the
baseline (earliest) timepoint, so its coefficients are the log fold changes
that contrasts are drawn from.

Functions
---------
build_design_formula
    Construct the patsy formula for the batch + timepoint design.
build_design_matrix
    Evaluate the formula against sample metadata.
coef_name_for_timepoint
    Design column holding the timepoint-vs-baseline coefficient.
"""
from __future__ import annotations

import numpy as np
import pandas as pd
import patsy

from .exceptions import InvalidDesignError
from .metadata_setup import timepoint_levels


def build_design_formula(baseline: int, factors: tuple[str, ...] = ("batch", "timepoint")) -> str:
    """Construct a patsy formula for the batch + timepoint design.

    Parameters
    ----------
    baseline : int
        Reference timepoint level.
    factors : tuple of str, default ("batch", "timepoint")
        Factor columns in design order; the last one is the contrast factor.

    Returns
    -------
    str
        Patsy formula string.

    Examples
    --------
    >>> build_design_formula(0)
    '~ C(batch) + C(timepoint, Treatment(reference=0))'
    """
    *nuisance, contrast_factor = factors
    terms = [f"C({f})" for f in nuisance]
    terms.append(f"C({contrast_factor}, Treatment(reference={baseline}))")
    return "~ " + " + ".join(terms)


def coef_name_for_timepoint(timepoint: int, baseline: int, factor: str = "timepoint") -> str:
    # patsy names treatment-coded levels "C(f, Treatment(reference=b))[T.<level>]"
    return f"C({factor}, Treatment(reference={baseline}))[T.{timepoint}]"


def build_design_matrix(sample_meta: pd.DataFrame) -> pd.DataFrame:
    """Build the model matrix for the batch + timepoint design.

    Parameters
    ----------
    sample_meta : pd.DataFrame
        Output of :func:`~odid_screen.metadata_setup.build_sample_metadata`.

    Returns
    -------
    pd.DataFrame
        Design matrix indexed by sample, with an intercept, batch columns and
        one column per non-baseline timepoint.

    Raises
    ------
    InvalidDesignError
        If the design matrix is rank deficient (e.g. batch confounded with
        timepoint) or leaves no residual degrees of freedom.
    """
    baseline = timepoint_levels(sample_meta)[0]
    data = pd.DataFrame(
        {
            # integer levels keep patsy column names as "T.<n>"
            "timepoint": np.asarray(sample_meta["timepoint"], dtype=int),
            "batch": np.asarray(sample_meta["batch"], dtype=str),
        },
        index=sample_meta.index,
    )
    formula = build_design_formula(baseline)
    X = patsy.dmatrix(formula, data=data, return_type="dataframe")
    X.index = sample_meta.index

    rank = np.linalg.matrix_rank(X.to_numpy())
    if rank < X.shape[1]:
        raise InvalidDesignError(
            f"Design matrix is rank deficient (rank {rank} < {X.shape[1]} columns); "
            "batch may be confounded with timepoint"
        )
    if X.shape[0] <= X.shape[1]:
        raise InvalidDesignError(
            f"{X.shape[0]} samples leave no residual degrees of freedom "
            f"for {X.shape[1]} coefficients"
        )
    return X
