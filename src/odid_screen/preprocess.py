"""
Data preprocessing utilities.

This module provides functions for separating sequence columns from counts,
filtering sparse features, and computing sequencing-depth size factors.

Functions
---------
split_counts_and_sequences
    Separate the integer count matrix from non-numeric sequence columns.
filter_features_by_total_counts
    Drop features too sparse to model.
estimate_size_factors
    Median-of-ratios size factors per sample.
normalized_counts
    Counts divided by sample size factors.
base_means
    Mean normalized count per feature.
"""
from __future__ import annotations

import logging
from typing import Sequence, Tuple

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)


def split_counts_and_sequences(
    df: pd.DataFrame,
    sequence_cols: Sequence[str] = ("aa_seq", "dna_seq"),
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """Separate count columns from sequence columns.

    Any column listed in ``sequence_cols`` and any other non-numeric column
    is moved to the sequence table; the rest is coerced to integer counts.

    Parameters
    ----------
    df : pd.DataFrame
        Table indexed by feature ID.
    sequence_cols : sequence of str
        Columns known to hold sequence strings.

    Returns
    -------
    counts : pd.DataFrame
        Integer count matrix (features x samples).
    sequences : pd.DataFrame
        Non-numeric columns, same index as ``counts``.

    Raises
    ------
    ValueError
        If a count column holds negative values.

    Examples
    --------
    >>> df = pd.DataFrame(
    ...     {"0A": [3, 0], "1A": [1, 2], "aa_seq": ["MK", "MR"]},
    ...     index=["f1", "f2"],
    ... )
    >>> counts, seqs = split_counts_and_sequences(df)
    >>> list(counts.columns), list(seqs.columns)
    (['0A', '1A'], ['aa_seq'])
    """
    seq_cols = [c for c in df.columns if c in set(sequence_cols)]
    seq_cols += [
        c for c in df.columns
        if c not in seq_cols and not pd.api.types.is_numeric_dtype(df[c])
    ]
    count_cols = [c for c in df.columns if c not in seq_cols]

    counts = df[count_cols].fillna(0)
    if (counts < 0).any().any():
        raise ValueError("Count matrix contains negative values")
    counts = counts.round().astype(int)
    sequences = df[seq_cols].copy()
    return counts, sequences


def filter_features_by_total_counts(
    counts: pd.DataFrame,
    min_total: int = 2,
) -> pd.DataFrame:
    """Filter features by minimum total counts across all samples.

    Features whose summed count is below ``min_total`` are removed; with the
    default, a feature with total count 1 is dropped and one with total
    count 2 is kept.

    Parameters
    ----------
    counts : pd.DataFrame
        Count matrix with features as rows.
    min_total : int, default 2
        Minimum total count to keep a feature.

    Returns
    -------
    pd.DataFrame
        Filtered count matrix.

    Examples
    --------
    >>> counts = pd.DataFrame({"0A": [1, 1], "1A": [0, 1]}, index=["a", "b"])
    >>> list(filter_features_by_total_counts(counts).index)
    ['b']
    """
    totals = counts.sum(axis=1)
    keep = totals[totals >= min_total].index
    logger.info(
        f"Kept {len(keep)} of {len(counts)} features with total count >= {min_total}"
    )
    return counts.loc[keep]


def estimate_size_factors(counts: pd.DataFrame) -> pd.Series:
    """Median-of-ratios size factors.

    For each sample the size factor is the median, over features with a
    positive count in every sample, of the ratio between the sample count
    and the feature's geometric mean. When no feature is positive in every
    sample the geometric mean is taken over positive counts only and
    zero counts are skipped.

    Parameters
    ----------
    counts : pd.DataFrame
        Count matrix with features as rows and samples as columns.

    Returns
    -------
    pd.Series
        Size factor per sample, normalized to geometric mean 1.
    """
    y = counts.to_numpy(dtype=float)
    with np.errstate(divide="ignore"):
        log_y = np.log(y)

    all_pos = np.all(y > 0, axis=1)
    if all_pos.any():
        log_geo = log_y[all_pos].mean(axis=1)
        ratios = log_y[all_pos] - log_geo[:, None]
        log_sf = np.median(ratios, axis=0)
    else:
        logger.warning(
            "No feature is non-zero in every sample; using positive-count geometric means"
        )
        pos = y > 0
        n_pos = pos.sum(axis=1)
        ok = n_pos > 0
        log_geo = np.where(pos, log_y, 0.0)[ok].sum(axis=1) / n_pos[ok]
        log_sf = np.empty(y.shape[1])
        for j in range(y.shape[1]):
            col_ok = pos[ok, j]
            if not col_ok.any():
                raise ValueError(f"Sample {counts.columns[j]!r} has no counts")
            log_sf[j] = np.median(log_y[ok, j][col_ok] - log_geo[col_ok])

    log_sf -= log_sf.mean()
    return pd.Series(np.exp(log_sf), index=counts.columns, name="size_factor")


def normalized_counts(counts: pd.DataFrame, size_factors: pd.Series) -> pd.DataFrame:
    """Divide each sample's counts by its size factor."""
    return counts.div(size_factors.reindex(counts.columns), axis=1)


def base_means(counts: pd.DataFrame, size_factors: pd.Series) -> pd.Series:
    """Mean normalized count per feature."""
    return normalized_counts(counts, size_factors).mean(axis=1).rename("baseMean")
