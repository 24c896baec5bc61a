"""
Synthetic count data for a batch x timepoint selection screen.

Counts are drawn from the NB2 model the pipeline fits: per-feature base
means, a mean-dependent dispersion trend, batch effects, sample size factors,
and log2 fold changes that grow linearly over the timepoints for a chosen set
of depleted and enriched features.

Functions
---------
simulate_timecourse_counts
    Simulate a count table with sequence columns and its ground truth.
"""
from __future__ import annotations

from typing import Sequence, Tuple

import numpy as np
import pandas as pd

from .constants import AA_SEQ_COL, DNA_SEQ_COL, FEATURE_ID_COL

AMINO_ACIDS = "ACDEFGHIKLMNPQRSTVWY"
NUCLEOTIDES = "ACGT"


def simulate_timecourse_counts(
    n_features: int = 300,
    timepoints: Sequence[int] = (0, 1, 2, 3),
    batches: Sequence[str] = ("A", "B", "C"),
    n_depleted: int = 20,
    n_enriched: int = 10,
    depleted_lfc: float = -3.0,
    enriched_lfc: float = 1.5,
    mean_count: float = 300.0,
    mean_count_sd: float = 1.0,
    asympt_disp: float = 0.05,
    extra_pois: float = 1.0,
    batch_effect_sd: float = 0.1,
    size_factor_sd: float = 0.2,
    n_duplicate_aa: int = 5,
    aa_length: int = 10,
    seed: int = 42,
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """Generate a synthetic timecourse count table.

    Parameters
    ----------
    n_features : int
        Number of features.
    timepoints : sequence of int
        Timepoints; the first is the baseline.
    batches : sequence of str
        Batch tags; one sample per (timepoint, batch).
    n_depleted : int
        Features with negative fold change (the first ``n_depleted`` rows).
    n_enriched : int
        Features with positive fold change (the next ``n_enriched`` rows).
    depleted_lfc : float
        True log2 fold change of depleted features at the last timepoint.
    enriched_lfc : float
        True log2 fold change of enriched features at the last timepoint.
    mean_count : float
        Median baseline mean count.
    mean_count_sd : float
        SD of log baseline mean counts.
    asympt_disp : float
        Asymptotic dispersion of the trend.
    extra_pois : float
        Extra-Poisson coefficient of the trend (``asympt + extra / mean``).
    batch_effect_sd : float
        SD of log batch effects.
    size_factor_sd : float
        SD of log size factors.
    n_duplicate_aa : int
        Null features (the last rows) whose amino-acid sequence copies
        another null feature's, with a different DNA sequence.
    aa_length : int
        Peptide length.
    seed : int
        Random seed.

    Returns
    -------
    counts_table : pd.DataFrame
        Indexed by ``feature_id``; sample columns ``<timepoint><batch>`` and
        ``aa_seq`` / ``dna_seq`` columns.
    truth : pd.DataFrame
        Indexed by ``feature_id``: ``base_mean``, ``dispersion``,
        ``direction``, ``duplicate_of`` and ``lfc_t{t}`` (log2) per timepoint.
    """
    rng = np.random.default_rng(seed)
    timepoints = list(timepoints)
    batches = list(batches)
    if n_depleted + n_enriched + 2 * n_duplicate_aa > n_features:
        raise ValueError("Too few features for the requested effect and duplicate counts")

    feature_ids = [f"F{i:05d}" for i in range(n_features)]
    base_mean = np.exp(np.log(mean_count) + rng.normal(0, mean_count_sd, size=n_features))
    dispersion = asympt_disp + extra_pois / base_mean

    direction = np.array(["null"] * n_features, dtype=object)
    effect = np.zeros(n_features)
    direction[:n_depleted] = "depleted"
    effect[:n_depleted] = depleted_lfc
    direction[n_depleted:n_depleted + n_enriched] = "enriched"
    effect[n_depleted:n_depleted + n_enriched] = enriched_lfc

    # effects ramp linearly from 0 at baseline to full at the last timepoint
    ramp = np.linspace(0.0, 1.0, len(timepoints))
    lfc = effect[:, None] * ramp[None, :]

    batch_effect = rng.normal(0, batch_effect_sd, size=len(batches))
    sample_ids = []
    columns = []
    for ti, t in enumerate(timepoints):
        for bi, b in enumerate(batches):
            sf = np.exp(rng.normal(0, size_factor_sd))
            mu = base_mean * np.exp(lfc[:, ti] * np.log(2.0) + batch_effect[bi]) * sf
            size = 1.0 / dispersion
            columns.append(rng.negative_binomial(size, size / (size + mu)))
            sample_ids.append(f"{t}{b}")

    counts = pd.DataFrame(
        np.column_stack(columns),
        index=pd.Index(feature_ids, name=FEATURE_ID_COL),
        columns=sample_ids,
    )

    aa = ["".join(rng.choice(list(AMINO_ACIDS), size=aa_length)) for _ in range(n_features)]
    dna = ["".join(rng.choice(list(NUCLEOTIDES), size=3 * aa_length)) for _ in range(n_features)]
    duplicate_of = [None] * n_features
    if n_duplicate_aa:
        first_null = n_depleted + n_enriched
        for j in range(n_duplicate_aa):
            src = first_null + j
            dst = n_features - n_duplicate_aa + j
            aa[dst] = aa[src]
            duplicate_of[dst] = feature_ids[src]

    counts[AA_SEQ_COL] = pd.array(aa, dtype="string")
    counts[DNA_SEQ_COL] = pd.array(dna, dtype="string")

    truth = pd.DataFrame(
        {
            "base_mean": base_mean,
            "dispersion": dispersion,
            "direction": direction,
            "duplicate_of": duplicate_of,
        },
        index=counts.index,
    )
    for ti, t in enumerate(timepoints):
        truth[f"lfc_t{t}"] = lfc[:, ti]
    return counts, truth
