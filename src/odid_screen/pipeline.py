"""
End-to-end ODID screen pipeline.

Stages, each producing a new table keyed by feature:

1. parse sample names, filter sparse features;
2. fit the NB GLM with shrunken dispersions;
3. one-sided contrast tests (secondary and primary timepoints vs baseline);
4. LFC shrinkage for every non-baseline timepoint;
5. ODID concentration estimates from the shrunken fold changes;
6. join, keep features with a defined primary adjusted p-value, deduplicate.

Classes
-------
PipelineConfig
    Run parameters.
PipelineResult
    Intermediate and final tables of a run.

Functions
---------
run_pipeline
    Run all stages on a count table.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

import pandas as pd

from .calibration import CalibrationTable, odid_table
from .constants import AA_SEQ_COL, BASELINE_OD, DISPERSION_OUTLIER_SD, DNA_SEQ_COL
from .diagnostics import per_sample_dispersion, zero_fraction
from .exceptions import InvalidDesignError
from .merge import join_feature_tables, merge_results
from .metadata_setup import SampleParseSpec, build_sample_metadata, timepoint_levels
from .model import ModelFit, fit_model
from .preprocess import filter_features_by_total_counts, split_counts_and_sequences
from .shrinkage import shrink_lfc
from .stats import contrast_results

logger = logging.getLogger(__name__)

CONTRAST_COLS = ("log2FoldChange", "lfcSE", "stat", "pvalue", "padj")


@dataclass(frozen=True)
class PipelineConfig:
    #: Features with total count below this are dropped before fitting.
    min_total_count: int = 2
    #: Timepoint whose contrast filters the final table.
    primary_timepoint: int = 3
    #: Timepoint whose contrast is reported alongside.
    secondary_timepoint: int = 1
    #: Alternative hypothesis for the contrast tests.
    alternative: str = "less"
    #: FDR level used by independent filtering.
    alpha: float = 0.1
    max_iter: int = 100
    tol: float = 1e-6
    outlier_sd: float = DISPERSION_OUTLIER_SD
    baseline_od: float = BASELINE_OD
    n_jobs: int = 1
    #: Timepoints to shrink; None means every non-baseline timepoint.
    shrink_timepoints: Optional[Tuple[int, ...]] = None
    aa_col: str = AA_SEQ_COL
    dna_col: str = DNA_SEQ_COL
    dedupe: bool = True
    sample_spec: SampleParseSpec = field(default_factory=SampleParseSpec)


@dataclass
class PipelineResult:
    """Intermediate and final tables of a pipeline run."""

    fit: ModelFit
    #: Contrast table per tested timepoint (unsuffixed columns).
    contrasts: Dict[int, pd.DataFrame]
    #: Shrunken fold changes and posterior SDs for all shrunk timepoints.
    shrunk: pd.DataFrame
    #: ODID concentration estimates.
    odid: pd.DataFrame
    #: All per-feature statistics before filtering and deduplication.
    stats_table: pd.DataFrame
    #: Final merged result table.
    results: pd.DataFrame


def _suffixed(df: pd.DataFrame, timepoint: int) -> pd.DataFrame:
    return df[list(CONTRAST_COLS)].add_suffix(f"_t{timepoint}")


def run_pipeline(
    counts_table: pd.DataFrame,
    calibration: Optional[CalibrationTable] = None,
    sequence_meta: Optional[pd.DataFrame] = None,
    config: PipelineConfig = PipelineConfig(),
) -> PipelineResult:
    """Run the full ODID screen analysis.

    Parameters
    ----------
    counts_table : pd.DataFrame
        Indexed by feature ID; sample columns named ``<timepoint><batch>``
        plus optional sequence columns.
    calibration : CalibrationTable or None
        Mean OD per timepoint; defaults to the built-in measurements.
    sequence_meta : pd.DataFrame or None
        Sequence columns indexed by feature ID; defaults to the non-numeric
        columns of ``counts_table``.
    config : PipelineConfig
        Run parameters.

    Returns
    -------
    PipelineResult

    Raises
    ------
    InvalidDesignError
        If sample names do not parse, the design is degenerate, or the
        requested contrast timepoints are absent.
    MissingCalibrationError
        If a shrunk timepoint has no calibration entry.
    DispersionTrendError
        If the dispersion trend or LFC prior cannot be fit.

    Examples
    --------
    >>> table = io.load_counts_table("data/counts.csv")
    >>> result = run_pipeline(table)
    >>> result.results.head()
    """
    if calibration is None:
        calibration = CalibrationTable.default()

    counts, seqs = split_counts_and_sequences(counts_table, (config.aa_col, config.dna_col))
    if sequence_meta is None:
        sequence_meta = seqs

    sample_meta = build_sample_metadata(counts.columns, spec=config.sample_spec)
    levels = timepoint_levels(sample_meta)
    baseline, non_baseline = levels[0], levels[1:]
    for name, t in (("primary", config.primary_timepoint), ("secondary", config.secondary_timepoint)):
        if t not in non_baseline:
            raise InvalidDesignError(
                f"{name} timepoint {t} is not a non-baseline timepoint {non_baseline}"
            )
    shrink_tps = list(config.shrink_timepoints or non_baseline)
    for t in shrink_tps:
        # fail before fitting if calibration is incomplete
        calibration.mean_od_for(t)

    counts = filter_features_by_total_counts(counts, min_total=config.min_total_count)
    if counts.empty:
        raise ValueError(f"No features with total count >= {config.min_total_count}")
    logger.info(f"Mean zero fraction per sample: {zero_fraction(counts).mean():.3f}")
    vmr = per_sample_dispersion(counts)["var_over_mean"]
    logger.debug(f"Per-sample variance/mean ratio:\n{vmr.round(1).to_string()}")

    fit = fit_model(
        counts,
        sample_meta,
        max_iter=config.max_iter,
        tol=config.tol,
        outlier_sd=config.outlier_sd,
        n_jobs=config.n_jobs,
    )

    tested = list(dict.fromkeys([config.secondary_timepoint, config.primary_timepoint]))
    contrasts = {
        t: contrast_results(fit, t, alternative=config.alternative, alpha=config.alpha)
        for t in tested
    }

    shrunk = join_feature_tables(
        [shrink_lfc(fit, t, max_iter=config.max_iter, n_jobs=config.n_jobs) for t in shrink_tps]
    )
    odid = odid_table(
        shrunk,
        calibration,
        [baseline] + shrink_tps,
        baseline=baseline,
        baseline_od=config.baseline_od,
    )

    stats_table = join_feature_tables(
        [fit.base_mean.to_frame()]
        + [_suffixed(contrasts[t], t) for t in sorted(tested, reverse=True)]
        + [shrunk, odid, fit.dispersion, fit.converged.to_frame()]
    )

    dedupe = config.dedupe
    if dedupe and config.aa_col not in sequence_meta.columns:
        logger.warning(f"No '{config.aa_col}' column; skipping deduplication")
        dedupe = False
    results = merge_results(
        stats_table,
        sequence_meta,
        primary_padj_col=f"padj_t{config.primary_timepoint}",
        aa_col=config.aa_col,
        dedupe=dedupe,
    )
    return PipelineResult(
        fit=fit,
        contrasts=contrasts,
        shrunk=shrunk,
        odid=odid,
        stats_table=stats_table,
        results=results,
    )
