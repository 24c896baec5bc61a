"""
odid-screen: Differential abundance and ODID estimation for timecourse selection screens.

This package fits negative binomial generalized linear models (GLMs) with
shrunken dispersions to a batch x timepoint count matrix, tests one-sided
depletion of each feature against the baseline timepoint, shrinks the log
fold changes, and converts them to optical-density-calibrated concentration
estimates (ODID).

Modules
-------
io
    Data loading and writing for count tables, calibration and results.
preprocess
    Count/sequence separation, feature filtering, size factors.
metadata_setup
    Sample-name parsing into timepoint and batch.
design
    Design formula and design matrix construction.
model
    Negative binomial GLM fitting with shrunken dispersions.
dispersion
    Raw dispersion optimisation, mean-dispersion trend, dispersion prior.
contrasts
    Wald contrast computations for timepoint effects.
stats
    FDR correction, independent filtering, contrast tables.
shrinkage
    Empirical-Bayes shrinkage of log fold changes.
calibration
    OD calibration table and ODID estimates.
merge
    Result joining, filtering and deduplication.
pipeline
    End-to-end run.
plots
    Visualization functions (volcano, dispersion, ODID heatmap).
diagnostics
    Model diagnostics and dispersion summaries.
simulation
    Synthetic count data for testing.

Example
-------
>>> import odid_screen as osc
>>> table = osc.load_counts_table("data/counts.csv")
>>> result = osc.run_pipeline(table)
>>> osc.write_results(result.results, "results/odid_results.csv")
"""

__version__ = "0.1.0"
__author__ = "Stefan Cordes"
__email__ = "stefan@alumni.Princeton.edu"

# calibration
from .calibration import (
    CalibrationTable,
    odid_table,
)

# contrasts
from .contrasts import (
    one_sided_pvalue,
    timepoint_vs_baseline,
    wald_contrast,
)

# design
from .design import (
    build_design_formula,
    build_design_matrix,
    coef_name_for_timepoint,
)

# diagnostics
from .diagnostics import (
    cox_reid_log_likelihood,
    estimate_alpha_nb2_moments,
    nb_log_likelihood,
    per_sample_dispersion,
    zero_fraction,
)

# dispersion
from .dispersion import (
    DispersionTrend,
    fit_dispersion_trend,
    optimize_dispersion,
)

# exceptions
from .exceptions import (
    ConvergenceWarning,
    DispersionTrendError,
    InvalidDesignError,
    MissingCalibrationError,
    OdidScreenError,
)

# io
from .io import (
    Paths,
    load_calibration,
    load_counts_table,
    load_sequence_metadata,
    write_results,
    write_sample_metadata,
)

# merge
from .merge import (
    join_feature_tables,
    merge_results,
    secondary_key,
)

# metadata_setup
from .metadata_setup import (
    SampleKey,
    SampleParseSpec,
    build_sample_metadata,
    split_sample_id,
    timepoint_levels,
)

# model
from .model import (
    ModelFit,
    fit_model,
    fit_nb_glm,
    fit_nb_glm_bounded,
)

# pipeline
from .pipeline import (
    PipelineConfig,
    PipelineResult,
    run_pipeline,
)

# plots
from .plots import (
    dispersion_plot,
    odid_heatmap,
    volcano_plot,
)

# preprocess
from .preprocess import (
    base_means,
    estimate_size_factors,
    filter_features_by_total_counts,
    normalized_counts,
    split_counts_and_sequences,
)

# shrinkage
from .shrinkage import (
    estimate_lfc_prior_variance,
    shrink_lfc,
)

# simulation
from .simulation import (
    simulate_timecourse_counts,
)

# stats
from .stats import (
    bh_fdr,
    contrast_results,
    independent_filtering,
)

__all__ = [
    # calibration
    "CalibrationTable",
    "odid_table",
    # contrasts
    "one_sided_pvalue",
    "timepoint_vs_baseline",
    "wald_contrast",
    # design
    "build_design_formula",
    "build_design_matrix",
    "coef_name_for_timepoint",
    # diagnostics
    "cox_reid_log_likelihood",
    "estimate_alpha_nb2_moments",
    "nb_log_likelihood",
    "per_sample_dispersion",
    "zero_fraction",
    # dispersion
    "DispersionTrend",
    "fit_dispersion_trend",
    "optimize_dispersion",
    # exceptions
    "ConvergenceWarning",
    "DispersionTrendError",
    "InvalidDesignError",
    "MissingCalibrationError",
    "OdidScreenError",
    # io
    "Paths",
    "load_calibration",
    "load_counts_table",
    "load_sequence_metadata",
    "write_results",
    "write_sample_metadata",
    # merge
    "join_feature_tables",
    "merge_results",
    "secondary_key",
    # metadata_setup
    "SampleKey",
    "SampleParseSpec",
    "build_sample_metadata",
    "split_sample_id",
    "timepoint_levels",
    # model
    "ModelFit",
    "fit_model",
    "fit_nb_glm",
    "fit_nb_glm_bounded",
    # pipeline
    "PipelineConfig",
    "PipelineResult",
    "run_pipeline",
    # plots
    "dispersion_plot",
    "odid_heatmap",
    "volcano_plot",
    # preprocess
    "base_means",
    "estimate_size_factors",
    "filter_features_by_total_counts",
    "normalized_counts",
    "split_counts_and_sequences",
    # shrinkage
    "estimate_lfc_prior_variance",
    "shrink_lfc",
    # simulation
    "simulate_timecourse_counts",
    # stats
    "bh_fdr",
    "contrast_results",
    "independent_filtering",
]
