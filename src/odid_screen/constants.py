"""
Constants for the ODID screen pipeline.

Contains the optical-density calibration measurements, the baseline
concentration anchor, and numeric bounds used during model fitting.
"""

# Optical density calibration measurements
# Maps timepoint to replicate OD600 readings (one per replicate batch)
DEFAULT_OD_MEASUREMENTS = {
    0: [0.1995, 0.2, 0.1995],
    1: [0.705, 0.704, 0.697],
    2: [2.25, 2.19, 2.135],
    3: [4.085, 4.305, 3.83],
}

# Concentration assigned to every feature at the reference timepoint
BASELINE_OD = 0.2

# Sample names: timepoint number followed by a batch tag (e.g. "0A", "3_B")
SAMPLE_ID_PATTERN = r"^\s*(\d+)\s*[_\-.]?\s*([A-Za-z][A-Za-z0-9]*)\s*$"

# Sequence metadata columns carried alongside the counts
AA_SEQ_COL = "aa_seq"
DNA_SEQ_COL = "dna_seq"
FEATURE_ID_COL = "feature_id"

# Dispersion bounds (NB2 alpha)
MIN_DISPERSION = 1e-8
MIN_LOG_DISPERSION_PRIOR_VAR = 0.25
DISPERSION_OUTLIER_SD = 2.0

# Trend fit: features with raw/fitted ratio outside this window are dropped
TREND_RATIO_BOUNDS = (1e-4, 15.0)

# Ridge applied to non-contrast coefficients during MAP shrinkage
WEAK_PRIOR_PRECISION = 1e-6

# Bound on non-intercept coefficients (log2 scale) when a zero-count group
# drives the unpenalised fit off to -inf
MAX_LOG2_FOLD_CHANGE = 10.0
