"""
Exceptions and warnings raised by the ODID screen pipeline.

Design- and calibration-level problems are fatal and raised as exceptions.
Feature-level problems (non-convergence, dispersion outliers, filtered
p-values) are flagged per feature and never abort a run.
"""


class OdidScreenError(Exception):
    """Base class for all pipeline errors."""
    pass


class InvalidDesignError(OdidScreenError, ValueError):
    """Raised when sample names or the design matrix cannot support the model."""
    pass


class MissingCalibrationError(OdidScreenError, KeyError):
    """Raised when a requested timepoint has no calibration entry."""

    def __init__(self, timepoint, available=()):
        self.timepoint = timepoint
        self.available = tuple(available)
        super().__init__(
            f"No calibration OD for timepoint {timepoint!r} "
            f"(available: {list(self.available)})"
        )

    def __str__(self) -> str:
        # KeyError quotes its argument; keep the plain message
        return str(self.args[0])


class DispersionTrendError(OdidScreenError, RuntimeError):
    """Raised when a cross-feature prior (dispersion trend, LFC prior) cannot be fit."""
    pass


class ConvergenceWarning(RuntimeWarning):
    """Issued when one or more features did not converge within the iteration cap."""
    pass
