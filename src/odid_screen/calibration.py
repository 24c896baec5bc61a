"""
Optical-density calibration and ODID concentration estimates.

The calibration table holds one mean OD per timepoint, each the arithmetic
mean of replicate measurements. A feature's concentration at timepoint ``t``
is its shrunken fold change applied to that mean:

    ODID_t = 2 ** shrunkLogFoldChange_t * meanOD(t)

The baseline timepoint is the calibration anchor and is fixed to a constant.

Classes
-------
CalibrationTable
    Read-only timepoint -> mean OD mapping.

Functions
---------
odid_table
    Concentration estimates per feature and timepoint.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Mapping, Sequence, Union

import numpy as np
import pandas as pd

from .constants import BASELINE_OD, DEFAULT_OD_MEASUREMENTS
from .exceptions import MissingCalibrationError


@dataclass(frozen=True)
class CalibrationTable:
    """Mean optical density per timepoint."""

    #: Mean OD indexed by integer timepoint.
    mean_od: pd.Series

    @classmethod
    def from_measurements(
        cls,
        measurements: Union[Mapping[int, Iterable[float]], pd.DataFrame],
        *,
        timepoint_col: str = "timepoint",
        od_col: str = "od",
    ) -> "CalibrationTable":
        """Average replicate OD measurements per timepoint.

        Parameters
        ----------
        measurements : mapping or pd.DataFrame
            Either ``{timepoint: [od, od, ...]}`` or a long table with one
            row per (timepoint, replicate) measurement.
        timepoint_col : str, default "timepoint"
            Timepoint column of a long table.
        od_col : str, default "od"
            OD column of a long table.

        Returns
        -------
        CalibrationTable

        Raises
        ------
        ValueError
            If a timepoint has no measurements or a value is not finite.

        Examples
        --------
        >>> cal = CalibrationTable.from_measurements({0: [0.1995, 0.2, 0.1995]})
        >>> round(cal.mean_od_for(0), 4)
        0.1997
        """
        if isinstance(measurements, pd.DataFrame):
            missing = [c for c in (timepoint_col, od_col) if c not in measurements.columns]
            if missing:
                raise ValueError(f"Calibration table missing columns: {missing}")
            df = measurements[[timepoint_col, od_col]].copy()
            df[od_col] = pd.to_numeric(df[od_col], errors="raise")
            grouped = {int(t): g[od_col].to_numpy(dtype=float) for t, g in df.groupby(timepoint_col)}
        else:
            grouped = {int(t): np.asarray(list(v), dtype=float) for t, v in measurements.items()}

        means = {}
        for t, values in grouped.items():
            if values.size == 0:
                raise ValueError(f"No OD measurements for timepoint {t}")
            if not np.all(np.isfinite(values)):
                raise ValueError(f"Non-finite OD measurement at timepoint {t}")
            means[t] = float(np.mean(values))

        mean_od = pd.Series(means, name="mean_od", dtype=float).sort_index()
        mean_od.index.name = "timepoint"
        return cls(mean_od=mean_od)

    @classmethod
    def default(cls) -> "CalibrationTable":
        """Calibration built from ``constants.DEFAULT_OD_MEASUREMENTS``."""
        return cls.from_measurements(DEFAULT_OD_MEASUREMENTS)

    @property
    def timepoints(self) -> list[int]:
        return [int(t) for t in self.mean_od.index]

    def mean_od_for(self, timepoint: int) -> float:
        if timepoint not in self.mean_od.index:
            raise MissingCalibrationError(timepoint, available=self.timepoints)
        return float(self.mean_od.loc[timepoint])


def odid_table(
    shrunk: pd.DataFrame,
    calibration: CalibrationTable,
    timepoints: Sequence[int],
    *,
    baseline: int = 0,
    baseline_od: float = BASELINE_OD,
    lfc_col: str = "shrunkLogFoldChange_t{t}",
) -> pd.DataFrame:
    """Concentration estimate per feature and timepoint.

    Parameters
    ----------
    shrunk : pd.DataFrame
        Per-feature table holding one shrunken log2 fold change column per
        non-baseline timepoint (named by ``lfc_col``).
    calibration : CalibrationTable
        Mean OD per timepoint.
    timepoints : sequence of int
        Timepoints to report; the baseline may be included.
    baseline : int, default 0
        Reference timepoint, assigned ``baseline_od``.
    baseline_od : float, default 0.2
        Fixed baseline concentration.
    lfc_col : str
        Column name template for the fold changes.

    Returns
    -------
    pd.DataFrame
        Indexed like ``shrunk`` with ``ODID_t{t}`` columns.

    Raises
    ------
    MissingCalibrationError
        If a requested non-baseline timepoint has no calibration entry.
    KeyError
        If a shrunken fold change column is missing.
    """
    out = pd.DataFrame(index=shrunk.index)
    out[f"ODID_t{baseline}"] = float(baseline_od)
    for t in timepoints:
        if t == baseline:
            continue
        mean_od = calibration.mean_od_for(t)
        col = lfc_col.format(t=t)
        if col not in shrunk.columns:
            raise KeyError(f"Missing shrunken fold change column '{col}'")
        out[f"ODID_t{t}"] = np.power(2.0, shrunk[col].to_numpy(dtype=float)) * mean_od
    return out
