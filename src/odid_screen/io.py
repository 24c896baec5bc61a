from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

import pandas as pd

from .calibration import CalibrationTable
from .constants import AA_SEQ_COL, DNA_SEQ_COL, FEATURE_ID_COL

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Paths:
    data_path: Path
    results_path: Path


def _norm_col(c: object) -> str:
    # strip whitespace; preserve internal chars
    return str(c).strip()


def _norm_cols(df: pd.DataFrame) -> pd.DataFrame:
    df = df.copy()
    df.columns = [_norm_col(c) for c in df.columns]
    return df


def _read_table(path: Path, sheet_name: str | int = 0) -> pd.DataFrame:
    suffix = path.suffix.lower()
    if suffix in (".xlsx", ".xls"):
        return pd.read_excel(path, sheet_name=sheet_name)
    if suffix in (".tsv", ".txt"):
        return pd.read_csv(path, sep="\t")
    if suffix == ".csv":
        return pd.read_csv(path)
    raise ValueError(f"Unsupported table format '{path.suffix}' for {path}")


def load_counts_table(
    counts_path: str | Path,
    sheet_name: str | int = 0,
    feature_id_col: Optional[str] = FEATURE_ID_COL,
    skip_first_col_if_unknown: bool = True,
) -> pd.DataFrame:
    """
    Reads a count table (CSV, TSV or XLSX).

    Expected:
      - one column holding feature IDs (default 'feature_id', else the first column).
      - sample columns named <timepoint><batch> holding raw counts.
      - optional sequence columns (aa_seq, dna_seq); kept as strings.
    """
    counts_path = Path(counts_path)
    df = _norm_cols(_read_table(counts_path, sheet_name=sheet_name))

    if feature_id_col is not None and feature_id_col in df.columns:
        id_col = feature_id_col
    elif skip_first_col_if_unknown:
        id_col = df.columns[0]
    else:
        raise ValueError(f"Could not determine feature ID column in {counts_path}.")

    df[id_col] = df[id_col].astype(str)
    df = df.set_index(id_col)
    df.index.name = FEATURE_ID_COL
    if not df.index.is_unique:
        dup = df.index[df.index.duplicated()].unique().tolist()[:5]
        raise ValueError(f"{counts_path} has duplicated feature IDs, e.g. {dup}")

    for c in (AA_SEQ_COL, DNA_SEQ_COL):
        if c in df.columns:
            df[c] = df[c].astype("string")

    logger.info(f"Loaded {df.shape[0]} features x {df.shape[1]} columns from {counts_path}")
    return df


def load_calibration(
    calibration_path: str | Path,
    sheet_name: str | int = 0,
) -> CalibrationTable:
    """
    Reads OD calibration measurements.

    Expected columns: timepoint, replicate, od (one row per measurement).
    """
    calibration_path = Path(calibration_path)
    df = _norm_cols(_read_table(calibration_path, sheet_name=sheet_name))
    df.columns = [c.lower() for c in df.columns]

    required = ["timepoint", "od"]
    missing = [c for c in required if c not in df.columns]
    if missing:
        raise ValueError(f"{calibration_path} missing required columns: {missing}")

    df["timepoint"] = pd.to_numeric(df["timepoint"], errors="raise").astype(int)
    return CalibrationTable.from_measurements(df, timepoint_col="timepoint", od_col="od")


def load_sequence_metadata(
    sequence_path: str | Path,
    sheet_name: str | int = 0,
    feature_id_col: str = FEATURE_ID_COL,
    sequence_cols: Sequence[str] = (AA_SEQ_COL, DNA_SEQ_COL),
) -> pd.DataFrame:
    """
    Reads a feature -> sequence table.

    Expected columns: feature_id (or first column) and at least one of the
    sequence columns.
    """
    sequence_path = Path(sequence_path)
    df = _norm_cols(_read_table(sequence_path, sheet_name=sheet_name))

    id_col = feature_id_col if feature_id_col in df.columns else df.columns[0]
    df[id_col] = df[id_col].astype(str)
    df = df.set_index(id_col)
    df.index.name = FEATURE_ID_COL

    present = [c for c in sequence_cols if c in df.columns]
    if not present:
        raise ValueError(f"{sequence_path} has none of the sequence columns {list(sequence_cols)}")
    return df[present].astype("string")


def write_results(
    results: pd.DataFrame,
    out_path: str | Path,
    fmt: Optional[str] = None,
) -> Path:
    """Write the result table as CSV or Excel (inferred from the suffix if ``fmt`` is None)."""
    out_path = Path(out_path)
    if fmt is None:
        fmt = "excel" if out_path.suffix.lower() in (".xlsx", ".xls") else "csv"
    out_path.parent.mkdir(parents=True, exist_ok=True)

    if fmt == "excel":
        results.to_excel(out_path, index=True, index_label=FEATURE_ID_COL)
    elif fmt == "csv":
        results.to_csv(out_path, index=True, index_label=FEATURE_ID_COL)
    else:
        raise ValueError(f"Unknown format '{fmt}'. Use 'csv' or 'excel'.")
    logger.info(f"Wrote {len(results)} rows to {out_path}")
    return out_path


def write_sample_metadata(sample_meta: pd.DataFrame, out_csv: str | Path) -> None:
    out_csv = Path(out_csv)
    out_csv.parent.mkdir(parents=True, exist_ok=True)
    df = sample_meta.copy()
    for c in df.columns:
        if isinstance(df[c].dtype, pd.CategoricalDtype):
            df[c] = df[c].astype(object)
    df.to_csv(out_csv, index=True, index_label="sample_id")
