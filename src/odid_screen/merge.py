"""
Result merge, filtering, and deduplication.

Each pipeline stage produces its own table keyed by feature; this module
joins them, attaches sequence metadata, keeps features with a defined primary
adjusted p-value, and collapses features that translate to the same peptide.
"""
from __future__ import annotations

import logging
from typing import Iterable, Optional

import pandas as pd

logger = logging.getLogger(__name__)


def secondary_key(aa_seq) -> Optional[str]:
    """Deduplication key for an amino-acid sequence.

    Whitespace is removed, letters upper-cased and trailing stop symbols
    (``*``) dropped, so synonymous DNA variants of one peptide share a key.

    Examples
    --------
    >>> secondary_key(" mkvl* ")
    'MKVL'
    >>> secondary_key(None) is None
    True
    """
    if aa_seq is None or pd.isna(aa_seq):
        return None
    key = "".join(str(aa_seq).split()).upper().rstrip("*")
    return key or None


def join_feature_tables(tables: Iterable[pd.DataFrame]) -> pd.DataFrame:
    """Left-join per-feature tables on their index, in order.

    The first table defines the feature set and row order. Column names must
    not collide.
    """
    tables = list(tables)
    if not tables:
        raise ValueError("No tables to join")
    out = tables[0].copy()
    for t in tables[1:]:
        clash = out.columns.intersection(t.columns)
        if len(clash):
            raise ValueError(f"Duplicate columns across tables: {list(clash)}")
        out = out.join(t, how="left")
    return out


def merge_results(
    stats_table: pd.DataFrame,
    sequence_meta: pd.DataFrame,
    *,
    primary_padj_col: str = "padj_t3",
    aa_col: str = "aa_seq",
    dedupe: bool = True,
) -> pd.DataFrame:
    """Build the final result table.

    Parameters
    ----------
    stats_table : pd.DataFrame
        Joined per-feature statistics, indexed by feature.
    sequence_meta : pd.DataFrame
        Sequence columns indexed by feature (may cover more features).
    primary_padj_col : str, default "padj_t3"
        Adjusted p-value column of the primary contrast; rows where it is
        NaN are dropped.
    aa_col : str, default "aa_seq"
        Amino-acid sequence column used for deduplication.
    dedupe : bool, default True
        Keep only the first feature per amino-acid sequence.

    Returns
    -------
    pd.DataFrame
        Filtered, deduplicated table in input row order.

    Examples
    --------
    >>> res = merge_results(stats_table, seqs, primary_padj_col="padj_t3")
    >>> res["aa_seq"].is_unique
    True
    """
    if primary_padj_col not in stats_table.columns:
        raise KeyError(f"Primary adjusted p-value column '{primary_padj_col}' not found")

    seq_cols = [c for c in sequence_meta.columns if c not in stats_table.columns]
    merged = stats_table.join(sequence_meta[seq_cols], how="left")

    n_in = len(merged)
    merged = merged[merged[primary_padj_col].notna()]
    n_defined = len(merged)

    if dedupe:
        if aa_col not in merged.columns:
            raise KeyError(f"Sequence column '{aa_col}' not found for deduplication")
        keys = merged[aa_col].map(secondary_key)
        # features without a sequence are never collapsed together
        own = pd.Series("__missing__" + merged.index.astype(str), index=merged.index)
        keys = keys.where(keys.notna(), own)
        merged = merged[~keys.duplicated(keep="first")]

    logger.info(
        f"Merged results: {n_in} features, {n_defined} with defined {primary_padj_col}, "
        f"{len(merged)} after deduplication"
    )
    return merged
