"""
Sample metadata parsing.

Sample columns of the count matrix encode the experimental factors in their
names: a timepoint number followed by a batch tag (``0A``, ``1B``, ``3_C``).
This module turns those names into a typed, validated sample table.

Functions
---------
split_sample_id
    Parse a single sample name into a :class:`SampleKey`.
build_sample_metadata
    Parse all sample names and build the sample metadata table.
timepoint_levels
    Ordered timepoint levels of a sample metadata table.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, NamedTuple

import pandas as pd

from .constants import SAMPLE_ID_PATTERN
from .exceptions import InvalidDesignError


@dataclass(frozen=True)
class SampleParseSpec:
    # regex with two groups: timepoint digits, batch tag
    pattern: str = SAMPLE_ID_PATTERN
    timepoint_col: str = "timepoint"
    batch_col: str = "batch"
    min_timepoints: int = 2


class SampleKey(NamedTuple):
    timepoint: int
    batch: str


def split_sample_id(
    sample_id: str,
    spec: SampleParseSpec = SampleParseSpec(),
) -> SampleKey:
    """Parse a sample name like ``3B`` into ``SampleKey(timepoint=3, batch="B")``.

    Parameters
    ----------
    sample_id : str
        Column name from the count matrix.
    spec : SampleParseSpec
        Parsing specification.

    Returns
    -------
    SampleKey
        Integer timepoint and batch tag.

    Raises
    ------
    InvalidDesignError
        If the name does not match ``spec.pattern``.

    Examples
    --------
    >>> split_sample_id("0A")
    SampleKey(timepoint=0, batch='A')
    >>> split_sample_id("12_rep2")
    SampleKey(timepoint=12, batch='rep2')
    """
    sid = str(sample_id)
    m = re.match(spec.pattern, sid)
    if m is None:
        raise InvalidDesignError(
            f"Sample ID '{sid}' does not encode a timepoint and batch "
            f"(expected pattern {spec.pattern!r})"
        )
    return SampleKey(timepoint=int(m.group(1)), batch=m.group(2))


def build_sample_metadata(
    sample_ids: Iterable[str],
    spec: SampleParseSpec = SampleParseSpec(),
) -> pd.DataFrame:
    """Build the sample metadata table from count-matrix column names.

    The ``timepoint`` column is an ordered categorical whose first level is
    the smallest observed timepoint; that level is the reference for every
    contrast. ``batch`` is an unordered categorical.

    Parameters
    ----------
    sample_ids : iterable of str
        Sample column names.
    spec : SampleParseSpec
        Parsing specification.

    Returns
    -------
    pd.DataFrame
        Indexed by ``sample_id`` with columns ``timepoint`` and ``batch``.

    Raises
    ------
    InvalidDesignError
        If a name fails to parse, names are duplicated, or fewer than
        ``spec.min_timepoints`` distinct timepoints are present.
    """
    sample_ids = [str(s) for s in sample_ids]
    if not sample_ids:
        raise InvalidDesignError("No sample columns found")

    dupes = sorted({s for s in sample_ids if sample_ids.count(s) > 1})
    if dupes:
        raise InvalidDesignError(f"Duplicated sample IDs: {dupes}")

    keys = [split_sample_id(s, spec=spec) for s in sample_ids]

    timepoints = sorted({k.timepoint for k in keys})
    if len(timepoints) < spec.min_timepoints:
        raise InvalidDesignError(
            f"Need at least {spec.min_timepoints} distinct timepoints, "
            f"found {timepoints}"
        )
    batches = sorted({k.batch for k in keys})

    smeta = pd.DataFrame(
        {
            spec.timepoint_col: pd.Categorical(
                [k.timepoint for k in keys], categories=timepoints, ordered=True
            ),
            spec.batch_col: pd.Categorical([k.batch for k in keys], categories=batches),
        },
        index=pd.Index(sample_ids, name="sample_id"),
    )
    return smeta


def timepoint_levels(sample_meta: pd.DataFrame, timepoint_col: str = "timepoint") -> list[int]:
    """Return the ordered timepoint levels; the first is the baseline."""
    return [int(t) for t in sample_meta[timepoint_col].cat.categories]
