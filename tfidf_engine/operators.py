"""Partition-local operators.

Every keyed aggregate runs in two steps: ``partial_aggregate`` on the map
side before the shuffle, ``final_aggregate`` on the reduce side after it.
All of them are commutative and associative, so neither record order nor
partition assignment changes the result.
"""

from typing import Dict, Optional, Sequence, Tuple

import pandas as pd

from .errors import DataflowError
from .weights import apply_tfidf_weight

COUNT = "count"
DISTINCT = "distinct"
SUM = "sum"
AGGREGATES = (COUNT, DISTINCT, SUM)

TRANSFORMS = {
    "tfidf_weight": apply_tfidf_weight,
}


def _tag(frame: pd.DataFrame, tag: Optional[Dict[str, str]]) -> pd.DataFrame:
    return frame.assign(**tag) if tag else frame


def partial_aggregate(
    frame: pd.DataFrame,
    op: str,
    keys: Sequence[str],
    value: Optional[str] = None,
    output: Optional[str] = None,
    tag: Optional[Dict[str, str]] = None,
) -> pd.DataFrame:
    frame = _tag(frame, tag)
    keys = list(keys)
    if op == DISTINCT:
        return frame[keys].drop_duplicates().reset_index(drop=True)
    if op == COUNT:
        partial = frame.groupby(keys, sort=False).size().reset_index(name=output)
    elif op == SUM:
        partial = frame.groupby(keys, sort=False)[value].sum().reset_index(name=output)
    else:
        raise DataflowError(f"unknown aggregate operator: {op}")
    # Grouping only by constant tags is a global count: an empty partition
    # still contributes a zero so the final row exists even for no input.
    if partial.empty and tag and set(keys) <= set(tag):
        partial = pd.DataFrame([{**tag, output: 0}])
    partial[output] = partial[output].astype("int64")
    return partial


def final_aggregate(frame: pd.DataFrame, op: str, keys: Sequence[str], output: Optional[str] = None) -> pd.DataFrame:
    keys = list(keys)
    if op == DISTINCT:
        return frame[keys].drop_duplicates().reset_index(drop=True)
    if op not in (COUNT, SUM):
        raise DataflowError(f"unknown aggregate operator: {op}")
    # Partial counts and partial sums both combine by summing.
    final = frame.groupby(keys, sort=False)[output].sum().reset_index()
    final[output] = final[output].astype("int64")
    return final


def join_frames(
    left: pd.DataFrame,
    right: pd.DataFrame,
    on: Sequence[str],
    left_tag: Optional[Dict[str, str]] = None,
    drop: Sequence[str] = (),
) -> Tuple[pd.DataFrame, int]:
    """Inner join of ``left`` and ``right`` on ``on``.

    Returns the joined rows and the number of left rows that found no
    partner and were dropped.
    """
    left = _tag(left, left_tag)
    merged = left.merge(right, on=list(on), how="left", indicator=True)
    matched = merged["_merge"] == "both"
    mismatches = int((~matched).sum())
    joined = merged[matched].drop(columns=["_merge", *drop]).reset_index(drop=True)
    # Unmatched rows turned right-hand int columns into floats during the merge.
    for column in right.columns:
        if column in joined and pd.api.types.is_integer_dtype(right[column].dtype):
            joined[column] = joined[column].astype("int64")
    return joined, mismatches


def transform(frame: pd.DataFrame, name: str) -> pd.DataFrame:
    try:
        fn = TRANSFORMS[name]
    except KeyError:
        raise DataflowError(f"unknown transform: {name}") from None
    return fn(frame)
