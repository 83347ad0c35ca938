from typing import List, Sequence

import numpy as np
import pandas as pd


def partition_ids(frame: pd.DataFrame, columns: Sequence[str], num_partitions: int) -> np.ndarray:
    """Partition id for every row, from a hash of ``columns``.

    ``hash_pandas_object`` uses a fixed hash key, so a given key maps to the
    same partition in every process and every run (the builtin ``hash`` of a
    str is salted per process and cannot be used across workers).
    """
    if frame.empty:
        return np.empty(0, dtype=np.int64)
    # object dtype so that str and arrow-backed string columns hash alike
    keys = frame[list(columns)].astype(object)
    hashes = pd.util.hash_pandas_object(keys, index=False).to_numpy()
    return (hashes % np.uint64(num_partitions)).astype(np.int64)


def split_by_partition(frame: pd.DataFrame, columns: Sequence[str], num_partitions: int) -> List[pd.DataFrame]:
    """Split ``frame`` into ``num_partitions`` frames keyed on ``columns``.

    Every partition is returned, empty ones included, so readers always find
    one file per (task, partition).
    """
    rids = partition_ids(frame, columns, num_partitions)
    return [frame[rids == rid].reset_index(drop=True) for rid in range(num_partitions)]
