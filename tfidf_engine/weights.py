"""TF-IDF weight: ``tf_count * ln(n_docs / (1 + df_count))``.

The ``+1`` smoothing keeps the ratio finite and makes the weight negative
for tokens present in (nearly) every document; that is a property of this
variant of the formula and is kept as is.
"""

import numpy as np
import pandas as pd

from .errors import EmptyCorpusError, MalformedRecordError
from .records import DF_COUNT, DOCUMENT_ID, N_DOCS, TF_COUNT, TFIDF_COLUMNS, TOKEN, WEIGHT


def weights(tf_count, df_count, n_docs) -> np.ndarray:
    """Weights for equal-length count arrays (scalars are accepted too)."""
    tf = np.asarray(tf_count, dtype=np.int64)
    df = np.asarray(df_count, dtype=np.int64)
    n = np.asarray(n_docs, dtype=np.int64)
    if (n <= 0).any():
        raise EmptyCorpusError("weight is undefined for an empty corpus")
    if (tf < 1).any() or (df < 1).any():
        raise MalformedRecordError("tf_count and df_count must be at least 1")
    return tf * np.log(n / (1.0 + df))


def tfidf_weight(tf_count: int, df_count: int, n_docs: int) -> float:
    return float(weights(tf_count, df_count, n_docs))


def apply_tfidf_weight(frame: pd.DataFrame) -> pd.DataFrame:
    """Weigh a partition of joined records."""
    if frame.empty:
        return pd.DataFrame(columns=TFIDF_COLUMNS)
    return pd.DataFrame({
        TOKEN: frame[TOKEN].to_numpy(),
        DOCUMENT_ID: frame[DOCUMENT_ID].to_numpy(),
        WEIGHT: weights(frame[TF_COUNT].to_numpy(), frame[DF_COUNT].to_numpy(), frame[N_DOCS].to_numpy()),
    })
