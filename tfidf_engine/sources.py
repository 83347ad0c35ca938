"""Token stream input and the document tokenizer that produces it.

A token stream file is either tab-separated ``document_id<TAB>token`` lines
or a parquet file with ``document_id`` and ``token`` columns.
"""

import csv
import io
import logging
from typing import Iterable, List, Optional, Set, Tuple

import pandas as pd
import pyarrow.parquet as pq

from . import storage
from .records import DOCUMENT_ID, TOKEN, TOKEN_COLUMNS

LOG = logging.getLogger("sources")

SPLIT_PATTERN = r"[ \[\]\(\),.]"


def _valid_rows(frame: pd.DataFrame) -> pd.Series:
    mask = frame[DOCUMENT_ID].notna() & frame[TOKEN].notna()
    return mask & (frame[DOCUMENT_ID].astype(str).str.strip() != "") & (frame[TOKEN].astype(str).str.strip() != "")


def parse_token_lines(lines: Iterable[str]) -> Tuple[pd.DataFrame, int]:
    """Parse token lines; returns the valid occurrences and the number dropped.

    A line is malformed when it does not have exactly two fields or when
    either field is empty. Blank lines are not records and are skipped.
    """
    rows = []
    dropped = 0
    for line in lines:
        if not line.strip():
            continue
        fields = line.rstrip("\r\n").split("\t")
        if len(fields) != 2 or not fields[0].strip() or not fields[1].strip():
            dropped += 1
            continue
        rows.append((fields[0].strip(), fields[1].strip()))
    return pd.DataFrame(rows, columns=TOKEN_COLUMNS), dropped


def _decode_lines(data: bytes) -> Tuple[List[str], int]:
    """Decode UTF-8 line by line; a line that does not decode is a malformed record."""
    lines = []
    undecodable = 0
    for raw in data.split(b"\n"):
        try:
            lines.append(raw.decode("utf-8"))
        except UnicodeDecodeError:
            undecodable += 1
    return lines, undecodable


def read_token_stream(uri: str) -> Tuple[pd.DataFrame, int]:
    filesystem, path = storage.resolve(uri)
    if path.endswith(".parquet"):
        frame = pq.read_table(path, filesystem=filesystem).to_pandas()
        missing = set(TOKEN_COLUMNS) - set(frame.columns)
        if missing:
            raise ValueError(f"{uri} is missing columns {sorted(missing)}")
        frame = frame[TOKEN_COLUMNS]
        valid = _valid_rows(frame)
        dropped = int((~valid).sum())
        frame = frame[valid].reset_index(drop=True)
    else:
        with filesystem.open_input_stream(path) as f:
            lines, undecodable = _decode_lines(f.read())
        frame, dropped = parse_token_lines(lines)
        dropped += undecodable
    if dropped:
        LOG.warning("Dropped %d malformed token record(s) from %s", dropped, uri)
    return frame, dropped


def read_stop_words(uri: str) -> Set[str]:
    """Stop words from a one-column TSV whose header is ``stop``."""
    filesystem, path = storage.resolve(uri)
    with filesystem.open_input_stream(path) as f:
        frame = pd.read_csv(io.BytesIO(f.read()), sep="\t", dtype=str, keep_default_na=False, quoting=csv.QUOTE_NONE)
    return {w.strip().lower() for w in frame.iloc[:, 0] if w.strip()}


def tokenize_documents(docs_uri: str, stop_words: Optional[Set[str]] = None) -> pd.DataFrame:
    """Turn a ``doc_id<TAB>text`` TSV (with header) into (document_id, token) pairs.

    Text is split on spaces, brackets, parentheses, commas and periods;
    tokens are trimmed and lower-cased, empties and stop words removed.
    """
    filesystem, path = storage.resolve(docs_uri)
    with filesystem.open_input_stream(path) as f:
        docs = pd.read_csv(io.BytesIO(f.read()), sep="\t", dtype=str, keep_default_na=False, quoting=csv.QUOTE_NONE)
    docs = docs.rename(columns={docs.columns[0]: DOCUMENT_ID, docs.columns[1]: "text"})
    tokens = docs.assign(**{TOKEN: docs["text"].str.split(SPLIT_PATTERN, regex=True)}).explode(TOKEN)
    tokens[TOKEN] = tokens[TOKEN].str.strip().str.lower()
    tokens = tokens[tokens[TOKEN].notna() & (tokens[TOKEN] != "")]
    if stop_words:
        tokens = tokens[~tokens[TOKEN].isin(stop_words)]
    return tokens[TOKEN_COLUMNS].reset_index(drop=True)


def write_token_stream(frame: pd.DataFrame, uri: str) -> None:
    filesystem, path = storage.resolve(uri)
    if path.endswith(".parquet"):
        storage.write_frame(filesystem, path, frame[TOKEN_COLUMNS])
        return
    lines = (f"{doc}\t{token}" for doc, token in frame[TOKEN_COLUMNS].itertuples(index=False))
    storage.write_lines(filesystem, path, lines)
