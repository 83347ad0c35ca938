"""Record types flowing between stages.

Inside the engine every relation is a pandas DataFrame whose columns carry
the field names below; the dataclasses are the value types handed to
callers reading a finished run.
"""

from dataclasses import dataclass

DOCUMENT_ID = "document_id"
TOKEN = "token"
TF_COUNT = "tf_count"
DF_COUNT = "df_count"
N_DOCS = "n_docs"
WEIGHT = "weight"
COUNT = "count"

# Constant join key carried by the single CorpusStats row.
JOIN_KEY = "join_key"
CORPUS_KEY = "corpus"

TOKEN_COLUMNS = [DOCUMENT_ID, TOKEN]
TERM_FREQUENCY_COLUMNS = [DOCUMENT_ID, TOKEN, TF_COUNT]
DOCUMENT_FREQUENCY_COLUMNS = [TOKEN, DF_COUNT]
CORPUS_STATS_COLUMNS = [JOIN_KEY, N_DOCS]
JOINED_COLUMNS = [TOKEN, DOCUMENT_ID, TF_COUNT, DF_COUNT, N_DOCS]
TFIDF_COLUMNS = [TOKEN, DOCUMENT_ID, WEIGHT]
WORD_COUNT_COLUMNS = [TOKEN, COUNT]


@dataclass(frozen=True)
class TokenOccurrence:
    document_id: str
    token: str


@dataclass(frozen=True)
class TermFrequencyRecord:
    document_id: str
    token: str
    tf_count: int


@dataclass(frozen=True)
class DocumentFrequencyRecord:
    token: str
    df_count: int


@dataclass(frozen=True)
class CorpusStats:
    n_docs: int


@dataclass(frozen=True)
class JoinedRecord:
    token: str
    document_id: str
    tf_count: int
    df_count: int
    n_docs: int


@dataclass(frozen=True)
class TfIdfRecord:
    token: str
    document_id: str
    weight: float


@dataclass(frozen=True)
class WordCountRecord:
    token: str
    count: int
