"""Distributed batch TF-IDF engine.

Three aggregates (term frequency, document frequency, document count) are
computed by independent branches over one token stream, recombined with a
broadcast join and a shuffle join, and turned into per-(token, document)
weights.
"""

from .config import JoinStrategy, RunConfig
from .errors import (
    BroadcastLimitError,
    DataflowError,
    EmptyCorpusError,
    MalformedRecordError,
    NoWorkersError,
    PipelineError,
    RetriesExhaustedError,
    TaskFailedError,
)
from .pipeline import RunReport, RunResult, run_pipeline

__all__ = [
    "BroadcastLimitError",
    "DataflowError",
    "EmptyCorpusError",
    "JoinStrategy",
    "MalformedRecordError",
    "NoWorkersError",
    "PipelineError",
    "RetriesExhaustedError",
    "RunConfig",
    "RunReport",
    "RunResult",
    "TaskFailedError",
    "run_pipeline",
]
