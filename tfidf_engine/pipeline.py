import logging
import os
from dataclasses import asdict, dataclass
from typing import Dict, List

import pandas as pd

from . import storage
from .config import RunConfig
from .dataflow import CORPUS, TFIDF, WORD_COUNT, Dataflow, Sink, build_tfidf_flow
from .errors import EmptyCorpusError
from .records import (
    CORPUS_STATS_COLUMNS,
    COUNT,
    DOCUMENT_ID,
    N_DOCS,
    TOKEN,
    WEIGHT,
    TfIdfRecord,
    WordCountRecord,
)
from .scheduler import LocalBackend, Scheduler

LOG = logging.getLogger("pipeline")


@dataclass(frozen=True)
class RunReport:
    flow_name: str
    n_docs: int
    tokens_read: int
    dropped_malformed: int
    join_mismatches: int
    task_retries: int
    tfidf_rows: int
    word_count_rows: int

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class RunResult:
    report: RunReport
    tfidf: pd.DataFrame
    word_count: pd.DataFrame

    def tfidf_records(self) -> List[TfIdfRecord]:
        return [
            TfIdfRecord(token, document_id, float(weight))
            for token, document_id, weight in self.tfidf[[TOKEN, DOCUMENT_ID, WEIGHT]].itertuples(index=False)
        ]

    def word_count_records(self) -> List[WordCountRecord]:
        return [
            WordCountRecord(token, int(count))
            for token, count in self.word_count[[TOKEN, COUNT]].itertuples(index=False)
        ]


def _absolute(uri: str) -> str:
    return uri if "://" in uri else os.path.abspath(uri)


def _format(value) -> str:
    if isinstance(value, float):
        return repr(value)
    return str(value)


def read_n_docs(filesystem, flow_dir: str, counts: Dict[str, int]) -> int:
    corpus = storage.read_stage(filesystem, storage.stage_dir(flow_dir, CORPUS), counts[CORPUS], CORPUS_STATS_COLUMNS)
    return int(corpus[N_DOCS].sum()) if not corpus.empty else 0


def gather_sink(filesystem, flow_dir: str, sink: Sink, num_partitions: int) -> pd.DataFrame:
    """Read a finished stage in sink column order, sorted."""
    frame = storage.read_stage(filesystem, storage.stage_dir(flow_dir, sink.stage), num_partitions, sink.columns)
    frame = frame[list(sink.columns)]
    if sink.sort_by and not frame.empty:
        frame = frame.sort_values(list(sink.sort_by), kind="mergesort").reset_index(drop=True)
    return frame


def sink_lines(sink: Sink, frame: pd.DataFrame) -> List[str]:
    """TSV lines with a header row."""
    lines = ["\t".join(sink.columns)]
    lines.extend(
        "\t".join(_format(v) for v in row)
        for row in frame.astype(object).itertuples(index=False)
    )
    return lines


def commit_sinks(filesystem, flow_dir: str, sinks: List[Sink], counts: Dict[str, int]) -> Dict[str, pd.DataFrame]:
    """Write every sink to a temporary file, then move them all into place.

    If any sink fails to stage, the ones already staged are discarded and
    no output location is touched.
    """
    outputs = {}
    staged = []
    try:
        for sink in sinks:
            frame = gather_sink(filesystem, flow_dir, sink, counts[sink.stage])
            out_fs, out_path = storage.resolve(sink.uri)
            tmp_path = storage.stage_lines(out_fs, out_path, sink_lines(sink, frame))
            staged.append((out_fs, tmp_path, out_path))
            outputs[sink.stage] = frame
    except Exception:
        LOG.error("Could not stage outputs, discarding %d staged file(s)", len(staged))
        for out_fs, tmp_path, _ in staged:
            storage.discard_staged(out_fs, tmp_path)
        raise
    for (out_fs, tmp_path, out_path), sink in zip(staged, sinks):
        storage.commit_staged(out_fs, tmp_path, out_path)
        LOG.info("Wrote %d row(s) of %s to %s", len(outputs[sink.stage]), sink.stage, sink.uri)
    return outputs


def run_pipeline(config: RunConfig, backend=None, flow: Dataflow = None) -> RunResult:
    """Run the TF-IDF flow over ``config.inputs`` and commit both outputs.

    Nothing is written to the output locations unless every stage succeeds.
    With no ``backend`` the run uses an in-process thread pool of
    ``config.num_workers`` workers.
    """
    config = config.with_overrides(work_dir=_absolute(config.work_dir))
    flow = flow or build_tfidf_flow(config)
    flow.validate()
    counts = flow.partition_counts(config.num_partitions)

    filesystem, flow_dir = storage.resolve(config.flow_dir)
    # Leftover shuffle files from an earlier run would be read as input.
    storage.reset_dir(filesystem, flow_dir)

    def require_documents(stage_name: str) -> None:
        n_docs = read_n_docs(filesystem, flow_dir, counts)
        if n_docs == 0:
            raise EmptyCorpusError(f"flow {config.flow_name}: the token stream contains no documents")

    owns_backend = backend is None
    if owns_backend:
        backend = LocalBackend(config.num_workers)
    try:
        checks = {CORPUS: require_documents} if CORPUS in flow.stages else {}
        counters = Scheduler(flow, config, backend, stage_checks=checks).run()
    finally:
        if owns_backend:
            backend.close()

    outputs = commit_sinks(filesystem, flow_dir, flow.sinks, counts)
    tfidf = outputs.get(TFIDF, pd.DataFrame(columns=[TOKEN, DOCUMENT_ID, WEIGHT]))
    word_count = outputs.get(WORD_COUNT, pd.DataFrame(columns=[TOKEN, COUNT]))

    tokens_read = counters["tokens_read"]
    counted = int(word_count[COUNT].sum()) if not word_count.empty else 0
    if counted != tokens_read:
        LOG.warning("Word count cross-check failed: %d counted vs %d tokens read", counted, tokens_read)

    report = RunReport(
        flow_name=config.flow_name,
        n_docs=read_n_docs(filesystem, flow_dir, counts) if CORPUS in flow.stages else 0,
        tokens_read=tokens_read,
        dropped_malformed=counters["dropped_malformed"],
        join_mismatches=counters["join_mismatches"],
        task_retries=counters["task_retries"],
        tfidf_rows=len(tfidf),
        word_count_rows=len(word_count),
    )
    LOG.info("Flow %s finished: %s", config.flow_name, report)
    return RunResult(report, tfidf, word_count)
