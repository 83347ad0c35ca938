"""Dataflow graph: stages (nodes) wired by named inputs (edges).

The graph is plain data. It is built once per run, validated before any
task is scheduled, and shipped stage by stage to workers as dicts.
"""

import enum
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .config import JoinStrategy, RunConfig
from .errors import DataflowError
from .operators import AGGREGATES, COUNT, DISTINCT, SUM, TRANSFORMS
from .records import (
    CORPUS_KEY,
    CORPUS_STATS_COLUMNS,
    COUNT as COUNT_COLUMN,
    DF_COUNT,
    DOCUMENT_FREQUENCY_COLUMNS,
    DOCUMENT_ID,
    JOIN_KEY,
    JOINED_COLUMNS,
    N_DOCS,
    TERM_FREQUENCY_COLUMNS,
    TF_COUNT,
    TFIDF_COLUMNS,
    TOKEN,
    TOKEN_COLUMNS,
    WORD_COUNT_COLUMNS,
)


class StageKind(str, enum.Enum):
    SOURCE = "source"
    AGGREGATE = "aggregate"
    JOIN = "join"
    MAP = "map"


# Phase names; a stage runs its phases in order, each one a barrier.
READ = "read"
MAP_PHASE = "map"
REDUCE_PHASE = "reduce"
BROADCAST_PHASE = "broadcast"
TRANSFORM_PHASE = "transform"


@dataclass(frozen=True)
class Stage:
    name: str
    kind: StageKind
    inputs: Tuple[str, ...] = ()
    columns: Tuple[str, ...] = ()
    params: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "kind": self.kind.value,
            "inputs": list(self.inputs),
            "columns": list(self.columns),
            "params": dict(self.params),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Stage":
        return cls(
            name=data["name"],
            kind=StageKind(data["kind"]),
            inputs=tuple(data.get("inputs", ())),
            columns=tuple(data.get("columns", ())),
            params=dict(data.get("params", {})),
        )

    @property
    def strategy(self) -> Optional[JoinStrategy]:
        if self.kind != StageKind.JOIN:
            return None
        return JoinStrategy(self.params["strategy"])

    def phases(self) -> List[str]:
        if self.kind == StageKind.SOURCE:
            return [READ]
        if self.kind == StageKind.MAP:
            return [TRANSFORM_PHASE]
        if self.kind == StageKind.JOIN and self.strategy == JoinStrategy.BROADCAST:
            return [BROADCAST_PHASE]
        return [MAP_PHASE, REDUCE_PHASE]


@dataclass(frozen=True)
class Sink:
    stage: str
    uri: str
    columns: Tuple[str, ...]
    sort_by: Tuple[str, ...] = ()


class Dataflow:
    def __init__(self, name: str):
        self.name = name
        self.stages: Dict[str, Stage] = {}
        self.sinks: List[Sink] = []

    def add(self, stage: Stage) -> Stage:
        if stage.name in self.stages:
            raise DataflowError(f"duplicate stage name: {stage.name}")
        self.stages[stage.name] = stage
        return stage

    def source(self, name: str, uris: Sequence[str]) -> Stage:
        return self.add(Stage(name, StageKind.SOURCE, (), tuple(TOKEN_COLUMNS), {"uris": list(uris)}))

    def aggregate(
        self,
        name: str,
        input: str,
        op: str,
        keys: Sequence[str],
        partition_by: Sequence[str],
        columns: Sequence[str],
        value: Optional[str] = None,
        output: Optional[str] = None,
        tag: Optional[Dict[str, str]] = None,
    ) -> Stage:
        params = {
            "op": op,
            "keys": list(keys),
            "partition_by": list(partition_by),
            "value": value,
            "output": output,
            "tag": dict(tag or {}),
        }
        return self.add(Stage(name, StageKind.AGGREGATE, (input,), tuple(columns), params))

    def join(
        self,
        name: str,
        left: str,
        right: str,
        on: Sequence[str],
        strategy: JoinStrategy,
        columns: Sequence[str],
        left_tag: Optional[Dict[str, str]] = None,
        drop: Sequence[str] = (),
    ) -> Stage:
        params = {
            "on": list(on),
            "strategy": JoinStrategy(strategy).value,
            "left_tag": dict(left_tag or {}),
            "drop": list(drop),
        }
        return self.add(Stage(name, StageKind.JOIN, (left, right), tuple(columns), params))

    def map(self, name: str, input: str, transform: str, columns: Sequence[str]) -> Stage:
        return self.add(Stage(name, StageKind.MAP, (input,), tuple(columns), {"transform": transform}))

    def sink(self, stage: str, uri: str, columns: Sequence[str], sort_by: Sequence[str] = ()) -> Sink:
        sink = Sink(stage, uri, tuple(columns), tuple(sort_by))
        self.sinks.append(sink)
        return sink

    @property
    def edges(self) -> List[Tuple[str, str]]:
        return [(src, stage.name) for stage in self.stages.values() for src in stage.inputs]

    def downstream(self, name: str) -> List[str]:
        return [dst for src, dst in self.edges if src == name]

    def validate(self) -> None:
        for stage in self.stages.values():
            for src in stage.inputs:
                if src not in self.stages:
                    raise DataflowError(f"stage {stage.name} reads unknown stage {src}")
            self._validate_stage(stage)
        for sink in self.sinks:
            if sink.stage not in self.stages:
                raise DataflowError(f"sink {sink.uri} reads unknown stage {sink.stage}")
            missing = set(sink.columns) - set(self.stages[sink.stage].columns)
            if missing:
                raise DataflowError(f"sink {sink.uri} asks for unknown columns {sorted(missing)}")
        # Raises on cycles.
        self.topological_order()

    def _validate_stage(self, stage: Stage) -> None:
        params = stage.params
        if stage.kind == StageKind.SOURCE:
            if stage.inputs:
                raise DataflowError(f"source {stage.name} cannot have inputs")
            if not params.get("uris"):
                raise DataflowError(f"source {stage.name} has no input files")
        elif stage.kind == StageKind.AGGREGATE:
            if len(stage.inputs) != 1:
                raise DataflowError(f"aggregate {stage.name} needs exactly one input")
            if params["op"] not in AGGREGATES:
                raise DataflowError(f"aggregate {stage.name} has unknown operator {params['op']}")
            if params["op"] in (COUNT, SUM) and not params.get("output"):
                raise DataflowError(f"aggregate {stage.name} needs an output column")
            if params["op"] == SUM and not params.get("value"):
                raise DataflowError(f"aggregate {stage.name} needs a value column to sum")
            if not params["partition_by"] or not set(params["partition_by"]) <= set(params["keys"]):
                raise DataflowError(f"aggregate {stage.name} must partition by a subset of its keys")
        elif stage.kind == StageKind.JOIN:
            if len(stage.inputs) != 2:
                raise DataflowError(f"join {stage.name} needs exactly two inputs")
            if not params.get("on"):
                raise DataflowError(f"join {stage.name} has no join key")
            try:
                JoinStrategy(params["strategy"])
            except ValueError:
                raise DataflowError(f"join {stage.name} has unknown strategy {params['strategy']}") from None
        elif stage.kind == StageKind.MAP:
            if len(stage.inputs) != 1:
                raise DataflowError(f"map {stage.name} needs exactly one input")
            if params.get("transform") not in TRANSFORMS:
                raise DataflowError(f"map {stage.name} has unknown transform {params.get('transform')}")

    def topological_order(self) -> List[str]:
        indegree = {name: len(stage.inputs) for name, stage in self.stages.items()}
        ready = deque(name for name, deg in indegree.items() if deg == 0)
        order = []
        while ready:
            name = ready.popleft()
            order.append(name)
            for dst in self.downstream(name):
                indegree[dst] -= 1
                if indegree[dst] == 0:
                    ready.append(dst)
        if len(order) != len(self.stages):
            cyclic = sorted(set(self.stages) - set(order))
            raise DataflowError(f"dataflow has a cycle through {cyclic}")
        return order

    def partition_counts(self, num_partitions: int) -> Dict[str, int]:
        """Number of output partitions of every stage, known before running."""
        counts = {}
        for name in self.topological_order():
            stage = self.stages[name]
            if stage.kind == StageKind.SOURCE:
                counts[name] = len(stage.params["uris"])
            elif stage.kind == StageKind.MAP:
                counts[name] = counts[stage.inputs[0]]
            elif stage.kind == StageKind.JOIN and stage.strategy == JoinStrategy.BROADCAST:
                counts[name] = counts[stage.inputs[0]]
            else:
                counts[name] = num_partitions
        return counts


# Stage names of the standard TF-IDF graph.
TOKENS = "tokens"
TERM_FREQUENCY = "term_frequency"
DOC_TERMS = "doc_terms"
DOCUMENT_FREQUENCY = "document_frequency"
DOCUMENTS = "documents"
CORPUS = "corpus"
DF_WITH_CORPUS = "df_with_corpus"
JOINED = "joined"
TFIDF = "tfidf"
WORD_COUNT = "word_count"


def build_tfidf_flow(config: RunConfig) -> Dataflow:
    flow = Dataflow(config.flow_name)
    flow.source(TOKENS, config.inputs)

    # Term frequency; partitioning by a prefix of the grouping key is enough.
    flow.aggregate(
        TERM_FREQUENCY, TOKENS, COUNT,
        keys=[DOCUMENT_ID, TOKEN], partition_by=[DOCUMENT_ID],
        output=TF_COUNT, columns=TERM_FREQUENCY_COLUMNS,
    )

    # Document frequency over distinct (document, token) pairs.
    flow.aggregate(
        DOC_TERMS, TOKENS, DISTINCT,
        keys=[DOCUMENT_ID, TOKEN], partition_by=[TOKEN], columns=TOKEN_COLUMNS,
    )
    flow.aggregate(
        DOCUMENT_FREQUENCY, DOC_TERMS, COUNT,
        keys=[TOKEN], partition_by=[TOKEN],
        output=DF_COUNT, columns=DOCUMENT_FREQUENCY_COLUMNS,
    )

    # Document count: a single row under a constant join key.
    flow.aggregate(
        DOCUMENTS, TOKENS, DISTINCT,
        keys=[DOCUMENT_ID], partition_by=[DOCUMENT_ID], columns=[DOCUMENT_ID],
    )
    flow.aggregate(
        CORPUS, DOCUMENTS, COUNT,
        keys=[JOIN_KEY], partition_by=[JOIN_KEY],
        output=N_DOCS, tag={JOIN_KEY: CORPUS_KEY}, columns=CORPUS_STATS_COLUMNS,
    )

    flow.join(
        DF_WITH_CORPUS, DOCUMENT_FREQUENCY, CORPUS,
        on=[JOIN_KEY], strategy=config.corpus_join,
        left_tag={JOIN_KEY: CORPUS_KEY}, drop=[JOIN_KEY],
        columns=[TOKEN, DF_COUNT, N_DOCS],
    )
    flow.join(
        JOINED, TERM_FREQUENCY, DF_WITH_CORPUS,
        on=[TOKEN], strategy=config.term_join, columns=JOINED_COLUMNS,
    )
    flow.map(TFIDF, JOINED, "tfidf_weight", columns=TFIDF_COLUMNS)

    flow.aggregate(
        WORD_COUNT, TERM_FREQUENCY, SUM,
        keys=[TOKEN], partition_by=[TOKEN],
        value=TF_COUNT, output=COUNT_COLUMN, columns=WORD_COUNT_COLUMNS,
    )

    flow.sink(TFIDF, config.tfidf_output, TFIDF_COLUMNS, sort_by=[TOKEN, DOCUMENT_ID])
    flow.sink(WORD_COUNT, config.word_count_output, WORD_COUNT_COLUMNS, sort_by=[TOKEN])
    return flow
