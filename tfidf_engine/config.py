import enum
import os
from dataclasses import asdict, dataclass, field, replace
from typing import Tuple


class JoinStrategy(str, enum.Enum):
    """How a join stage moves data.

    BROADCAST replicates the (small) right side to every task holding left
    data; SHUFFLE repartitions both sides by the join key.
    """

    BROADCAST = "broadcast"
    SHUFFLE = "shuffle"


ENV_PREFIX = "TFIDF_"


@dataclass(frozen=True)
class RunConfig:
    """Immutable settings for one run, passed to every component."""

    flow_name: str = "tfidf"
    inputs: Tuple[str, ...] = field(default_factory=tuple)
    work_dir: str = "/tmp/tfidf-engine"
    tfidf_output: str = "output/tfidf.tsv"
    word_count_output: str = "output/wc.tsv"
    num_partitions: int = 4
    num_workers: int = 4
    max_task_attempts: int = 3
    corpus_join: JoinStrategy = JoinStrategy.BROADCAST
    term_join: JoinStrategy = JoinStrategy.SHUFFLE
    broadcast_limit: int = 100_000
    poll_interval: float = 0.01
    worker_wait_timeout: float = 60.0

    def __post_init__(self):
        # Normalize values that may arrive as lists or plain strings.
        object.__setattr__(self, "inputs", tuple(self.inputs))
        object.__setattr__(self, "corpus_join", JoinStrategy(self.corpus_join))
        object.__setattr__(self, "term_join", JoinStrategy(self.term_join))
        if self.num_partitions < 1:
            raise ValueError("num_partitions must be at least 1")
        if self.num_workers < 1:
            raise ValueError("num_workers must be at least 1")
        if self.max_task_attempts < 1:
            raise ValueError("max_task_attempts must be at least 1")
        if self.worker_wait_timeout <= 0:
            raise ValueError("worker_wait_timeout must be positive")

    def with_overrides(self, **overrides) -> "RunConfig":
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})

    def to_dict(self) -> dict:
        data = asdict(self)
        data["inputs"] = list(self.inputs)
        data["corpus_join"] = self.corpus_join.value
        data["term_join"] = self.term_join.value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "RunConfig":
        known = {f for f in cls.__dataclass_fields__}
        values = {k: v for k, v in data.items() if k in known}
        for name in ("num_partitions", "num_workers", "max_task_attempts", "broadcast_limit"):
            if name in values:
                values[name] = int(values[name])
        return cls(**values)

    @classmethod
    def from_env(cls, environ=None, **overrides) -> "RunConfig":
        """Build a config from TFIDF_* environment variables, then apply overrides."""
        environ = os.environ if environ is None else environ
        values = {}
        for name, f in cls.__dataclass_fields__.items():
            raw = environ.get(ENV_PREFIX + name.upper())
            if raw is None:
                continue
            if name == "inputs":
                values[name] = tuple(p for p in raw.split(",") if p)
            elif f.type in (int, "int"):
                values[name] = int(raw)
            elif f.type in (float, "float"):
                values[name] = float(raw)
            else:
                values[name] = raw
        return cls(**values).with_overrides(**overrides)

    @property
    def flow_dir(self) -> str:
        return f"{self.work_dir.rstrip('/')}/{self.flow_name}"
