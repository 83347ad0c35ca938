"""Task planning (master side) and task execution (worker side).

A task is a plain dict so it can cross the wire unchanged. Running a task
only reads upstream files and writes its own output files under
deterministic names, so a failed task can be run again from scratch
without affecting any other partition.
"""

import logging
from typing import Dict, List

import pandas as pd

from . import storage
from .config import RunConfig
from .dataflow import (
    BROADCAST_PHASE,
    MAP_PHASE,
    READ,
    REDUCE_PHASE,
    TRANSFORM_PHASE,
    Dataflow,
    Stage,
    StageKind,
)
from .errors import BroadcastLimitError, DataflowError
from .operators import final_aggregate, join_frames, partial_aggregate, transform
from .partitioning import split_by_partition
from .sources import read_token_stream

LOG = logging.getLogger("worker")

DATA = "data"
LEFT = "left"
RIGHT = "right"


def plan_tasks(flow: Dataflow, stage: Stage, phase: str, config: RunConfig, counts: Dict[str, int]) -> List[dict]:
    """Tasks for one phase of ``stage``; all of them must finish before the next phase."""
    base = {
        "flow_dir": config.flow_dir,
        "stage": stage.to_dict(),
        "phase": phase,
        "num_partitions": config.num_partitions,
        "broadcast_limit": config.broadcast_limit,
        "input_partitions": {name: counts[name] for name in stage.inputs},
        "input_columns": {name: list(flow.stages[name].columns) for name in stage.inputs},
    }

    def task(index: int, side: str = DATA, **extra) -> dict:
        return dict(base, task_id=f"{stage.name}/{phase}/{side}-{index}", index=index, side=side, **extra)

    if phase == READ:
        return [task(i, uri=uri) for i, uri in enumerate(stage.params["uris"])]
    if phase in (BROADCAST_PHASE, TRANSFORM_PHASE):
        return [task(i) for i in range(counts[stage.inputs[0]])]
    if phase == MAP_PHASE and stage.kind == StageKind.AGGREGATE:
        return [task(i) for i in range(counts[stage.inputs[0]])]
    if phase == MAP_PHASE and stage.kind == StageKind.JOIN:
        left, right = stage.inputs
        return [task(i, LEFT) for i in range(counts[left])] + [task(i, RIGHT) for i in range(counts[right])]
    if phase == REDUCE_PHASE:
        return [task(rid) for rid in range(config.num_partitions)]
    raise DataflowError(f"stage {stage.name} has no phase {phase}")


def _upstream(filesystem, flow_dir: str, task: dict, name: str, index: int) -> pd.DataFrame:
    return storage.read_partition(
        filesystem, storage.stage_dir(flow_dir, name), index, task["input_columns"][name]
    )


def _write_output(filesystem, flow_dir: str, stage: Stage, rid: int, frame: pd.DataFrame) -> None:
    storage.write_frame(filesystem, storage.part_path(storage.stage_dir(flow_dir, stage.name), rid), frame[list(stage.columns)])


def _write_shuffle(filesystem, flow_dir: str, stage: Stage, task: dict, frame: pd.DataFrame, by) -> None:
    out_dir = storage.stage_dir(flow_dir, stage.name)
    for rid, part in enumerate(split_by_partition(frame, by, task["num_partitions"])):
        storage.write_frame(filesystem, storage.shuffle_path(out_dir, task["side"], task["index"], rid), part)


def _read_source(filesystem, flow_dir, stage, task):
    frame, dropped = read_token_stream(task["uri"])
    _write_output(filesystem, flow_dir, stage, task["index"], frame)
    return {"rows_in": len(frame) + dropped, "rows_out": len(frame), "dropped": dropped}


def _aggregate_map(filesystem, flow_dir, stage, task):
    params = stage.params
    frame = _upstream(filesystem, flow_dir, task, stage.inputs[0], task["index"])
    partial = partial_aggregate(
        frame, params["op"], params["keys"], params.get("value"), params.get("output"), params.get("tag")
    )
    _write_shuffle(filesystem, flow_dir, stage, task, partial, params["partition_by"])
    return {"rows_in": len(frame), "rows_out": len(partial)}


def _aggregate_reduce(filesystem, flow_dir, stage, task):
    params = stage.params
    frame = storage.read_shuffle(
        filesystem, storage.stage_dir(flow_dir, stage.name), DATA, task["index"],
        task["input_partitions"][stage.inputs[0]], stage.columns,
    )
    final = final_aggregate(frame, params["op"], params["keys"], params.get("output"))
    _write_output(filesystem, flow_dir, stage, task["index"], final)
    return {"rows_in": len(frame), "rows_out": len(final)}


def _left_columns(task: dict, stage: Stage) -> List[str]:
    return task["input_columns"][stage.inputs[0]] + list(stage.params.get("left_tag") or {})


def _join_map(filesystem, flow_dir, stage, task):
    params = stage.params
    name = stage.inputs[0] if task["side"] == LEFT else stage.inputs[1]
    frame = _upstream(filesystem, flow_dir, task, name, task["index"])
    if task["side"] == LEFT and params.get("left_tag"):
        frame = frame.assign(**params["left_tag"])
    _write_shuffle(filesystem, flow_dir, stage, task, frame, params["on"])
    return {"rows_in": len(frame), "rows_out": len(frame)}


def _join_reduce(filesystem, flow_dir, stage, task):
    params = stage.params
    left_name, right_name = stage.inputs
    out_dir = storage.stage_dir(flow_dir, stage.name)
    rid = task["index"]
    left = storage.read_shuffle(
        filesystem, out_dir, LEFT, rid, task["input_partitions"][left_name], _left_columns(task, stage)
    )
    right = storage.read_shuffle(
        filesystem, out_dir, RIGHT, rid, task["input_partitions"][right_name], task["input_columns"][right_name]
    )
    joined, mismatches = join_frames(left, right, params["on"], drop=params.get("drop", ()))
    _write_output(filesystem, flow_dir, stage, rid, joined)
    return {"rows_in": len(left) + len(right), "rows_out": len(joined), "join_mismatches": mismatches}


def _broadcast_join(filesystem, flow_dir, stage, task):
    params = stage.params
    left_name, right_name = stage.inputs
    left = _upstream(filesystem, flow_dir, task, left_name, task["index"])
    right = storage.read_stage(
        filesystem, storage.stage_dir(flow_dir, right_name),
        task["input_partitions"][right_name], task["input_columns"][right_name],
    )
    if len(right) > task["broadcast_limit"]:
        raise BroadcastLimitError(
            f"{right_name} has {len(right)} rows, over the broadcast limit of {task['broadcast_limit']}"
        )
    joined, mismatches = join_frames(left, right, params["on"], params.get("left_tag"), params.get("drop", ()))
    _write_output(filesystem, flow_dir, stage, task["index"], joined)
    return {"rows_in": len(left), "rows_out": len(joined), "join_mismatches": mismatches}


def _transform(filesystem, flow_dir, stage, task):
    frame = _upstream(filesystem, flow_dir, task, stage.inputs[0], task["index"])
    out = transform(frame, stage.params["transform"])
    _write_output(filesystem, flow_dir, stage, task["index"], out)
    return {"rows_in": len(frame), "rows_out": len(out)}


_HANDLERS = {
    (StageKind.SOURCE, READ): _read_source,
    (StageKind.AGGREGATE, MAP_PHASE): _aggregate_map,
    (StageKind.AGGREGATE, REDUCE_PHASE): _aggregate_reduce,
    (StageKind.JOIN, MAP_PHASE): _join_map,
    (StageKind.JOIN, REDUCE_PHASE): _join_reduce,
    (StageKind.JOIN, BROADCAST_PHASE): _broadcast_join,
    (StageKind.MAP, TRANSFORM_PHASE): _transform,
}


def run_task(task: dict) -> dict:
    """Execute one task and return its counters. Errors propagate to the caller."""
    stage = Stage.from_dict(task["stage"])
    handler = _HANDLERS.get((stage.kind, task["phase"]))
    if handler is None:
        raise DataflowError(f"no handler for {stage.kind.value}/{task['phase']}")
    filesystem, flow_dir = storage.resolve(task["flow_dir"])
    LOG.debug("[%s] running task %s", task["phase"], task["task_id"])
    result = handler(filesystem, flow_dir, stage, task)
    LOG.debug("[%s] task %s complete (in=%d, out=%d)", task["phase"], task["task_id"], result["rows_in"], result["rows_out"])
    return result
