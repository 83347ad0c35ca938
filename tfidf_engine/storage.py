import logging
import os
import posixpath
from subprocess import check_output
from typing import Iterable, List, Sequence, Tuple

import pandas as pd
import pyarrow as pa
import pyarrow.parquet as pq
from pyarrow import fs
from pyarrow.fs import FileSelector, FileType

LOG = logging.getLogger("storage")


def _ensure_hadoop_classpath():
    if os.environ.get("CLASSPATH") or not os.environ.get("HADOOP_HOME"):
        return
    try:
        os.environ["CLASSPATH"] = str(
            check_output([os.environ["HADOOP_HOME"] + "/bin/hdfs", "classpath", "--glob"]), "utf-8"
        )
    except Exception as e:
        LOG.warning("Could not set HDFS classpath (HDFS may not be ready): %s", e)


def resolve(uri: str) -> Tuple[fs.FileSystem, str]:
    """Map a path or URI onto a pyarrow filesystem and a path inside it.

    Plain paths are local; ``hdfs://host:port/path`` goes to HDFS.
    """
    if "://" not in uri:
        return fs.LocalFileSystem(), os.path.abspath(uri)
    if uri.startswith("hdfs://"):
        _ensure_hadoop_classpath()
    return fs.FileSystem.from_uri(uri)


def join(base: str, *parts: str) -> str:
    return posixpath.join(base.rstrip("/"), *parts)


def stage_dir(flow_dir: str, stage: str) -> str:
    return join(flow_dir, stage)


def part_path(stage_path: str, rid: int) -> str:
    return join(stage_path, f"part-{rid:05d}.parquet")


def shuffle_path(stage_path: str, side: str, task_index: int, rid: int) -> str:
    # Named by task index, not by worker, so a retried task overwrites the
    # files of its failed attempt instead of adding to them.
    return join(stage_path, "shuffle", f"{side}-{task_index:05d}-{rid:05d}.parquet")


def ensure_parent_dir(filesystem: fs.FileSystem, path: str) -> None:
    parent = path.rsplit("/", 1)[0] if "/" in path else ""
    if parent:
        filesystem.create_dir(parent, recursive=True)


def reset_dir(filesystem: fs.FileSystem, path: str) -> None:
    filesystem.delete_dir_contents(path, missing_dir_ok=True)
    filesystem.create_dir(path, recursive=True)


def write_frame(filesystem: fs.FileSystem, path: str, frame: pd.DataFrame) -> None:
    ensure_parent_dir(filesystem, path)
    table = pa.Table.from_pandas(frame, preserve_index=False)
    with filesystem.open_output_stream(path) as out:
        pq.write_table(table, out)
    LOG.debug("wrote %d rows -> %s", len(frame), path)


def read_frames(filesystem: fs.FileSystem, paths: Iterable[str], columns: Sequence[str]) -> pd.DataFrame:
    """Read and concatenate parquet files; empty files are skipped.

    An empty result still carries ``columns`` so downstream operators can
    address them.
    """
    frames = []
    for path in paths:
        frame = pq.read_table(path, filesystem=filesystem).to_pandas()
        if not frame.empty:
            frames.append(frame)
    if not frames:
        return pd.DataFrame(columns=list(columns))
    return pd.concat(frames, ignore_index=True)


def read_partition(filesystem: fs.FileSystem, stage_path: str, rid: int, columns: Sequence[str]) -> pd.DataFrame:
    return read_frames(filesystem, [part_path(stage_path, rid)], columns)


def read_stage(filesystem: fs.FileSystem, stage_path: str, num_partitions: int, columns: Sequence[str]) -> pd.DataFrame:
    return read_frames(filesystem, [part_path(stage_path, rid) for rid in range(num_partitions)], columns)


def list_shuffle_files(filesystem: fs.FileSystem, stage_path: str, side: str, rid: int) -> List[str]:
    infos = filesystem.get_file_info(FileSelector(join(stage_path, "shuffle"), recursive=False))
    suffix = f"-{rid:05d}.parquet"
    return sorted(
        info.path
        for info in infos
        if info.type == FileType.File
        and posixpath.basename(info.path).startswith(side + "-")
        and info.path.endswith(suffix)
    )


def read_shuffle(
    filesystem: fs.FileSystem,
    stage_path: str,
    side: str,
    rid: int,
    expected: int,
    columns: Sequence[str],
) -> pd.DataFrame:
    """Gather every map task's slice of partition ``rid``.

    ``expected`` is the number of upstream map tasks; a missing slice means
    the barrier was crossed early and is an error, never a partial result.
    """
    files = list_shuffle_files(filesystem, stage_path, side, rid)
    if len(files) != expected:
        raise IOError(
            f"partition {rid} of {stage_path} ({side}): expected {expected} shuffle files, found {len(files)}"
        )
    return read_frames(filesystem, files, columns)


def stage_lines(filesystem: fs.FileSystem, path: str, lines: Iterable[str]) -> str:
    """Write text lines next to ``path`` and return the temporary file's path."""
    ensure_parent_dir(filesystem, path)
    tmp_path = path + ".tmp"
    try:
        with filesystem.open_output_stream(tmp_path) as out:
            for line in lines:
                if not line.endswith("\n"):
                    line = line + "\n"
                out.write(line.encode("utf-8"))
    except Exception:
        discard_staged(filesystem, tmp_path)
        raise
    return tmp_path


def commit_staged(filesystem: fs.FileSystem, tmp_path: str, path: str) -> None:
    if filesystem.get_file_info(path).type != FileType.NotFound:
        filesystem.delete_file(path)
    filesystem.move(tmp_path, path)


def discard_staged(filesystem: fs.FileSystem, tmp_path: str) -> None:
    if filesystem.get_file_info(tmp_path).type != FileType.NotFound:
        filesystem.delete_file(tmp_path)


def write_lines(filesystem: fs.FileSystem, path: str, lines: Iterable[str]) -> None:
    """Write text lines, moving the file into place only once complete."""
    commit_staged(filesystem, stage_lines(filesystem, path, lines), path)


def read_text(uri: str) -> str:
    filesystem, path = resolve(uri)
    with filesystem.open_input_stream(path) as f:
        return f.read().decode("utf-8")
