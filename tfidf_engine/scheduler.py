import logging
import threading
import time
from collections import Counter, deque
from concurrent import futures
from typing import Callable, Dict, Optional

from .config import RunConfig
from .dataflow import READ, Dataflow
from .errors import NoWorkersError, PipelineError, RetriesExhaustedError
from .tasks import plan_tasks, run_task

LOG = logging.getLogger("scheduler")

WAITING = "waiting"
RUNNING = "running"
DONE = "done"


class LocalBackend:
    """Runs tasks on a thread pool inside this process."""

    def __init__(self, num_workers: int, task_fn: Callable[[dict], dict] = run_task):
        self._task_fn = task_fn
        self._pool = futures.ThreadPoolExecutor(max_workers=num_workers, thread_name_prefix="tfidf-worker")
        self._lock = threading.Lock()
        self._idle = deque(f"local-{i}" for i in range(num_workers))

    def acquire(self) -> Optional[str]:
        """Returns an idle worker ID and marks it busy, or None if none available."""
        with self._lock:
            return self._idle.popleft() if self._idle else None

    def release(self, worker_id: str) -> None:
        with self._lock:
            self._idle.append(worker_id)

    def submit(self, worker_id: str, task: dict) -> futures.Future:
        return self._pool.submit(self._task_fn, task)

    def close(self) -> None:
        self._pool.shutdown(wait=True)


class Scheduler:
    """Runs a dataflow to completion on a backend.

    A stage is released once all of its inputs are complete and runs its
    phases one after the other; a phase is done when every one of its tasks
    is. Stages without a dependency between them run concurrently. Failed
    tasks are put back in the queue until ``max_task_attempts`` is reached,
    which aborts the whole run. So does waiting longer than
    ``worker_wait_timeout`` for a worker while no task is in flight.

    ``stage_checks`` maps a stage name to a callable run once that stage is
    complete; a ``PipelineError`` raised by it aborts the run.
    """

    def __init__(self, flow: Dataflow, config: RunConfig, backend, stage_checks: Optional[Dict[str, Callable]] = None):
        self.flow = flow
        self.config = config
        self.backend = backend
        self.stage_checks = stage_checks or {}
        self.counts = flow.partition_counts(config.num_partitions)
        self.counters = Counter()

        self._lock = threading.Lock()
        self._changed = threading.Condition(self._lock)
        self._pending = deque()
        # stage name -> {"state": str, "phases": deque, "phase": str, "tasks_left": int}
        self._stages = {
            name: {"state": WAITING, "phases": deque(stage.phases()), "phase": None, "tasks_left": 0}
            for name, stage in flow.stages.items()
        }
        self._completed = set()
        self._attempts = Counter()
        self._in_flight = 0
        self._failure = None

    def run(self) -> Counter:
        LOG.info(
            "Starting flow %s: %d stage(s), %d partition(s)",
            self.flow.name, len(self.flow.stages), self.config.num_partitions,
        )
        with self._lock:
            self._release_ready_stages()
        starved_since = None
        while True:
            with self._lock:
                if self._failure is not None or len(self._completed) == len(self._stages):
                    # Let in-flight tasks land before returning.
                    while self._in_flight:
                        self._changed.wait()
                    break
                task = self._pending.popleft() if self._pending else None
                if task is None:
                    self._changed.wait(timeout=self.config.poll_interval)
                    continue
            worker = self.backend.acquire()
            if worker is None:
                with self._lock:
                    self._pending.appendleft(task)
                    # Busy workers will come back; with nothing in flight none will.
                    if self._in_flight:
                        starved_since = None
                    elif starved_since is None:
                        starved_since = time.monotonic()
                    elif time.monotonic() - starved_since > self.config.worker_wait_timeout:
                        self._fail(NoWorkersError(
                            f"no workers available for {self.config.worker_wait_timeout:g}s "
                            f"with {len(self._pending)} task(s) pending"
                        ))
                time.sleep(self.config.poll_interval)
                continue
            starved_since = None
            self._dispatch(worker, task)
        if self._failure is not None:
            raise self._failure
        LOG.info("Flow %s completed", self.flow.name)
        return self.counters

    def _dispatch(self, worker_id: str, task: dict) -> None:
        with self._lock:
            self._in_flight += 1
        try:
            future = self.backend.submit(worker_id, task)
        except Exception as e:
            LOG.error("Failed to assign task %s to worker %s: %s", task["task_id"], worker_id, e)
            self.backend.release(worker_id)
            self._retry(task, e)
            with self._lock:
                self._in_flight -= 1
                self._changed.notify_all()
            return
        future.add_done_callback(lambda f: self._task_done(f, worker_id, task))

    def _task_done(self, future, worker_id: str, task: dict) -> None:
        try:
            result = future.result()
        except Exception as e:
            LOG.warning("Task %s failed on worker %s: %s", task["task_id"], worker_id, e)
            self._retry(task, e)
        else:
            LOG.info("Task %s completed successfully on worker %s", task["task_id"], worker_id)
            self._complete(task, result)
        finally:
            self.backend.release(worker_id)
            with self._lock:
                self._in_flight -= 1
                self._changed.notify_all()

    def _complete(self, task: dict, result: dict) -> None:
        name = task["stage"]["name"]
        with self._lock:
            if self._failure is not None:
                return
            if task["phase"] == READ:
                self.counters["tokens_read"] += int(result.get("rows_out", 0))
            self.counters["dropped_malformed"] += int(result.get("dropped", 0))
            mismatches = int(result.get("join_mismatches", 0))
            if mismatches:
                LOG.warning(
                    "Consistency: %d record(s) in %s had no join partner and were dropped",
                    mismatches, task["task_id"],
                )
                self.counters["join_mismatches"] += mismatches
            info = self._stages[name]
            info["tasks_left"] -= 1
            if info["tasks_left"] == 0:
                self._advance(name)

    def _retry(self, task: dict, error: Exception) -> None:
        task_id = task["task_id"]
        with self._lock:
            if self._failure is not None:
                return
            self._attempts[task_id] += 1
            attempts = self._attempts[task_id]
            if attempts >= self.config.max_task_attempts:
                self._fail(RetriesExhaustedError(task_id, attempts, str(error)))
                return
            self.counters["task_retries"] += 1
            LOG.warning("Retrying task %s (attempt %d of %d)", task_id, attempts + 1, self.config.max_task_attempts)
            self._pending.append(task)
            self._changed.notify_all()

    # The methods below expect self._lock to be held.

    def _fail(self, error: PipelineError) -> None:
        if self._failure is None:
            LOG.error("Aborting flow %s: %s", self.flow.name, error)
            self._failure = error
        self._pending.clear()
        self._changed.notify_all()

    def _release_ready_stages(self) -> None:
        for name in self.flow.topological_order():
            info = self._stages[name]
            if info["state"] != WAITING:
                continue
            if all(src in self._completed for src in self.flow.stages[name].inputs):
                self._start_phase(name)

    def _start_phase(self, name: str) -> None:
        info = self._stages[name]
        phase = info["phases"].popleft()
        tasks = plan_tasks(self.flow, self.flow.stages[name], phase, self.config, self.counts)
        info.update(state=RUNNING, phase=phase, tasks_left=len(tasks))
        LOG.info("Stage %s: %s phase with %d task(s)", name, phase, len(tasks))
        self._pending.extend(tasks)
        self._changed.notify_all()
        if not tasks:
            self._advance(name)

    def _advance(self, name: str) -> None:
        info = self._stages[name]
        if info["phases"]:
            self._start_phase(name)
            return
        check = self.stage_checks.get(name)
        if check is not None:
            try:
                check(name)
            except PipelineError as e:
                self._fail(e)
                return
        info["state"] = DONE
        self._completed.add(name)
        LOG.info("Stage %s complete", name)
        self._release_ready_stages()
        self._changed.notify_all()
