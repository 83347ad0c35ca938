import argparse
import logging
import threading
import time
from concurrent import futures
from typing import List, Optional, Tuple

import grpc

from . import rpc
from .config import RunConfig
from .errors import TaskFailedError
from .pipeline import run_pipeline

LOG = logging.getLogger("master")

CLIENT_PORT = 50051
REGISTRY_PORT = 8081


class WorkerRegistry:
    """In-memory worker registry; also the scheduler backend for remote runs."""

    def __init__(self):
        self._lock = threading.Lock()
        self._workers = {}  # worker_id -> {"last_heartbeat": float, "idle": bool, "channel": grpc.Channel}
        self._idle_workers = 0

    def upsert(self, worker_id: str):
        """Register or refresh a worker by its ID (its host:port)."""
        now = time.time()
        with self._lock:
            worker = self._workers.get(worker_id)
            if worker:
                worker["last_heartbeat"] = now
                return
            self._workers[worker_id] = {"last_heartbeat": now, "idle": True, "channel": None}
            self._idle_workers += 1

    def mark_heartbeat(self, worker_id: str) -> bool:
        with self._lock:
            if worker_id not in self._workers:
                return False
            self._workers[worker_id]["last_heartbeat"] = time.time()
            return True

    def remove(self, worker_id: str):
        with self._lock:
            worker = self._workers.pop(worker_id, None)
            if worker and worker["idle"]:
                self._idle_workers -= 1
        if worker and worker["channel"]:
            # Closing the channel cancels the in-flight task, whose future
            # then fails and goes back through the scheduler's retry path.
            worker["channel"].close()

    def list_workers(self):
        with self._lock:
            return list(self._workers.keys())

    def list_active_workers(self, timeout_seconds: float = 15.0):
        cutoff = time.time() - timeout_seconds
        with self._lock:
            return [k for k, v in self._workers.items() if v["last_heartbeat"] >= cutoff]

    def acquire(self) -> Optional[str]:
        """Returns an idle worker ID and marks it busy, or None if none available."""
        with self._lock:
            if self._idle_workers == 0:
                return None
            for k, v in self._workers.items():
                if v["idle"]:
                    v["idle"] = False
                    self._idle_workers -= 1
                    return k
        return None

    def release(self, worker_id: str):
        with self._lock:
            if worker_id in self._workers and not self._workers[worker_id]["idle"]:
                self._workers[worker_id]["idle"] = True
                self._idle_workers += 1

    def _channel(self, worker_id: str) -> grpc.Channel:
        with self._lock:
            worker = self._workers.get(worker_id)
            if worker is None:
                raise TaskFailedError("-", f"worker {worker_id} is no longer registered")
            if worker["channel"] is None:
                worker["channel"] = grpc.insecure_channel(worker_id)
            return worker["channel"]

    def submit(self, worker_id: str, task: dict) -> futures.Future:
        result = futures.Future()
        call = rpc.stub(self._channel(worker_id), rpc.WORKER_SERVICE, "RunTask").future({"task": task})

        def on_done(call_future):
            try:
                reply = call_future.result()
            except Exception as e:
                result.set_exception(TaskFailedError(task["task_id"], f"gRPC error: {e}"))
                return
            if reply.get("ok"):
                result.set_result(reply.get("result", {}))
            else:
                result.set_exception(TaskFailedError(task["task_id"], reply.get("message", "")))

        call.add_done_callback(on_done)
        return result


def health_monitor(
    registry: WorkerRegistry, check_count: int, timeout_s: float = 15.0, report_every: int = 12
) -> List[str]:
    """Drop workers whose last heartbeat is older than ``timeout_s``; returns their IDs.

    A dropped worker that is still alive has its next heartbeat rejected and
    registers again.
    """
    active = set(registry.list_active_workers(timeout_s))
    dropped = sorted(set(registry.list_workers()) - active)
    for worker_id in dropped:
        LOG.warning("Dropping worker %s: no heartbeat in %.0fs", worker_id, timeout_s)
        registry.remove(worker_id)

    if report_every and check_count % report_every == 0:
        if active:
            LOG.info("Health check: %d worker(s) active [%s]", len(active), "; ".join(sorted(active)))
        else:
            LOG.warning("Health check: no active workers")
    return dropped


def monitor_loop(registry: WorkerRegistry, interval_seconds: float = 5.0, timeout_s: float = 15.0):
    check_count = 0
    while True:
        health_monitor(registry, check_count, timeout_s)
        check_count += 1
        time.sleep(interval_seconds)


class RegistryService:
    def __init__(self, registry: WorkerRegistry):
        self.registry = registry

    def register(self, request: dict) -> dict:
        worker_id = request["id"]
        self.registry.upsert(worker_id)
        LOG.info("Registered worker %s", worker_id)
        LOG.info("Current worker pool: %s", "; ".join(self.registry.list_workers()))
        return {"ok": True, "message": "registered"}

    def heartbeat(self, request: dict) -> dict:
        """Process a heartbeat from a worker, keyed by worker_id."""
        worker_id = request.get("worker_id", "")
        if not self.registry.mark_heartbeat(worker_id):
            LOG.warning("Heartbeat from unknown worker %s", worker_id)
            return {"ok": False, "message": "unknown worker, register again"}
        LOG.debug("Heartbeat received from worker: %s", worker_id)
        return {"ok": True, "message": "pong"}


class FlowService:
    def __init__(self, registry: WorkerRegistry):
        self.registry = registry

    def run_flow(self, request: dict) -> dict:
        LOG.info("Received RunFlow request")
        try:
            config = RunConfig.from_dict(request["config"])
            result = run_pipeline(config, backend=self.registry)
            return {"ok": True, "message": "flow completed", "report": result.report.to_dict()}
        except Exception as e:
            LOG.error("Flow failed: %s", e)
            return {"ok": False, "message": f"{type(e).__name__}: {e}"}


def make_master_server(
    registry: WorkerRegistry, client_bind="[::]:50051", worker_bind="[::]:8081"
) -> Tuple[grpc.Server, int]:
    registry_service = RegistryService(registry)
    flow_service = FlowService(registry)
    server = grpc.server(futures.ThreadPoolExecutor(max_workers=10))
    server.add_generic_rpc_handlers((
        rpc.service_handler(rpc.MASTER_SERVICE, {"RunFlow": flow_service.run_flow}),
        rpc.service_handler(rpc.REGISTRY_SERVICE, {
            "Register": registry_service.register,
            "Heartbeat": registry_service.heartbeat,
        }),
    ))
    client_port = server.add_insecure_port(client_bind)
    if worker_bind != client_bind:
        server.add_insecure_port(worker_bind)
    return server, client_port


def start_master(client_port: int = CLIENT_PORT, registry_port: int = REGISTRY_PORT, heartbeat_timeout: float = 15.0):
    registry = WorkerRegistry()
    server, _ = make_master_server(registry, f"[::]:{client_port}", f"[::]:{registry_port}")

    monitor = threading.Thread(target=monitor_loop, args=(registry, 5.0, heartbeat_timeout), daemon=True)
    monitor.start()

    server.start()
    LOG.info("Starting flow gRPC on port %d", client_port)
    LOG.info("Starting registry gRPC on port %d", registry_port)
    try:
        server.wait_for_termination()
    except KeyboardInterrupt:
        LOG.info("Shutting down gracefully...")
        server.stop(grace=None)
        LOG.info("Shutdown complete")


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="tfidf-master", description="Run the TF-IDF master.")
    parser.add_argument("--port", type=int, default=CLIENT_PORT, help=f"Client port (default: {CLIENT_PORT})")
    parser.add_argument("--registry-port", type=int, default=REGISTRY_PORT, help=f"Worker registry port (default: {REGISTRY_PORT})")
    parser.add_argument("--heartbeat-timeout", type=float, default=15.0, help="Seconds without heartbeat before a worker is dropped")
    return parser.parse_args(argv)


def main(argv=None):
    logging.basicConfig(
        level=logging.INFO,
        format="[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    args = parse_args(argv)
    start_master(args.port, args.registry_port, args.heartbeat_timeout)


if __name__ == "__main__":
    main()
