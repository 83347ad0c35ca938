import argparse
import logging
import random
import socket
import threading
import time
from concurrent import futures
from typing import Optional, Tuple

import grpc

from . import rpc
from .tasks import run_task

LOG = logging.getLogger("worker")

TASK_SERVER_PORT = 50052


def register_with_retry(master_address: str, worker_id: str, max_attempts=8, initial_delay=1.0, max_delay=30.0):
    """Register ``worker_id`` with the master's registry, backing off exponentially.

    Raises RuntimeError once ``max_attempts`` attempts have failed.
    """
    LOG.info("Registering worker %s with %s", worker_id, master_address)
    delay, last_exc = initial_delay, None
    for attempt in range(1, max_attempts + 1):
        try:
            with grpc.insecure_channel(master_address) as ch:
                resp = rpc.stub(ch, rpc.REGISTRY_SERVICE, "Register")({"id": worker_id})
        except grpc.RpcError as e:
            last_exc = e
            LOG.warning("Registration attempt %d/%d failed: %s", attempt, max_attempts, e)
        else:
            if resp.get("ok"):
                LOG.info("Registered as %s", worker_id)
                return resp
            last_exc = RuntimeError(f"registration rejected: {resp.get('message')}")
            LOG.warning("Registration attempt %d/%d rejected: %s", attempt, max_attempts, resp.get("message"))
        if attempt < max_attempts:
            time.sleep(delay)
            delay = min(delay * 2, max_delay)
    raise RuntimeError(f"Failed to register worker {worker_id} after {max_attempts} attempts") from last_exc


def heartbeat_loop(
    master_address: str,
    worker_id: str,
    interval_seconds: float = 5.0,
    stop: Optional[threading.Event] = None,
    max_initial_delay: float = 2.0,
):
    """Send heartbeats to the master until ``stop`` is set.

    A rejected heartbeat means the master dropped this worker (it missed the
    health check window), so the worker registers again and rejoins the pool.
    Jitter spreads the heartbeats of many workers apart.
    """
    stop = stop or threading.Event()
    if stop.wait(random.uniform(0, max_initial_delay)):
        return

    while not stop.is_set():
        sleep_time = interval_seconds * (1 + 0.1 * (2 * random.random() - 1))
        try:
            with grpc.insecure_channel(master_address) as ch:
                response = rpc.stub(ch, rpc.REGISTRY_SERVICE, "Heartbeat")({"worker_id": worker_id})
            if response.get("ok"):
                LOG.debug("Heartbeat acknowledged by master (next in ~%.1fs)", sleep_time)
            else:
                LOG.warning("Heartbeat rejected by master (%s); registering again", response.get("message"))
                register_with_retry(master_address, worker_id, max_attempts=3, initial_delay=interval_seconds)
        except Exception as e:
            LOG.warning("Heartbeat failed: %s (will retry in ~%.1fs)", e, sleep_time)
        stop.wait(sleep_time)


def handle_run_task(request: dict) -> dict:
    task = request["task"]
    LOG.info("[%s] task_id=%s", task["phase"], task["task_id"])
    try:
        result = run_task(task)
        LOG.info("[%s] task %s complete", task["phase"], task["task_id"])
        return {"ok": True, "message": "task done", "result": result}
    except Exception as e:
        LOG.error("[%s] task %s failed: %s", task["phase"], task["task_id"], e, exc_info=True)
        return {"ok": False, "message": str(e)}


def make_task_server(bind: str, max_workers: int = 1) -> Tuple[grpc.Server, int]:
    server = grpc.server(futures.ThreadPoolExecutor(max_workers=max_workers))
    server.add_generic_rpc_handlers((rpc.service_handler(rpc.WORKER_SERVICE, {"RunTask": handle_run_task}),))
    port = server.add_insecure_port(bind)
    return server, port


def start_worker(master_address: str, host: str, port: int = TASK_SERVER_PORT, heartbeat_interval: float = 5.0):
    server, port = make_task_server(f"[::]:{port}")
    server.start()
    worker_id = f"{host}:{port}"
    LOG.info("Worker task server listening on %d", port)
    register_with_retry(master_address, worker_id)
    stop = threading.Event()
    threading.Thread(
        target=heartbeat_loop,
        args=(master_address, worker_id, heartbeat_interval, stop),
        daemon=True,
    ).start()
    try:
        server.wait_for_termination()
    except KeyboardInterrupt:
        LOG.info("Shutting down worker %s", worker_id)
        stop.set()
        server.stop(grace=None)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="tfidf-worker", description="Run a TF-IDF task worker.")
    parser.add_argument("--master", default="localhost:8081", help="Master registry address (default: localhost:8081)")
    parser.add_argument("--host", default=socket.gethostname(), help="Host name the master uses to reach this worker")
    parser.add_argument("--port", type=int, default=TASK_SERVER_PORT, help=f"Task server port (default: {TASK_SERVER_PORT})")
    parser.add_argument("--heartbeat", type=float, default=5.0, help="Heartbeat interval in seconds (default: 5)")
    return parser.parse_args(argv)


def main(argv=None):
    logging.basicConfig(
        level=logging.INFO,
        format="[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    args = parse_args(argv)
    try:
        start_worker(args.master, args.host, args.port, args.heartbeat)
    except Exception as e:
        LOG.error("Worker failed: %s", e)
        raise


if __name__ == "__main__":
    main()
