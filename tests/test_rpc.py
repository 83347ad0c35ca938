import os
import tempfile
import threading
import time
import unittest

from tfidf_engine import rpc
from tfidf_engine.client import FlowClient
from tfidf_engine.config import RunConfig
from tfidf_engine.errors import NoWorkersError, PipelineError, TaskFailedError
from tfidf_engine.master import FlowService, RegistryService, WorkerRegistry, health_monitor, make_master_server
from tfidf_engine.pipeline import run_pipeline
from tfidf_engine.worker import handle_run_task, heartbeat_loop, make_task_server, register_with_retry

TOKENS = "doc1\ta\ndoc1\tb\ndoc1\ta\ndoc2\tb\ndoc2\tc\ndoc3\ta\ndoc3\tc\ndoc3\tc\n"


class TestCodec(unittest.TestCase):
    def test_ints_survive_the_wire(self):
        payload = {"index": 3, "params": {"keys": ["token"], "value": None, "tag": {}}, "limit": 0.5}
        decoded = rpc.decode(rpc.encode(payload))
        self.assertEqual(decoded, payload)
        self.assertIsInstance(decoded["index"], int)


class TestRegistry(unittest.TestCase):
    def test_acquire_and_release(self):
        registry = WorkerRegistry()
        registry.upsert("w1:1")
        registry.upsert("w2:1")
        registry.upsert("w1:1")
        self.assertEqual(sorted(registry.list_workers()), ["w1:1", "w2:1"])
        first = registry.acquire()
        second = registry.acquire()
        self.assertEqual({first, second}, {"w1:1", "w2:1"})
        self.assertIsNone(registry.acquire())
        registry.release(first)
        self.assertEqual(registry.acquire(), first)

    def test_dead_workers_are_removed(self):
        registry = WorkerRegistry()
        registry.upsert("alive:1")
        registry.upsert("dead:1")
        registry._workers["dead:1"]["last_heartbeat"] = time.time() - 60
        self.assertEqual(health_monitor(registry, check_count=1, timeout_s=15.0), ["dead:1"])
        self.assertEqual(registry.list_workers(), ["alive:1"])
        self.assertEqual(registry.acquire(), "alive:1")
        self.assertIsNone(registry.acquire())

    def test_registry_service(self):
        service = RegistryService(WorkerRegistry())
        self.assertTrue(service.register({"id": "w1:1"})["ok"])
        self.assertTrue(service.heartbeat({"worker_id": "w1:1"})["ok"])
        self.assertFalse(service.heartbeat({"worker_id": "stranger:1"})["ok"])

    def test_run_without_workers_fails(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "tokens.tsv")
            with open(path, "w") as f:
                f.write(TOKENS)
            config = RunConfig(
                inputs=(path,), work_dir=os.path.join(tmp, "work"),
                tfidf_output=os.path.join(tmp, "tfidf.tsv"), word_count_output=os.path.join(tmp, "wc.tsv"),
                worker_wait_timeout=0.2,
            )
            with self.assertRaises(NoWorkersError) as ctx:
                run_pipeline(config, backend=WorkerRegistry())
            self.assertIn("no workers available", str(ctx.exception))

            reply = FlowService(WorkerRegistry()).run_flow({"config": config.to_dict()})
            self.assertFalse(reply["ok"])
            self.assertIn("NoWorkersError", reply["message"])
            self.assertFalse(os.path.exists(os.path.join(tmp, "tfidf.tsv")))

    def test_submit_to_unknown_worker(self):
        with self.assertRaises(TaskFailedError):
            WorkerRegistry().submit("gone:1", {"task_id": "t"})


class TestWorkerLiveness(unittest.TestCase):
    def test_dropped_worker_registers_again(self):
        registry = WorkerRegistry()
        master, port = make_master_server(registry, "localhost:0", "localhost:0")
        master.start()
        self.addCleanup(master.stop, None)
        address = f"localhost:{port}"
        register_with_retry(address, "w1:1", max_attempts=3, initial_delay=0.1)
        self.assertEqual(registry.list_workers(), ["w1:1"])

        stop = threading.Event()
        beats = threading.Thread(target=heartbeat_loop, args=(address, "w1:1", 0.1, stop, 0.0), daemon=True)
        beats.start()
        self.addCleanup(beats.join, 5)
        self.addCleanup(stop.set)

        # As if the health monitor had dropped it after missed heartbeats.
        registry.remove("w1:1")
        deadline = time.time() + 5
        while not registry.list_workers() and time.time() < deadline:
            time.sleep(0.05)
        self.assertEqual(registry.list_workers(), ["w1:1"])
        self.assertEqual(registry.acquire(), "w1:1")


class TestWorkerHandler(unittest.TestCase):
    def test_failure_is_reported_not_raised(self):
        task = {"task_id": "t/read/data-0", "phase": "read", "stage": {"name": "t", "kind": "map"}, "flow_dir": "/tmp"}
        reply = handle_run_task({"task": task})
        self.assertFalse(reply["ok"])
        self.assertIn("no handler", reply["message"])


class TestRemoteRun(unittest.TestCase):
    """A full run where every task crosses gRPC to worker servers."""

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        path = os.path.join(self.tmp.name, "tokens.tsv")
        with open(path, "w") as f:
            f.write(TOKENS)
        self.config = RunConfig(
            inputs=(path,),
            work_dir=os.path.join(self.tmp.name, "work"),
            tfidf_output=os.path.join(self.tmp.name, "out", "tfidf.tsv"),
            word_count_output=os.path.join(self.tmp.name, "out", "wc.tsv"),
            num_partitions=2,
        )
        self.registry = WorkerRegistry()
        for _ in range(2):
            server, port = make_task_server("localhost:0", max_workers=2)
            server.start()
            self.addCleanup(server.stop, None)
            self.registry.upsert(f"localhost:{port}")

    def test_pipeline_over_grpc_workers(self):
        result = run_pipeline(self.config, backend=self.registry)
        self.assertEqual(result.report.n_docs, 3)
        self.assertEqual(result.report.tokens_read, 8)
        self.assertEqual({r.token: r.count for r in result.word_count_records()}, {"a": 3, "b": 2, "c": 3})
        self.assertTrue(all(r.weight == 0.0 for r in result.tfidf_records()))
        self.assertEqual(len(self.registry.list_workers()), 2)

    def test_flow_service(self):
        reply = FlowService(self.registry).run_flow({"config": self.config.to_dict()})
        self.assertTrue(reply["ok"], reply["message"])
        self.assertEqual(reply["report"]["n_docs"], 3)

        broken = dict(self.config.to_dict(), inputs=[os.path.join(self.tmp.name, "missing.tsv")], max_task_attempts=1)
        reply = FlowService(self.registry).run_flow({"config": broken})
        self.assertFalse(reply["ok"])
        self.assertIn("RetriesExhaustedError", reply["message"])

    def test_client_round_trip(self):
        master, port = make_master_server(self.registry, "localhost:0", "localhost:0")
        master.start()
        self.addCleanup(master.stop, None)
        with FlowClient(f"localhost:{port}") as client:
            report = client.run_flow(self.config, timeout=60)
            self.assertEqual(report["n_docs"], 3)
            with self.assertRaises(PipelineError):
                client.run_flow(self.config.with_overrides(inputs=(), max_task_attempts=1), timeout=60)


if __name__ == '__main__':
    unittest.main()
