import contextlib
import io
import json
import os
import tempfile
import unittest

import pandas as pd

from tfidf_engine import cli, storage
from tfidf_engine.config import JoinStrategy, RunConfig


class TestRunConfig(unittest.TestCase):
    def test_defaults(self):
        config = RunConfig()
        self.assertEqual(config.corpus_join, JoinStrategy.BROADCAST)
        self.assertEqual(config.term_join, JoinStrategy.SHUFFLE)
        self.assertEqual(config.flow_dir, "/tmp/tfidf-engine/tfidf")

    def test_from_env(self):
        environ = {
            "TFIDF_INPUTS": "a.tsv,b.parquet",
            "TFIDF_NUM_PARTITIONS": "8",
            "TFIDF_TERM_JOIN": "broadcast",
            "TFIDF_POLL_INTERVAL": "0.5",
            "UNRELATED": "x",
        }
        config = RunConfig.from_env(environ, num_partitions=2, flow_name=None)
        self.assertEqual(config.inputs, ("a.tsv", "b.parquet"))
        self.assertEqual(config.num_partitions, 2)
        self.assertEqual(config.term_join, JoinStrategy.BROADCAST)
        self.assertEqual(config.poll_interval, 0.5)
        self.assertEqual(config.flow_name, "tfidf")

    def test_dict_round_trip(self):
        config = RunConfig(inputs=["x.tsv"], corpus_join="shuffle", num_workers=2)
        again = RunConfig.from_dict(dict(config.to_dict(), num_workers=2.0, unknown="ignored"))
        self.assertEqual(again, config)
        self.assertIsInstance(again.num_workers, int)

    def test_rejects_bad_values(self):
        with self.assertRaises(ValueError):
            RunConfig(num_partitions=0)
        with self.assertRaises(ValueError):
            RunConfig(max_task_attempts=0)
        with self.assertRaises(ValueError):
            RunConfig(term_join="sideways")


class TestStorage(unittest.TestCase):
    def test_write_lines_replaces_existing_file(self):
        with tempfile.TemporaryDirectory() as tmp:
            filesystem, path = storage.resolve(os.path.join(tmp, "nested", "out.tsv"))
            storage.write_lines(filesystem, path, ["old"])
            storage.write_lines(filesystem, path, ["h", "1"])
            self.assertEqual(storage.read_text(path), "h\n1\n")
            self.assertFalse(os.path.exists(path + ".tmp"))

    def test_missing_shuffle_file_is_an_error(self):
        with tempfile.TemporaryDirectory() as tmp:
            filesystem, stage_path = storage.resolve(os.path.join(tmp, "stage"))
            frame = pd.DataFrame({"token": ["a"], "df_count": [1]})
            storage.write_frame(filesystem, storage.shuffle_path(stage_path, "data", 0, 0), frame)
            with self.assertRaises(IOError):
                storage.read_shuffle(filesystem, stage_path, "data", 0, 2, ["token", "df_count"])
            self.assertEqual(len(storage.read_shuffle(filesystem, stage_path, "data", 0, 1, ["token", "df_count"])), 1)


class TestCli(unittest.TestCase):
    def test_tokenize_then_run(self):
        with tempfile.TemporaryDirectory() as tmp:
            docs = os.path.join(tmp, "docs.tsv")
            with open(docs, "w") as f:
                f.write("doc_id\ttext\n")
                f.write("d1\tRain falls, rain stops.\n")
                f.write("d2\tThe sun (finally).\n")
                f.write("d3\tSun and rain\n")
            tokens = os.path.join(tmp, "tokens.tsv")
            self.assertEqual(cli.main(["tokenize", docs, tokens]), 0)
            with open(tokens) as f:
                self.assertIn("d1\train\n", f.read())

            out = io.StringIO()
            with contextlib.redirect_stdout(out):
                code = cli.main([
                    "run", tokens,
                    "--work-dir", os.path.join(tmp, "work"),
                    "--tfidf-output", os.path.join(tmp, "tfidf.tsv"),
                    "--wc-output", os.path.join(tmp, "wc.tsv"),
                    "--num-partitions", "2",
                    "--corpus-join", "shuffle",
                ])
            self.assertEqual(code, 0)
            report = json.loads(out.getvalue())
            self.assertEqual(report["n_docs"], 3)
            self.assertTrue(os.path.exists(os.path.join(tmp, "tfidf.tsv")))

    def test_failed_run_exits_nonzero(self):
        with tempfile.TemporaryDirectory() as tmp:
            tokens = os.path.join(tmp, "tokens.tsv")
            with open(tokens, "w") as f:
                f.write("no-token-here\n")
            err = io.StringIO()
            with contextlib.redirect_stderr(err):
                code = cli.main(["run", tokens, "--work-dir", os.path.join(tmp, "work"),
                                 "--tfidf-output", os.path.join(tmp, "tfidf.tsv"),
                                 "--wc-output", os.path.join(tmp, "wc.tsv")])
            self.assertEqual(code, 1)
            self.assertIn("Run failed", err.getvalue())


if __name__ == '__main__':
    unittest.main()
