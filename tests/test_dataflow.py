"""Unit tests for the dataflow graph."""

import unittest

from tfidf_engine.config import JoinStrategy, RunConfig
from tfidf_engine import dataflow
from tfidf_engine.dataflow import Dataflow, Stage, StageKind, build_tfidf_flow
from tfidf_engine.errors import DataflowError
from tfidf_engine.tasks import plan_tasks


class TestTfIdfFlow(unittest.TestCase):
    def setUp(self):
        self.config = RunConfig(inputs=("a.tsv", "b.tsv", "c.tsv"), num_partitions=4)
        self.flow = build_tfidf_flow(self.config)

    def test_validates(self):
        self.flow.validate()

    def test_three_branches_read_the_token_stream(self):
        readers = {dst for src, dst in self.flow.edges if src == dataflow.TOKENS}
        self.assertEqual(readers, {dataflow.TERM_FREQUENCY, dataflow.DOC_TERMS, dataflow.DOCUMENTS})

    def test_word_count_reuses_term_frequency(self):
        self.assertEqual(self.flow.stages[dataflow.WORD_COUNT].inputs, (dataflow.TERM_FREQUENCY,))

    def test_topological_order_respects_edges(self):
        order = self.flow.topological_order()
        position = {name: i for i, name in enumerate(order)}
        for src, dst in self.flow.edges:
            self.assertLess(position[src], position[dst])

    def test_partition_counts(self):
        counts = self.flow.partition_counts(self.config.num_partitions)
        self.assertEqual(counts[dataflow.TOKENS], 3)
        self.assertEqual(counts[dataflow.TERM_FREQUENCY], 4)
        # Broadcast join keeps the left side's partitioning.
        self.assertEqual(counts[dataflow.DF_WITH_CORPUS], counts[dataflow.DOCUMENT_FREQUENCY])
        self.assertEqual(counts[dataflow.TFIDF], counts[dataflow.JOINED])

    def test_join_strategies_follow_config(self):
        self.assertEqual(self.flow.stages[dataflow.DF_WITH_CORPUS].phases(), [dataflow.BROADCAST_PHASE])
        self.assertEqual(self.flow.stages[dataflow.JOINED].phases(), [dataflow.MAP_PHASE, dataflow.REDUCE_PHASE])
        swapped = build_tfidf_flow(RunConfig(
            inputs=("a.tsv",), corpus_join=JoinStrategy.SHUFFLE, term_join=JoinStrategy.BROADCAST,
        ))
        self.assertEqual(swapped.stages[dataflow.DF_WITH_CORPUS].strategy, JoinStrategy.SHUFFLE)
        self.assertEqual(swapped.stages[dataflow.JOINED].strategy, JoinStrategy.BROADCAST)

    def test_stage_survives_dict_conversion(self):
        stage = self.flow.stages[dataflow.CORPUS]
        self.assertEqual(Stage.from_dict(stage.to_dict()), stage)

    def test_plan_shuffle_join_tasks(self):
        counts = self.flow.partition_counts(self.config.num_partitions)
        stage = self.flow.stages[dataflow.JOINED]
        maps = plan_tasks(self.flow, stage, dataflow.MAP_PHASE, self.config, counts)
        sides = [t["side"] for t in maps]
        self.assertEqual(sides.count("left"), counts[dataflow.TERM_FREQUENCY])
        self.assertEqual(sides.count("right"), counts[dataflow.DF_WITH_CORPUS])
        reduces = plan_tasks(self.flow, stage, dataflow.REDUCE_PHASE, self.config, counts)
        self.assertEqual([t["index"] for t in reduces], list(range(4)))
        self.assertEqual(len({t["task_id"] for t in maps + reduces}), len(maps) + len(reduces))


class TestValidation(unittest.TestCase):
    def test_unknown_input(self):
        flow = Dataflow("bad")
        flow.map("weights", "missing", "tfidf_weight", columns=["token"])
        with self.assertRaises(DataflowError):
            flow.validate()

    def test_duplicate_stage(self):
        flow = Dataflow("bad")
        flow.source("tokens", ["a.tsv"])
        with self.assertRaises(DataflowError):
            flow.source("tokens", ["b.tsv"])

    def test_cycle(self):
        flow = Dataflow("bad")
        flow.add(Stage("x", StageKind.MAP, ("y",), ("token",), {"transform": "tfidf_weight"}))
        flow.add(Stage("y", StageKind.MAP, ("x",), ("token",), {"transform": "tfidf_weight"}))
        with self.assertRaises(DataflowError):
            flow.validate()

    def test_source_without_inputs(self):
        with self.assertRaises(DataflowError):
            build_tfidf_flow(RunConfig(inputs=())).validate()

    def test_partition_key_must_be_part_of_grouping_key(self):
        flow = Dataflow("bad")
        flow.source("tokens", ["a.tsv"])
        flow.aggregate("tf", "tokens", "count", keys=["token"], partition_by=["document_id"],
                       output="tf_count", columns=["token", "tf_count"])
        with self.assertRaises(DataflowError):
            flow.validate()

    def test_sink_columns_must_exist(self):
        flow = Dataflow("bad")
        flow.source("tokens", ["a.tsv"])
        flow.sink("tokens", "out.tsv", ["token", "weight"])
        with self.assertRaises(DataflowError):
            flow.validate()


if __name__ == '__main__':
    unittest.main()
