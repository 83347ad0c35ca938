"""Unit tests for hash partitioning."""

import unittest

import pandas as pd

from tfidf_engine.partitioning import partition_ids, split_by_partition


class TestPartitioning(unittest.TestCase):
    def setUp(self):
        self.frame = pd.DataFrame({
            "document_id": [f"doc{i % 7}" for i in range(100)],
            "token": [f"tok{i % 13}" for i in range(100)],
        })

    def test_partition_ids_are_deterministic(self):
        first = partition_ids(self.frame, ["token"], 5)
        second = partition_ids(self.frame.copy(), ["token"], 5)
        self.assertEqual(list(first), list(second))
        self.assertTrue(((first >= 0) & (first < 5)).all())

    def test_same_key_same_partition_regardless_of_row_order(self):
        shuffled = self.frame.sample(frac=1.0, random_state=7).reset_index(drop=True)
        placed = {}
        for frame in (self.frame, shuffled):
            for token, rid in zip(frame["token"], partition_ids(frame, ["token"], 4)):
                self.assertEqual(placed.setdefault(token, rid), rid)

    def test_split_keeps_every_row_once(self):
        parts = split_by_partition(self.frame, ["document_id", "token"], 3)
        self.assertEqual(len(parts), 3)
        self.assertEqual(sum(len(p) for p in parts), len(self.frame))
        keys = [set(zip(p["document_id"], p["token"])) for p in parts]
        for i in range(3):
            for j in range(i + 1, 3):
                self.assertFalse(keys[i] & keys[j])

    def test_empty_frame_gives_empty_partitions(self):
        parts = split_by_partition(pd.DataFrame(columns=["token"]), ["token"], 4)
        self.assertEqual(len(parts), 4)
        self.assertTrue(all(p.empty for p in parts))


if __name__ == '__main__':
    unittest.main()
