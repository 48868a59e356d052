import unittest
import warnings

import numpy as np

from keypool.domain import PoolGeometry, PoolMethod
from keypool.infrastructure.ops.pool2d_offsets import (
    SENTINEL,
    OffsetTable,
    build_offset_table,
)


class TestBuildOffsetTable(unittest.TestCase):
    def test_no_padding_tables_agree(self):
        g = PoolGeometry.square(2, 2, 0)
        avg = build_offset_table(g, 4, 4, PoolMethod.AVG)
        mx = build_offset_table(g, 4, 4, "max")

        self.assertEqual((avg.window_size, avg.pooled_size), (4, 4))
        np.testing.assert_array_equal(avg.offsets, mx.offsets)
        # column 0 is the top-left window, taps row-major
        np.testing.assert_array_equal(avg.offsets[:, 0], [0, 1, 4, 5])
        np.testing.assert_array_equal(avg.offsets[:, 3], [10, 11, 14, 15])
        self.assertEqual(avg.raw().shape, (16,))

    def test_avg_table_marks_padding_with_sentinel(self):
        g = PoolGeometry.square(3, 1, 1)
        t = build_offset_table(g, 3, 3, PoolMethod.AVG)
        self.assertEqual(t.method, PoolMethod.AVG)
        # top-left output: taps (-1,-1),(-1,0),(-1,1),(0,-1),(0,0),(0,1),(1,-1),(1,0),(1,1)
        np.testing.assert_array_equal(
            t.offsets[:, 0], [SENTINEL, SENTINEL, SENTINEL, SENTINEL, 0, 1, SENTINEL, 3, 4]
        )
        self.assertEqual(int(t.valid[:, 0].sum()), 4)
        self.assertTrue(np.all(t.valid[:, 4]))

    def test_max_table_valid_first_then_repeat(self):
        g = PoolGeometry.square(3, 1, 1)
        t = build_offset_table(g, 3, 3, PoolMethod.MAX)
        np.testing.assert_array_equal(t.offsets[:, 0], [0, 1, 3, 4, 4, 4, 4, 4, 4])
        self.assertTrue(np.all(t.valid))

    def test_max_table_is_accepted_by_from_raw_without_warning(self):
        g = PoolGeometry(window_width=3, window_height=2, stride_x=2, pad_left=2, pad_top=1)
        t = build_offset_table(g, 7, 5, PoolMethod.MAX)
        with warnings.catch_warnings():
            warnings.simplefilter("error")
            again = OffsetTable.from_raw(t.raw(), t.window_size, t.pooled_size, "max")
        np.testing.assert_array_equal(again.offsets, t.offsets)


class TestOffsetTableFromRaw(unittest.TestCase):
    def test_wraps_avg_table(self):
        raw = np.array([0, 1, -1, 3], dtype=np.int32)
        t = OffsetTable.from_raw(raw, window_size=2, pooled_size=2)
        self.assertEqual(t.method, PoolMethod.AVG)
        self.assertEqual(t.offsets.dtype, np.int64)
        np.testing.assert_array_equal(t.valid, [[True, True], [False, True]])

    def test_rejects_float_tables(self):
        with self.assertRaises(ValueError):
            OffsetTable.from_raw(np.zeros(4), 2, 2)

    def test_rejects_wrong_size(self):
        with self.assertRaises(ValueError):
            OffsetTable.from_raw(np.zeros(5, dtype=np.int64), 2, 2)

    def test_rejects_entries_below_sentinel(self):
        with self.assertRaises(ValueError):
            OffsetTable.from_raw(np.array([0, -2, 1, 1]), 2, 2)

    def test_max_table_needs_valid_first_tap(self):
        with self.assertRaises(ValueError):
            OffsetTable.from_raw(np.array([-1, 0, 1, 1]), 2, 2, PoolMethod.MAX)

    def test_max_table_with_taps_after_repeat_warns(self):
        # column 0: 0, 0, 5 -> tap 5 is hidden behind the repeat
        raw = np.array([0, 2, 0, 3, 5, 3], dtype=np.int64)
        with self.assertWarns(RuntimeWarning):
            OffsetTable.from_raw(raw, window_size=3, pooled_size=2, method="max")


if __name__ == "__main__":
    unittest.main()
