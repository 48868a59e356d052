import os
import unittest
from unittest.mock import patch

import numpy as np

from keypool.domain import KernelLaunchError
from keypool.infrastructure.launch import (
    BLOCK_SIZE_ENV,
    DEFAULT_BLOCK_SIZE,
    LaunchConfig,
    check_buffers,
    default_block_size,
    get_last_error,
    launch,
    peek_last_error,
)


class TestLaunchConfig(unittest.TestCase):
    def test_grid_size_rounds_up(self):
        self.assertEqual(LaunchConfig(1000, 256).grid_size, 4)
        self.assertEqual(LaunchConfig(1024, 256).grid_size, 4)
        self.assertEqual(LaunchConfig(1, 256).grid_size, 1)

    def test_valid_config(self):
        self.assertIsNone(LaunchConfig(10, 32).validate())

    def test_invalid_block_sizes(self):
        self.assertIn("block size", LaunchConfig(10, 0).validate())
        self.assertIn("block size", LaunchConfig(10, 2048).validate())

    def test_empty_grid_is_invalid(self):
        self.assertIn("empty grid", LaunchConfig(0, 256).validate())

    def test_default_block_size_from_environment(self):
        with patch.dict(os.environ, {BLOCK_SIZE_ENV: "64"}):
            self.assertEqual(default_block_size(), 64)
            self.assertEqual(LaunchConfig(10).block_size, 64)
        with patch.dict(os.environ, {BLOCK_SIZE_ENV: ""}):
            self.assertEqual(default_block_size(), DEFAULT_BLOCK_SIZE)

    def test_default_block_size_rejects_garbage(self):
        with patch.dict(os.environ, {BLOCK_SIZE_ENV: "lots"}):
            with self.assertRaises(ValueError):
                default_block_size()

    def test_for_workers(self):
        self.assertEqual(LaunchConfig.for_workers(5, 8), LaunchConfig(5, 8))


class TestLaunch(unittest.TestCase):
    def setUp(self) -> None:
        get_last_error()

    def test_every_worker_runs_exactly_once(self):
        hits = np.zeros(1000, dtype=np.int64)

        def body(ids, out):
            np.add.at(out, ids, 1)

        ok = launch("count", body, LaunchConfig(1000, 3), hits)
        self.assertTrue(ok)
        np.testing.assert_array_equal(hits, np.ones(1000, dtype=np.int64))
        self.assertIsNone(peek_last_error())

    def test_rejected_config_is_logged_and_recorded(self):
        calls = []
        with self.assertLogs("keypool", level="ERROR") as logs:
            ok = launch("bad", lambda ids: calls.append(ids), LaunchConfig(10, 0))
        self.assertFalse(ok)
        self.assertEqual(calls, [])
        self.assertIn("bad", logs.output[0])

        err = get_last_error()
        self.assertIsInstance(err, KernelLaunchError)
        self.assertEqual(err.kernel, "bad")
        self.assertIsNone(get_last_error())

    def test_worker_fault_is_reported_not_raised(self):
        buf = np.zeros(4)

        def body(ids, out):
            out[ids + 10] = 1.0

        with self.assertLogs("keypool", level="ERROR"):
            ok = launch("oob", body, LaunchConfig(4, 4), buf)
        self.assertFalse(ok)
        self.assertIn("illegal memory access", peek_last_error().reason)

    def test_fault_in_later_wave_leaves_written_buffers_untouched(self):
        # block size 1 -> 64 workers per wave; worker 99 faults in the second wave
        out = np.full(100, -1.0)
        acc = np.zeros(4)

        def body(ids, out, acc):
            out[ids] = ids
            np.add.at(acc, ids % 4, 1.0)
            out[np.where(ids == 99, 1000, ids)] += 0.0

        with self.assertLogs("keypool", level="ERROR"):
            ok = launch("partial", body, LaunchConfig(100, 1), out, acc, writes=(0, 1))
        self.assertFalse(ok)
        np.testing.assert_array_equal(out, np.full(100, -1.0))
        np.testing.assert_array_equal(acc, np.zeros(4))

    def test_written_buffers_are_committed_on_success(self):
        out = np.zeros(130)
        ok = launch(
            "fill", lambda ids, o: o.__setitem__(ids, 2.0), LaunchConfig(130, 1), out, writes=(0,)
        )
        self.assertTrue(ok)
        np.testing.assert_array_equal(out, np.full(130, 2.0))

    def test_unused_optional_write_slot(self):
        out = np.zeros(3)

        def body(ids, o, extra):
            o[ids] = 1.0

        self.assertTrue(launch("opt", body, LaunchConfig(3, 1), out, None, writes=(0, 1)))
        np.testing.assert_array_equal(out, np.ones(3))


class TestCheckBuffers(unittest.TestCase):
    def setUp(self) -> None:
        get_last_error()

    def test_accepts_large_enough_flat_buffers(self):
        self.assertTrue(check_buffers("k", ("a", np.zeros(8), 8), ("b", np.zeros(9), 4)))

    def test_rejects_short_buffer(self):
        with self.assertLogs("keypool", level="ERROR"):
            self.assertFalse(check_buffers("k", ("out", np.zeros(3), 4)))
        self.assertIn("'out'", get_last_error().reason)

    def test_rejects_non_flat_buffer(self):
        with self.assertLogs("keypool", level="ERROR"):
            self.assertFalse(check_buffers("k", ("out", np.zeros((2, 2)), 4)))
        self.assertIn("flat", get_last_error().reason)


if __name__ == "__main__":
    unittest.main()
