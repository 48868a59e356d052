import unittest

import numpy as np

from keypool import PoolGeometry, get_last_error
from keypool.infrastructure.ops.pool2d_cpu import pool2d_backward_cpu, pool2d_forward_cpu
from keypool.infrastructure.ops.pool2d_ext import (
    pool2d_backward,
    pool2d_fast_backward,
    pool2d_fast_forward,
    pool2d_forward,
)
from keypool.infrastructure.ops.pool2d_offsets import build_offset_table


def _try_get_cupy():
    """
    Best-effort CuPy loader. Returns None if CuPy or a CUDA device is not
    available (tests should skip).
    """
    try:
        import cupy as cp

        if cp.cuda.runtime.getDeviceCount() < 1:
            return None
    except Exception:
        return None
    return cp


cp = _try_get_cupy()

_GEOMETRIES = [
    PoolGeometry.square(2, 2, 0),
    PoolGeometry.square(3, 1, 1),
    PoolGeometry.square(5, 2, 2),
    PoolGeometry(window_width=4, window_height=3, stride_x=2, stride_y=1, pad_left=3),
]


@unittest.skipUnless(cp is not None, "CuPy with a CUDA device is required")
class TestPool2dCudaMatchesHost(unittest.TestCase):
    def setUp(self) -> None:
        get_last_error()
        self.rng = np.random.default_rng(42)
        self.width, self.height, self.depth = 9, 7, 3

    def _forward_pair(self, x, g, method):
        pw, ph = g.pooled_extent(self.width, self.height)
        n = pw * ph * self.depth
        host = np.zeros(n, dtype=x.dtype)
        pool2d_forward_cpu(host, x, g, self.width, self.height, self.depth, method)
        dev = cp.zeros(n, dtype=x.dtype)
        pool2d_forward(dev, cp.asarray(x), g, self.width, self.height, self.depth, method)
        self.assertIsNone(get_last_error())
        return host, cp.asnumpy(dev)

    def test_generic_forward(self):
        for dtype in (np.float32, np.float64):
            x = self.rng.standard_normal(self.width * self.height * self.depth).astype(dtype)
            for g in _GEOMETRIES:
                for method in ("max", "avg"):
                    host, dev = self._forward_pair(x, g, method)
                    np.testing.assert_allclose(dev, host, rtol=1e-6, err_msg=f"{g} {method}")

    def test_generic_backward(self):
        x = self.rng.standard_normal(self.width * self.height * self.depth)
        for g in _GEOMETRIES:
            pw, ph = g.pooled_extent(self.width, self.height)
            grad = self.rng.standard_normal(pw * ph * self.depth)
            for method in ("max", "avg"):
                host = np.zeros_like(x)
                pool2d_backward_cpu(host, x, grad, g, self.width, self.height, self.depth, method)
                dev = cp.zeros(x.size, dtype=x.dtype)
                pool2d_backward(
                    dev, cp.asarray(x), cp.asarray(grad), g,
                    self.width, self.height, self.depth, method,
                )
                np.testing.assert_allclose(cp.asnumpy(dev), host, rtol=1e-10, atol=1e-12)

    def test_fast_forward_matches_generic(self):
        x = cp.asarray(self.rng.standard_normal(self.width * self.height * self.depth))
        for g in _GEOMETRIES:
            for method in ("max", "avg"):
                table = build_offset_table(g, self.width, self.height, method)
                n = table.pooled_size * self.depth
                fast = cp.zeros(n)
                pool2d_fast_forward(fast, x, table, self.width * self.height, self.depth, method)
                generic = cp.zeros(n)
                pool2d_forward(generic, x, g, self.width, self.height, self.depth, method)
                np.testing.assert_array_equal(cp.asnumpy(fast), cp.asnumpy(generic))

    def test_fast_backward_matches_generic(self):
        x = cp.asarray(self.rng.standard_normal(self.width * self.height * self.depth))
        for g in _GEOMETRIES:
            for method in ("max", "avg"):
                table = build_offset_table(g, self.width, self.height, method)
                grad = cp.asarray(self.rng.standard_normal(table.pooled_size * self.depth))
                fast = cp.zeros(x.size)
                pool2d_fast_backward(
                    fast, x, grad, table, self.width * self.height, self.depth, method
                )
                generic = cp.zeros(x.size)
                pool2d_backward(generic, x, grad, g, self.width, self.height, self.depth, method)
                np.testing.assert_allclose(
                    cp.asnumpy(fast), cp.asnumpy(generic), rtol=1e-10, atol=1e-12
                )

    def test_bad_block_size_is_reported(self):
        out = cp.zeros(4, dtype=cp.float32)
        data = cp.arange(16, dtype=cp.float32)
        with self.assertLogs("keypool", level="ERROR"):
            pool2d_forward(out, data, PoolGeometry.square(2), 4, 4, 1, "max", block_size=0)
        self.assertIn("invalid configuration argument", get_last_error().reason)
        self.assertEqual(float(out.sum()), 0.0)


if __name__ == "__main__":
    unittest.main()
