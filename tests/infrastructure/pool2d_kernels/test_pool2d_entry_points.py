import sys
import unittest
from unittest.mock import patch

import numpy as np

from keypool import (
    Device,
    DeviceMismatchError,
    DeviceNotSupportedError,
    KernelLaunchError,
    PoolGeometry,
    avgpool2d_backward_nchw,
    avgpool2d_forward_nchw,
    device_of,
    get_last_error,
    maxpool2d_backward_nchw,
    maxpool2d_forward_nchw,
    pool2d_forward,
    pool2d_forward_nchw,
)
from keypool.infrastructure.ops import pool2d_cuda, pool2d_ext
from keypool.infrastructure.ops.pool2d_ext import CudaKernels, HostKernels, kernels_for


class TestDeviceDispatch(unittest.TestCase):
    def test_device_of_numpy(self):
        self.assertEqual(device_of(np.zeros(3)), Device("cpu"))

    def test_device_of_rejects_lists(self):
        with self.assertRaises(TypeError):
            device_of([1.0, 2.0])

    def test_kernels_for(self):
        self.assertIsInstance(kernels_for(Device("cpu")), HostKernels)
        self.assertIsInstance(kernels_for(Device("cuda:0")), CudaKernels)

    def test_mixed_devices_are_rejected(self):
        devices = iter([Device("cpu"), Device("cuda:0")])
        with patch.object(pool2d_ext, "device_of", side_effect=lambda _: next(devices)):
            with self.assertRaises(DeviceMismatchError):
                pool2d_forward(
                    np.zeros(4),
                    np.zeros(16),
                    PoolGeometry.square(2),
                    4,
                    4,
                    1,
                    "max",
                )

    def test_missing_cupy_is_not_silently_replaced(self):
        pool2d_cuda._load_cupy.cache_clear()
        try:
            with patch.dict(sys.modules, {"cupy": None}):
                with self.assertRaises(DeviceNotSupportedError):
                    pool2d_cuda._load_cupy()
        finally:
            pool2d_cuda._load_cupy.cache_clear()


class TestNchwWrappers(unittest.TestCase):
    def setUp(self) -> None:
        get_last_error()
        self.x = np.arange(1, 33, dtype=np.float32).reshape(2, 1, 4, 4)

    def test_maxpool_forward_backward(self):
        y, argmax = maxpool2d_forward_nchw(self.x, kernel_size=2)
        self.assertEqual(y.shape, (2, 1, 2, 2))
        np.testing.assert_array_equal(y[0, 0], [[6, 8], [14, 16]])
        np.testing.assert_array_equal(y[1, 0], [[22, 24], [30, 32]])
        self.assertEqual(argmax.shape, y.shape)

        grad = np.ones_like(y)
        dx = maxpool2d_backward_nchw(grad, self.x, kernel_size=2, argmax=argmax)
        self.assertEqual(dx.shape, self.x.shape)
        self.assertEqual(dx.sum(), 8.0)
        self.assertEqual(dx[0, 0, 1, 1], 1.0)
        self.assertEqual(dx[0, 0, 0, 0], 0.0)

    def test_fast_maxpool_has_no_argmax(self):
        y_fast, argmax = maxpool2d_forward_nchw(self.x, kernel_size=3, stride=1, padding=1, fast=True)
        y, _ = maxpool2d_forward_nchw(self.x, kernel_size=3, stride=1, padding=1)
        self.assertIsNone(argmax)
        np.testing.assert_array_equal(y_fast, y)

        grad = np.random.default_rng(0).standard_normal(y.shape).astype(np.float32)
        np.testing.assert_allclose(
            maxpool2d_backward_nchw(grad, self.x, kernel_size=3, stride=1, padding=1, fast=True),
            maxpool2d_backward_nchw(grad, self.x, kernel_size=3, stride=1, padding=1),
            rtol=1e-6,
        )

    def test_avgpool_forward_backward(self):
        y = avgpool2d_forward_nchw(self.x, kernel_size=2)
        np.testing.assert_array_equal(y[0, 0], [[3.5, 5.5], [11.5, 13.5]])
        np.testing.assert_array_equal(avgpool2d_forward_nchw(self.x, kernel_size=2, fast=True), y)

        dx = avgpool2d_backward_nchw(np.ones_like(y), self.x, kernel_size=2)
        np.testing.assert_array_equal(dx, np.full(self.x.shape, 0.25, dtype=np.float32))
        dx_fast = avgpool2d_backward_nchw(np.ones_like(y), self.x, kernel_size=2, fast=True)
        np.testing.assert_allclose(dx_fast, dx)

    def test_non_contiguous_input(self):
        x = np.arange(64, dtype=np.float64).reshape(1, 1, 8, 8)[:, :, ::2, ::2]
        y, _ = pool2d_forward_nchw(x, PoolGeometry.square(2), "max")
        np.testing.assert_array_equal(y[0, 0], [[18, 22], [50, 54]])

    def test_launch_failure_is_raised(self):
        with patch.dict("os.environ", {"KEYPOOL_BLOCK_SIZE": "2048"}):
            with self.assertLogs("keypool", level="ERROR"):
                with self.assertRaises(KernelLaunchError) as cm:
                    avgpool2d_forward_nchw(self.x, kernel_size=2)
        self.assertEqual(cm.exception.kernel, "pool2d_avg_forward")
        self.assertIsNone(get_last_error())

    def test_stale_error_does_not_leak_into_next_call(self):
        with self.assertLogs("keypool", level="ERROR"):
            pool2d_forward(np.zeros(1), np.zeros(16), PoolGeometry.square(2), 4, 4, 1, "avg")
        y = avgpool2d_forward_nchw(self.x, kernel_size=2)
        self.assertEqual(y.shape, (2, 1, 2, 2))


if __name__ == "__main__":
    unittest.main()
