"""
CUDA pooling kernels for keypool (CuPy raw kernels).

This module mirrors `pool2d_cpu` and `pool2d_fast_cpu` on the accelerator.
Kernels are written in CUDA C++, compiled once per process through
`cupy.RawModule`, and launched on a flat 1-D grid with one thread per worker.

Key design
----------
- Buffers are flat CuPy arrays already resident on the device; nothing is
  allocated here except a one-element placeholder for an absent argmax.
- Fast-path kernels are templates over the tap count. The enumerated window
  sizes get an instantiation whose loop bound is a compile-time constant
  (unrolled); ``WS = 0`` is the runtime-sized fallback.
- Every backward scatter uses ``atomicAdd``; the average generic backward is
  a gather with a unique writer per input element.
- Launch and execution failures raised by the CUDA driver/runtime are caught
  right after dispatch, recorded in the last-error slot and logged. Entry
  points never raise them.

Requirements
------------
CuPy must be installed (``pip install keypool[cuda]``). Double-precision
``atomicAdd`` requires compute capability 6.0 or newer.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Any, Optional

import numpy as np

from ...domain._errors import DeviceNotSupportedError
from ...domain._geometry import PoolGeometry
from ...domain._pooling import PoolMethod, as_pool_method
from ..launch import LaunchConfig, check_buffers, report_launch_error
from .pool2d_fast_cpu import SPECIALIZED_WINDOW_SIZES, check_table_bounds
from .pool2d_offsets import OffsetTable

logger = logging.getLogger(__name__)

_SOURCE = r"""
template <typename T>
__global__ void pool_max_forward(
    T* output, long long* argmax, const T* data, int recordArgmax,
    int pooledWidth, int pooledHeight, int pooledVolume,
    int width, int height,
    int windowWidth, int windowHeight,
    int strideX, int strideY, int padLeft, int padTop)
{
    int p = threadIdx.x + blockIdx.x * blockDim.x;
    if (p >= pooledVolume) return;
    int px = p % pooledWidth;
    int py = (p / pooledWidth) % pooledHeight;
    int pz = p / (pooledWidth * pooledHeight);

    int x1 = px * strideX - padLeft;
    int y1 = py * strideY - padTop;
    int x2 = min(x1 + windowWidth, width);
    int y2 = min(y1 + windowHeight, height);
    x1 = max(x1, 0);
    y1 = max(y1, 0);

    long long base = (long long)pz * width * height;
    long long bestIdx = base + y1 * width + x1;
    T best = data[bestIdx];
    for (int y = y1; y < y2; ++y) {
        for (int x = x1; x < x2; ++x) {
            long long idx = base + y * width + x;
            T v = data[idx];
            if (v > best) { best = v; bestIdx = idx; }
        }
    }
    output[p] = best;
    if (recordArgmax) argmax[p] = bestIdx;
}

template <typename T>
__global__ void pool_avg_forward(
    T* output, const T* data,
    int pooledWidth, int pooledHeight, int pooledVolume,
    int width, int height,
    int windowWidth, int windowHeight,
    int strideX, int strideY, int padLeft, int padTop)
{
    int p = threadIdx.x + blockIdx.x * blockDim.x;
    if (p >= pooledVolume) return;
    int px = p % pooledWidth;
    int py = (p / pooledWidth) % pooledHeight;
    int pz = p / (pooledWidth * pooledHeight);

    int x1 = px * strideX - padLeft;
    int y1 = py * strideY - padTop;
    int x2 = min(x1 + windowWidth, width);
    int y2 = min(y1 + windowHeight, height);
    x1 = max(x1, 0);
    y1 = max(y1, 0);

    const T* plane = data + (long long)pz * width * height;
    T acc = 0;
    for (int y = y1; y < y2; ++y) {
        for (int x = x1; x < x2; ++x) {
            acc += plane[y * width + x];
        }
    }
    output[p] = acc / (T)((y2 - y1) * (x2 - x1));
}

template <typename T>
__global__ void pool_max_backward(
    T* dzdx, const T* data, const T* dzdy,
    const long long* argmax, int useArgmax,
    int pooledWidth, int pooledHeight, int pooledVolume,
    int width, int height,
    int windowWidth, int windowHeight,
    int strideX, int strideY, int padLeft, int padTop)
{
    int p = threadIdx.x + blockIdx.x * blockDim.x;
    if (p >= pooledVolume) return;
    long long bestIdx;
    if (useArgmax) {
        bestIdx = argmax[p];
    } else {
        int px = p % pooledWidth;
        int py = (p / pooledWidth) % pooledHeight;
        int pz = p / (pooledWidth * pooledHeight);

        int x1 = px * strideX - padLeft;
        int y1 = py * strideY - padTop;
        int x2 = min(x1 + windowWidth, width);
        int y2 = min(y1 + windowHeight, height);
        x1 = max(x1, 0);
        y1 = max(y1, 0);

        long long base = (long long)pz * width * height;
        bestIdx = base + y1 * width + x1;
        T best = data[bestIdx];
        for (int y = y1; y < y2; ++y) {
            for (int x = x1; x < x2; ++x) {
                long long idx = base + y * width + x;
                T v = data[idx];
                if (v > best) { best = v; bestIdx = idx; }
            }
        }
    }
    atomicAdd(dzdx + bestIdx, dzdy[p]);
}

template <typename T>
__global__ void pool_avg_backward(
    T* dzdx, const T* dzdy,
    int pooledWidth, int pooledHeight, int dataVolume,
    int width, int height,
    int windowWidth, int windowHeight,
    int strideX, int strideY, int padLeft, int padTop)
{
    int index = threadIdx.x + blockIdx.x * blockDim.x;
    if (index >= dataVolume) return;
    int x = index % width + padLeft;
    int y = (index / width) % height + padTop;
    int z = index / (width * height);

    int px1 = (x < windowWidth) ? 0 : (x - windowWidth) / strideX + 1;
    int py1 = (y < windowHeight) ? 0 : (y - windowHeight) / strideY + 1;
    int px2 = min(x / strideX + 1, pooledWidth);
    int py2 = min(y / strideY + 1, pooledHeight);

    const T* plane = dzdy + (long long)z * pooledWidth * pooledHeight;
    T grad = 0;
    for (int py = py1; py < py2; ++py) {
        for (int px = px1; px < px2; ++px) {
            int x1 = px * strideX - padLeft;
            int y1 = py * strideY - padTop;
            int x2 = min(x1 + windowWidth, width);
            int y2 = min(y1 + windowHeight, height);
            x1 = max(x1, 0);
            y1 = max(y1, 0);
            grad += plane[py * pooledWidth + px] / (T)((y2 - y1) * (x2 - x1));
        }
    }
    dzdx[index] = grad;
}

template <typename T, int WS>
__global__ void pool_fast_max_forward(
    T* output, const T* data, const long long* table,
    int pooledSize, int pooledVolume, int dataSize, int windowSize)
{
    int p = threadIdx.x + blockIdx.x * blockDim.x;
    if (p >= pooledVolume) return;
    int px = p % pooledSize;
    const T* plane = data + (long long)(p / pooledSize) * dataSize;
    const int taps = WS > 0 ? WS : windowSize;

    long long prev = table[px];
    T best = plane[prev];
#pragma unroll
    for (int i = 1; i < taps; ++i) {
        long long index = table[(long long)i * pooledSize + px];
        if (index == prev || index < 0) break;
        T v = plane[index];
        if (v > best) best = v;
        prev = index;
    }
    output[p] = best;
}

template <typename T, int WS>
__global__ void pool_fast_avg_forward(
    T* output, const T* data, const long long* table,
    int pooledSize, int pooledVolume, int dataSize, int windowSize)
{
    int p = threadIdx.x + blockIdx.x * blockDim.x;
    if (p >= pooledVolume) return;
    int px = p % pooledSize;
    const T* plane = data + (long long)(p / pooledSize) * dataSize;
    const int taps = WS > 0 ? WS : windowSize;

    T acc = 0;
    int count = 0;
#pragma unroll
    for (int i = 0; i < taps; ++i) {
        long long index = table[(long long)i * pooledSize + px];
        if (index >= 0) {
            acc += plane[index];
            ++count;
        }
    }
    output[p] = acc / (T)count;
}

template <typename T, int WS>
__global__ void pool_fast_max_backward(
    T* dzdx, const T* data, const T* dzdy, const long long* table,
    int pooledSize, int pooledVolume, int dataSize, int windowSize)
{
    int p = threadIdx.x + blockIdx.x * blockDim.x;
    if (p >= pooledVolume) return;
    int px = p % pooledSize;
    long long base = (long long)(p / pooledSize) * dataSize;
    const int taps = WS > 0 ? WS : windowSize;

    long long bestIdx = table[px];
    T best = data[base + bestIdx];
#pragma unroll
    for (int i = 1; i < taps; ++i) {
        long long index = table[(long long)i * pooledSize + px];
        if (index < 0) continue;
        T v = data[base + index];
        if (v > best) { best = v; bestIdx = index; }
    }
    atomicAdd(dzdx + base + bestIdx, dzdy[p]);
}

template <typename T, int WS>
__global__ void pool_fast_avg_backward(
    T* dzdx, const T* dzdy, const long long* table,
    int pooledSize, int pooledVolume, int dataSize, int windowSize)
{
    int p = threadIdx.x + blockIdx.x * blockDim.x;
    if (p >= pooledVolume) return;
    int px = p % pooledSize;
    long long base = (long long)(p / pooledSize) * dataSize;
    const int taps = WS > 0 ? WS : windowSize;

    int count = 0;
#pragma unroll
    for (int i = 0; i < taps; ++i) {
        if (table[(long long)i * pooledSize + px] >= 0) ++count;
    }
    if (count == 0) return;
    T share = dzdy[p] / (T)count;
#pragma unroll
    for (int i = 0; i < taps; ++i) {
        long long index = table[(long long)i * pooledSize + px];
        if (index >= 0) atomicAdd(dzdx + base + index, share);
    }
}
"""

_CTYPES = {np.dtype(np.float32): "float", np.dtype(np.float64): "double"}
_GENERIC = ("pool_max_forward", "pool_avg_forward", "pool_max_backward", "pool_avg_backward")
_FAST = (
    "pool_fast_max_forward",
    "pool_fast_avg_forward",
    "pool_fast_max_backward",
    "pool_fast_avg_backward",
)


def _name_expressions() -> list[str]:
    names = []
    for ctype in _CTYPES.values():
        names.extend(f"{k}<{ctype}>" for k in _GENERIC)
        for ws in (*SPECIALIZED_WINDOW_SIZES, 0):
            names.extend(f"{k}<{ctype}, {ws}>" for k in _FAST)
    return names


@lru_cache(maxsize=1)
def _load_cupy() -> Any:
    """
    Import CuPy once per process.

    Raises
    ------
    DeviceNotSupportedError
        If CuPy is not installed.
    """
    try:
        import cupy
    except ImportError as e:
        raise DeviceNotSupportedError("pool2d", "cuda") from e
    return cupy


@lru_cache(maxsize=None)
def _load_module(device_id: int) -> Any:
    """Compile the pooling kernels for one device (cached per device)."""
    cp = _load_cupy()
    with cp.cuda.Device(device_id):
        module = cp.RawModule(
            code=_SOURCE, options=("--std=c++11",), name_expressions=_name_expressions()
        )
        module.compile()
    logger.debug("compiled pooling kernels for cuda:%d", device_id)
    return module


def _kernel(buf: Any, name: str) -> Any:
    dtype = np.dtype(buf.dtype)
    if dtype not in _CTYPES:
        raise TypeError(f"{name} supports float32/float64 only, got {dtype}")
    return _load_module(buf.device.id).get_function(f"{name}<{_CTYPES[dtype]}>")


def _fast_kernel(buf: Any, name: str, window_size: int) -> Any:
    dtype = np.dtype(buf.dtype)
    if dtype not in _CTYPES:
        raise TypeError(f"{name} supports float32/float64 only, got {dtype}")
    ws = window_size if window_size in SPECIALIZED_WINDOW_SIZES else 0
    return _load_module(buf.device.id).get_function(
        f"{name}<{_CTYPES[dtype]}, {ws}>"
    )


def _dispatch(
    name: str, kernel: Any, config: LaunchConfig, args: tuple, sync: bool
) -> bool:
    """
    Launch a raw kernel and surface driver/runtime failures as last-error.
    """
    reason = config.validate()
    if reason is not None:
        report_launch_error(name, reason)
        return False

    cp = _load_cupy()
    logger.debug(
        "launch %s: grid=%d block=%d workers=%d",
        name,
        config.grid_size,
        config.block_size,
        config.num_workers,
    )
    try:
        kernel((config.grid_size,), (config.block_size,), args)
        if sync:
            cp.cuda.get_current_stream().synchronize()
    except (cp.cuda.driver.CUDADriverError, cp.cuda.runtime.CUDARuntimeError) as e:
        report_launch_error(name, str(e))
        return False
    return True


def _geometry_args(
    geometry: PoolGeometry,
    pooled_width: int,
    pooled_height: int,
    volume: int,
    width: int,
    height: int,
) -> tuple:
    return tuple(
        np.int32(v)
        for v in (
            pooled_width,
            pooled_height,
            volume,
            width,
            height,
            geometry.window_width,
            geometry.window_height,
            geometry.stride_x,
            geometry.stride_y,
            geometry.pad_left,
            geometry.pad_top,
        )
    )


def pool2d_forward_cuda(
    output: Any,
    data: Any,
    geometry: PoolGeometry,
    width: int,
    height: int,
    depth: int,
    method: PoolMethod | str,
    argmax: Optional[Any] = None,
    *,
    block_size: Optional[int] = None,
    sync: bool = True,
) -> None:
    """Device counterpart of `pool2d_forward_cpu` (CuPy buffers)."""
    cp = _load_cupy()
    method = as_pool_method(method)
    pooled_width, pooled_height = geometry.pooled_extent(width, height)
    n = pooled_width * pooled_height * depth
    config = LaunchConfig.for_workers(n, block_size)
    geo = _geometry_args(geometry, pooled_width, pooled_height, n, width, height)

    if method is PoolMethod.MAX:
        name = "pool2d_max_forward"
        buffers = [("data", data, width * height * depth), ("output", output, n)]
        if argmax is not None:
            buffers.append(("argmax", argmax, n))
        if not check_buffers(name, *buffers):
            return
        record = argmax is not None
        if not record:
            argmax = cp.empty(1, dtype=cp.int64)
        args = (output, argmax, data, np.int32(record)) + geo
        _dispatch(name, _kernel(data, "pool_max_forward"), config, args, sync)
    else:
        name = "pool2d_avg_forward"
        if not check_buffers(
            name, ("data", data, width * height * depth), ("output", output, n)
        ):
            return
        args = (output, data) + geo
        _dispatch(name, _kernel(data, "pool_avg_forward"), config, args, sync)


def pool2d_backward_cuda(
    dzdx: Any,
    data: Any,
    dzdy: Any,
    geometry: PoolGeometry,
    width: int,
    height: int,
    depth: int,
    method: PoolMethod | str,
    argmax: Optional[Any] = None,
    *,
    block_size: Optional[int] = None,
    sync: bool = True,
) -> None:
    """Device counterpart of `pool2d_backward_cpu`; `dzdx` must be zeroed."""
    cp = _load_cupy()
    method = as_pool_method(method)
    pooled_width, pooled_height = geometry.pooled_extent(width, height)
    n_in = width * height * depth
    n_out = pooled_width * pooled_height * depth

    if method is PoolMethod.MAX:
        name = "pool2d_max_backward"
        buffers = [("data", data, n_in), ("dzdy", dzdy, n_out), ("dzdx", dzdx, n_in)]
        if argmax is not None:
            buffers.append(("argmax", argmax, n_out))
        if not check_buffers(name, *buffers):
            return
        use = argmax is not None
        if not use:
            argmax = cp.empty(1, dtype=cp.int64)
        geo = _geometry_args(geometry, pooled_width, pooled_height, n_out, width, height)
        args = (dzdx, data, dzdy, argmax, np.int32(use)) + geo
        _dispatch(
            name,
            _kernel(data, "pool_max_backward"),
            LaunchConfig.for_workers(n_out, block_size),
            args,
            sync,
        )
    else:
        name = "pool2d_avg_backward"
        if not check_buffers(name, ("dzdy", dzdy, n_out), ("dzdx", dzdx, n_in)):
            return
        geo = _geometry_args(geometry, pooled_width, pooled_height, n_in, width, height)
        args = (dzdx, dzdy) + geo
        _dispatch(
            name,
            _kernel(dzdy, "pool_avg_backward"),
            LaunchConfig.for_workers(n_in, block_size),
            args,
            sync,
        )


def _device_table(table: OffsetTable, method: PoolMethod) -> Any:
    if table.method is not method:
        raise ValueError(
            f"offset table was built for {table.method.value} pooling, "
            f"cannot drive {method.value} pooling"
        )
    return _load_cupy().asarray(table.raw(), dtype=np.int64)


def pool2d_fast_forward_cuda(
    output: Any,
    data: Any,
    table: OffsetTable,
    data_size: int,
    depth: int,
    method: PoolMethod | str,
    *,
    block_size: Optional[int] = None,
    sync: bool = True,
) -> None:
    """Device counterpart of `pool2d_fast_forward_cpu`."""
    method = as_pool_method(method)
    offsets = _device_table(table, method)
    n = table.pooled_size * depth
    name = f"pool2d_fast_{method.value}_forward"
    if not check_buffers(name, ("data", data, data_size * depth), ("output", output, n)):
        return
    if not check_table_bounds(name, table, data_size):
        return
    kernel = _fast_kernel(data, f"pool_fast_{method.value}_forward", table.window_size)
    args = (output, data, offsets) + tuple(
        np.int32(v) for v in (table.pooled_size, n, data_size, table.window_size)
    )
    _dispatch(name, kernel, LaunchConfig.for_workers(n, block_size), args, sync)


def pool2d_fast_backward_cuda(
    dzdx: Any,
    data: Any,
    dzdy: Any,
    table: OffsetTable,
    data_size: int,
    depth: int,
    method: PoolMethod | str,
    *,
    block_size: Optional[int] = None,
    sync: bool = True,
) -> None:
    """Device counterpart of `pool2d_fast_backward_cpu`; `dzdx` must be zeroed."""
    method = as_pool_method(method)
    offsets = _device_table(table, method)
    n = table.pooled_size * depth
    name = f"pool2d_fast_{method.value}_backward"
    if not check_buffers(
        name,
        ("data", data, data_size * depth),
        ("dzdy", dzdy, n),
        ("dzdx", dzdx, data_size * depth),
    ):
        return
    if not check_table_bounds(name, table, data_size):
        return
    kernel = _fast_kernel(dzdy, f"pool_fast_{method.value}_backward", table.window_size)
    sizes = tuple(
        np.int32(v) for v in (table.pooled_size, n, data_size, table.window_size)
    )
    if method is PoolMethod.MAX:
        args = (dzdx, data, dzdy, offsets) + sizes
    else:
        args = (dzdx, dzdy, offsets) + sizes
    _dispatch(name, kernel, LaunchConfig.for_workers(n, block_size), args, sync)
