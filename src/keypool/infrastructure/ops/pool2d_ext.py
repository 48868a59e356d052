"""
2D pooling entry points with device-dispatch boundaries.

Responsibilities
----------------
- Map every buffer of a call to its `Device` and reject mixed-device calls.
- Route the call to the host worker-grid kernels (NumPy buffers) or to the
  CUDA kernels (CuPy buffers). There is no fallback between backends.
- Offer NCHW host wrappers that allocate outputs, fold the batch into the
  channel depth, build offset tables for the fast path, and raise a recorded
  launch failure as an exception.

The four core entry points (`pool2d_forward`, `pool2d_backward`,
`pool2d_fast_forward`, `pool2d_fast_backward`) keep the kernel contract:
caller-owned flat buffers, no return value, failures in the last-error slot.
"""

from __future__ import annotations

from typing import Any, Optional, Tuple

import numpy as np

from ...domain._errors import DeviceMismatchError
from ...domain._geometry import PoolGeometry
from ...domain._pooling import IPool2dKernels, PoolMethod, as_pool_method
from ...domain.device import Device
from ..launch import get_last_error
from . import pool2d_cpu, pool2d_cuda, pool2d_fast_cpu
from .pool2d_offsets import OffsetTable, build_offset_table


class HostKernels:
    """Host worker-grid backend (NumPy buffers)."""

    pool2d_forward = staticmethod(pool2d_cpu.pool2d_forward_cpu)
    pool2d_backward = staticmethod(pool2d_cpu.pool2d_backward_cpu)
    pool2d_fast_forward = staticmethod(pool2d_fast_cpu.pool2d_fast_forward_cpu)
    pool2d_fast_backward = staticmethod(pool2d_fast_cpu.pool2d_fast_backward_cpu)


class CudaKernels:
    """CUDA backend (CuPy buffers)."""

    pool2d_forward = staticmethod(pool2d_cuda.pool2d_forward_cuda)
    pool2d_backward = staticmethod(pool2d_cuda.pool2d_backward_cuda)
    pool2d_fast_forward = staticmethod(pool2d_cuda.pool2d_fast_forward_cuda)
    pool2d_fast_backward = staticmethod(pool2d_cuda.pool2d_fast_backward_cuda)


def device_of(buf: Any) -> Device:
    """
    Return the device a buffer lives on.

    Raises
    ------
    TypeError
        If `buf` is neither a NumPy nor a CuPy array.
    """
    if isinstance(buf, np.ndarray):
        return Device("cpu")
    if type(buf).__module__.split(".")[0] == "cupy":
        return Device(f"cuda:{buf.device.id}")
    raise TypeError(f"unsupported buffer type: {type(buf).__name__}")


def _resolve_device(*buffers: Any) -> Device:
    devices = [device_of(b) for b in buffers if b is not None]
    first = devices[0]
    for d in devices[1:]:
        if d != first:
            raise DeviceMismatchError(str(first), str(d))
    return first


def kernels_for(device: Device) -> IPool2dKernels:
    """Return the kernel backend serving `device`."""
    if device.is_cuda():
        return CudaKernels()
    return HostKernels()


def _array_module(device: Device) -> Any:
    if device.is_cuda():
        return pool2d_cuda._load_cupy()
    return np


# ---------------------------------------------------------------------
# Core entry points (flat buffers)
# ---------------------------------------------------------------------


def pool2d_forward(
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
) -> None:
    """Generic pooling forward pass on the buffers' device."""
    backend = kernels_for(_resolve_device(output, data, argmax))
    backend.pool2d_forward(
        output,
        data,
        geometry,
        width,
        height,
        depth,
        method,
        argmax,
        block_size=block_size,
    )


def pool2d_backward(
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
) -> None:
    """Generic pooling backward pass; `dzdx` must be zero-filled."""
    backend = kernels_for(_resolve_device(dzdx, data, dzdy, argmax))
    backend.pool2d_backward(
        dzdx,
        data,
        dzdy,
        geometry,
        width,
        height,
        depth,
        method,
        argmax,
        block_size=block_size,
    )


def pool2d_fast_forward(
    output: Any,
    data: Any,
    table: OffsetTable,
    data_size: int,
    depth: int,
    method: PoolMethod | str,
    *,
    block_size: Optional[int] = None,
) -> None:
    """Offset-table pooling forward pass on the buffers' device."""
    backend = kernels_for(_resolve_device(output, data))
    backend.pool2d_fast_forward(
        output, data, table, data_size, depth, method, block_size=block_size
    )


def pool2d_fast_backward(
    dzdx: Any,
    data: Any,
    dzdy: Any,
    table: OffsetTable,
    data_size: int,
    depth: int,
    method: PoolMethod | str,
    *,
    block_size: Optional[int] = None,
) -> None:
    """Offset-table pooling backward pass; `dzdx` must be zero-filled."""
    backend = kernels_for(_resolve_device(dzdx, data, dzdy))
    backend.pool2d_fast_backward(
        dzdx, data, dzdy, table, data_size, depth, method, block_size=block_size
    )


# ---------------------------------------------------------------------
# NCHW host wrappers
# ---------------------------------------------------------------------


def _raise_on_launch_error() -> None:
    err = get_last_error()
    if err is not None:
        raise err


def pool2d_forward_nchw(
    x: Any,
    geometry: PoolGeometry,
    method: PoolMethod | str,
    *,
    fast: bool = False,
    record_argmax: bool = False,
) -> Tuple[Any, Optional[Any]]:
    """
    Pool an NCHW array.

    Parameters
    ----------
    x : array
        Input of shape (N, C, H, W), NumPy or CuPy.
    geometry : PoolGeometry
        Window parameters.
    method : PoolMethod or str
        Reduction selector.
    fast : bool
        Use the offset-table path instead of the generic scan.
    record_argmax : bool
        Max pooling, generic path only: also return the flat input index of
        every selected maximum.

    Returns
    -------
    tuple
        ``(y, argmax)`` with `y` of shape (N, C, H_out, W_out); `argmax` is
        None unless requested.

    Raises
    ------
    KernelLaunchError
        If the kernel launch failed.
    """
    method = as_pool_method(method)
    N, C, H, W = x.shape
    W_out, H_out = geometry.pooled_extent(W, H)
    depth = N * C

    xp = _array_module(device_of(x))
    data = xp.ascontiguousarray(x).reshape(-1)
    y = xp.empty(H_out * W_out * depth, dtype=x.dtype)
    argmax = None

    get_last_error()
    if fast:
        table = build_offset_table(geometry, W, H, method)
        pool2d_fast_forward(y, data, table, H * W, depth, method)
    else:
        if record_argmax and method is PoolMethod.MAX:
            argmax = xp.empty(H_out * W_out * depth, dtype=np.int64)
        pool2d_forward(y, data, geometry, W, H, depth, method, argmax)
    _raise_on_launch_error()

    y = y.reshape(N, C, H_out, W_out)
    if argmax is not None:
        argmax = argmax.reshape(N, C, H_out, W_out)
    return y, argmax


def pool2d_backward_nchw(
    grad_out: Any,
    x: Any,
    geometry: PoolGeometry,
    method: PoolMethod | str,
    *,
    fast: bool = False,
    argmax: Optional[Any] = None,
) -> Any:
    """
    Gradient of `pool2d_forward_nchw` with respect to `x`.

    Parameters
    ----------
    grad_out : array
        Upstream gradient of shape (N, C, H_out, W_out).
    x : array
        The forward input, shape (N, C, H, W).
    geometry, method, fast
        Same values as the forward call.
    argmax : Optional[array]
        Indices returned by a generic max forward with ``record_argmax=True``.

    Returns
    -------
    array
        Gradient of shape (N, C, H, W).
    """
    method = as_pool_method(method)
    N, C, H, W = x.shape
    depth = N * C

    xp = _array_module(device_of(x))
    data = xp.ascontiguousarray(x).reshape(-1)
    dzdy = xp.ascontiguousarray(grad_out, dtype=x.dtype).reshape(-1)
    dzdx = xp.zeros(data.size, dtype=x.dtype)

    get_last_error()
    if fast:
        table = build_offset_table(geometry, W, H, method)
        pool2d_fast_backward(dzdx, data, dzdy, table, H * W, depth, method)
    else:
        flat_argmax = None if argmax is None else xp.ascontiguousarray(argmax).reshape(-1)
        pool2d_backward(dzdx, data, dzdy, geometry, W, H, depth, method, flat_argmax)
    _raise_on_launch_error()

    return dzdx.reshape(N, C, H, W)


def maxpool2d_forward_nchw(
    x: Any,
    *,
    kernel_size: int | Tuple[int, int],
    stride: Optional[int | Tuple[int, int]] = None,
    padding: int | Tuple[int, int] = 0,
    fast: bool = False,
) -> Tuple[Any, Optional[Any]]:
    """
    MaxPool2D forward for NCHW arrays with conv-style hyperparameters.

    Returns ``(y, argmax)``; `argmax` is None on the fast path.
    """
    geometry = PoolGeometry.square(kernel_size, stride, padding)
    return pool2d_forward_nchw(
        x, geometry, PoolMethod.MAX, fast=fast, record_argmax=not fast
    )


def maxpool2d_backward_nchw(
    grad_out: Any,
    x: Any,
    *,
    kernel_size: int | Tuple[int, int],
    stride: Optional[int | Tuple[int, int]] = None,
    padding: int | Tuple[int, int] = 0,
    argmax: Optional[Any] = None,
    fast: bool = False,
) -> Any:
    """MaxPool2D backward for NCHW arrays."""
    geometry = PoolGeometry.square(kernel_size, stride, padding)
    return pool2d_backward_nchw(
        grad_out, x, geometry, PoolMethod.MAX, fast=fast, argmax=argmax
    )


def avgpool2d_forward_nchw(
    x: Any,
    *,
    kernel_size: int | Tuple[int, int],
    stride: Optional[int | Tuple[int, int]] = None,
    padding: int | Tuple[int, int] = 0,
    fast: bool = False,
) -> Any:
    """AvgPool2D forward for NCHW arrays (clipped-area averages at borders)."""
    geometry = PoolGeometry.square(kernel_size, stride, padding)
    y, _ = pool2d_forward_nchw(x, geometry, PoolMethod.AVG, fast=fast)
    return y


def avgpool2d_backward_nchw(
    grad_out: Any,
    x: Any,
    *,
    kernel_size: int | Tuple[int, int],
    stride: Optional[int | Tuple[int, int]] = None,
    padding: int | Tuple[int, int] = 0,
    fast: bool = False,
) -> Any:
    """AvgPool2D backward for NCHW arrays."""
    geometry = PoolGeometry.square(kernel_size, stride, padding)
    return pool2d_backward_nchw(grad_out, x, geometry, PoolMethod.AVG, fast=fast)
