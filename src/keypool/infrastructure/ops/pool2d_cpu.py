"""
Generic 2D pooling kernels for the host worker grid (NumPy backend).

These kernels implement the strided/padded window scan. Each kernel is a
worker body executed by `keypool.infrastructure.launch.launch`; a body
computes, for a whole wave of worker ids at once, what one accelerator thread
computes for its own id.

Implemented kernels
-------------------
- max forward       : one worker per output, first-seen maximum
- avg forward       : one worker per output, sum / clipped area
- max backward      : one worker per output, atomic scatter to the argmax
- avg backward      : one worker per input element, gather (unique writer)

Border policy
-------------
Windows are clipped to the real input before reading; padded positions are
never read. Average pooling divides by the clipped area, so edge and corner
windows average over fewer elements rather than treating padding as zeros.

Scan order
----------
Windows are scanned row-major (y outer, x inner). Max keeps a candidate
only when it is strictly greater, so ties resolve to the first element in
scan order, both in forward and in the backward re-scan.
"""

from __future__ import annotations

from typing import Optional

import numpy as np

from ...domain._geometry import PoolGeometry
from ...domain._pooling import PoolMethod, as_pool_method
from ..launch import LaunchConfig, check_buffers, launch
from .pool2d_coords import (
    WindowBounds,
    clipped_window,
    covering_outputs,
    max_covering,
    window_bounds,
)


def _scan_max(
    bounds: WindowBounds,
    data: np.ndarray,
    geometry: PoolGeometry,
    width: int,
    height: int,
) -> tuple[np.ndarray, np.ndarray]:
    """
    Find the first-seen maximum of each clipped window.

    Returns
    -------
    tuple[np.ndarray, np.ndarray]
        ``(best_value, best_index)`` where `best_index` is the flat index into
        `data`.
    """
    base = bounds.pz * (width * height)
    best_idx = base + bounds.y1 * width + bounds.x1
    best = data[best_idx]

    for dy in range(geometry.window_height):
        y = bounds.y1 + dy
        row_ok = y < bounds.y2
        for dx in range(geometry.window_width):
            x = bounds.x1 + dx
            ok = row_ok & (x < bounds.x2)
            # workers outside their window re-read their current best
            idx = np.where(ok, base + y * width + x, best_idx)
            v = data[idx]
            take = ok & (v > best)
            best = np.where(take, v, best)
            best_idx = np.where(take, idx, best_idx)

    return best, best_idx


def _max_forward_worker(
    ids: np.ndarray,
    output: np.ndarray,
    data: np.ndarray,
    argmax: Optional[np.ndarray],
    geometry: PoolGeometry,
    width: int,
    height: int,
    pooled_width: int,
    pooled_height: int,
) -> None:
    bounds = window_bounds(ids, geometry, width, height, pooled_width, pooled_height)
    best, best_idx = _scan_max(bounds, data, geometry, width, height)
    output[ids] = best
    if argmax is not None:
        argmax[ids] = best_idx


def _avg_forward_worker(
    ids: np.ndarray,
    output: np.ndarray,
    data: np.ndarray,
    geometry: PoolGeometry,
    width: int,
    height: int,
    pooled_width: int,
    pooled_height: int,
) -> None:
    bounds = window_bounds(ids, geometry, width, height, pooled_width, pooled_height)
    base = bounds.pz * (width * height)
    acc = np.zeros(ids.shape[0], dtype=data.dtype)

    for dy in range(geometry.window_height):
        y = bounds.y1 + dy
        row_ok = y < bounds.y2
        for dx in range(geometry.window_width):
            x = bounds.x1 + dx
            ok = row_ok & (x < bounds.x2)
            idx = np.where(ok, base + y * width + x, 0)
            acc = np.where(ok, acc + data[idx], acc)

    output[ids] = acc / bounds.area().astype(data.dtype)


def _max_backward_worker(
    ids: np.ndarray,
    dzdx: np.ndarray,
    data: np.ndarray,
    dzdy: np.ndarray,
    argmax: Optional[np.ndarray],
    geometry: PoolGeometry,
    width: int,
    height: int,
    pooled_width: int,
    pooled_height: int,
) -> None:
    if argmax is not None:
        target = argmax[ids]
    else:
        bounds = window_bounds(
            ids, geometry, width, height, pooled_width, pooled_height
        )
        _, target = _scan_max(bounds, data, geometry, width, height)
    # overlapping windows may share a target: unbuffered accumulation
    np.add.at(dzdx, target, dzdy[ids])


def _avg_backward_worker(
    ids: np.ndarray,
    dzdx: np.ndarray,
    dzdy: np.ndarray,
    geometry: PoolGeometry,
    width: int,
    height: int,
    pooled_width: int,
    pooled_height: int,
) -> None:
    cover = covering_outputs(ids, geometry, width, height, pooled_width, pooled_height)
    plane = pooled_width * pooled_height
    grad = np.zeros(ids.shape[0], dtype=dzdy.dtype)

    for j in range(max_covering(geometry.window_height, geometry.stride_y)):
        py = cover.py1 + j
        row_ok = py < cover.py2
        for i in range(max_covering(geometry.window_width, geometry.stride_x)):
            px = cover.px1 + i
            ok = row_ok & (px < cover.px2)
            x1, y1, x2, y2 = clipped_window(px, py, geometry, width, height)
            area = np.where(ok, (y2 - y1) * (x2 - x1), 1).astype(dzdy.dtype)
            out_idx = np.where(ok, cover.z * plane + py * pooled_width + px, 0)
            grad = np.where(ok, grad + dzdy[out_idx] / area, grad)

    dzdx[ids] = grad


def pool2d_forward_cpu(
    output: np.ndarray,
    data: np.ndarray,
    geometry: PoolGeometry,
    width: int,
    height: int,
    depth: int,
    method: PoolMethod | str,
    argmax: Optional[np.ndarray] = None,
    *,
    block_size: Optional[int] = None,
) -> None:
    """
    Generic pooling forward pass over a flat ``width x height x depth`` map.

    Parameters
    ----------
    output : np.ndarray
        Flat pooled buffer of at least ``pooled_width*pooled_height*depth``
        elements. Written in place.
    data : np.ndarray
        Flat input feature map.
    geometry : PoolGeometry
        Window parameters.
    width, height, depth : int
        Input extent.
    method : PoolMethod or str
        Reduction selector.
    argmax : Optional[np.ndarray]
        Max pooling only. When given, receives the flat input index chosen
        by each output worker, for use by `pool2d_backward_cpu`.
    block_size : Optional[int]
        Workers per block; defaults to `default_block_size()`.

    Notes
    -----
    Launch failures are not raised: they are logged and recorded in the
    last-error slot, and `output` is left untouched.
    """
    method = as_pool_method(method)
    pooled_width, pooled_height = geometry.pooled_extent(width, height)
    n = pooled_width * pooled_height * depth
    config = LaunchConfig.for_workers(n, block_size)

    if method is PoolMethod.MAX:
        kernel = "pool2d_max_forward"
        buffers = [("data", data, width * height * depth), ("output", output, n)]
        if argmax is not None:
            buffers.append(("argmax", argmax, n))
        if not check_buffers(kernel, *buffers):
            return
        launch(
            kernel,
            _max_forward_worker,
            config,
            output,
            data,
            argmax,
            geometry,
            width,
            height,
            pooled_width,
            pooled_height,
            writes=(0, 2),
        )
    else:
        kernel = "pool2d_avg_forward"
        if not check_buffers(
            kernel, ("data", data, width * height * depth), ("output", output, n)
        ):
            return
        launch(
            kernel,
            _avg_forward_worker,
            config,
            output,
            data,
            geometry,
            width,
            height,
            pooled_width,
            pooled_height,
            writes=(0,),
        )


def pool2d_backward_cpu(
    dzdx: np.ndarray,
    data: np.ndarray,
    dzdy: np.ndarray,
    geometry: PoolGeometry,
    width: int,
    height: int,
    depth: int,
    method: PoolMethod | str,
    argmax: Optional[np.ndarray] = None,
    *,
    block_size: Optional[int] = None,
) -> None:
    """
    Generic pooling backward pass.

    Parameters
    ----------
    dzdx : np.ndarray
        Flat input-gradient buffer, zero-filled by the caller.
    data : np.ndarray
        The original forward input (read by the max re-scan).
    dzdy : np.ndarray
        Flat upstream gradient of the pooled map.
    geometry, width, height, depth, method
        Same values as the forward call.
    argmax : Optional[np.ndarray]
        Max pooling only: indices recorded by `pool2d_forward_cpu`. When
        given, gradients go to those elements; otherwise each worker re-scans
        its window in forward order.
    block_size : Optional[int]
        Workers per block.

    Notes
    -----
    - Max: one worker per output, accumulating with `np.add.at` because
      windows overlap when the stride is smaller than the window.
    - Avg: one worker per input element, gathering every covering window's
      share and writing the total; no atomics are needed.
    """
    method = as_pool_method(method)
    pooled_width, pooled_height = geometry.pooled_extent(width, height)
    n_in = width * height * depth
    n_out = pooled_width * pooled_height * depth

    if method is PoolMethod.MAX:
        kernel = "pool2d_max_backward"
        buffers = [
            ("data", data, n_in),
            ("dzdy", dzdy, n_out),
            ("dzdx", dzdx, n_in),
        ]
        if argmax is not None:
            buffers.append(("argmax", argmax, n_out))
        if not check_buffers(kernel, *buffers):
            return
        launch(
            kernel,
            _max_backward_worker,
            LaunchConfig.for_workers(n_out, block_size),
            dzdx,
            data,
            dzdy,
            argmax,
            geometry,
            width,
            height,
            pooled_width,
            pooled_height,
            writes=(0,),
        )
    else:
        kernel = "pool2d_avg_backward"
        if not check_buffers(kernel, ("dzdy", dzdy, n_out), ("dzdx", dzdx, n_in)):
            return
        launch(
            kernel,
            _avg_backward_worker,
            LaunchConfig.for_workers(n_in, block_size),
            dzdx,
            dzdy,
            geometry,
            width,
            height,
            pooled_width,
            pooled_height,
            writes=(0,),
        )


