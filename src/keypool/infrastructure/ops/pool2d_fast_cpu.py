"""
Fast-path 2D pooling kernels for the host worker grid (NumPy backend).

The fast path skips window-geometry derivation: each output worker reads its
input offsets from a precomputed `OffsetTable` (one column per output
position of a channel plane, one row per window tap).

Variants
--------
For every kernel there are two implementations:

- fixed-size variants, generated once per window size in
  `SPECIALIZED_WINDOW_SIZES`. The tap count is a constant of the generated
  body: all taps are gathered in a single indexing operation and the
  reduction runs over a prebuilt tap tuple.
- a runtime-sized fallback that walks the table one tap row at a time.

Both implementations reduce in the same tap order with the same arithmetic,
so they produce identical results; `select_fast_kernel` picks the variant.

Table conventions
-----------------
- max forward stops at the first tap that repeats the previous offset (or is
  invalid); later taps are never read.
- max backward scans every valid tap; repeats carry the same value and never
  win a strict comparison.
- average kernels test every tap individually, since invalid taps may appear
  anywhere in a column.
"""

from __future__ import annotations

from typing import Callable, Dict, Optional

import numpy as np

from ...domain._pooling import PoolMethod, as_pool_method
from ..launch import LaunchConfig, check_buffers, launch, report_launch_error
from .pool2d_offsets import SENTINEL, OffsetTable

SPECIALIZED_WINDOW_SIZES = (4, 9, 16, 25)

Kernel = Callable[..., None]


def _split(
    ids: np.ndarray, pooled_size: int, data_size: int
) -> tuple[np.ndarray, np.ndarray]:
    """Return each worker's table column and its channel base offset."""
    return ids % pooled_size, (ids // pooled_size) * data_size


# ---------------------------------------------------------------------
# Runtime-sized fallbacks
# ---------------------------------------------------------------------


def _max_forward_dynamic(
    ids: np.ndarray,
    output: np.ndarray,
    data: np.ndarray,
    offsets: np.ndarray,
    valid: np.ndarray,
    pooled_size: int,
    data_size: int,
) -> None:
    """
    Max over a table column, stopping at the first repeated or invalid tap.

    Workers that already stopped keep re-reading their first tap, which never
    wins the strict comparison.
    """
    pos, base = _split(ids, pooled_size, data_size)
    first = offsets[0, pos]
    prev = first
    best = data[base + first]
    live = np.ones(ids.shape[0], dtype=bool)

    for i in range(1, offsets.shape[0]):
        idx = offsets[i, pos]
        live &= valid[i, pos] & (idx != prev)
        v = data[base + np.where(live, idx, first)]
        best = np.where(live & (v > best), v, best)
        prev = idx

    output[ids] = best


def _avg_forward_dynamic(
    ids: np.ndarray,
    output: np.ndarray,
    data: np.ndarray,
    offsets: np.ndarray,
    valid: np.ndarray,
    pooled_size: int,
    data_size: int,
) -> None:
    """Mean of the valid taps of a table column, summed in tap order."""
    pos, base = _split(ids, pooled_size, data_size)
    acc = np.zeros(ids.shape[0], dtype=data.dtype)
    count = np.zeros(ids.shape[0], dtype=np.int64)

    for i in range(offsets.shape[0]):
        ok = valid[i, pos]
        v = data[base + np.where(ok, offsets[i, pos], 0)]
        acc = np.where(ok, acc + v, acc)
        count += ok

    output[ids] = acc / count.astype(data.dtype)


def _max_backward_dynamic(
    ids: np.ndarray,
    dzdx: np.ndarray,
    data: np.ndarray,
    dzdy: np.ndarray,
    offsets: np.ndarray,
    valid: np.ndarray,
    pooled_size: int,
    data_size: int,
) -> None:
    """
    Scatter each upstream gradient to the first maximum of its column.

    Unlike the forward, the scan covers every valid tap; repeats are not
    treated as terminators.
    """
    pos, base = _split(ids, pooled_size, data_size)
    best_idx = offsets[0, pos]
    best = data[base + best_idx]

    for i in range(1, offsets.shape[0]):
        ok = valid[i, pos]
        idx = np.where(ok, offsets[i, pos], best_idx)
        v = data[base + idx]
        take = ok & (v > best)
        best = np.where(take, v, best)
        best_idx = np.where(take, idx, best_idx)

    np.add.at(dzdx, base + best_idx, dzdy[ids])


def _avg_backward_dynamic(
    ids: np.ndarray,
    dzdx: np.ndarray,
    data: np.ndarray,
    dzdy: np.ndarray,
    offsets: np.ndarray,
    valid: np.ndarray,
    pooled_size: int,
    data_size: int,
) -> None:
    pos, base = _split(ids, pooled_size, data_size)

    count = np.zeros(ids.shape[0], dtype=np.int64)
    for i in range(offsets.shape[0]):
        count += valid[i, pos]

    # columns without a valid tap contribute nothing
    occupied = count > 0
    share = dzdy[ids] / np.where(occupied, count, 1).astype(dzdy.dtype)
    for i in range(offsets.shape[0]):
        ok = valid[i, pos] & occupied
        np.add.at(dzdx, (base + offsets[i, pos])[ok], share[ok])


# ---------------------------------------------------------------------
# Fixed-size variants
# ---------------------------------------------------------------------


def _make_max_forward(window_size: int) -> Kernel:
    """Build the max forward body for a constant tap count."""
    rest = tuple(range(1, window_size))

    def worker(
        ids: np.ndarray,
        output: np.ndarray,
        data: np.ndarray,
        offsets: np.ndarray,
        valid: np.ndarray,
        pooled_size: int,
        data_size: int,
    ) -> None:
        pos, base = _split(ids, pooled_size, data_size)
        idx = offsets[:, pos]
        ok = valid[:, pos]
        stop = np.zeros(ok.shape, dtype=bool)
        stop[1:] = ~ok[1:] | (idx[1:] == idx[:-1])
        live = ~np.logical_or.accumulate(stop, axis=0)
        vals = data[base + np.where(live, idx, idx[0])]
        best = vals[0]
        for i in rest:
            best = np.where(live[i] & (vals[i] > best), vals[i], best)
        output[ids] = best

    worker.__name__ = f"_max_forward_{window_size}"
    return worker


def _make_avg_forward(window_size: int) -> Kernel:
    taps = tuple(range(window_size))

    def worker(
        ids: np.ndarray,
        output: np.ndarray,
        data: np.ndarray,
        offsets: np.ndarray,
        valid: np.ndarray,
        pooled_size: int,
        data_size: int,
    ) -> None:
        pos, base = _split(ids, pooled_size, data_size)
        ok = valid[:, pos]
        vals = data[base + np.where(ok, offsets[:, pos], 0)]
        acc = np.zeros(ids.shape[0], dtype=data.dtype)
        for i in taps:
            acc = np.where(ok[i], acc + vals[i], acc)
        output[ids] = acc / ok.sum(axis=0).astype(data.dtype)

    worker.__name__ = f"_avg_forward_{window_size}"
    return worker


def _make_max_backward(window_size: int) -> Kernel:
    rest = tuple(range(1, window_size))

    def worker(
        ids: np.ndarray,
        dzdx: np.ndarray,
        data: np.ndarray,
        dzdy: np.ndarray,
        offsets: np.ndarray,
        valid: np.ndarray,
        pooled_size: int,
        data_size: int,
    ) -> None:
        pos, base = _split(ids, pooled_size, data_size)
        ok = valid[:, pos]
        idx = np.where(ok, offsets[:, pos], offsets[0, pos])
        vals = data[base + idx]
        best = vals[0]
        best_idx = idx[0]
        for i in rest:
            take = ok[i] & (vals[i] > best)
            best = np.where(take, vals[i], best)
            best_idx = np.where(take, idx[i], best_idx)
        np.add.at(dzdx, base + best_idx, dzdy[ids])

    worker.__name__ = f"_max_backward_{window_size}"
    return worker


def _make_avg_backward(window_size: int) -> Kernel:
    """Build the average backward body; taps scatter in tap-major order."""

    def worker(
        ids: np.ndarray,
        dzdx: np.ndarray,
        data: np.ndarray,
        dzdy: np.ndarray,
        offsets: np.ndarray,
        valid: np.ndarray,
        pooled_size: int,
        data_size: int,
    ) -> None:
        pos, base = _split(ids, pooled_size, data_size)
        ok = valid[:, pos]
        count = ok.sum(axis=0)
        share = dzdy[ids] / np.where(count > 0, count, 1).astype(dzdy.dtype)
        targets = base + offsets[:, pos]
        np.add.at(
            dzdx, targets[ok], np.broadcast_to(share, (window_size, share.size))[ok]
        )

    worker.__name__ = f"_avg_backward_{window_size}"
    return worker


_VARIANTS: Dict[tuple[PoolMethod, bool], tuple[Dict[int, Kernel], Kernel]] = {
    (PoolMethod.MAX, False): (
        {ws: _make_max_forward(ws) for ws in SPECIALIZED_WINDOW_SIZES},
        _max_forward_dynamic,
    ),
    (PoolMethod.AVG, False): (
        {ws: _make_avg_forward(ws) for ws in SPECIALIZED_WINDOW_SIZES},
        _avg_forward_dynamic,
    ),
    (PoolMethod.MAX, True): (
        {ws: _make_max_backward(ws) for ws in SPECIALIZED_WINDOW_SIZES},
        _max_backward_dynamic,
    ),
    (PoolMethod.AVG, True): (
        {ws: _make_avg_backward(ws) for ws in SPECIALIZED_WINDOW_SIZES},
        _avg_backward_dynamic,
    ),
}


def select_fast_kernel(
    method: PoolMethod | str, backward: bool, window_size: int
) -> Kernel:
    """
    Pick the fixed-size variant for `window_size`, or the runtime fallback.
    """
    fixed, fallback = _VARIANTS[(as_pool_method(method), bool(backward))]
    return fixed.get(window_size, fallback)


def _check_table(table: OffsetTable, method: PoolMethod) -> None:
    if table.method is not method:
        raise ValueError(
            f"offset table was built for {table.method.value} pooling, "
            f"cannot drive {method.value} pooling"
        )


def check_table_bounds(kernel: str, table: OffsetTable, data_size: int) -> bool:
    """
    Validate that every table offset addresses an element of one channel.

    An offset past `data_size` would silently read the next channel, so it
    is reported through `report_launch_error` before anything runs.

    Returns
    -------
    bool
        True if every valid offset lies in ``[0, data_size)``.
    """
    top = int(table.offsets.max(initial=SENTINEL))
    if top >= data_size:
        report_launch_error(
            kernel,
            f"an illegal memory access would occur: offset table entry {top} "
            f"outside a channel of {data_size} elements",
        )
        return False
    return True


def pool2d_fast_forward_cpu(
    output: np.ndarray,
    data: np.ndarray,
    table: OffsetTable,
    data_size: int,
    depth: int,
    method: PoolMethod | str,
    *,
    block_size: Optional[int] = None,
) -> None:
    """
    Offset-table driven pooling forward pass.

    Parameters
    ----------
    output : np.ndarray
        Flat pooled buffer of at least ``table.pooled_size * depth`` elements.
    data : np.ndarray
        Flat input feature map of ``data_size * depth`` elements.
    table : OffsetTable
        Table built for `method` (see `build_offset_table`).
    data_size : int
        Elements per input channel plane.
    depth : int
        Number of channel planes.
    method : PoolMethod or str
        Reduction selector.
    block_size : Optional[int]
        Workers per block.
    """
    method = as_pool_method(method)
    _check_table(table, method)
    n = table.pooled_size * depth
    kernel = f"pool2d_fast_{method.value}_forward"
    if not check_buffers(
        kernel, ("data", data, data_size * depth), ("output", output, n)
    ):
        return
    if not check_table_bounds(kernel, table, data_size):
        return
    launch(
        kernel,
        select_fast_kernel(method, False, table.window_size),
        LaunchConfig.for_workers(n, block_size),
        output,
        data,
        table.offsets,
        table.valid,
        table.pooled_size,
        data_size,
        writes=(0,),
    )


def pool2d_fast_backward_cpu(
    dzdx: np.ndarray,
    data: np.ndarray,
    dzdy: np.ndarray,
    table: OffsetTable,
    data_size: int,
    depth: int,
    method: PoolMethod | str,
    *,
    block_size: Optional[int] = None,
) -> None:
    """
    Offset-table driven pooling backward pass.

    Both modes run one worker per output and scatter into `dzdx` with
    `np.add.at`; the caller must zero-fill `dzdx`. Average workers whose
    table column holds no valid tap write nothing.
    """
    method = as_pool_method(method)
    _check_table(table, method)
    n = table.pooled_size * depth
    kernel = f"pool2d_fast_{method.value}_backward"
    if not check_buffers(
        kernel,
        ("data", data, data_size * depth),
        ("dzdy", dzdy, n),
        ("dzdx", dzdx, data_size * depth),
    ):
        return
    if not check_table_bounds(kernel, table, data_size):
        return
    launch(
        kernel,
        select_fast_kernel(method, True, table.window_size),
        LaunchConfig.for_workers(n, block_size),
        dzdx,
        data,
        dzdy,
        table.offsets,
        table.valid,
        table.pooled_size,
        data_size,
        writes=(0,),
    )
