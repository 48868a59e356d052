"""
Offset tables for the fast pooling path.

An offset table stores, for every output position of one channel plane and
every tap of the nominal window, the flat in-channel offset of the input
element that tap reads. The table is channel independent: kernels advance the
data pointer by ``channel * data_size`` and reuse it for every channel.

Table contracts
---------------
Taps are enumerated row-major over the nominal window (tap ``i`` is window
row ``i // window_width``, column ``i % window_width``).

- Average tables mark taps that fall outside the input with the sentinel
  ``-1``; invalid taps may sit anywhere in the column.
- Max tables list the valid taps first and fill the remaining taps with a
  repeat of the last valid offset. A repeated offset tells the forward kernel
  that no further distinct input element follows.

`OffsetTable` exposes the buffer as a tagged sequence: `offsets` together
with a boolean `valid` mask, so kernels never compare against the sentinel
themselves.
"""

from __future__ import annotations

import warnings
from dataclasses import dataclass

import numpy as np

from ...domain._geometry import PoolGeometry
from ...domain._pooling import PoolMethod, as_pool_method

SENTINEL = -1


@dataclass(frozen=True)
class OffsetTable:
    """
    Per-tap, per-output input offsets for one channel plane.

    Attributes
    ----------
    offsets : np.ndarray
        int64 array of shape ``(window_size, pooled_size)``; `SENTINEL` where
        a tap is invalid.
    method : PoolMethod
        Convention the table was built for.
    """

    offsets: np.ndarray
    method: PoolMethod

    @property
    def window_size(self) -> int:
        return int(self.offsets.shape[0])

    @property
    def pooled_size(self) -> int:
        return int(self.offsets.shape[1])

    @property
    def valid(self) -> np.ndarray:
        """Boolean mask of taps that reference a real input element."""
        return self.offsets != SENTINEL

    def raw(self) -> np.ndarray:
        """Flat ``window_size * pooled_size`` buffer in ``table[tap][pos]`` order."""
        return self.offsets.reshape(-1)

    @classmethod
    def from_raw(
        cls,
        raw: np.ndarray,
        window_size: int,
        pooled_size: int,
        method: PoolMethod | str = PoolMethod.AVG,
    ) -> "OffsetTable":
        """
        Wrap an externally built flat table.

        Parameters
        ----------
        raw : np.ndarray
            Flat integer buffer of ``window_size * pooled_size`` entries.
        window_size, pooled_size : int
            Table extent.
        method : PoolMethod or str
            Convention the table follows.

        Raises
        ------
        ValueError
            If the buffer has the wrong size or is not integral, or if a max
            table has an invalid first tap.

        Warns
        -----
        RuntimeWarning
            If a max table lists a new valid offset after its first repeat;
            the forward kernel stops at the repeat and never reads it.
        """
        method = as_pool_method(method)
        raw = np.asarray(raw)
        if not np.issubdtype(raw.dtype, np.integer):
            raise ValueError(f"offset table must be integral, got {raw.dtype}")
        if raw.size != window_size * pooled_size:
            raise ValueError(
                f"offset table holds {raw.size} entries, expected "
                f"{window_size} x {pooled_size}"
            )
        offsets = raw.astype(np.int64).reshape(window_size, pooled_size)
        if np.any(offsets < SENTINEL):
            raise ValueError("offset table entries must be >= -1")

        if method is PoolMethod.MAX:
            if np.any(offsets[0] == SENTINEL):
                raise ValueError("max offset tables need a valid first tap")
            if _has_taps_after_repeat(offsets):
                warnings.warn(
                    "max offset table lists distinct taps after a repeated "
                    "offset; those taps are skipped by the forward kernel",
                    RuntimeWarning,
                    stacklevel=2,
                )
        return cls(offsets=offsets, method=method)


def _has_taps_after_repeat(offsets: np.ndarray) -> bool:
    stop = np.zeros(offsets.shape, dtype=bool)
    stop[1:] = (offsets[1:] == offsets[:-1]) | (offsets[1:] == SENTINEL)
    stopped = np.logical_or.accumulate(stop, axis=0)
    fresh = np.zeros(offsets.shape, dtype=bool)
    fresh[1:] = offsets[1:] != offsets[:-1]
    return bool(np.any(stopped & fresh & (offsets != SENTINEL)))


def build_offset_table(
    geometry: PoolGeometry,
    width: int,
    height: int,
    method: PoolMethod | str,
) -> OffsetTable:
    """
    Build the offset table for one ``width x height`` channel plane.

    Parameters
    ----------
    geometry : PoolGeometry
        Window parameters.
    width, height : int
        Input plane extent (``data_size == width * height``).
    method : PoolMethod or str
        Selects the sentinel (average) or repeat (max) convention.

    Returns
    -------
    OffsetTable
        Table of shape ``(window_size, pooled_width * pooled_height)``.
    """
    method = as_pool_method(method)
    pooled_width, pooled_height = geometry.pooled_extent(width, height)

    pos = np.arange(pooled_width * pooled_height, dtype=np.int64)
    x0 = (pos % pooled_width) * geometry.stride_x - geometry.pad_left
    y0 = (pos // pooled_width) * geometry.stride_y - geometry.pad_top

    tap = np.arange(geometry.window_size, dtype=np.int64)
    dy, dx = np.divmod(tap, geometry.window_width)

    xs = x0[None, :] + dx[:, None]
    ys = y0[None, :] + dy[:, None]
    inside = (xs >= 0) & (xs < width) & (ys >= 0) & (ys < height)
    offsets = np.where(inside, ys * width + xs, SENTINEL)

    if method is PoolMethod.MAX:
        # stable: valid taps first, row-major order preserved
        order = np.argsort(~inside, axis=0, kind="stable")
        offsets = np.take_along_axis(offsets, order, axis=0)
        n_valid = inside.sum(axis=0)
        last = offsets[n_valid - 1, pos]
        offsets = np.where(tap[:, None] < n_valid[None, :], offsets, last[None, :])

    return OffsetTable(offsets=np.ascontiguousarray(offsets), method=method)
