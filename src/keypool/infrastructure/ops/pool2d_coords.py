"""
Coordinate mapping shared by every generic pooling kernel.

All functions are vectorized over worker ids: each argument or result array
holds one entry per worker. The forward and backward kernels call these same
functions so that a gradient is always routed through the exact window
geometry that produced the forward value.

Layout
------
A flat feature map index is ``x + y*width + z*width*height``; a flat pooled
index is ``px + py*pooled_width + pz*pooled_width*pooled_height``.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from ...domain._geometry import PoolGeometry


@dataclass(frozen=True)
class WindowBounds:
    """
    Clipped input rectangle ``[x1, x2) x [y1, y2)`` per output worker,
    together with the output coordinates it was derived from.
    """

    px: np.ndarray
    py: np.ndarray
    pz: np.ndarray
    x1: np.ndarray
    y1: np.ndarray
    x2: np.ndarray
    y2: np.ndarray

    def area(self) -> np.ndarray:
        """Number of real input elements inside each clipped window."""
        return (self.y2 - self.y1) * (self.x2 - self.x1)


def output_coords(
    ids: np.ndarray, pooled_width: int, pooled_height: int
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Decompose linear output ids into ``(px, py, pz)``."""
    px = ids % pooled_width
    py = (ids // pooled_width) % pooled_height
    pz = ids // (pooled_width * pooled_height)
    return px, py, pz


def clipped_window(
    px: np.ndarray,
    py: np.ndarray,
    geometry: PoolGeometry,
    width: int,
    height: int,
) -> tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """
    Map output coordinates to the input window clipped to the real input.

    Returns
    -------
    tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]
        ``(x1, y1, x2, y2)`` with the upper bounds exclusive.
    """
    x1 = px * geometry.stride_x - geometry.pad_left
    y1 = py * geometry.stride_y - geometry.pad_top
    x2 = np.minimum(x1 + geometry.window_width, width)
    y2 = np.minimum(y1 + geometry.window_height, height)
    x1 = np.maximum(x1, 0)
    y1 = np.maximum(y1, 0)
    return x1, y1, x2, y2


def window_bounds(
    ids: np.ndarray,
    geometry: PoolGeometry,
    width: int,
    height: int,
    pooled_width: int,
    pooled_height: int,
) -> WindowBounds:
    """Full coordinate mapping from output worker ids to clipped windows."""
    px, py, pz = output_coords(ids, pooled_width, pooled_height)
    x1, y1, x2, y2 = clipped_window(px, py, geometry, width, height)
    return WindowBounds(px=px, py=py, pz=pz, x1=x1, y1=y1, x2=x2, y2=y2)


@dataclass(frozen=True)
class CoveringRange:
    """
    Range of output positions ``[px1, px2) x [py1, py2)`` whose windows
    contain a given input element (inverse of the forward window mapping).
    """

    z: np.ndarray
    px1: np.ndarray
    px2: np.ndarray
    py1: np.ndarray
    py2: np.ndarray


def covering_outputs(
    ids: np.ndarray,
    geometry: PoolGeometry,
    width: int,
    height: int,
    pooled_width: int,
    pooled_height: int,
) -> CoveringRange:
    """
    Compute, per input worker, the output positions whose window covers it.
    """
    x = ids % width + geometry.pad_left
    y = (ids // width) % height + geometry.pad_top
    z = ids // (width * height)

    ww, wh = geometry.window_width, geometry.window_height
    sx, sy = geometry.stride_x, geometry.stride_y

    px1 = np.where(x < ww, 0, (x - ww) // sx + 1)
    py1 = np.where(y < wh, 0, (y - wh) // sy + 1)
    px2 = np.minimum(x // sx + 1, pooled_width)
    py2 = np.minimum(y // sy + 1, pooled_height)
    return CoveringRange(z=z, px1=px1, px2=px2, py1=py1, py2=py2)


def max_covering(window: int, stride: int) -> int:
    """Upper bound on how many windows along one axis contain an element."""
    return -(-window // stride)
