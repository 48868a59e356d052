"""
Pooling window geometry.

`PoolGeometry` is the immutable set of per-call window parameters shared by
the forward and backward kernels:

    {window_width, window_height, stride_x, stride_y,
     pad_left, pad_right, pad_top, pad_bottom}

Shape semantics
---------------
For an input plane of ``width x height``:

    pooled_width  = floor((width  + pad_left + pad_right  - window_width)  / stride_x) + 1
    pooled_height = floor((height + pad_top  + pad_bottom - window_height) / stride_y) + 1

Every padding side is required to be strictly smaller than the window extent
along that axis. Together with the formula above this guarantees that each
output position's clipped window contains at least one real input element,
so average pooling never divides by an empty count.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

from .model._pool2d_mixin import Pool2dConfigMixin


def _pair(v: int | Tuple[int, int]) -> Tuple[int, int]:
    """Normalize an integer or an ``(h, w)`` pair into a 2-tuple."""
    return tuple(v) if isinstance(v, (tuple, list)) else (v, v)


@dataclass(frozen=True)
class PoolGeometry(Pool2dConfigMixin):
    """
    Immutable pooling window parameters.

    Raises
    ------
    ValueError
        If a window or stride extent is not positive, a padding is negative,
        or a padding is not smaller than the window extent on its axis.
    """

    window_width: int
    window_height: int
    stride_x: int = 1
    stride_y: int = 1
    pad_left: int = 0
    pad_right: int = 0
    pad_top: int = 0
    pad_bottom: int = 0

    def __post_init__(self) -> None:
        if self.window_width < 1 or self.window_height < 1:
            raise ValueError(
                f"window must be positive, got {self.window_height}x{self.window_width}"
            )
        if self.stride_x < 1 or self.stride_y < 1:
            raise ValueError(
                f"stride must be positive, got ({self.stride_y}, {self.stride_x})"
            )
        pads = (self.pad_top, self.pad_bottom, self.pad_left, self.pad_right)
        if min(pads) < 0:
            raise ValueError(f"padding must be non-negative, got {pads}")
        if max(self.pad_left, self.pad_right) >= self.window_width or max(
            self.pad_top, self.pad_bottom
        ) >= self.window_height:
            raise ValueError(
                f"padding {pads} must be smaller than the window "
                f"{self.window_height}x{self.window_width} on each side"
            )

    @classmethod
    def square(
        cls,
        kernel_size: int | Tuple[int, int],
        stride: Optional[int | Tuple[int, int]] = None,
        padding: int | Tuple[int, int] = 0,
    ) -> "PoolGeometry":
        """
        Build a geometry from conv-style hyperparameters.

        `kernel_size`, `stride` and `padding` are ints or ``(h, w)`` pairs;
        padding is applied symmetrically. A missing stride defaults to the
        kernel size.
        """
        k_h, k_w = _pair(kernel_size)
        s_h, s_w = _pair(kernel_size if stride is None else stride)
        p_h, p_w = _pair(padding)
        return cls(
            window_width=k_w,
            window_height=k_h,
            stride_x=s_w,
            stride_y=s_h,
            pad_left=p_w,
            pad_right=p_w,
            pad_top=p_h,
            pad_bottom=p_h,
        )

    @property
    def window(self) -> Tuple[int, int]:
        return self.window_height, self.window_width

    @property
    def stride(self) -> Tuple[int, int]:
        return self.stride_y, self.stride_x

    @property
    def padding(self) -> Tuple[int, int, int, int]:
        return self.pad_top, self.pad_bottom, self.pad_left, self.pad_right

    @property
    def window_size(self) -> int:
        """Number of taps in the nominal (unclipped) window."""
        return self.window_width * self.window_height

    def pooled_extent(self, width: int, height: int) -> Tuple[int, int]:
        """
        Compute the pooled plane extent for an input plane.

        Parameters
        ----------
        width, height : int
            Input plane extent.

        Returns
        -------
        tuple[int, int]
            ``(pooled_width, pooled_height)``.

        Raises
        ------
        ValueError
            If the padded input is smaller than the window.
        """
        span_x = width + self.pad_left + self.pad_right - self.window_width
        span_y = height + self.pad_top + self.pad_bottom - self.window_height
        if width < 1 or height < 1 or span_x < 0 or span_y < 0:
            raise ValueError(
                f"input {height}x{width} (padded by {self.padding}) is smaller "
                f"than the window {self.window_height}x{self.window_width}"
            )
        return span_x // self.stride_x + 1, span_y // self.stride_y + 1
