"""
Configuration mixin for pooling window geometries.

This module defines `Pool2dConfigMixin`, a lightweight mixin that provides
JSON-serializable configuration hooks for objects fully described by 2-D
pooling hyperparameters (window size, stride, four-sided padding).

Design notes
------------
- Assumes the host class exposes `window`, `stride` and `padding`
  properties returning plain int tuples.
- Uses plain Python types (lists, ints) to ensure JSON compatibility.
- `from_config` accepts both the four-sided padding form written by
  `get_config` and a two-element ``[pad_y, pad_x]`` symmetric form.
"""

from typing import Dict, Any, TypeVar, Type


T = TypeVar("T", bound="Pool2dConfigMixin")


class Pool2dConfigMixin:
    """
    Mixin providing JSON serialization hooks for pooling geometries.

    The host class must provide:
    - window  : tuple[int, int]            (window_height, window_width)
    - stride  : tuple[int, int]            (stride_y, stride_x)
    - padding : tuple[int, int, int, int]  (top, bottom, left, right)
    """

    # ---------------------------------------------------------------------
    # JSON serialization
    # ---------------------------------------------------------------------
    def get_config(self) -> Dict[str, Any]:
        """
        Return JSON-serializable configuration for this geometry.
        """
        k_h, k_w = self.window
        s_h, s_w = self.stride
        p_t, p_b, p_l, p_r = self.padding

        return {
            "window": [int(k_h), int(k_w)],
            "stride": [int(s_h), int(s_w)],
            "padding": [int(p_t), int(p_b), int(p_l), int(p_r)],
        }

    @classmethod
    def from_config(cls: Type[T], cfg: Dict[str, Any]) -> T:
        """
        Reconstruct the geometry from a JSON configuration dict.
        """
        k_h, k_w = cfg["window"]
        s_h, s_w = cfg["stride"]
        padding = list(cfg.get("padding", [0, 0, 0, 0]))
        if len(padding) == 2:
            p_h, p_w = padding
            padding = [p_h, p_h, p_w, p_w]
        if len(padding) != 4:
            raise ValueError(
                f"padding must have 2 or 4 entries, got {len(padding)}: {padding}"
            )
        p_t, p_b, p_l, p_r = padding

        return cls(
            window_width=int(k_w),
            window_height=int(k_h),
            stride_x=int(s_w),
            stride_y=int(s_h),
            pad_left=int(p_l),
            pad_right=int(p_r),
            pad_top=int(p_t),
            pad_bottom=int(p_b),
        )
