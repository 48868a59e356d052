"""
keypool: 2D max/average pooling kernels for flat multi-channel feature maps.

The package exposes forward and backward entry points for two strategies:

- the generic strided/padded window scan (`pool2d_forward`, `pool2d_backward`)
- the offset-table fast path (`pool2d_fast_forward`, `pool2d_fast_backward`)

Buffers are flat NumPy arrays (host worker grid) or CuPy arrays (CUDA).
Launch failures are logged on the ``keypool`` logger and kept in a
last-error slot (`get_last_error`).
"""

import logging

from .domain import (
    Device,
    DeviceMismatchError,
    DeviceNotSupportedError,
    DeviceType,
    KernelLaunchError,
    PoolGeometry,
    PoolMethod,
    UnsupportedPoolMethodError,
)
from .infrastructure.launch import LaunchConfig, get_last_error, peek_last_error
from .infrastructure.ops import (
    SENTINEL,
    SPECIALIZED_WINDOW_SIZES,
    OffsetTable,
    avgpool2d_backward_nchw,
    avgpool2d_forward_nchw,
    build_offset_table,
    device_of,
    maxpool2d_backward_nchw,
    maxpool2d_forward_nchw,
    pool2d_backward,
    pool2d_backward_nchw,
    pool2d_fast_backward,
    pool2d_fast_forward,
    pool2d_forward,
    pool2d_forward_nchw,
)

logging.getLogger(__name__).addHandler(logging.NullHandler())

__version__ = "0.1.0"

__all__ = [
    "Device",
    "DeviceMismatchError",
    "DeviceNotSupportedError",
    "DeviceType",
    "KernelLaunchError",
    "LaunchConfig",
    "OffsetTable",
    "PoolGeometry",
    "PoolMethod",
    "SENTINEL",
    "SPECIALIZED_WINDOW_SIZES",
    "UnsupportedPoolMethodError",
    "avgpool2d_backward_nchw",
    "avgpool2d_forward_nchw",
    "build_offset_table",
    "device_of",
    "get_last_error",
    "maxpool2d_backward_nchw",
    "maxpool2d_forward_nchw",
    "peek_last_error",
    "pool2d_backward",
    "pool2d_backward_nchw",
    "pool2d_fast_backward",
    "pool2d_fast_forward",
    "pool2d_forward",
    "pool2d_forward_nchw",
]
