from .pool2d_ext import (
    CudaKernels,
    HostKernels,
    avgpool2d_backward_nchw,
    avgpool2d_forward_nchw,
    device_of,
    kernels_for,
    maxpool2d_backward_nchw,
    maxpool2d_forward_nchw,
    pool2d_backward,
    pool2d_backward_nchw,
    pool2d_fast_backward,
    pool2d_fast_forward,
    pool2d_forward,
    pool2d_forward_nchw,
)
from .pool2d_fast_cpu import SPECIALIZED_WINDOW_SIZES, select_fast_kernel
from .pool2d_offsets import SENTINEL, OffsetTable, build_offset_table
