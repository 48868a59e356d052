from ._grid import (
    BLOCK_SIZE_ENV,
    DEFAULT_BLOCK_SIZE,
    MAX_BLOCK_SIZE,
    LaunchConfig,
    check_buffers,
    default_block_size,
    get_last_error,
    launch,
    peek_last_error,
    report_launch_error,
)

__all__ = [
    "BLOCK_SIZE_ENV",
    "DEFAULT_BLOCK_SIZE",
    "MAX_BLOCK_SIZE",
    "LaunchConfig",
    "check_buffers",
    "default_block_size",
    "get_last_error",
    "launch",
    "peek_last_error",
    "report_launch_error",
]
