"""
Worker-grid launch machinery for the host backend.

Every pooling kernel is written as a *worker body*: a function that receives a
1-D array of worker ids and performs, for all of them at once, exactly what a
single accelerator thread would do for its own id. This module turns a body
into a launch:

- `LaunchConfig` describes the flat grid (worker count, block size) and
  validates it the way a device runtime validates a launch configuration.
- `launch` runs the body over the grid block-wave by block-wave.
- A per-thread last-error slot (`get_last_error` / `peek_last_error`)
  records launch and execution failures instead of raising them; each
  recorded failure is also logged at ERROR level.

Workers never communicate. The only shared mutation performed by bodies is
scatter-accumulation into gradient buffers, which must go through
`numpy.add.at` (unbuffered: repeated targets accumulate without lost updates).
Buffers a body writes are staged and committed only when the whole grid
completed, so a failed launch leaves them untouched.
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Sequence

import numpy as np

from ...domain._errors import KernelLaunchError

logger = logging.getLogger(__name__)

BLOCK_SIZE_ENV = "KEYPOOL_BLOCK_SIZE"
DEFAULT_BLOCK_SIZE = 256
MAX_BLOCK_SIZE = 1024
MAX_GRID_SIZE = 2**31 - 1

# blocks executed per vectorized wave on the host
BLOCKS_PER_WAVE = 64


def default_block_size() -> int:
    """
    Return the default number of workers per block.

    The value is read from the ``KEYPOOL_BLOCK_SIZE`` environment variable
    when set, otherwise `DEFAULT_BLOCK_SIZE`.

    Raises
    ------
    ValueError
        If the environment variable is set but is not an integer.
    """
    raw = os.environ.get(BLOCK_SIZE_ENV, "")
    if not raw:
        return DEFAULT_BLOCK_SIZE
    try:
        return int(raw)
    except ValueError:
        raise ValueError(
            f"{BLOCK_SIZE_ENV} must be an integer, got {raw!r}"
        ) from None


@dataclass(frozen=True)
class LaunchConfig:
    """
    Flat 1-D launch configuration.

    Attributes
    ----------
    num_workers : int
        Total number of logical workers (problem volume).
    block_size : int
        Workers per block. Blocks are the fixed-size batches the grid is
        dispatched in.
    """

    num_workers: int
    block_size: int = field(default_factory=default_block_size)

    @classmethod
    def for_workers(
        cls, num_workers: int, block_size: Optional[int] = None
    ) -> "LaunchConfig":
        """Build a config, using the default block size when none is given."""
        if block_size is None:
            return cls(num_workers)
        return cls(num_workers, int(block_size))

    @property
    def grid_size(self) -> int:
        """Number of blocks needed to cover every worker."""
        if self.block_size <= 0:
            return 0
        return -(-self.num_workers // self.block_size)

    def validate(self) -> Optional[str]:
        """
        Check the configuration against device launch limits.

        Returns
        -------
        Optional[str]
            None when the configuration is launchable, otherwise the reason
            it is not.
        """
        if self.block_size < 1 or self.block_size > MAX_BLOCK_SIZE:
            return (
                f"invalid configuration argument: block size {self.block_size} "
                f"outside [1, {MAX_BLOCK_SIZE}]"
            )
        if self.num_workers < 1:
            return (
                f"invalid configuration argument: empty grid "
                f"({self.num_workers} workers)"
            )
        if self.grid_size > MAX_GRID_SIZE:
            return (
                f"invalid configuration argument: grid size {self.grid_size} "
                f"exceeds {MAX_GRID_SIZE}"
            )
        return None


# ---------------------------------------------------------------------
# Last-error slot
# ---------------------------------------------------------------------

_state = threading.local()


def _set_last_error(err: Optional[KernelLaunchError]) -> None:
    _state.last_error = err


def peek_last_error() -> Optional[KernelLaunchError]:
    """Return the last recorded launch failure without clearing it."""
    return getattr(_state, "last_error", None)


def get_last_error() -> Optional[KernelLaunchError]:
    """Return the last recorded launch failure and reset the slot."""
    err = peek_last_error()
    _set_last_error(None)
    return err


def report_launch_error(kernel: str, reason: str) -> KernelLaunchError:
    """
    Record a launch/execution failure in the last-error slot and log it.

    Parameters
    ----------
    kernel : str
        Name of the failed kernel.
    reason : str
        Human-readable description of the failure.

    Returns
    -------
    KernelLaunchError
        The recorded error.
    """
    err = KernelLaunchError(kernel, reason)
    _set_last_error(err)
    logger.error("kernel launch failed: %s", err)
    return err


def check_buffers(kernel: str, *buffers: tuple[str, Any, int]) -> bool:
    """
    Validate that every buffer is flat and large enough for the grid.

    Each entry is ``(label, array, required_size)``. A failed check is
    reported through `report_launch_error` (nothing is written to any buffer).

    Returns
    -------
    bool
        True if every buffer is usable.
    """
    for label, buf, required in buffers:
        if getattr(buf, "ndim", None) != 1:
            report_launch_error(
                kernel,
                f"invalid argument: buffer {label!r} must be a flat 1-D array, "
                f"got shape {getattr(buf, 'shape', None)}",
            )
            return False
        if buf.size < required:
            report_launch_error(
                kernel,
                f"an illegal memory access would occur: buffer {label!r} holds "
                f"{buf.size} elements, {required} required",
            )
            return False
    return True


def launch(
    kernel: str,
    body: Callable[..., None],
    config: LaunchConfig,
    *args: Any,
    writes: Sequence[int] = (),
) -> bool:
    """
    Run a worker body over a flat grid.

    Parameters
    ----------
    kernel : str
        Kernel name used for diagnostics.
    body : Callable
        Worker body, called as ``body(worker_ids, *args)`` with an int64
        array of worker ids. Ids beyond `config.num_workers` are never
        produced, so bodies need no tail guard.
    config : LaunchConfig
        Grid description.
    *args
        Forwarded to `body`.
    writes : Sequence[int]
        Positions in `args` of the buffers the body writes. Workers write
        into staged copies; the copies are committed only after the whole
        grid completed, so a rejected or faulting launch leaves every
        written buffer untouched.

    Returns
    -------
    bool
        True if the whole grid completed, False if the launch was rejected
        or a worker faulted. Failures are available via `get_last_error`.
    """
    reason = config.validate()
    if reason is not None:
        report_launch_error(kernel, reason)
        return False

    logger.debug(
        "launch %s: grid=%d block=%d workers=%d",
        kernel,
        config.grid_size,
        config.block_size,
        config.num_workers,
    )

    staged = list(args)
    for i in writes:
        if staged[i] is not None:
            staged[i] = staged[i].copy()

    wave = config.block_size * BLOCKS_PER_WAVE
    try:
        for start in range(0, config.num_workers, wave):
            stop = min(start + wave, config.num_workers)
            body(np.arange(start, stop, dtype=np.int64), *staged)
    except IndexError as e:
        report_launch_error(kernel, f"an illegal memory access was encountered ({e})")
        return False

    for i in writes:
        if args[i] is not None:
            np.copyto(args[i], staged[i])
    return True
