"""
Device-, launch- and contract-related exceptions for keypool.

This module defines the small set of exceptions the pooling core uses to
signal problems. Two families exist:

- Host-side contract violations (bad device, mismatched devices, unknown
  pooling method). These are raised immediately and are never recovered by
  the core.
- Launch/execution failures of a kernel grid. These are *not* raised by the
  public entry points; a `KernelLaunchError` instance is recorded in the
  backend's last-error slot and logged, mirroring how an accelerator reports
  asynchronous failures through a queried error state.
"""


class DeviceNotSupportedError(RuntimeError):
    """
    Raised when a pooling kernel is requested on a backend that cannot run
    in the current process (for example CUDA without CuPy installed).

    Attributes
    ----------
    op : str
        Kernel family that was requested (e.g., "pool2d").
    backend : str
        Backend name, e.g. "cuda".
    """

    def __init__(self, op: str, backend: str) -> None:
        super().__init__(
            f"{op} kernels need the '{backend}' backend, which is unavailable "
            f"in this process."
        )
        self.op = op
        self.backend = backend


class DeviceMismatchError(RuntimeError):
    """
    Raised when the buffers handed to one kernel call live on different
    devices (e.g., a NumPy input with a CuPy gradient buffer).

    Attributes
    ----------
    expected : str
        Device of the first buffer of the call.
    found : str
        Device of the first buffer that disagrees with it.
    """

    def __init__(self, expected: str, found: str) -> None:
        super().__init__(
            f"pooling buffers span devices: expected '{expected}', found '{found}'."
        )
        self.expected = expected
        self.found = found


class UnsupportedPoolMethodError(AssertionError):
    """
    Raised when a pooling-method selector is neither max nor average.

    This is a caller contract violation and is treated as fatal: the core
    never catches it.
    """

    def __init__(self, method: object) -> None:
        super().__init__(f"Unsupported pooling method: {method!r}")
        self.method = method


class KernelLaunchError(RuntimeError):
    """
    Describes a failed kernel launch or execution.

    Instances are stored in the last-error slot of the launching backend
    (see `keypool.infrastructure.launch`) rather than raised.

    Attributes
    ----------
    kernel : str
        Name of the kernel whose launch failed.
    reason : str
        Human-readable failure description.
    """

    def __init__(self, kernel: str, reason: str) -> None:
        super().__init__(f"{kernel}: {reason}")
        self.kernel = kernel
        self.reason = reason
