"""
Pooling method selector and kernel-backend contract.

This module defines the **domain-level** vocabulary shared by every pooling
backend:

- `PoolMethod`: the reduction applied to each window (max or average).
- `as_pool_method`: normalization of user-facing selectors.
- `IPool2dKernels`: the structural contract a backend module must satisfy
  (generic and fast-path forward/backward entry points).

Notes
-----
This module contains **no NumPy or backend-specific logic** and is safe to
depend on from any layer of the architecture.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional, Protocol, runtime_checkable

from ._errors import UnsupportedPoolMethodError
from ._geometry import PoolGeometry


class PoolMethod(Enum):
    """Reduction applied over each pooling window."""

    MAX = "max"
    AVG = "avg"


def as_pool_method(method: PoolMethod | str) -> PoolMethod:
    """
    Normalize a pooling-method selector.

    Parameters
    ----------
    method : PoolMethod or str
        Either a `PoolMethod` member or its string value ("max" / "avg").

    Returns
    -------
    PoolMethod
        The canonical enum member.

    Raises
    ------
    UnsupportedPoolMethodError
        If `method` does not name a supported reduction.
    """
    if isinstance(method, PoolMethod):
        return method
    try:
        return PoolMethod(method)
    except ValueError:
        raise UnsupportedPoolMethodError(method) from None


@runtime_checkable
class IPool2dKernels(Protocol):
    """
    Protocol for a pooling kernel backend.

    All buffers are flat, caller-owned arrays resident on the backend's
    device. Entry points enqueue the worker grid, wait for it, and return
    nothing; failures are reported through the backend's last-error slot.

    Layout
    ------
    Feature maps are addressed ``x + y*width + z*width*height``. Pooled maps
    use the same layout at the pooled extent.
    """

    def pool2d_forward(
        self,
        output: Any,
        data: Any,
        geometry: PoolGeometry,
        width: int,
        height: int,
        depth: int,
        method: PoolMethod,
        argmax: Optional[Any] = None,
    ) -> None:
        """Generic strided/padded window scan, one worker per output."""

    def pool2d_backward(
        self,
        dzdx: Any,
        data: Any,
        dzdy: Any,
        geometry: PoolGeometry,
        width: int,
        height: int,
        depth: int,
        method: PoolMethod,
        argmax: Optional[Any] = None,
    ) -> None:
        """Generic backward; `dzdx` must be zero-filled by the caller."""

    def pool2d_fast_forward(
        self,
        output: Any,
        data: Any,
        table: Any,
        data_size: int,
        depth: int,
        method: PoolMethod,
    ) -> None:
        """Offset-table driven forward, one worker per output."""

    def pool2d_fast_backward(
        self,
        dzdx: Any,
        data: Any,
        dzdy: Any,
        table: Any,
        data_size: int,
        depth: int,
        method: PoolMethod,
    ) -> None:
        """Offset-table driven backward; `dzdx` must be zero-filled."""
