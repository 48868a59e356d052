"""
Device descriptors for the pooling backends.

A pooling call runs on exactly one backend, chosen from the type of the
buffers it receives:

- ``cpu``      : NumPy buffers, host worker grid
- ``cuda:<i>`` : CuPy buffers on GPU ordinal ``i`` (``cuda`` means ``cuda:0``)

The infrastructure layer derives a `Device` for every buffer (see
`device_of`) and compares them before dispatching.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional, Tuple


class DeviceType(Enum):
    """Backend families known to the pooling core."""

    CPU = "cpu"
    CUDA = "cuda"


def _parse(spec: str) -> Tuple[DeviceType, Optional[int]]:
    name, sep, ordinal = spec.strip().lower().partition(":")
    if name == DeviceType.CPU.value and not sep:
        return DeviceType.CPU, None
    if name == DeviceType.CUDA.value:
        if not sep:
            return DeviceType.CUDA, 0
        if ordinal.isdigit():
            return DeviceType.CUDA, int(ordinal)
    raise ValueError(
        f"Invalid device '{spec}'. Expected 'cpu', 'cuda' or 'cuda:<index>'"
    )


class Device:
    """
    Immutable device descriptor parsed from a string.

    Parameters
    ----------
    spec : str
        ``"cpu"``, ``"cuda"`` or ``"cuda:<index>"`` (case-insensitive).

    Raises
    ------
    ValueError
        If `spec` names no known backend.
    """

    __slots__ = ("_key",)

    def __init__(self, spec: str) -> None:
        object.__setattr__(self, "_key", _parse(spec))

    def __setattr__(self, name: str, value: object) -> None:
        raise AttributeError("Device is immutable")

    @property
    def type(self) -> DeviceType:
        return self._key[0]

    @property
    def index(self) -> Optional[int]:
        """GPU ordinal, or None for the host."""
        return self._key[1]

    def is_cpu(self) -> bool:
        return self.type is DeviceType.CPU

    def is_cuda(self) -> bool:
        return self.type is DeviceType.CUDA

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Device):
            return self._key == other._key
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._key)

    def __str__(self) -> str:
        return self.type.value if self.index is None else f"cuda:{self.index}"

    def __repr__(self) -> str:
        return f"Device({str(self)!r})"
