from ._errors import (
    DeviceMismatchError,
    DeviceNotSupportedError,
    KernelLaunchError,
    UnsupportedPoolMethodError,
)
from ._geometry import PoolGeometry
from ._pooling import IPool2dKernels, PoolMethod, as_pool_method
from .device import Device, DeviceType

__all__ = [
    "Device",
    "DeviceMismatchError",
    "DeviceNotSupportedError",
    "DeviceType",
    "IPool2dKernels",
    "KernelLaunchError",
    "PoolGeometry",
    "PoolMethod",
    "UnsupportedPoolMethodError",
    "as_pool_method",
]
