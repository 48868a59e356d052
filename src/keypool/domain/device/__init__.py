from ._device import Device, DeviceType

__all__ = ["Device", "DeviceType"]
