from ._device import Device, DeviceSpec, DeviceType, as_device

__all__ = ["Device", "DeviceSpec", "DeviceType", "as_device"]
