"""
Device descriptors for engine selection.

This module defines the lightweight device abstraction used to decide where
engine scratch buffers live and which engine variant a factory should build:

- `DeviceType`: an enumeration of supported device categories
- `Device`: a concrete device descriptor that validates and normalizes
  user-facing device strings such as "cpu" or "cuda:0"
- `as_device`: normalization of the accepted device spellings (Device, str,
  or integer device id where negative ids denote the host)

Device objects do not allocate or manage backend resources.
"""

from __future__ import annotations

from enum import Enum
import re
from typing import Union


class DeviceType(Enum):
    """
    Enumeration of supported device categories.

    Attributes
    ----------
    CPU : DeviceType
        Host memory and host compute.
    CUDA : DeviceType
        NVIDIA CUDA-enabled accelerator.
    """

    CPU = "cpu"
    CUDA = "cuda"


class Device:
    """
    Concrete computation device descriptor.

    Parameters
    ----------
    device : str
        Device identifier string. Must be either:
        - "cpu"
        - "cuda:<index>", where <index> is a non-negative integer

    Raises
    ------
    ValueError
        If the provided device string does not match the supported formats.
    """

    __slots__ = ("type", "index")

    _CUDA_PATTERN = re.compile(r"^cuda:(\d+)$")

    def __init__(self, device: str):
        if device == "cpu":
            self.type = DeviceType.CPU
            self.index = None
        else:
            m = self._CUDA_PATTERN.match(device)
            if not m:
                raise ValueError(
                    f"Invalid device '{device}'. Expected 'cpu' or 'cuda:<index>'"
                )
            self.type = DeviceType.CUDA
            self.index = int(m.group(1))

    @classmethod
    def from_id(cls, device_id: int) -> "Device":
        """
        Build a device from an integer device id.

        Negative ids denote the host (CPU); non-negative ids denote the CUDA
        device with that index.

        Parameters
        ----------
        device_id : int
            Integer device identifier.

        Returns
        -------
        Device
            The corresponding device descriptor.
        """
        device_id = int(device_id)
        return cls("cpu") if device_id < 0 else cls(f"cuda:{device_id}")

    @property
    def id(self) -> int:
        """Integer device id: -1 for CPU, the device index for CUDA."""
        return -1 if self.type is DeviceType.CPU else int(self.index)

    def __str__(self) -> str:
        return "cpu" if self.type is DeviceType.CPU else f"cuda:{self.index}"

    def __repr__(self) -> str:
        return f"Device('{self}')"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Device):
            return NotImplemented
        return (self.type, self.index) == (other.type, other.index)

    def __hash__(self) -> int:
        return hash((self.type, self.index))

    def is_cpu(self) -> bool:
        """Return True if this device represents the host."""
        return self.type is DeviceType.CPU

    def is_cuda(self) -> bool:
        """Return True if this device represents a CUDA accelerator."""
        return self.type is DeviceType.CUDA


DeviceSpec = Union[Device, str, int]


def as_device(device: DeviceSpec) -> Device:
    """
    Normalize a device specification into a `Device`.

    Parameters
    ----------
    device : Device | str | int
        A `Device`, a device string ("cpu", "cuda:0"), or an integer device
        id (negative for CPU).

    Returns
    -------
    Device
        Normalized device descriptor.

    Raises
    ------
    TypeError
        If `device` is of an unsupported type.
    ValueError
        If a device string is malformed.
    """
    if isinstance(device, Device):
        return device
    if isinstance(device, bool):
        raise TypeError(f"Unsupported device specification: {device!r}")
    if isinstance(device, int):
        return Device.from_id(device)
    if isinstance(device, str):
        return Device(device)
    raise TypeError(f"Unsupported device specification: {device!r}")
