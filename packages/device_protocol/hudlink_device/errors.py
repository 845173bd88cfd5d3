"""Device link errors."""

from __future__ import annotations


class DeviceError(Exception):
    pass


class DeviceNotFound(DeviceError):
    pass


class DeviceWriteFailure(DeviceError):
    pass
