"""HID frame protocol and device link for the cooler display."""

from .errors import DeviceError, DeviceNotFound, DeviceWriteFailure
from .frame import FRAME_SIZE, CommandFrame, FrameEncoder, decode_frame
from .manager import PRODUCT_ID, VENDOR_ID, DeviceManager, is_compatible
from .models import DeviceState, DeviceStatus, FrameReading, HidDeviceInfo
from .replay import ReplayEvent, ReplayReport, ReplayRunner
from .transport import HidTransport

__all__ = [
    "FRAME_SIZE",
    "PRODUCT_ID",
    "VENDOR_ID",
    "CommandFrame",
    "DeviceError",
    "DeviceManager",
    "DeviceNotFound",
    "DeviceState",
    "DeviceStatus",
    "DeviceWriteFailure",
    "FrameEncoder",
    "FrameReading",
    "HidDeviceInfo",
    "HidTransport",
    "ReplayEvent",
    "ReplayReport",
    "ReplayRunner",
    "decode_frame",
    "is_compatible",
]
