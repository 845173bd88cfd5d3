"""Typed models for the HID link and device state."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class DeviceState(str, Enum):
    DISCONNECTED = "Disconnected"
    CONNECTING = "Connecting"
    CONNECTED = "Connected"
    STREAMING = "Streaming"
    WRITE_FAILED = "WriteFailed"


@dataclass(frozen=True)
class HidDeviceInfo:
    path: bytes
    vendor_id: int
    product_id: int
    product: str
    manufacturer: str
    serial_number: str
    interface_number: int


@dataclass(frozen=True)
class FrameReading:
    power_w: int
    temp_c: float
    utilization_percent: int
    frequency_mhz: int


@dataclass
class DeviceStatus:
    state: DeviceState = DeviceState.DISCONNECTED
    path: str | None = None
    product: str | None = None
    frames_sent: int = 0
    consecutive_failures: int = 0
    last_error: str | None = None
