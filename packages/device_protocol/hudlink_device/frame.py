"""Fixed 20-byte status frame understood by the cooler's HUD controller."""

from __future__ import annotations

import math
import struct
from dataclasses import dataclass
from typing import TYPE_CHECKING

from .models import FrameReading

if TYPE_CHECKING:  # pragma: no cover
    from hudlink_telemetry.models import MetricsSnapshot


FRAME_SIZE = 20
FRAME_MARKER = 16
FRAME_TERMINATOR = 22
COMMAND_PREFIX = bytes([104, 1, 4, 13, 1, 2, 8])

_FLOAT32_MAX = 3.4028234663852886e38
_U16_MAX = 0xFFFF


def checksum(data: bytes) -> int:
    """Modular sum over bytes 1..17 of a frame."""
    return sum(data[1:18]) % 256


def _clamp(value: float, lo: float, hi: float) -> float:
    if math.isnan(value):
        return max(lo, min(hi, 0.0))
    return max(lo, min(hi, value))


@dataclass(frozen=True)
class CommandFrame:
    data: bytes

    def __post_init__(self) -> None:
        data = bytes(self.data)
        if len(data) != FRAME_SIZE:
            raise ValueError(f"Frame must be {FRAME_SIZE} bytes, got {len(data)}")
        if data[0] != FRAME_MARKER:
            raise ValueError(f"Bad frame marker 0x{data[0]:02X}")
        if data[19] != FRAME_TERMINATOR:
            raise ValueError(f"Bad frame terminator 0x{data[19]:02X}")
        if data[18] != checksum(data):
            raise ValueError(f"Bad checksum 0x{data[18]:02X}, expected 0x{checksum(data):02X}")
        object.__setattr__(self, "data", data)

    @classmethod
    def from_bytes(cls, data: bytes) -> CommandFrame:
        return cls(bytes(data))

    def __bytes__(self) -> bytes:
        return self.data

    def __len__(self) -> int:
        return len(self.data)

    def hex(self) -> str:
        return self.data.hex(" ").upper()


class FrameEncoder:
    """Pure and total mapping from metric values to a ``CommandFrame``.

    Out-of-range inputs are clamped, never rejected: the peripheral has no way to
    report an error back. CPU frequency goes on the wire as whole MHz.
    """

    @staticmethod
    def encode_values(power_w: float, temp_c: float, utilization_percent: float, frequency_mhz: float) -> CommandFrame:
        power = int(_clamp(float(power_w), 0.0, _U16_MAX))
        temp = _clamp(float(temp_c), -_FLOAT32_MAX, _FLOAT32_MAX)
        util = int(_clamp(float(utilization_percent), 0.0, 100.0))
        freq = int(_clamp(float(frequency_mhz), 0.0, _U16_MAX))

        buf = bytearray(FRAME_SIZE)
        buf[0] = FRAME_MARKER
        buf[1:8] = COMMAND_PREFIX
        struct.pack_into(">H", buf, 8, power)
        buf[10] = 0
        struct.pack_into(">f", buf, 11, temp)
        buf[15] = util
        struct.pack_into(">H", buf, 16, freq)
        buf[18] = checksum(buf)
        buf[19] = FRAME_TERMINATOR
        return CommandFrame(bytes(buf))

    def encode(self, snapshot: MetricsSnapshot) -> CommandFrame:
        cpu = snapshot.cpu
        return self.encode_values(
            power_w=cpu.package_power_w,
            temp_c=cpu.package_temp_c,
            utilization_percent=cpu.utilization_percent,
            frequency_mhz=cpu.frequency_mhz,
        )


def decode_frame(data: bytes) -> FrameReading:
    frame = CommandFrame.from_bytes(data)
    if frame.data[1:8] != COMMAND_PREFIX:
        raise ValueError(f"Unknown command prefix {frame.data[1:8].hex().upper()}")
    power, = struct.unpack_from(">H", frame.data, 8)
    temp, = struct.unpack_from(">f", frame.data, 11)
    freq, = struct.unpack_from(">H", frame.data, 16)
    return FrameReading(
        power_w=power,
        temp_c=temp,
        utilization_percent=frame.data[15],
        frequency_mhz=freq,
    )
