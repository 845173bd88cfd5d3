"""Offline analysis of captured HID traffic to the cooler display."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator

from .frame import FRAME_SIZE, decode_frame


_NON_HEX = re.compile(r"[^0-9a-fA-F]")
HOST_TO_DEVICE = "host_to_device"
DEVICE_TO_HOST = "device_to_host"


@dataclass(frozen=True)
class ReplayEvent:
    line: int
    direction: str
    payload: bytes


@dataclass
class ReplayReport:
    total_events: int = 0
    host_to_device_events: int = 0
    device_to_host_events: int = 0
    valid_frames: int = 0
    invalid_frames: int = 0
    raw_bytes_total: int = 0
    power_w_range: list[int] = field(default_factory=list)
    temp_c_range: list[float] = field(default_factory=list)
    utilization_range: list[int] = field(default_factory=list)
    frequency_mhz_range: list[int] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


def parse_hex(value: str) -> bytes:
    """Bytes from a loosely formatted hex dump; separators are ignored, a dangling nibble dropped."""
    digits = _NON_HEX.sub("", value)
    return bytes.fromhex(digits[: len(digits) - len(digits) % 2])


def _widen(bounds: list, value) -> None:
    if bounds:
        bounds[0] = min(bounds[0], value)
        bounds[1] = max(bounds[1], value)
    else:
        bounds.extend([value, value])


class ReplayRunner:
    """Reads JSONL transcripts (``{"dir": ..., "payload_hex": ...}`` per line) and checks every frame."""

    def _events(self, transcript_path: Path, errors: list[str]) -> Iterator[ReplayEvent]:
        with transcript_path.open(encoding="utf-8") as fh:
            for line_no, line in enumerate(fh, start=1):
                if not line.strip():
                    continue
                try:
                    obj = json.loads(line)
                except json.JSONDecodeError as exc:
                    errors.append(f"line {line_no}: not JSON ({exc.msg})")
                    continue
                if not isinstance(obj, dict):
                    errors.append(f"line {line_no}: expected an object")
                    continue
                yield ReplayEvent(
                    line=line_no,
                    direction=str(obj.get("dir") or obj.get("direction") or "unknown"),
                    payload=parse_hex(str(obj.get("payload_hex") or obj.get("hex") or "")),
                )

    def parse(self, transcript_path: Path) -> list[ReplayEvent]:
        return list(self._events(transcript_path, []))

    def run(self, transcript_path: Path, strict: bool = True) -> ReplayReport:
        report = ReplayReport()
        parse_errors: list[str] = []

        for event in self._events(transcript_path, parse_errors):
            report.total_events += 1
            report.raw_bytes_total += len(event.payload)
            if event.direction == DEVICE_TO_HOST:
                report.device_to_host_events += 1
                continue
            if event.direction != HOST_TO_DEVICE:
                continue
            report.host_to_device_events += 1

            payload = event.payload
            # Captures taken below hidapi carry the leading report id.
            if len(payload) == FRAME_SIZE + 1 and payload[0] == 0:
                payload = payload[1:]
            try:
                reading = decode_frame(payload)
            except ValueError as exc:
                report.invalid_frames += 1
                if strict:
                    report.errors.append(f"line {event.line}: {exc}")
                continue

            report.valid_frames += 1
            _widen(report.power_w_range, reading.power_w)
            _widen(report.temp_c_range, reading.temp_c)
            _widen(report.utilization_range, reading.utilization_percent)
            _widen(report.frequency_mhz_range, reading.frequency_mhz)

        if strict:
            report.errors[:0] = parse_errors
            if report.valid_frames < 1:
                report.errors.append("missing_frames")
        return report
