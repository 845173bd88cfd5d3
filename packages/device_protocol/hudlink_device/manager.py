"""Single-owner manager for the cooler's HID handle."""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Any

from .errors import DeviceNotFound, DeviceWriteFailure
from .frame import CommandFrame
from .models import DeviceState, DeviceStatus, HidDeviceInfo
from .transport import HidTransport


VENDOR_ID = 0x3633
PRODUCT_ID = 0x0012
REPORT_ID = 0

logger = logging.getLogger("hudlink.device")


def is_compatible(device: HidDeviceInfo, vendor_id: int = VENDOR_ID, product_id: int = PRODUCT_ID) -> bool:
    return device.vendor_id == vendor_id and device.product_id == product_id


class DeviceManager:
    """Discovers the display, owns its handle and writes frames to it.

    Writes never trigger discovery. After ``rediscover_after_failures`` consecutive
    failed writes the handle is treated as stale and released; ``needs_rediscovery``
    then tells the caller to invoke ``discover()`` again.
    """

    def __init__(
        self,
        vendor_id: int = VENDOR_ID,
        product_id: int = PRODUCT_ID,
        rediscover_after_failures: int = 3,
        transport: HidTransport | None = None,
    ) -> None:
        self.vendor_id = vendor_id
        self.product_id = product_id
        self.rediscover_after_failures = max(1, rediscover_after_failures)

        self._transport = transport or HidTransport()
        self._status = DeviceStatus()
        self._lock = threading.RLock()
        self._events: list[dict[str, Any]] = []

    @property
    def status(self) -> DeviceStatus:
        return self._status

    @property
    def is_connected(self) -> bool:
        return self._transport.is_open

    @property
    def needs_rediscovery(self) -> bool:
        return not self._transport.is_open

    def recent_events(self, limit: int = 200) -> list[dict[str, Any]]:
        return self._events[-limit:]

    def _log_event(self, event: str, **fields: Any) -> None:
        row = {
            "ts_utc": datetime.now(timezone.utc).isoformat(),
            "event": event,
            "state": self._status.state.value,
        }
        row.update(fields)
        self._events.append(row)
        if len(self._events) > 1000:
            self._events = self._events[-1000:]

    def discover(self) -> HidDeviceInfo:
        with self._lock:
            self._status.state = DeviceState.CONNECTING
            self._log_event("discover_start", vendor_id=self.vendor_id, product_id=self.product_id)

            matches = [
                d
                for d in self._transport.enumerate(self.vendor_id, self.product_id)
                if is_compatible(d, self.vendor_id, self.product_id)
            ]
            self._transport.close()
            self._status.path = None
            self._status.product = None

            if not matches:
                self._status.state = DeviceState.DISCONNECTED
                self._status.last_error = "not found"
                self._log_event("discover_not_found")
                raise DeviceNotFound(f"No HID device {self.vendor_id:04X}:{self.product_id:04X}")

            last_error: Exception | None = None
            for candidate in matches:
                try:
                    self._transport.open(candidate.path)
                except Exception as exc:
                    last_error = exc
                    self._log_event("open_error", path=candidate.path.decode(errors="replace"), error=str(exc))
                    continue

                self._status.state = DeviceState.CONNECTED
                self._status.path = candidate.path.decode(errors="replace")
                self._status.product = candidate.product or None
                self._status.consecutive_failures = 0
                self._status.last_error = None
                self._log_event("discover_ok", path=self._status.path, product=candidate.product)
                logger.info(
                    f"display connected {self.vendor_id:04X}:{self.product_id:04X}",
                    extra={"event": "device_connected", "path": self._status.path},
                )
                return candidate

            self._status.state = DeviceState.DISCONNECTED
            self._status.last_error = str(last_error)
            raise DeviceNotFound(
                f"HID device {self.vendor_id:04X}:{self.product_id:04X} could not be opened: {last_error}"
            )

    def send(self, frame: CommandFrame) -> int:
        payload = bytes(frame)
        with self._lock:
            if not self._transport.is_open:
                raise DeviceNotFound("Display link is absent")

            # hidapi expects the report id as the first byte.
            report = bytes([REPORT_ID]) + payload
            try:
                written = self._transport.write(report)
            except Exception as exc:
                self._write_failed(str(exc))
                raise DeviceWriteFailure(str(exc)) from exc
            if written < len(payload):
                reason = f"short write ({written} of {len(payload)} frame bytes)"
                self._write_failed(reason)
                raise DeviceWriteFailure(reason)

            self._status.state = DeviceState.STREAMING
            self._status.frames_sent += 1
            self._status.consecutive_failures = 0
            self._status.last_error = None
            return written

    def _write_failed(self, reason: str) -> None:
        self._status.consecutive_failures += 1
        self._status.last_error = reason
        self._status.state = DeviceState.WRITE_FAILED
        self._log_event("write_error", error=reason, consecutive=self._status.consecutive_failures)

        if self._status.consecutive_failures >= self.rediscover_after_failures:
            self._transport.close()
            self._status.state = DeviceState.DISCONNECTED
            self._log_event("handle_released", reason="stale")
            logger.warning(
                f"display handle released after {self._status.consecutive_failures} failed writes",
                extra={"event": "device_stale"},
            )

    def disconnect(self) -> None:
        with self._lock:
            self._transport.close()
            self._status.state = DeviceState.DISCONNECTED
            self._status.path = None
            self._log_event("disconnect")

    def __enter__(self) -> DeviceManager:
        return self

    def __exit__(self, *_exc: object) -> None:
        self.disconnect()
