"""HID transport abstraction for the cooler display."""

from __future__ import annotations

from typing import Any

from .models import HidDeviceInfo

try:
    import hid  # type: ignore
except Exception:  # pragma: no cover
    hid = None


class HidTransport:
    """Thin wrapper over hidapi holding at most one open device."""

    def __init__(self) -> None:
        self._device: Any | None = None
        self.path: bytes | None = None

    @property
    def is_open(self) -> bool:
        return self._device is not None

    def open(self, path: bytes) -> None:
        if hid is None:
            raise RuntimeError("hidapi is required")
        if self.is_open:
            return
        device = hid.device()
        device.open_path(path)
        self._device = device
        self.path = path

    def close(self) -> None:
        if self._device is not None:
            try:
                self._device.close()
            finally:
                self._device = None
                self.path = None

    def write(self, payload: bytes) -> int:
        if not self.is_open:
            raise RuntimeError("HID device is not open")
        return int(self._device.write(payload))

    @staticmethod
    def enumerate(vendor_id: int = 0, product_id: int = 0) -> list[HidDeviceInfo]:
        if hid is None:
            return []
        devices: list[HidDeviceInfo] = []
        for item in hid.enumerate(vendor_id, product_id):
            interface = item.get("interface_number")
            devices.append(
                HidDeviceInfo(
                    path=item.get("path") or b"",
                    vendor_id=int(item.get("vendor_id") or 0),
                    product_id=int(item.get("product_id") or 0),
                    product=item.get("product_string") or "",
                    manufacturer=item.get("manufacturer_string") or "",
                    serial_number=item.get("serial_number") or "",
                    interface_number=(int(interface) if interface is not None else -1),
                )
            )
        return devices
