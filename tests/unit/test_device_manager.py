import sys
import unittest
from pathlib import Path

ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(ROOT / "packages" / "device_protocol"))

from hudlink_device.errors import DeviceNotFound, DeviceWriteFailure
from hudlink_device.frame import FrameEncoder
from hudlink_device.manager import PRODUCT_ID, VENDOR_ID, DeviceManager, is_compatible
from hudlink_device.models import DeviceState, HidDeviceInfo


def _info(path=b"/dev/hidraw3", vid=VENDOR_ID, pid=PRODUCT_ID, product="AK620"):
    return HidDeviceInfo(
        path=path,
        vendor_id=vid,
        product_id=pid,
        product=product,
        manufacturer="DeepCool",
        serial_number="",
        interface_number=0,
    )


class FakeTransport:
    def __init__(self, devices=None, fail_open=(), write_result=None):
        self.devices = list(devices or [])
        self.fail_open = set(fail_open)
        self.write_result = write_result
        self.opened_path = None
        self.writes = []
        self.close_calls = 0

    @property
    def is_open(self):
        return self.opened_path is not None

    def enumerate(self, vendor_id=0, product_id=0):
        return list(self.devices)

    def open(self, path):
        if path in self.fail_open:
            raise OSError("open failed")
        self.opened_path = path

    def close(self):
        self.close_calls += 1
        self.opened_path = None

    def write(self, payload):
        self.writes.append(payload)
        if isinstance(self.write_result, Exception):
            raise self.write_result
        if self.write_result is not None:
            return self.write_result
        return len(payload)


def _frame():
    return FrameEncoder.encode_values(power_w=120, temp_c=55.0, utilization_percent=30, frequency_mhz=4000)


class DeviceManagerTests(unittest.TestCase):
    def test_is_compatible(self):
        self.assertTrue(is_compatible(_info()))
        self.assertFalse(is_compatible(_info(pid=0x0001)))

    def test_discover_not_found(self):
        manager = DeviceManager(transport=FakeTransport([_info(vid=0x1234)]))
        with self.assertRaises(DeviceNotFound):
            manager.discover()
        self.assertEqual(manager.status.state, DeviceState.DISCONNECTED)
        self.assertTrue(manager.needs_rediscovery)
        self.assertEqual(manager.recent_events()[-1]["event"], "discover_not_found")

    def test_discover_skips_candidates_that_fail_to_open(self):
        transport = FakeTransport([_info(b"a"), _info(b"b")], fail_open={b"a"})
        manager = DeviceManager(transport=transport)
        info = manager.discover()
        self.assertEqual(info.path, b"b")
        self.assertEqual(manager.status.state, DeviceState.CONNECTED)
        self.assertEqual(manager.status.path, "b")
        self.assertTrue(manager.is_connected)

    def test_discover_all_candidates_fail(self):
        transport = FakeTransport([_info(b"a")], fail_open={b"a"})
        manager = DeviceManager(transport=transport)
        with self.assertRaises(DeviceNotFound):
            manager.discover()
        self.assertIn("open failed", manager.status.last_error)

    def test_send_without_device_fails_without_discovery(self):
        transport = FakeTransport([_info()])
        manager = DeviceManager(transport=transport)
        with self.assertRaises(DeviceNotFound):
            manager.send(_frame())
        self.assertFalse(transport.is_open)
        self.assertEqual(transport.writes, [])

    def test_send_prefixes_report_id(self):
        transport = FakeTransport([_info()])
        manager = DeviceManager(transport=transport)
        manager.discover()
        frame = _frame()
        written = manager.send(frame)
        self.assertEqual(written, 21)
        self.assertEqual(transport.writes, [b"\x00" + frame.data])
        self.assertEqual(manager.status.state, DeviceState.STREAMING)
        self.assertEqual(manager.status.frames_sent, 1)

    def test_write_failure_raises_and_keeps_handle(self):
        transport = FakeTransport([_info()], write_result=OSError("pipe"))
        manager = DeviceManager(rediscover_after_failures=3, transport=transport)
        manager.discover()
        with self.assertRaises(DeviceWriteFailure):
            manager.send(_frame())
        self.assertEqual(manager.status.state, DeviceState.WRITE_FAILED)
        self.assertEqual(manager.status.consecutive_failures, 1)
        self.assertFalse(manager.needs_rediscovery)

    def test_short_write_is_failure(self):
        transport = FakeTransport([_info()], write_result=-1)
        manager = DeviceManager(transport=transport)
        manager.discover()
        with self.assertRaises(DeviceWriteFailure) as ctx:
            manager.send(_frame())
        self.assertIn("short write", str(ctx.exception))

    def test_handle_released_after_consecutive_failures(self):
        transport = FakeTransport([_info()], write_result=OSError("gone"))
        manager = DeviceManager(rediscover_after_failures=2, transport=transport)
        manager.discover()
        for _ in range(2):
            with self.assertRaises(DeviceWriteFailure):
                manager.send(_frame())
        self.assertTrue(manager.needs_rediscovery)
        self.assertEqual(manager.status.state, DeviceState.DISCONNECTED)
        with self.assertRaises(DeviceNotFound):
            manager.send(_frame())

        transport.write_result = None
        manager.discover()
        manager.send(_frame())
        self.assertEqual(manager.status.consecutive_failures, 0)

    def test_success_resets_failure_count(self):
        transport = FakeTransport([_info()], write_result=OSError("glitch"))
        manager = DeviceManager(rediscover_after_failures=2, transport=transport)
        manager.discover()
        with self.assertRaises(DeviceWriteFailure):
            manager.send(_frame())
        transport.write_result = None
        manager.send(_frame())
        transport.write_result = OSError("glitch")
        with self.assertRaises(DeviceWriteFailure):
            manager.send(_frame())
        self.assertFalse(manager.needs_rediscovery)

    def test_rediscover_closes_previous_handle(self):
        transport = FakeTransport([_info()])
        manager = DeviceManager(transport=transport)
        manager.discover()
        manager.discover()
        self.assertEqual(transport.close_calls, 2)
        self.assertTrue(manager.is_connected)

    def test_context_manager_disconnects(self):
        transport = FakeTransport([_info()])
        with DeviceManager(transport=transport) as manager:
            manager.discover()
        self.assertFalse(transport.is_open)
        self.assertEqual(manager.status.state, DeviceState.DISCONNECTED)


if __name__ == "__main__":
    unittest.main()
