import sys
import threading
import time
import unittest
from datetime import datetime, timezone
from pathlib import Path

ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(ROOT / "packages" / "telemetry"))
sys.path.insert(0, str(ROOT / "packages" / "device_protocol"))
sys.path.insert(0, str(ROOT / "packages" / "core"))

from hudlink_core.scheduler import Scheduler, SchedulerState, SnapshotStore
from hudlink_device.errors import DeviceNotFound, DeviceWriteFailure
from hudlink_device.frame import FrameEncoder
from hudlink_telemetry.models import (
    CpuMetrics,
    CpuReading,
    DiskMetrics,
    ExpensiveReading,
    GpuMetrics,
    MemoryMetrics,
    MetricsSnapshot,
    NetworkMetrics,
)


class FakeSampler:
    def __init__(self, reading=None, fail=False):
        self._reading = reading or CpuReading(
            utilization_percent=40.0, frequency_mhz=3600.0, package_temp_c=55.5, package_power_w=48.0
        )
        self.fail = fail
        self.ticks = 0

    def tick(self):
        self.ticks += 1
        if self.fail:
            raise RuntimeError("counter source gone")
        return True

    def reading(self):
        return self._reading


class FakeAggregator:
    def __init__(self, fail_poll=False):
        self.fail_poll = fail_poll
        self.calls = []
        self.cpu_seen = []
        self.merged = []
        self.expensive_calls = 0

    def poll_core(self, cpu=None):
        self.calls.append("poll_core")
        self.cpu_seen.append(cpu)
        if self.fail_poll:
            raise OSError("psutil failure")
        cpu = cpu or CpuReading()
        gpu_model = self.merged[-1].gpu_model if self.merged else "unknown"
        return MetricsSnapshot(
            cpu=CpuMetrics(
                utilization_percent=cpu.utilization_percent,
                frequency_mhz=cpu.frequency_mhz,
                package_temp_c=cpu.package_temp_c,
                package_power_w=cpu.package_power_w,
                model="test cpu",
                core_count=4,
            ),
            memory=MemoryMetrics(used_bytes=1, total_bytes=2, frequency_mhz=0.0),
            disk=DiskMetrics(mount="/", used_bytes=1, total_bytes=2),
            network=NetworkMetrics(sent_cumulative=0, received_cumulative=0, upload_bps=0.0, download_bps=0.0),
            gpu=GpuMetrics(model=gpu_model, vram_gb=0.0, usage_percent=0.0),
            timestamp=datetime.now(timezone.utc),
        )

    def poll_expensive(self):
        self.expensive_calls += 1
        return ExpensiveReading(gpu_model="Radeon Pro 560X", gpu_vram_gb=4.0)

    def merge_expensive(self, reading):
        self.calls.append("merge")
        self.merged.append(reading)


class FakeDevice:
    def __init__(self, present=True, write_error=None):
        self.present = present
        self.write_error = write_error
        self.connected = False
        self.discover_calls = 0
        self.sent = []

    @property
    def needs_rediscovery(self):
        return not self.connected

    def discover(self):
        self.discover_calls += 1
        if not self.present:
            raise DeviceNotFound("no display")
        self.connected = True

    def send(self, frame):
        if not self.connected:
            raise DeviceNotFound("Display link is absent")
        if self.write_error is not None:
            raise self.write_error
        self.sent.append(frame)
        return len(frame) + 1


class SlowSampler(FakeSampler):
    def __init__(self, delay_s=0.3):
        super().__init__()
        self.delay_s = delay_s
        self.active = 0
        self.max_active = 0
        self._guard = threading.Lock()

    def tick(self):
        with self._guard:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            time.sleep(self.delay_s)
        finally:
            with self._guard:
                self.active -= 1
        return super().tick()


class BlockingAggregator(FakeAggregator):
    def __init__(self):
        super().__init__()
        self.release = threading.Event()

    def poll_expensive(self):
        self.release.wait(5.0)
        return super().poll_expensive()


def _wait_for(predicate, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class SchedulerTickTests(unittest.TestCase):
    def test_tick_encodes_and_sends_frame(self):
        device = FakeDevice()
        scheduler = Scheduler(FakeSampler(), FakeAggregator(), device)
        snap = scheduler.run_once()

        self.assertEqual(len(device.sent), 1)
        expected = FrameEncoder.encode_values(48.0, 55.5, 40.0, 3600.0)
        self.assertEqual(device.sent[0].data, expected.data)
        self.assertIs(scheduler.latest(), snap)
        self.assertEqual(scheduler.status.frames_sent, 1)

    def test_device_absent_keeps_publishing(self):
        device = FakeDevice(present=False)
        scheduler = Scheduler(FakeSampler(), FakeAggregator(), device, rediscover_every_ticks=5)
        published = []
        scheduler.store.subscribe(published.append)

        for _ in range(6):
            self.assertIsNotNone(scheduler.run_once())

        self.assertEqual(len(published), 6)
        self.assertEqual(scheduler.status.frames_dropped, 6)
        # Discovery on ticks 1 and 6 only.
        self.assertEqual(device.discover_calls, 2)

    def test_device_appears_later(self):
        device = FakeDevice(present=False)
        scheduler = Scheduler(FakeSampler(), FakeAggregator(), device, rediscover_every_ticks=2)
        scheduler.run_once()
        device.present = True
        scheduler.run_once()
        self.assertEqual(device.sent, [])
        scheduler.run_once()
        self.assertEqual(len(device.sent), 1)

    def test_write_failure_is_isolated(self):
        device = FakeDevice(write_error=DeviceWriteFailure("pipe"))
        scheduler = Scheduler(FakeSampler(), FakeAggregator(), device)
        snap = scheduler.run_once()
        self.assertIsNotNone(snap)
        self.assertIs(scheduler.latest(), snap)
        self.assertEqual(scheduler.status.frames_dropped, 1)

    def test_auto_connect_disabled(self):
        device = FakeDevice()
        scheduler = Scheduler(FakeSampler(), FakeAggregator(), device, auto_connect=False)
        scheduler.run_once()
        self.assertEqual(device.discover_calls, 0)
        self.assertEqual(scheduler.status.frames_dropped, 1)

    def test_sampler_failure_polls_without_cpu(self):
        aggregator = FakeAggregator()
        scheduler = Scheduler(FakeSampler(fail=True), aggregator, FakeDevice())
        snap = scheduler.run_once()
        self.assertEqual(aggregator.cpu_seen, [None])
        self.assertEqual(snap.cpu.utilization_percent, 0.0)

    def test_poll_failure_skips_publication(self):
        device = FakeDevice()
        scheduler = Scheduler(FakeSampler(), FakeAggregator(fail_poll=True), device)
        self.assertIsNone(scheduler.run_once())
        self.assertIsNone(scheduler.latest())
        self.assertEqual(device.sent, [])
        self.assertEqual(scheduler.status.ticks, 1)


class SchedulerLifecycleTests(unittest.TestCase):
    def test_start_stop_restart(self):
        scheduler = Scheduler(FakeSampler(), FakeAggregator(), FakeDevice(), interval_s=0.01)
        self.assertEqual(scheduler.state, SchedulerState.IDLE)

        scheduler.start()
        self.assertEqual(scheduler.state, SchedulerState.RUNNING)
        self.assertTrue(_wait_for(lambda: scheduler.status.ticks >= 2))
        scheduler.stop(timeout=2.0)
        self.assertEqual(scheduler.state, SchedulerState.CANCELLED)

        ticks = scheduler.status.ticks
        time.sleep(0.05)
        self.assertEqual(scheduler.status.ticks, ticks)

        scheduler.start()
        self.assertEqual(scheduler.state, SchedulerState.RUNNING)
        self.assertTrue(_wait_for(lambda: scheduler.status.ticks > ticks))
        scheduler.stop(timeout=2.0)
        self.assertEqual(scheduler.state, SchedulerState.CANCELLED)

    def test_stop_is_idempotent(self):
        scheduler = Scheduler(FakeSampler(), FakeAggregator(), FakeDevice(), interval_s=0.01)
        scheduler.stop()
        self.assertEqual(scheduler.state, SchedulerState.IDLE)
        scheduler.start()
        scheduler.stop(timeout=2.0)
        scheduler.stop(timeout=2.0)
        self.assertEqual(scheduler.state, SchedulerState.CANCELLED)

    def test_restart_after_short_stop_never_overlaps_ticks(self):
        sampler = SlowSampler()
        scheduler = Scheduler(sampler, FakeAggregator(), FakeDevice(), interval_s=0.01)
        scheduler.start()
        try:
            self.assertTrue(_wait_for(lambda: sampler.active == 1))
            scheduler.stop(timeout=0.05)
            self.assertEqual(scheduler.state, SchedulerState.STOPPING)

            scheduler.start()
            self.assertEqual(scheduler.state, SchedulerState.RUNNING)
            ticks = scheduler.status.ticks
            self.assertTrue(_wait_for(lambda: scheduler.status.ticks >= ticks + 2))
        finally:
            scheduler.stop(timeout=2.0)
        self.assertEqual(sampler.max_active, 1)
        self.assertEqual(scheduler.state, SchedulerState.CANCELLED)

    def test_stopping_settles_to_cancelled_when_tick_ends(self):
        sampler = SlowSampler()
        scheduler = Scheduler(sampler, FakeAggregator(), FakeDevice(), interval_s=0.01)
        scheduler.start()
        self.assertTrue(_wait_for(lambda: sampler.active == 1))
        scheduler.stop(timeout=0.05)
        self.assertEqual(scheduler.state, SchedulerState.STOPPING)
        with self.assertRaises(RuntimeError):
            scheduler.start(timeout=0.01)
        self.assertTrue(_wait_for(lambda: scheduler.state == SchedulerState.CANCELLED))
        self.assertEqual(sampler.max_active, 1)

    def test_hung_external_query_does_not_delay_ticks(self):
        aggregator = BlockingAggregator()
        scheduler = Scheduler(FakeSampler(), aggregator, FakeDevice(), interval_s=0.01, expensive_interval_s=0)
        scheduler.start()
        try:
            self.assertTrue(_wait_for(lambda: scheduler.status.ticks >= 10, timeout=2.0))
            self.assertEqual(scheduler.status.expensive_polls, 0)
            self.assertIsNotNone(scheduler.latest())
        finally:
            aggregator.release.set()
            scheduler.stop(timeout=2.0)

    def test_expensive_results_merged_before_poll(self):
        aggregator = FakeAggregator()
        scheduler = Scheduler(FakeSampler(), aggregator, FakeDevice(), interval_s=0.01, expensive_interval_s=0)
        scheduler.start()
        try:
            self.assertTrue(_wait_for(lambda: scheduler.status.expensive_polls == 1))
            self.assertTrue(
                _wait_for(lambda: (scheduler.latest() is not None) and scheduler.latest().gpu.model == "Radeon Pro 560X")
            )
            ticks = scheduler.status.ticks
            self.assertTrue(_wait_for(lambda: scheduler.status.ticks >= ticks + 3))
        finally:
            scheduler.stop(timeout=2.0)

        merge_idx = aggregator.calls.index("merge")
        self.assertEqual(aggregator.calls[merge_idx + 1], "poll_core")
        # A zero interval runs the queries once at startup only.
        self.assertEqual(aggregator.expensive_calls, 1)


class SnapshotStoreTests(unittest.TestCase):
    def test_subscriber_error_does_not_block_others(self):
        store = SnapshotStore()
        received = []

        def broken(_snap):
            raise ValueError("boom")

        store.subscribe(broken)
        store.subscribe(received.append)
        snap = FakeAggregator().poll_core(CpuReading())
        store.publish(snap)
        self.assertEqual(received, [snap])
        self.assertIs(store.latest(), snap)

    def test_unsubscribe(self):
        store = SnapshotStore()
        received = []
        unsubscribe = store.subscribe(received.append)
        unsubscribe()
        store.publish(FakeAggregator().poll_core())
        self.assertEqual(received, [])


if __name__ == "__main__":
    unittest.main()
