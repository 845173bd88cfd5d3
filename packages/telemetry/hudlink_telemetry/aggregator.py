"""System metrics aggregator: memory, disk, network and merged GPU/RAM details."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, TypeVar

import psutil

from .errors import ExternalQueryFailure
from .models import (
    UNKNOWN_GPU,
    CpuMetrics,
    CpuReading,
    DiskMetrics,
    ExpensiveReading,
    GpuMetrics,
    MemoryMetrics,
    MetricsSnapshot,
    NetworkMetrics,
)
from .queries import SystemQueries


logger = logging.getLogger("hudlink.telemetry")

T = TypeVar("T")


@dataclass
class _CounterSnapshot:
    ts: float
    net_sent: int
    net_recv: int


def _clamp_pair(used: int, total: int) -> tuple[int, int]:
    total = max(int(total), 0)
    return max(0, min(int(used), total)), total


def _best_effort(query: str, fn: Callable[[], T]) -> T | None:
    try:
        return fn()
    except ExternalQueryFailure as exc:
        logger.warning(f"external query failed: {exc}", extra={"event": "query_failed", "query": query})
    except Exception:
        logger.exception(f"external query crashed: {query}", extra={"event": "query_failed", "query": query})
    return None


class MetricsAggregator:
    """Cheap per-tick polling plus merge point for slow external queries."""

    def __init__(
        self,
        disk_mount: str = "/",
        queries: SystemQueries | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.disk_mount = disk_mount
        self.queries = queries or SystemQueries()
        self._clock = clock
        self._prev: _CounterSnapshot | None = None
        self._lock = threading.Lock()

        self._gpu_model = UNKNOWN_GPU
        self._gpu_vram_gb = 0.0
        self._gpu_usage_percent = 0.0
        self._ram_frequency_mhz = 0.0

        self.cpu_model = _best_effort("cpu_model", self.queries.cpu_model) or "unknown"
        self.core_count = int(psutil.cpu_count(logical=True) or 0)

    def _memory(self) -> tuple[int, int]:
        vm = psutil.virtual_memory()
        wired = getattr(vm, "wired", None)
        if wired is not None:
            used = vm.active + vm.inactive + wired + getattr(vm, "compressed", 0)
            total = used + vm.free
        else:
            total = vm.total
            used = vm.total - vm.available
        return _clamp_pair(used, total)

    def _disk(self) -> tuple[int, int]:
        du = psutil.disk_usage(self.disk_mount)
        return _clamp_pair(du.used, du.total)

    def _network(self, now: float) -> NetworkMetrics:
        counters = psutil.net_io_counters(pernic=True) or {}
        sent = sum(int(c.bytes_sent) for c in counters.values())
        recv = sum(int(c.bytes_recv) for c in counters.values())

        if self._prev is None:
            up_bps = 0.0
            down_bps = 0.0
        else:
            elapsed = max(now - self._prev.ts, 1e-6)
            # A shrinking counter is a reset: rebase without a negative rate.
            up_bps = max(sent - self._prev.net_sent, 0) / elapsed
            down_bps = max(recv - self._prev.net_recv, 0) / elapsed

        self._prev = _CounterSnapshot(ts=now, net_sent=sent, net_recv=recv)
        return NetworkMetrics(
            sent_cumulative=sent,
            received_cumulative=recv,
            upload_bps=up_bps,
            download_bps=down_bps,
        )

    def poll_core(self, cpu: CpuReading | None = None) -> MetricsSnapshot:
        cpu = cpu or CpuReading()
        now = self._clock()

        try:
            ram_used, ram_total = self._memory()
        except Exception as exc:
            logger.warning(f"memory poll failed: {exc}", extra={"event": "memory_poll_failed"})
            ram_used, ram_total = 0, 0

        try:
            disk_used, disk_total = self._disk()
        except Exception as exc:
            logger.warning(f"disk poll failed: {exc}", extra={"event": "disk_poll_failed", "mount": self.disk_mount})
            disk_used, disk_total = 0, 0

        try:
            network = self._network(now)
        except Exception as exc:
            logger.warning(f"network poll failed: {exc}", extra={"event": "network_poll_failed"})
            network = NetworkMetrics(sent_cumulative=0, received_cumulative=0, upload_bps=0.0, download_bps=0.0)

        with self._lock:
            gpu = GpuMetrics(
                model=self._gpu_model,
                vram_gb=self._gpu_vram_gb,
                usage_percent=self._gpu_usage_percent,
            )
            ram_freq = self._ram_frequency_mhz

        return MetricsSnapshot(
            cpu=CpuMetrics(
                utilization_percent=cpu.utilization_percent,
                frequency_mhz=cpu.frequency_mhz,
                package_temp_c=cpu.package_temp_c,
                package_power_w=cpu.package_power_w,
                model=self.cpu_model,
                core_count=self.core_count,
            ),
            memory=MemoryMetrics(used_bytes=ram_used, total_bytes=ram_total, frequency_mhz=ram_freq),
            disk=DiskMetrics(mount=self.disk_mount, used_bytes=disk_used, total_bytes=disk_total),
            network=network,
            gpu=gpu,
            timestamp=datetime.now(timezone.utc),
        )

    def poll_expensive(self) -> ExpensiveReading:
        """Run the slow external queries. Safe to call from a worker thread."""
        identity = _best_effort("gpu_identity", self.queries.gpu_identity)
        usage = _best_effort("gpu_usage", self.queries.gpu_usage)
        ram_freq = _best_effort("ram_frequency", self.queries.ram_frequency)

        model, vram = identity if identity is not None else (None, None)
        return ExpensiveReading(
            gpu_model=model,
            gpu_vram_gb=vram,
            gpu_usage_percent=usage,
            ram_frequency_mhz=ram_freq,
        )

    def merge_expensive(self, reading: ExpensiveReading) -> None:
        with self._lock:
            if reading.gpu_model:
                self._gpu_model = reading.gpu_model
            if reading.gpu_vram_gb is not None:
                self._gpu_vram_gb = max(float(reading.gpu_vram_gb), 0.0)
            if reading.gpu_usage_percent is not None:
                self._gpu_usage_percent = max(0.0, min(100.0, float(reading.gpu_usage_percent)))
            if reading.ram_frequency_mhz is not None:
                self._ram_frequency_mhz = max(float(reading.ram_frequency_mhz), 0.0)
