"""Typed telemetry models."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


UNKNOWN_GPU = "unknown"


@dataclass(frozen=True)
class RawSample:
    """One instantaneous reading of the CPU counters."""

    ts: float
    busy_s: float
    total_s: float
    energy_uj: int | None = None
    energy_range_uj: int | None = None
    freq_mhz: float | None = None
    package_temp_c: float | None = None


@dataclass(frozen=True)
class CpuReading:
    utilization_percent: float = 0.0
    frequency_mhz: float = 0.0
    package_temp_c: float = 0.0
    package_power_w: float = 0.0


@dataclass(frozen=True)
class CpuMetrics:
    utilization_percent: float
    frequency_mhz: float
    package_temp_c: float
    package_power_w: float
    model: str
    core_count: int


@dataclass(frozen=True)
class MemoryMetrics:
    used_bytes: int
    total_bytes: int
    frequency_mhz: float


@dataclass(frozen=True)
class DiskMetrics:
    mount: str
    used_bytes: int
    total_bytes: int


@dataclass(frozen=True)
class NetworkMetrics:
    sent_cumulative: int
    received_cumulative: int
    upload_bps: float
    download_bps: float


@dataclass(frozen=True)
class GpuMetrics:
    model: str
    vram_gb: float
    usage_percent: float


@dataclass(frozen=True)
class ExpensiveReading:
    """Result of one round of external queries; ``None`` marks a failed field."""

    gpu_model: str | None = None
    gpu_vram_gb: float | None = None
    gpu_usage_percent: float | None = None
    ram_frequency_mhz: float | None = None


@dataclass(frozen=True)
class MetricsSnapshot:
    cpu: CpuMetrics
    memory: MemoryMetrics
    disk: DiskMetrics
    network: NetworkMetrics
    gpu: GpuMetrics
    timestamp: datetime
