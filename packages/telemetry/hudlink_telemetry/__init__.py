"""Host telemetry sampling for HudLink."""

from .errors import ExternalQueryFailure, InsufficientSamples, SamplerUnavailable, TelemetryError
from .models import (
    CpuMetrics,
    CpuReading,
    DiskMetrics,
    ExpensiveReading,
    GpuMetrics,
    MemoryMetrics,
    MetricsSnapshot,
    NetworkMetrics,
    RawSample,
)
from .queries import SystemQueries

try:  # pragma: no cover - optional at import time for minimal test environments
    from .aggregator import MetricsAggregator
    from .sampler import PerformanceSampler, PsutilCounterSource
except Exception:  # pragma: no cover
    MetricsAggregator = None  # type: ignore[assignment]
    PerformanceSampler = None  # type: ignore[assignment]
    PsutilCounterSource = None  # type: ignore[assignment]

__all__ = [
    "CpuMetrics",
    "CpuReading",
    "DiskMetrics",
    "ExpensiveReading",
    "ExternalQueryFailure",
    "GpuMetrics",
    "InsufficientSamples",
    "MemoryMetrics",
    "MetricsSnapshot",
    "NetworkMetrics",
    "RawSample",
    "SamplerUnavailable",
    "SystemQueries",
    "TelemetryError",
]

if MetricsAggregator is not None:
    __all__ += ["MetricsAggregator", "PerformanceSampler", "PsutilCounterSource"]
