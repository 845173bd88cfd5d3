"""Differential CPU counter sampler with a two-sample window."""

from __future__ import annotations

import logging
import math
import time
from collections import deque
from dataclasses import replace
from pathlib import Path
from typing import Protocol

import psutil

from .errors import InsufficientSamples, SamplerUnavailable
from .models import CpuReading, RawSample


DEFAULT_RAPL_PATH = Path("/sys/class/powercap/intel-rapl/intel-rapl:0/energy_uj")
_CPU_SENSOR_CHIPS = ("coretemp", "k10temp", "zenpower", "cpu_thermal", "acpitz")

logger = logging.getLogger("hudlink.telemetry")


class CounterSource(Protocol):
    def open(self) -> None: ...

    def read(self) -> RawSample: ...

    def close(self) -> None: ...


def _busy_total(times) -> tuple[float, float]:
    total = float(sum(times))
    # Guest time is already accounted in user time on Linux.
    total -= float(getattr(times, "guest", 0.0) + getattr(times, "guest_nice", 0.0))
    idle = float(times.idle + getattr(times, "iowait", 0.0))
    return max(total - idle, 0.0), total


def _package_temp_c() -> float | None:
    reader = getattr(psutil, "sensors_temperatures", None)
    if reader is None:
        return None
    try:
        temps = reader()
    except Exception:
        return None
    if not temps:
        return None

    for name in _CPU_SENSOR_CHIPS:
        entries = [e for e in temps.get(name, []) if e.current is not None]
        if not entries:
            continue
        package = [e for e in entries if (e.label or "").startswith("Package")]
        return float(max(e.current for e in (package or entries)))
    return None


def _cpu_freq_mhz() -> float | None:
    # cpu_freq() raises on some VMs and containers without cpufreq.
    try:
        freq = psutil.cpu_freq()
    except Exception:
        return None
    if not freq:
        return None
    return float(freq.current)


def _read_int(path: Path) -> int | None:
    try:
        return int(path.read_text(encoding="ascii").strip())
    except (OSError, ValueError):
        return None


class PsutilCounterSource:
    """Reads CPU times, frequency and temperature via psutil and package energy via RAPL."""

    def __init__(self, rapl_path: Path | None = DEFAULT_RAPL_PATH) -> None:
        self.rapl_path = rapl_path
        self._rapl_enabled = False
        self._energy_range_uj: int | None = None

    @property
    def has_energy_counter(self) -> bool:
        return self._rapl_enabled

    def open(self) -> None:
        try:
            psutil.cpu_times()
        except Exception as exc:
            raise SamplerUnavailable(f"cpu time counters unavailable: {exc}") from exc

        if self.rapl_path is not None and _read_int(self.rapl_path) is not None:
            self._rapl_enabled = True
            self._energy_range_uj = _read_int(self.rapl_path.with_name("max_energy_range_uj"))
        else:
            logger.info("package energy counter unavailable", extra={"event": "rapl_unavailable"})

    def read(self) -> RawSample:
        busy, total = _busy_total(psutil.cpu_times())
        energy = _read_int(self.rapl_path) if (self._rapl_enabled and self.rapl_path) else None
        return RawSample(
            ts=time.monotonic(),
            busy_s=busy,
            total_s=total,
            energy_uj=energy,
            energy_range_uj=self._energy_range_uj,
            freq_mhz=_cpu_freq_mhz(),
            package_temp_c=_package_temp_c(),
        )

    def close(self) -> None:
        self._rapl_enabled = False


def _finite(value: float | None) -> float | None:
    if value is None or not math.isfinite(value):
        return None
    return value


class PerformanceSampler:
    """Holds the two latest raw samples and derives CPU metrics from them.

    Utilization and package power are rates between the previous and the current
    sample; frequency and temperature come from the current sample only. Every
    derived getter still requires a full window.
    """

    def __init__(self, source: CounterSource | None = None, enabled: bool = True) -> None:
        self.source: CounterSource = source or PsutilCounterSource()
        self.enabled = enabled
        self._samples: deque[RawSample] = deque(maxlen=2)
        self._initialized = False
        self._disabled = False
        self._last = CpuReading()

    @property
    def available(self) -> bool:
        return self._initialized and not self._disabled

    @property
    def sample_count(self) -> int:
        return len(self._samples)

    def initialize(self) -> None:
        if self._disabled:
            raise SamplerUnavailable("sampler disabled for this process")
        if self._initialized:
            return
        if not self.enabled:
            self._disabled = True
            raise SamplerUnavailable("sampler disabled by configuration")

        try:
            self.source.open()
            first = self.source.read()
        except SamplerUnavailable:
            self._disabled = True
            raise
        except Exception as exc:
            self._disabled = True
            raise SamplerUnavailable(str(exc)) from exc

        self._samples.append(first)
        self._initialized = True
        logger.info("sampler initialized", extra={"event": "sampler_initialized"})

    def tick(self) -> bool:
        if not self.available:
            return False
        try:
            sample = self.source.read()
        except Exception as exc:
            logger.warning(f"sample read failed: {exc}", extra={"event": "sample_read_failed"})
            return False

        if self._samples and sample.ts <= self._samples[-1].ts:
            logger.warning("out-of-order sample discarded", extra={"event": "sample_out_of_order"})
            return False

        self._samples.append(sample)
        self._last = self._merge_last_known()
        return True

    def require_window(self) -> tuple[RawSample, RawSample]:
        if len(self._samples) < 2:
            raise InsufficientSamples(f"{len(self._samples)} sample(s) retained, 2 required")
        return self._samples[0], self._samples[1]

    def utilization_percent(self) -> float | None:
        try:
            prev, curr = self.require_window()
        except InsufficientSamples:
            return None
        d_total = curr.total_s - prev.total_s
        if d_total <= 0:
            return None
        d_busy = max(curr.busy_s - prev.busy_s, 0.0)
        return _finite(max(0.0, min(100.0, 100.0 * d_busy / d_total)))

    def package_power_w(self) -> float | None:
        try:
            prev, curr = self.require_window()
        except InsufficientSamples:
            return None
        if prev.energy_uj is None or curr.energy_uj is None:
            return None
        elapsed = curr.ts - prev.ts
        if elapsed <= 0:
            return None

        delta = curr.energy_uj - prev.energy_uj
        if delta < 0:
            # Counter wrapped at max_energy_range_uj.
            if not curr.energy_range_uj:
                return None
            delta += curr.energy_range_uj
        return _finite(max(delta / 1_000_000 / elapsed, 0.0))

    def frequency_mhz(self) -> float | None:
        try:
            _prev, curr = self.require_window()
        except InsufficientSamples:
            return None
        value = _finite(curr.freq_mhz)
        return max(value, 0.0) if value is not None else None

    def package_temperature_c(self) -> float | None:
        try:
            _prev, curr = self.require_window()
        except InsufficientSamples:
            return None
        return _finite(curr.package_temp_c)

    def reading(self) -> CpuReading:
        """Latest derived values, falling back to last-known (initially zero) per field."""
        return self._last

    def _merge_last_known(self) -> CpuReading:
        last = self._last
        util = self.utilization_percent()
        freq = self.frequency_mhz()
        temp = self.package_temperature_c()
        power = self.package_power_w()
        return replace(
            last,
            utilization_percent=(last.utilization_percent if util is None else util),
            frequency_mhz=(last.frequency_mhz if freq is None else freq),
            package_temp_c=(last.package_temp_c if temp is None else temp),
            package_power_w=(last.package_power_w if power is None else power),
        )

    def close(self) -> None:
        self._samples.clear()
        if self._initialized:
            self.source.close()
        self._initialized = False
