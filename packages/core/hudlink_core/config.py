"""Persistent agent settings schema and load/save helpers."""

from __future__ import annotations

import json
import math
import os
import platform
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any


CONFIG_VERSION = 1


@dataclass
class DeviceConfig:
    auto_connect: bool = True
    vendor_id: int = 0x3633
    product_id: int = 0x0012
    rediscover_after_failures: int = 3
    rediscover_every_ticks: int = 5


@dataclass
class SchedulerConfig:
    interval_ms: int = 1000


@dataclass
class SamplerConfig:
    enabled: bool = True
    rapl_path: str = "/sys/class/powercap/intel-rapl/intel-rapl:0/energy_uj"


@dataclass
class TelemetryConfig:
    disk_mount: str = "/"
    expensive_interval_s: float = 300.0
    query_timeout_s: float = 10.0
    gpu_usage: bool = True


@dataclass
class DiagnosticsConfig:
    keep_log_files: int = 7


@dataclass
class AppConfig:
    config_version: int = CONFIG_VERSION
    device: DeviceConfig = field(default_factory=DeviceConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    sampler: SamplerConfig = field(default_factory=SamplerConfig)
    telemetry: TelemetryConfig = field(default_factory=TelemetryConfig)
    diagnostics: DiagnosticsConfig = field(default_factory=DiagnosticsConfig)


def config_root() -> Path:
    system = platform.system()
    if system == "Windows":
        base = Path(os.environ.get("APPDATA", Path.home() / "AppData" / "Roaming"))
        return base / "HudLink"
    if system == "Darwin":
        return Path.home() / "Library" / "Application Support" / "HudLink"
    return Path.home() / ".config" / "hudlink"


CONFIG_ENV = "HUDLINK_CONFIG"


def config_path() -> Path:
    override = os.environ.get(CONFIG_ENV, "").strip()
    if override:
        return Path(override).expanduser()
    return config_root() / "config.json"


def _merge(dataclass_type, raw: Any):
    defaults = dataclass_type()  # type: ignore[misc]
    if not isinstance(raw, dict):
        return defaults
    for k, v in raw.items():
        if hasattr(defaults, k):
            setattr(defaults, k, v)
    return defaults


def _as_int(value: Any, default: int, lo: int | None = None, hi: int | None = None) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError, OverflowError):
        return default
    if lo is not None:
        parsed = max(lo, parsed)
    if hi is not None:
        parsed = min(hi, parsed)
    return parsed


def _as_float(value: Any, default: float, lo: float | None = None, hi: float | None = None) -> float:
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(parsed):
        return default
    if lo is not None:
        parsed = max(lo, parsed)
    if hi is not None:
        parsed = min(hi, parsed)
    return parsed


def _as_bool(value: Any, default: bool) -> bool:
    return value if isinstance(value, bool) else default


def _usb_id(value: Any, default: int) -> int:
    try:
        parsed = int(value, 16) if isinstance(value, str) else int(value)
    except (TypeError, ValueError):
        return default
    return parsed if 0 <= parsed <= 0xFFFF else default


def _normalize_device(cfg: AppConfig) -> None:
    d, defaults = cfg.device, DeviceConfig()
    d.auto_connect = _as_bool(d.auto_connect, defaults.auto_connect)
    d.vendor_id = _usb_id(d.vendor_id, defaults.vendor_id)
    d.product_id = _usb_id(d.product_id, defaults.product_id)
    d.rediscover_after_failures = _as_int(d.rediscover_after_failures, defaults.rediscover_after_failures, lo=1)
    d.rediscover_every_ticks = _as_int(d.rediscover_every_ticks, defaults.rediscover_every_ticks, lo=1)


def _normalize_scheduler(cfg: AppConfig) -> None:
    cfg.scheduler.interval_ms = _as_int(cfg.scheduler.interval_ms, SchedulerConfig().interval_ms, lo=200, hi=10000)


def _normalize_sampler(cfg: AppConfig) -> None:
    s, defaults = cfg.sampler, SamplerConfig()
    s.enabled = _as_bool(s.enabled, defaults.enabled)
    if not isinstance(s.rapl_path, str):
        s.rapl_path = defaults.rapl_path


def _normalize_telemetry(cfg: AppConfig) -> None:
    t, defaults = cfg.telemetry, TelemetryConfig()
    if not isinstance(t.disk_mount, str) or not t.disk_mount.strip():
        t.disk_mount = defaults.disk_mount
    t.expensive_interval_s = _as_float(t.expensive_interval_s, defaults.expensive_interval_s, lo=0.0)
    t.query_timeout_s = _as_float(t.query_timeout_s, defaults.query_timeout_s, lo=1.0, hi=120.0)
    t.gpu_usage = _as_bool(t.gpu_usage, defaults.gpu_usage)


def _normalize_diagnostics(cfg: AppConfig) -> None:
    cfg.diagnostics.keep_log_files = _as_int(cfg.diagnostics.keep_log_files, DiagnosticsConfig().keep_log_files, lo=2)


def load_config(path: Path | None = None) -> AppConfig:
    """Read the config file; unusable values fall back to their defaults field by field."""
    path = path or config_path()
    if not path.exists():
        return AppConfig()

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except Exception:
        return AppConfig()
    if not isinstance(data, dict):
        return AppConfig()

    cfg = AppConfig(
        config_version=_as_int(data.get("config_version"), CONFIG_VERSION),
        device=_merge(DeviceConfig, data.get("device")),
        scheduler=_merge(SchedulerConfig, data.get("scheduler")),
        sampler=_merge(SamplerConfig, data.get("sampler")),
        telemetry=_merge(TelemetryConfig, data.get("telemetry")),
        diagnostics=_merge(DiagnosticsConfig, data.get("diagnostics")),
    )

    _normalize_device(cfg)
    _normalize_scheduler(cfg)
    _normalize_sampler(cfg)
    _normalize_telemetry(cfg)
    _normalize_diagnostics(cfg)
    return cfg


def save_config(cfg: AppConfig, path: Path | None = None) -> Path:
    cfg.config_version = CONFIG_VERSION
    path = path or config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(asdict(cfg), indent=2, sort_keys=True), encoding="utf-8")
    return path
