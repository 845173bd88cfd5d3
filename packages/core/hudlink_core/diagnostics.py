"""Doctor report and offline support bundle."""

from __future__ import annotations

import json
import platform
import re
import shutil
import tempfile
import zipfile
from dataclasses import asdict, is_dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from hudlink_device import HidDeviceInfo, HidTransport, is_compatible
from hudlink_telemetry import PsutilCounterSource, SamplerUnavailable

from .config import AppConfig, config_path
from .logging_setup import log_dir


REDACTED = "***REDACTED***"
_SENSITIVE_KEY = re.compile(r"(token|secret|password|api_?key|auth|serial)", re.IGNORECASE)
QUERY_TOOLS = ("system_profiler", "powermetrics", "sysctl", "dmidecode", "lspci", "nvidia-smi")


def _jsonable(value: Any) -> Any:
    if is_dataclass(value):
        return asdict(value)
    if isinstance(value, bytes):
        return value.decode(errors="replace")
    if isinstance(value, Path):
        return str(value)
    return value


def redact(value: Any) -> Any:
    """Mask values under sensitive keys (device serial numbers included) at any depth."""
    if isinstance(value, dict):
        return {k: (REDACTED if _SENSITIVE_KEY.search(str(k)) else redact(v)) for k, v in value.items()}
    if isinstance(value, list):
        return [redact(v) for v in value]
    return value


def describe_device(device: HidDeviceInfo, cfg: AppConfig) -> dict[str, Any]:
    return {
        "path": device.path.decode(errors="replace"),
        "product": device.product,
        "manufacturer": device.manufacturer,
        "vendor_id": f"{device.vendor_id:04X}",
        "product_id": f"{device.product_id:04X}",
        "interface": device.interface_number,
        "compatible": is_compatible(device, cfg.device.vendor_id, cfg.device.product_id),
    }


def check_sampler(cfg: AppConfig) -> dict[str, Any]:
    """Take one raw counter reading and report which optional fields the host provides."""
    if not cfg.sampler.enabled:
        return {"available": False, "reason": "disabled by configuration"}

    source = PsutilCounterSource(rapl_path=Path(cfg.sampler.rapl_path) if cfg.sampler.rapl_path else None)
    try:
        source.open()
        sample = source.read()
    except SamplerUnavailable as exc:
        return {"available": False, "reason": str(exc)}
    except Exception as exc:
        return {"available": False, "reason": f"read failed: {exc}"}
    finally:
        source.close()
    return {
        "available": True,
        "frequency": sample.freq_mhz is not None,
        "temperature": sample.package_temp_c is not None,
        "package_energy": sample.energy_uj is not None,
    }


def build_doctor_payload(cfg: AppConfig) -> dict[str, Any]:
    devices = [describe_device(d, cfg) for d in HidTransport.enumerate()]
    return {
        "ts_utc": datetime.now(timezone.utc).isoformat(),
        "platform": platform.platform(),
        "python": platform.python_version(),
        "config": redact(asdict(cfg)),
        "sampler": check_sampler(cfg),
        "query_tools": {name: shutil.which(name) is not None for name in QUERY_TOOLS},
        "devices": devices,
        "display_found": any(d["compatible"] for d in devices),
    }


class DiagnosticsExporter:
    def __init__(self, app_name: str = "HudLink") -> None:
        self.app_name = app_name

    @staticmethod
    def _write_json(zf: zipfile.ZipFile, name: str, payload: Any) -> None:
        zf.writestr(name, json.dumps(redact(payload), indent=2, sort_keys=True, default=_jsonable))

    def bundle(
        self,
        cfg: AppConfig,
        doctor_payload: dict[str, Any],
        recent_device_events: list[dict[str, Any]] | None = None,
        output_dir: Path | None = None,
    ) -> Path:
        out = output_dir or Path(tempfile.gettempdir())
        out.mkdir(parents=True, exist_ok=True)
        zip_path = out / f"hudlink-diagnostics-{datetime.now():%Y%m%d-%H%M%S}.zip"
        logs_root = log_dir()

        with zipfile.ZipFile(zip_path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            self._write_json(
                zf,
                "manifest.json",
                {
                    "app": self.app_name,
                    "created_utc": datetime.now(timezone.utc).isoformat(),
                    "host": platform.platform(),
                    "python": platform.python_version(),
                    "config_path": str(config_path()),
                    "log_dir": str(logs_root),
                },
            )
            self._write_json(zf, "doctor.json", doctor_payload)
            self._write_json(zf, "config.redacted.json", asdict(cfg))
            self._write_json(zf, "device_events.json", recent_device_events or [])

            # Rotated files (hudlink.log.2024-01-01) and fault.log.
            for item in sorted(logs_root.glob("*.log*")):
                zf.write(item, arcname=f"logs/{item.name}")

        return zip_path
