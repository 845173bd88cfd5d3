"""Core agent services: configuration, logging, scheduling and diagnostics."""

from .config import AppConfig, load_config, save_config
from .scheduler import Scheduler, SchedulerState, SchedulerStatus, SnapshotStore

try:  # Keep import side effects tolerant in minimal test environments.
    from .diagnostics import DiagnosticsExporter, build_doctor_payload
except Exception:  # pragma: no cover
    DiagnosticsExporter = None  # type: ignore[assignment]
    build_doctor_payload = None  # type: ignore[assignment]

__all__ = [
    "AppConfig",
    "DiagnosticsExporter",
    "Scheduler",
    "SchedulerState",
    "SchedulerStatus",
    "SnapshotStore",
    "build_doctor_payload",
    "load_config",
    "save_config",
]
