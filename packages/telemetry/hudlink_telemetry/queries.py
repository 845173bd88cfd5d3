"""External system-identification queries for GPU and memory module details."""

from __future__ import annotations

import platform
import re
import subprocess
from pathlib import Path

from .errors import ExternalQueryFailure


_MHZ_RE = re.compile(r"(\d+)\s*MHz")
_DMI_SPEED_RE = re.compile(
    r"^\s*(Configured (?:Memory|Clock) Speed|Speed):\s*(\d+)\s*(?:MHz|MT/s)",
    re.MULTILINE,
)
_GPU_BUSY_RE = re.compile(r"GPU (?:Busy|HW active residency|active residency)\s*:\s*([\d.]+)\s*%")
_VRAM_KEYS = ("VRAM (Total):", "VRAM (Dynamic, Max):")
_LSPCI_GPU_KEYS = ("VGA compatible controller", "3D controller", "Display controller")
POWERMETRICS_GPU_SAMPLERS = ("gpu_power", "smc")
_REV_RE = re.compile(r"\s*\(rev [0-9a-fA-F]+\)\s*$")


def run_query(args: list[str], timeout_s: float) -> str:
    name = args[0] if args[0] != "sudo" else args[2]
    try:
        result = subprocess.run(args, capture_output=True, text=True, timeout=timeout_s, check=False)
    except FileNotFoundError as exc:
        raise ExternalQueryFailure(name, "tool not found") from exc
    except subprocess.TimeoutExpired as exc:
        raise ExternalQueryFailure(name, f"timed out after {timeout_s:g}s") from exc
    except OSError as exc:
        raise ExternalQueryFailure(name, str(exc)) from exc
    if result.returncode != 0:
        raise ExternalQueryFailure(name, f"exit status {result.returncode}")
    return result.stdout or ""


def _field(output: str, key: str) -> str | None:
    for line in output.splitlines():
        stripped = line.strip()
        if stripped.startswith(key):
            return stripped[len(key):].strip()
    return None


def parse_vram_gb(value: str) -> float | None:
    match = re.match(r"([\d.]+)\s*(GB|MB)", value.strip())
    if not match:
        return None
    amount = float(match.group(1))
    return amount if match.group(2) == "GB" else amount / 1024.0


def parse_displays_profile(output: str) -> tuple[str | None, float | None]:
    """Return chipset model and VRAM (GB) from ``system_profiler SPDisplaysDataType``."""
    model = _field(output, "Chipset Model:") or None
    vram = None
    for key in _VRAM_KEYS:
        raw = _field(output, key)
        if raw:
            vram = parse_vram_gb(raw)
            break
    return model, vram


def parse_memory_profile(output: str) -> float | None:
    match = _MHZ_RE.search(output)
    return float(match.group(1)) if match else None


def parse_dmidecode_memory(output: str) -> float | None:
    configured = None
    rated = None
    for match in _DMI_SPEED_RE.finditer(output):
        speed = float(match.group(2))
        if match.group(1).startswith("Configured"):
            configured = configured or speed
        else:
            rated = rated or speed
    return configured or rated


def parse_powermetrics_gpu(output: str) -> float | None:
    match = _GPU_BUSY_RE.search(output)
    return float(match.group(1)) if match else None


def parse_lspci_gpu(output: str) -> str | None:
    for line in output.splitlines():
        for key in _LSPCI_GPU_KEYS:
            marker = f"{key}: "
            if marker in line:
                return _REV_RE.sub("", line.split(marker, 1)[1]).strip() or None
    return None


def parse_cpuinfo_model(text: str) -> str | None:
    for line in text.splitlines():
        if line.startswith("model name"):
            return line.split(":", 1)[1].strip() or None
    return None


class _NvmlGpu:
    def __init__(self) -> None:
        import pynvml  # type: ignore

        self._nvml = pynvml
        pynvml.nvmlInit()

    def _handle(self):
        nvml = self._nvml
        if nvml.nvmlDeviceGetCount() < 1:
            raise ExternalQueryFailure("nvml", "no devices")
        return nvml.nvmlDeviceGetHandleByIndex(0)

    def identity(self) -> tuple[str, float]:
        h = self._handle()
        name = self._nvml.nvmlDeviceGetName(h)
        if isinstance(name, bytes):
            name = name.decode("utf-8", errors="replace")
        mem = self._nvml.nvmlDeviceGetMemoryInfo(h)
        return str(name), float(mem.total) / (1024**3)

    def usage(self) -> float:
        util = self._nvml.nvmlDeviceGetUtilizationRates(self._handle())
        return float(util.gpu)


def _build_nvml() -> _NvmlGpu | None:
    try:
        return _NvmlGpu()
    except Exception:
        return None


class SystemQueries:
    """Platform-dispatching wrappers around slow system tools.

    Every method raises ``ExternalQueryFailure`` for its own field only.
    """

    def __init__(
        self,
        timeout_s: float = 10.0,
        gpu_usage: bool = True,
        system: str | None = None,
        cpuinfo_path: Path = Path("/proc/cpuinfo"),
    ) -> None:
        self.timeout_s = timeout_s
        self.gpu_usage_enabled = gpu_usage
        self.system = system or platform.system()
        self.cpuinfo_path = cpuinfo_path
        self._nvml: _NvmlGpu | None = None
        self._nvml_checked = False

    def _nvml_gpu(self) -> _NvmlGpu | None:
        if not self._nvml_checked:
            self._nvml = _build_nvml()
            self._nvml_checked = True
        return self._nvml

    def _unsupported(self, query: str) -> ExternalQueryFailure:
        return ExternalQueryFailure(query, f"unsupported platform {self.system}")

    def gpu_identity(self) -> tuple[str, float | None]:
        if self.system == "Darwin":
            output = run_query(["system_profiler", "SPDisplaysDataType"], self.timeout_s)
            model, vram = parse_displays_profile(output)
            if model is None:
                raise ExternalQueryFailure("system_profiler", "no chipset model")
            return model, vram

        if self.system == "Linux":
            nvml = self._nvml_gpu()
            if nvml is not None:
                try:
                    return nvml.identity()
                except ExternalQueryFailure:
                    raise
                except Exception as exc:
                    raise ExternalQueryFailure("nvml", str(exc)) from exc
            model = parse_lspci_gpu(run_query(["lspci"], self.timeout_s))
            if model is None:
                raise ExternalQueryFailure("lspci", "no display controller")
            return model, None

        raise self._unsupported("gpu_identity")

    def gpu_usage(self) -> float:
        if not self.gpu_usage_enabled:
            raise ExternalQueryFailure("gpu_usage", "disabled by configuration")

        if self.system == "Darwin":
            # Apple silicon reports through gpu_power; Intel Macs only through smc.
            # -n keeps sudo from prompting; without cached rights this fails fast.
            failure = ExternalQueryFailure("powermetrics", "no GPU busy line")
            for sampler in POWERMETRICS_GPU_SAMPLERS:
                try:
                    output = run_query(
                        ["sudo", "-n", "powermetrics", "--samplers", sampler, "-n1", "-i", "200"],
                        self.timeout_s,
                    )
                except ExternalQueryFailure as exc:
                    failure = exc
                    continue
                percent = parse_powermetrics_gpu(output)
                if percent is not None:
                    return percent
            raise failure

        if self.system == "Linux":
            nvml = self._nvml_gpu()
            if nvml is None:
                raise ExternalQueryFailure("nvml", "not available")
            try:
                return nvml.usage()
            except ExternalQueryFailure:
                raise
            except Exception as exc:
                raise ExternalQueryFailure("nvml", str(exc)) from exc

        raise self._unsupported("gpu_usage")

    def ram_frequency(self) -> float:
        if self.system == "Darwin":
            mhz = parse_memory_profile(run_query(["system_profiler", "SPMemoryDataType"], self.timeout_s))
            if mhz is None:
                raise ExternalQueryFailure("system_profiler", "no memory speed")
            return mhz

        if self.system == "Linux":
            mhz = parse_dmidecode_memory(run_query(["dmidecode", "-t", "memory"], self.timeout_s))
            if mhz is None:
                raise ExternalQueryFailure("dmidecode", "no memory speed")
            return mhz

        raise self._unsupported("ram_frequency")

    def cpu_model(self) -> str:
        if self.system == "Darwin":
            model = run_query(["sysctl", "-n", "machdep.cpu.brand_string"], self.timeout_s).strip()
        elif self.system == "Linux":
            try:
                model = parse_cpuinfo_model(self.cpuinfo_path.read_text(encoding="utf-8")) or ""
            except OSError as exc:
                raise ExternalQueryFailure("cpuinfo", str(exc)) from exc
        else:
            model = platform.processor()
        if not model:
            raise ExternalQueryFailure("cpu_model", "empty brand string")
        return model
