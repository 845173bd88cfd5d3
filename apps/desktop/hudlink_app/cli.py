"""CLI entrypoints for the HudLink agent, diagnostics, frame tools and replay."""

from __future__ import annotations

import argparse
import json
import logging
import signal
import threading
import time
from dataclasses import asdict
from importlib import metadata
from pathlib import Path

from hudlink_core import (
    AppConfig,
    DiagnosticsExporter,
    Scheduler,
    build_doctor_payload,
    load_config,
)
from hudlink_core.diagnostics import describe_device
from hudlink_core.logging_setup import configure_logging, get_logger, install_crash_hooks
from hudlink_device import (
    DeviceManager,
    DeviceNotFound,
    DeviceWriteFailure,
    FrameEncoder,
    HidTransport,
    ReplayRunner,
)
from hudlink_telemetry import (
    MetricsAggregator,
    PerformanceSampler,
    PsutilCounterSource,
    SamplerUnavailable,
    SystemQueries,
)


def _print_json(data: object) -> None:
    print(json.dumps(data, indent=2, sort_keys=True, default=str))


def _print_json_line(data: object) -> None:
    print(json.dumps(data, sort_keys=True, default=str), flush=True)


def _installed_version() -> str:
    try:
        return metadata.version("hudlink")
    except Exception:
        return "0.1.0"


def _build_pipeline(cfg: AppConfig) -> tuple[PerformanceSampler, MetricsAggregator, DeviceManager]:
    logger = get_logger()
    rapl = Path(cfg.sampler.rapl_path) if cfg.sampler.rapl_path else None
    sampler = PerformanceSampler(PsutilCounterSource(rapl_path=rapl), enabled=cfg.sampler.enabled)
    try:
        sampler.initialize()
    except SamplerUnavailable as exc:
        logger.warning(f"CPU sampler unavailable: {exc}", extra={"event": "sampler_unavailable"})

    aggregator = MetricsAggregator(
        disk_mount=cfg.telemetry.disk_mount,
        queries=SystemQueries(timeout_s=cfg.telemetry.query_timeout_s, gpu_usage=cfg.telemetry.gpu_usage),
    )
    device = DeviceManager(
        vendor_id=cfg.device.vendor_id,
        product_id=cfg.device.product_id,
        rediscover_after_failures=cfg.device.rediscover_after_failures,
    )
    return sampler, aggregator, device


def cmd_run(args: argparse.Namespace) -> int:
    cfg = load_config()
    if args.interval_ms:
        cfg.scheduler.interval_ms = max(200, min(10000, int(args.interval_ms)))

    install_crash_hooks()
    logger = get_logger()
    sampler, aggregator, device = _build_pipeline(cfg)
    scheduler = Scheduler(
        sampler=sampler,
        aggregator=aggregator,
        device=device,
        interval_s=cfg.scheduler.interval_ms / 1000,
        expensive_interval_s=cfg.telemetry.expensive_interval_s,
        rediscover_every_ticks=cfg.device.rediscover_every_ticks,
        auto_connect=cfg.device.auto_connect,
    )
    if args.print:
        scheduler.store.subscribe(lambda snap: _print_json_line(asdict(snap)))

    stop = threading.Event()
    if threading.current_thread() is threading.main_thread():
        signal.signal(signal.SIGTERM, lambda *_: stop.set())

    logger.info(f"agent starting v{_installed_version()}", extra={"event": "agent_start"})
    try:
        scheduler.start()
        while not stop.wait(0.5):
            pass
    except KeyboardInterrupt:
        pass
    finally:
        scheduler.stop()
        device.disconnect()
        sampler.close()
        logger.info(
            "agent stopped",
            extra={"event": "agent_stop", "ticks": scheduler.status.ticks, "frames_sent": scheduler.status.frames_sent},
        )
    return 0


def cmd_snapshot(args: argparse.Namespace) -> int:
    cfg = load_config()
    sampler, aggregator, _device = _build_pipeline(cfg)
    try:
        if not args.no_queries:
            aggregator.merge_expensive(aggregator.poll_expensive())
        aggregator.poll_core()
        time.sleep(cfg.scheduler.interval_ms / 1000)
        sampler.tick()
        snap = aggregator.poll_core(sampler.reading())
    finally:
        sampler.close()
    _print_json(asdict(snap))
    return 0


def cmd_list_devices(_args: argparse.Namespace) -> int:
    cfg = load_config()
    _print_json([describe_device(d, cfg) for d in HidTransport.enumerate()])
    return 0


def cmd_send_frame(args: argparse.Namespace) -> int:
    cfg = load_config()
    frame = FrameEncoder.encode_values(
        power_w=args.power,
        temp_c=args.temp,
        utilization_percent=args.util,
        frequency_mhz=args.freq,
    )
    result: dict[str, object] = {"frame_hex": frame.hex(), "sent": False}
    if args.dry_run:
        _print_json(result)
        return 0

    with DeviceManager(vendor_id=cfg.device.vendor_id, product_id=cfg.device.product_id) as device:
        try:
            info = device.discover()
            result["bytes_written"] = device.send(frame)
            result["sent"] = True
            result["product"] = info.product
        except (DeviceNotFound, DeviceWriteFailure) as exc:
            result["error"] = str(exc)
    _print_json(result)
    return 0 if result["sent"] else 1


def cmd_doctor(args: argparse.Namespace) -> int:
    cfg = load_config()
    payload = build_doctor_payload(cfg)

    if args.export:
        exporter = DiagnosticsExporter()
        out_dir = Path(args.out_dir).expanduser().resolve() if args.out_dir else None
        bundle = exporter.bundle(cfg=cfg, doctor_payload=payload, recent_device_events=[], output_dir=out_dir)
        payload["diagnostics_bundle"] = str(bundle)

    _print_json(payload)
    return 0


def cmd_replay(args: argparse.Namespace) -> int:
    runner = ReplayRunner()
    report = runner.run(Path(args.transcript), strict=not args.no_strict)
    payload = asdict(report)
    payload["success"] = len(report.errors) == 0
    _print_json(payload)
    return 0 if not report.errors else 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="hudlink", description="Cooler display telemetry agent and tools")
    parser.add_argument("--verbose", action="store_true", help="Also log to the console")
    sub = parser.add_subparsers(dest="command", required=True)

    run_cmd = sub.add_parser("run", help="Run the telemetry agent until interrupted")
    run_cmd.add_argument("--interval-ms", type=int, default=None, help="Override the tick interval")
    run_cmd.add_argument("--print", action="store_true", help="Print each published snapshot as a JSON line")
    run_cmd.set_defaults(func=cmd_run)

    snap_cmd = sub.add_parser("snapshot", help="Collect and print one metrics snapshot")
    snap_cmd.add_argument("--no-queries", action="store_true", help="Skip slow GPU and memory module queries")
    snap_cmd.set_defaults(func=cmd_snapshot)

    list_cmd = sub.add_parser("list-devices", help="List HID devices")
    list_cmd.set_defaults(func=cmd_list_devices)

    frame_cmd = sub.add_parser("send-frame", help="Encode one status frame and send it to the display")
    frame_cmd.add_argument("--power", type=float, default=0.0, help="Package power in watts")
    frame_cmd.add_argument("--temp", type=float, default=0.0, help="Package temperature in degrees C")
    frame_cmd.add_argument("--util", type=float, default=0.0, help="CPU utilization percent")
    frame_cmd.add_argument("--freq", type=float, default=0.0, help="CPU frequency in MHz")
    frame_cmd.add_argument("--dry-run", action="store_true", help="Print the encoded frame without sending")
    frame_cmd.set_defaults(func=cmd_send_frame)

    doctor_cmd = sub.add_parser("doctor", help="Print diagnostics and detected devices")
    doctor_cmd.add_argument("--export", action="store_true", help="Export offline diagnostics bundle")
    doctor_cmd.add_argument("--out-dir", default=None, help="Optional output directory for diagnostics bundle")
    doctor_cmd.set_defaults(func=cmd_doctor)

    replay_cmd = sub.add_parser("replay", help="Analyze a captured HID frame transcript")
    replay_cmd.add_argument("--transcript", required=True, help="Path to JSONL transcript")
    replay_cmd.add_argument("--no-strict", action="store_true", help="Tolerate invalid or missing frames")
    replay_cmd.set_defaults(func=cmd_replay)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    cfg = load_config()
    configure_logging(
        keep_files=cfg.diagnostics.keep_log_files,
        console=args.verbose,
        level=(logging.DEBUG if args.verbose else logging.INFO),
    )
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())
