"""Periodic sample → encode → deliver loop with snapshot publication."""

from __future__ import annotations

import logging
import math
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from hudlink_device import DeviceManager, DeviceNotFound, DeviceWriteFailure, FrameEncoder
from hudlink_telemetry import ExpensiveReading, MetricsSnapshot


logger = logging.getLogger("hudlink.scheduler")

Subscriber = Callable[[MetricsSnapshot], None]


class SchedulerState(str, Enum):
    IDLE = "Idle"
    RUNNING = "Running"
    STOPPING = "Stopping"
    CANCELLED = "Cancelled"


@dataclass
class SchedulerStatus:
    state: SchedulerState = SchedulerState.IDLE
    ticks: int = 0
    frames_sent: int = 0
    frames_dropped: int = 0
    expensive_polls: int = 0
    last_tick_s: float = 0.0


class SnapshotStore:
    """Latest-snapshot holder; snapshots are replaced whole, never mutated."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._latest: MetricsSnapshot | None = None
        self._subscribers: list[Subscriber] = []

    def latest(self) -> MetricsSnapshot | None:
        with self._lock:
            return self._latest

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe

    def publish(self, snapshot: MetricsSnapshot) -> None:
        with self._lock:
            self._latest = snapshot
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(snapshot)
            except Exception:
                logger.exception("snapshot subscriber failed", extra={"event": "subscriber_error"})


class Scheduler:
    """Single periodic task driving sampler, aggregator, encoder and device.

    Iterations never overlap and only the end-of-tick wait is interruptible, so
    ``stop()`` lets an in-flight iteration finish. External queries run on one
    worker thread and are merged on the first tick after they complete.
    """

    def __init__(
        self,
        sampler,
        aggregator,
        device: DeviceManager,
        encoder: FrameEncoder | None = None,
        interval_s: float = 1.0,
        expensive_interval_s: float = 300.0,
        rediscover_every_ticks: int = 5,
        auto_connect: bool = True,
        store: SnapshotStore | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.sampler = sampler
        self.aggregator = aggregator
        self.device = device
        self.encoder = encoder or FrameEncoder()
        self.interval_s = interval_s
        self.expensive_interval_s = expensive_interval_s
        self.rediscover_every_ticks = max(1, rediscover_every_ticks)
        self.auto_connect = auto_connect
        self.store = store or SnapshotStore()
        self._clock = clock

        self._status = SchedulerStatus()
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._executor: ThreadPoolExecutor | None = None
        self._pending: Future[ExpensiveReading] | None = None
        self._next_expensive_at = 0.0
        self._device_absent_logged = False

    @property
    def state(self) -> SchedulerState:
        self._settle_stop()
        return self._status.state

    @property
    def status(self) -> SchedulerStatus:
        self._settle_stop()
        return self._status

    def latest(self) -> MetricsSnapshot | None:
        return self.store.latest()

    def _settle_stop(self) -> None:
        # Stopping ends once the loop thread has exited.
        thread = self._thread
        if self._status.state == SchedulerState.STOPPING and (thread is None or not thread.is_alive()):
            self._status.state = SchedulerState.CANCELLED

    def start(self, timeout: float | None = None) -> None:
        """Start the loop; a loop still finishing its last tick is joined first.

        Raises RuntimeError if that loop does not exit within ``timeout``.
        """
        with self._lock:
            if self.state == SchedulerState.RUNNING:
                return
            previous = self._thread
            if previous is not None and previous.is_alive():
                if previous is threading.current_thread():
                    raise RuntimeError("scheduler cannot restart from its own tick")
                previous.join(timeout)
                if previous.is_alive():
                    raise RuntimeError("previous scheduler loop is still running")
            self._thread = None
            self._stop = threading.Event()
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="hudlink-query")
            self._pending = None
            self._next_expensive_at = self._clock()
            self._submit_expensive_if_due()

            self._status.state = SchedulerState.RUNNING
            self._thread = threading.Thread(target=self._loop, name="hudlink-scheduler", daemon=True)
            self._thread.start()
            logger.info("scheduler started", extra={"event": "scheduler_started", "interval_s": self.interval_s})

    def stop(self, timeout: float | None = None) -> None:
        """Signal the loop and wait up to ``timeout`` for the in-flight tick.

        If the tick outlives the wait the state is Stopping until the loop exits.
        """
        with self._lock:
            if self._status.state not in (SchedulerState.RUNNING, SchedulerState.STOPPING):
                return
            self._stop.set()
            thread = self._thread
            if thread is not None and thread is not threading.current_thread():
                thread.join(timeout)
            if self._executor is not None:
                # A query already running is bounded by its own timeout.
                self._executor.shutdown(wait=False, cancel_futures=True)
                self._executor = None
            self._pending = None
            if thread is not None and thread.is_alive():
                self._status.state = SchedulerState.STOPPING
                logger.warning("scheduler tick still in flight", extra={"event": "scheduler_stopping"})
                return
            self._thread = None
            self._status.state = SchedulerState.CANCELLED
            logger.info("scheduler stopped", extra={"event": "scheduler_stopped", "ticks": self._status.ticks})

    def _loop(self) -> None:
        stop = self._stop
        try:
            while not stop.is_set():
                started = self._clock()
                try:
                    self.run_once()
                except Exception:
                    logger.exception("tick failed", extra={"event": "tick_error"})
                elapsed = self._clock() - started
                if elapsed > self.interval_s:
                    logger.debug("tick overran interval", extra={"event": "tick_overrun", "elapsed_s": elapsed})
                stop.wait(max(self.interval_s - elapsed, 0.0))
        finally:
            if self._status.state == SchedulerState.STOPPING:
                self._status.state = SchedulerState.CANCELLED
                logger.info("scheduler stopped", extra={"event": "scheduler_stopped", "ticks": self._status.ticks})

    def run_once(self) -> MetricsSnapshot | None:
        started = self._clock()
        self._status.ticks += 1

        try:
            self.sampler.tick()
            cpu = self.sampler.reading()
        except Exception:
            logger.exception("sampler tick failed", extra={"event": "sampler_error"})
            cpu = None

        self._collect_expensive()

        try:
            snapshot = self.aggregator.poll_core(cpu)
        except Exception:
            logger.exception("metrics poll failed", extra={"event": "poll_error"})
            return self.store.latest()

        self._deliver(self.encoder.encode(snapshot))
        self.store.publish(snapshot)
        self._submit_expensive_if_due()

        self._status.last_tick_s = self._clock() - started
        return snapshot

    def _deliver(self, frame) -> None:
        device = self.device
        if self.auto_connect and device.needs_rediscovery:
            if (self._status.ticks - 1) % self.rediscover_every_ticks == 0:
                try:
                    device.discover()
                    self._device_absent_logged = False
                except DeviceNotFound as exc:
                    if not self._device_absent_logged:
                        logger.info(f"display not found: {exc}", extra={"event": "device_absent"})
                        self._device_absent_logged = True
                except Exception:
                    logger.exception("device discovery failed", extra={"event": "discover_error"})

        try:
            device.send(frame)
            self._status.frames_sent += 1
        except DeviceNotFound:
            self._status.frames_dropped += 1
        except DeviceWriteFailure as exc:
            self._status.frames_dropped += 1
            logger.warning(f"frame write failed: {exc}", extra={"event": "device_write_failed"})
        except Exception:
            self._status.frames_dropped += 1
            logger.exception("frame delivery failed", extra={"event": "device_error"})

    def _submit_expensive_if_due(self) -> None:
        executor = self._executor
        if executor is None or self._pending is not None:
            return
        now = self._clock()
        if now < self._next_expensive_at:
            return
        try:
            self._pending = executor.submit(self.aggregator.poll_expensive)
        except RuntimeError:
            # Executor already shut down by stop().
            return
        if self.expensive_interval_s > 0:
            self._next_expensive_at = now + self.expensive_interval_s
        else:
            self._next_expensive_at = math.inf

    def _collect_expensive(self) -> None:
        pending = self._pending
        if pending is None or not pending.done():
            return
        self._pending = None
        if pending.cancelled():
            return
        try:
            reading = pending.result()
        except Exception:
            logger.exception("external queries failed", extra={"event": "expensive_poll_error"})
            return
        self.aggregator.merge_expensive(reading)
        self._status.expensive_polls += 1
