"""Agent logging: JSON-lines file log, short console lines, crash hooks."""

from __future__ import annotations

import faulthandler
import json
import logging
import logging.handlers
import sys
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, Any

from .config import config_root


ROOT_LOGGER = "hudlink"
LOG_FILE = "hudlink.log"

# Attributes every LogRecord carries; anything else arrived through ``extra=``.
_RECORD_FIELDS = frozenset(logging.makeLogRecord({}).__dict__) | {"message", "asctime"}

_fault_stream: IO[str] | None = None


def log_dir() -> Path:
    path = config_root() / "logs"
    path.mkdir(parents=True, exist_ok=True)
    return path


def _extra_fields(record: logging.LogRecord) -> dict[str, Any]:
    return {k: v for k, v in record.__dict__.items() if k not in _RECORD_FIELDS and not k.startswith("_")}


class JsonFormatter(logging.Formatter):
    """One JSON object per line; ``extra`` fields (``event``, counters, paths) become keys."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts_utc": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        payload.update(_extra_fields(record))
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True, default=str)


class ConsoleFormatter(logging.Formatter):
    def __init__(self) -> None:
        super().__init__("%(asctime)s %(levelname)-7s %(name)s: %(message)s", datefmt="%H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        event = getattr(record, "event", None)
        return f"{line} [{event}]" if event else line


def configure_logging(keep_files: int = 7, console: bool = True, level: int = logging.INFO) -> logging.Logger:
    logger = logging.getLogger(ROOT_LOGGER)
    if logger.handlers:
        return logger

    logger.setLevel(level)
    logger.propagate = False
    handler = logging.handlers.TimedRotatingFileHandler(
        filename=str(log_dir() / LOG_FILE),
        when="midnight",
        backupCount=max(2, keep_files),
        encoding="utf-8",
    )
    handler.setFormatter(JsonFormatter())
    logger.addHandler(handler)

    if console:
        stream_handler = logging.StreamHandler(sys.stderr)
        stream_handler.setFormatter(ConsoleFormatter())
        logger.addHandler(stream_handler)

    logger.info("logging configured", extra={"event": "logging_configured", "level": logging.getLevelName(level)})
    return logger


def get_logger(child: str | None = None) -> logging.Logger:
    return logging.getLogger(f"{ROOT_LOGGER}.{child}" if child else ROOT_LOGGER)


def _log_crash(logger: logging.Logger, kind: str, exc_info: tuple) -> None:
    crash_id = str(uuid.uuid4())
    logger.critical(
        f"{kind.replace('_', ' ')} crash_id={crash_id}",
        exc_info=exc_info,
        extra={"event": kind, "crash_id": crash_id},
    )


def install_crash_hooks() -> None:
    """Route uncaught exceptions (main and worker threads) and hard faults into the log dir."""
    global _fault_stream
    logger = get_logger()

    sys.excepthook = lambda *exc: _log_crash(logger, "uncaught_exception", exc)
    threading.excepthook = lambda args: _log_crash(
        logger, "thread_exception", (args.exc_type, args.exc_value, args.exc_traceback)
    )

    if _fault_stream is None:
        _fault_stream = (log_dir() / "fault.log").open("a", encoding="utf-8")
        faulthandler.enable(file=_fault_stream, all_threads=True)
        logger.info("fault handler enabled", extra={"event": "fault_handler_enabled"})
