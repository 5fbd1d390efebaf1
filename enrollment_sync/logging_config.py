"""
Structured logging configuration for enrollment sync.

Console output stays human readable; files get one JSON object per line so
a cycle can be replayed or shipped to an aggregator. Device lifecycle events
go to their own logger (and file) so one device's run is easy to follow.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

EVENTS_LOGGER_NAME = "enrollment_sync.events"

CONSOLE_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
CONSOLE_DATEFMT = "%Y-%m-%d %H:%M:%S"

# Attributes every LogRecord carries; anything else arrived via extra=
_RESERVED_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))
) | {"message", "asctime"}


def _jsonable(value: Any) -> Any:
    try:
        json.dumps(value)
    except (TypeError, ValueError):
        return str(value)
    return value


class StructuredFormatter(logging.Formatter):
    """Render records as JSON Lines, carrying any `extra=` fields along."""

    def __init__(
        self,
        service_id: str = "enrollment-sync",
        include_extra: bool = True,
        pretty: bool = False,
    ):
        super().__init__()
        self.service_id = service_id
        self.include_extra = include_extra
        self.indent = 2 if pretty else None

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        entry: Dict[str, Any] = {
            "timestamp": created.isoformat().replace("+00:00", "Z"),
            "service_id": self.service_id,
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "message": record.getMessage(),
            "source": {"module": record.module, "line": record.lineno, "func": record.funcName},
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        if self.include_extra:
            extra = {
                key: _jsonable(value)
                for key, value in vars(record).items()
                if key not in _RESERVED_ATTRS
            }
            if extra:
                entry["extra"] = extra

        return json.dumps(entry, indent=self.indent, default=str)


class SyncEventLogger:
    """
    Lifecycle events for device reconciliation.

    Each record is tagged with `sync_action` so the events file can be
    filtered per action or per device.
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(EVENTS_LOGGER_NAME)

    def _emit(self, level: int, action: str, message: str, **fields: Any) -> None:
        self.logger.log(level, message, extra={"sync_action": action, **fields})

    def device_started(self, device: str, candidates: int) -> None:
        self._emit(
            logging.INFO, "device_started",
            f"Device sync started: {device} ({candidates} identities)",
            device=device, candidates=candidates,
        )

    def phase_completed(self, device: str, phase: str, **counts: Any) -> None:
        self._emit(
            logging.INFO, "phase_completed",
            f"Phase {phase} completed on {device}: {counts}",
            device=device, phase=phase, counts=counts,
        )

    def device_finished(self, device: str, stats: Dict[str, Any], duration_seconds: float) -> None:
        self._emit(
            logging.INFO, "device_finished",
            f"Device sync finished: {device} in {duration_seconds:.1f}s",
            device=device, stats=stats, duration_seconds=round(duration_seconds, 3),
        )

    def device_failed(self, device: str, error: str) -> None:
        self._emit(
            logging.ERROR, "device_failed",
            f"Device sync failed: {device} - {error}",
            device=device, error=error,
        )

    def cycle_skipped(self, reason: str, owner_pid: Optional[int] = None) -> None:
        self._emit(
            logging.INFO, "cycle_skipped",
            f"Sync cycle skipped: {reason}",
            reason=reason, owner_pid=owner_pid,
        )

    def lock_reclaimed(self, reason: str, owner_pid: int, age_seconds: float) -> None:
        self._emit(
            logging.WARNING, "lock_reclaimed",
            f"Run lock force-released ({reason}): pid={owner_pid}, age={age_seconds / 60:.1f} min",
            reason=reason, owner_pid=owner_pid, age_seconds=round(age_seconds, 1),
        )


def _file_handler(path: Path, level: int, formatter: logging.Formatter) -> logging.Handler:
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def setup_logging(
    service_id: str = "enrollment-sync",
    log_dir: str = "logs",
    console_level: int = logging.INFO,
    file_level: int = logging.DEBUG,
    json_logs: bool = True,
) -> logging.Logger:
    """
    Configure console and file logging for the sync service.

    Files are named per day: sync_YYYYMMDD.jsonl (or .log without JSON) and,
    in JSON mode, sync_events_YYYYMMDD.jsonl for lifecycle events.

    Returns:
        The root logger
    """
    directory = Path(log_dir)
    directory.mkdir(parents=True, exist_ok=True)
    day = datetime.now().strftime("%Y%m%d")

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    for handler in list(root.handlers):
        root.removeHandler(handler)

    text_formatter = logging.Formatter(CONSOLE_FORMAT, datefmt=CONSOLE_DATEFMT)
    console = logging.StreamHandler(sys.stdout)
    console.setLevel(console_level)
    console.setFormatter(text_formatter)
    root.addHandler(console)

    if not json_logs:
        root.addHandler(_file_handler(directory / f"sync_{day}.log", file_level, text_formatter))
        return root

    json_formatter = StructuredFormatter(service_id=service_id)
    root.addHandler(_file_handler(directory / f"sync_{day}.jsonl", file_level, json_formatter))

    events = logging.getLogger(EVENTS_LOGGER_NAME)
    for handler in list(events.handlers):
        events.removeHandler(handler)
    events.addHandler(_file_handler(directory / f"sync_events_{day}.jsonl", logging.INFO, json_formatter))
    return root
