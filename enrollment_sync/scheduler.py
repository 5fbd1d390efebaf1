"""
Fixed-cadence scheduler guarded by a filesystem run lock.

States:
    IDLE     waiting for the next tick
    RUNNING  a cycle is executing

A tick while RUNNING, or while another process holds the run lock, is
dropped, never queued. The lock file holds {owner_pid, started_at}; it is
reclaimed when its owner no longer exists or it is older than the maximum
age (30 minutes by default).
"""

import json
import logging
import os
import socket
import threading
import time
from contextlib import contextmanager
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, Optional

import portalocker
from pydantic import ValidationError

from .logging_config import SyncEventLogger
from .schemas.device_schemas import LockRecord, utcnow

logger = logging.getLogger(__name__)

DEFAULT_MAX_AGE_SECONDS = 30 * 60
UNREADABLE_GRACE_SECONDS = 5.0


def pid_alive(pid: int) -> bool:
    """True if a process with this pid exists."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by another user
        return True
    return True


class RunLock:
    """
    Exclusive, crash-tolerant lock file for one sync cycle.

    Usage:
        lock = RunLock(Path(".enrollment-sync.lock"))
        with lock.hold() as acquired:
            if acquired:
                run_cycle()
    """

    def __init__(
        self,
        path: Path,
        max_age_seconds: float = DEFAULT_MAX_AGE_SECONDS,
        event_logger: Optional[SyncEventLogger] = None,
    ):
        self.path = Path(path)
        self.guard_path = self.path.with_name(self.path.name + ".reclaim")
        self.max_age_seconds = max_age_seconds
        self.events = event_logger or SyncEventLogger()
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def read(self) -> Optional[LockRecord]:
        """Current lock contents, or None if absent or unreadable."""
        try:
            with open(self.path, "r") as f:
                return LockRecord.model_validate(json.load(f))
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            logger.warning(f"Unreadable lock file {self.path}: {e}")
            return None

    def _stale_reason(self, record: Optional[LockRecord]) -> Optional[str]:
        if record is None:
            # A lock being written right now is briefly empty
            try:
                age = time.time() - self.path.stat().st_mtime
            except FileNotFoundError:
                return None
            return "unreadable" if age > UNREADABLE_GRACE_SECONDS else None
        if not pid_alive(record.owner_pid):
            return "owner not running"
        if record.age_seconds() > self.max_age_seconds:
            return "expired"
        return None

    def _create(self) -> bool:
        record = LockRecord(owner_pid=os.getpid(), started_at=utcnow(), hostname=socket.gethostname())
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w") as f:
            f.write(record.model_dump_json())
            f.flush()
            os.fsync(f.fileno())
        return True

    def _same_record(self, current: Optional[LockRecord], observed: Optional[LockRecord]) -> bool:
        if current is None or observed is None:
            return current is None and observed is None
        return (current.owner_pid, current.started_at) == (observed.owner_pid, observed.started_at)

    def _reclaim(self, observed: Optional[LockRecord]) -> bool:
        """
        Replace a stale lock with our own.

        Runs under a non-blocking guard lock so two processes never reclaim
        at once, and only unlinks the file if it still holds the stale
        record we saw. False if another process got there first.
        """
        self.guard_path.touch(exist_ok=True)
        with open(self.guard_path, "r+") as guard:
            try:
                portalocker.lock(guard, portalocker.LOCK_EX | portalocker.LOCK_NB)
            except portalocker.exceptions.LockException:
                logger.info(f"Another process is reclaiming {self.path}")
                return False
            try:
                if not self.path.exists():
                    return self._create()
                current = self.read()
                if not self._same_record(current, observed):
                    return False
                reason = self._stale_reason(current)
                if reason is None:
                    return False

                try:
                    self.path.unlink()
                except FileNotFoundError:
                    pass
                self.events.lock_reclaimed(
                    reason,
                    current.owner_pid if current else 0,
                    current.age_seconds() if current else 0.0,
                )
                return self._create()
            finally:
                portalocker.unlock(guard)

    def acquire(self) -> bool:
        """Take the lock, reclaiming a stale one. False if a live owner holds it."""
        if self._held:
            return False
        self.path.parent.mkdir(parents=True, exist_ok=True)

        for _ in range(2):
            if self._create():
                self._held = True
                return True

            record = self.read()
            if record is None and not self.path.exists():
                # Released between our create and read
                continue

            if self._stale_reason(record) is None:
                return False
            if self._reclaim(record):
                self._held = True
                return True
            return False

        return False

    def release(self) -> None:
        """Remove the lock file if this process owns it."""
        if not self._held:
            return
        self._held = False
        record = self.read()
        if record is not None and record.owner_pid != os.getpid():
            logger.warning(f"Lock now owned by pid {record.owner_pid}, leaving it in place")
            return
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass

    def force_release(self) -> bool:
        """Remove the lock file regardless of owner (operator action)."""
        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        self._held = False
        logger.warning(f"Run lock {self.path} force-released by operator")
        return True

    @contextmanager
    def hold(self) -> Iterator[bool]:
        acquired = self.acquire()
        try:
            yield acquired
        finally:
            if acquired:
                self.release()

    def status(self) -> Dict[str, Any]:
        record = self.read()
        if record is None:
            return {"locked": self.path.exists(), "path": str(self.path)}
        return {
            "locked": True,
            "path": str(self.path),
            "owner_pid": record.owner_pid,
            "hostname": record.hostname,
            "started_at": record.started_at.isoformat(),
            "age_minutes": round(record.age_seconds() / 60, 1),
            "owner_alive": pid_alive(record.owner_pid),
            "stale": self._stale_reason(record) is not None,
        }


class SchedulerState(str, Enum):
    IDLE = "IDLE"
    RUNNING = "RUNNING"


class Scheduler:
    """
    Runs `job` every `interval_seconds`, at most one cycle at a time.

    Each tick runs on its own thread so the cadence timer keeps firing (and
    dropping ticks) while a long cycle is in progress.
    """

    def __init__(
        self,
        job: Callable[[], Any],
        lock: RunLock,
        interval_seconds: float,
        run_immediately: bool = True,
        event_logger: Optional[SyncEventLogger] = None,
    ):
        self.job = job
        self.lock = lock
        self.interval_seconds = interval_seconds
        self.run_immediately = run_immediately
        self.events = event_logger or SyncEventLogger()

        self.state = SchedulerState.IDLE
        self._state_lock = threading.Lock()
        self._stop = threading.Event()
        self._current: Optional[threading.Thread] = None

        self.stats = {
            "ticks": 0,
            "cycles_run": 0,
            "cycles_failed": 0,
            "ticks_skipped": 0,
        }

    def tick(self) -> bool:
        """Run one cycle if possible. Returns True if the job ran."""
        self.stats["ticks"] += 1
        with self._state_lock:
            if self.state is SchedulerState.RUNNING:
                self.stats["ticks_skipped"] += 1
                self.events.cycle_skipped("previous cycle still running")
                return False
            self.state = SchedulerState.RUNNING

        try:
            with self.lock.hold() as acquired:
                if not acquired:
                    record = self.lock.read()
                    self.stats["ticks_skipped"] += 1
                    self.events.cycle_skipped(
                        "run lock held by another process",
                        owner_pid=record.owner_pid if record else None,
                    )
                    return False

                self.stats["cycles_run"] += 1
                try:
                    self.job()
                except Exception:
                    self.stats["cycles_failed"] += 1
                    logger.exception("Sync cycle failed")
                return True
        finally:
            with self._state_lock:
                self.state = SchedulerState.IDLE

    def _spawn_tick(self) -> None:
        if self._current is not None and self._current.is_alive():
            # Still RUNNING; record the dropped tick without starting a thread
            self.tick()
            return
        self._current = threading.Thread(target=self.tick, name="sync-cycle", daemon=True)
        self._current.start()

    def run_forever(self, stop_event: Optional[threading.Event] = None) -> None:
        """Tick on the cadence until stopped; waits for an in-flight cycle to finish."""
        if stop_event is not None:
            self._stop = stop_event
        stop = self._stop
        logger.info(f"Scheduler started: every {self.interval_seconds/60:.1f} min")

        if self.run_immediately:
            self._spawn_tick()
        while not stop.wait(self.interval_seconds):
            self._spawn_tick()

        if self._current is not None and self._current.is_alive():
            logger.info("Waiting for in-flight cycle to finish")
            self._current.join()
        logger.info(f"Scheduler stopped: {self.stats}")

    def stop(self) -> None:
        self._stop.set()
