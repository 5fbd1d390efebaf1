"""
Fan a candidate batch out to every device.

Each device runs as its own unit of work, either in a thread pool or in a
spawned process. A unit that raises, crashes or overruns the device timeout
is reported as a failed DeviceResult; it never blocks or hides the results
of the other devices.
"""

import logging
import math
import multiprocessing
import queue
import time
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from typing import Callable, Dict, List, Optional, Sequence

from .schemas.report_schemas import DeviceResult
from .schemas.roster_schemas import EnrollmentCandidate

logger = logging.getLogger(__name__)

DeviceUnit = Callable[[str, Sequence[EnrollmentCandidate]], DeviceResult]

ISOLATION_MODES = ("thread", "process")


def _failed(device: str, error: str) -> DeviceResult:
    return DeviceResult(device=device, success=False, error=error)


def _run_in_process(unit: DeviceUnit, device: str, candidates, results) -> None:
    """Process entry point: always posts exactly one result."""
    try:
        result = unit(device, candidates)
    except Exception as e:
        result = _failed(device, f"{type(e).__name__}: {e}")
    results.put(result.model_dump(mode="json"))


class DeviceOrchestrator:
    """
    Runs one unit of work per device and collects every result.

    Usage:
        orchestrator = DeviceOrchestrator(DeviceWorker(config), isolation="thread")
        results = orchestrator.run_batch(["10.0.0.21", "10.0.0.22"], candidates)
    """

    def __init__(
        self,
        unit: DeviceUnit,
        isolation: str = "thread",
        max_workers: Optional[int] = None,
        device_timeout_seconds: float = 900.0,
    ):
        if isolation not in ISOLATION_MODES:
            raise ValueError(f"isolation must be one of {ISOLATION_MODES}, got {isolation!r}")
        self.unit = unit
        self.isolation = isolation
        self.max_workers = max_workers
        self.device_timeout_seconds = device_timeout_seconds

    def run_batch(self, devices: Sequence[str], candidates: Sequence[EnrollmentCandidate]) -> List[DeviceResult]:
        """Results in the same order as `devices`."""
        devices = list(dict.fromkeys(devices))
        if not devices:
            return []

        logger.info(
            f"Dispatching {len(candidates)} identities to {len(devices)} device(s) "
            f"({self.isolation} isolation)"
        )
        if self.isolation == "process":
            results = self._run_processes(devices, list(candidates))
        else:
            results = self._run_threads(devices, list(candidates))

        succeeded = sum(1 for r in results if r.success)
        logger.info(f"Batch finished: {succeeded}/{len(results)} devices succeeded")
        return results

    # =========================================================================
    # Thread isolation
    # =========================================================================

    def _run_threads(self, devices: List[str], candidates: List[EnrollmentCandidate]) -> List[DeviceResult]:
        workers = min(self.max_workers or len(devices), len(devices))
        timeout = self.device_timeout_seconds
        # A device's clock starts when a worker picks it up, not at submit
        started: Dict[str, float] = {}
        # Queued devices still need an upper bound: one timeout per wave of workers
        batch_deadline = time.monotonic() + timeout * math.ceil(len(devices) / workers)

        def run_unit(device: str) -> DeviceResult:
            started[device] = time.monotonic()
            return self.unit(device, candidates)

        executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="device")
        by_device: Dict[str, DeviceResult] = {}
        try:
            futures = {executor.submit(run_unit, device): device for device in devices}
            pending = set(futures)
            while pending:
                deadlines = [started[futures[f]] + timeout for f in pending if futures[f] in started]
                next_deadline = min(deadlines + [batch_deadline])
                done, pending = wait(
                    pending,
                    timeout=max(0.0, next_deadline - time.monotonic()),
                    return_when=FIRST_COMPLETED,
                )

                for future in done:
                    device = futures[future]
                    try:
                        by_device[device] = future.result()
                    except Exception as e:
                        logger.error(f"Unit for {device} raised: {e}")
                        by_device[device] = _failed(device, f"{type(e).__name__}: {e}")

                now = time.monotonic()
                for future in list(pending):
                    device = futures[future]
                    start = started.get(device)
                    if (start is not None and now - start >= timeout) or now >= batch_deadline:
                        future.cancel()
                        logger.error(f"Device {device} timed out after {timeout}s")
                        by_device[device] = _failed(device, f"Timed out after {timeout}s")
                        pending.discard(future)
        finally:
            # Hung units keep running in the background until their own
            # request timeouts fire; nobody waits for them here.
            executor.shutdown(wait=False, cancel_futures=True)

        return [by_device[device] for device in devices]

    # =========================================================================
    # Process isolation
    # =========================================================================

    def _run_processes(self, devices: List[str], candidates: List[EnrollmentCandidate]) -> List[DeviceResult]:
        ctx = multiprocessing.get_context("spawn")
        results_queue = ctx.Queue()
        processes = {}
        for device in devices:
            process = ctx.Process(
                target=_run_in_process,
                args=(self.unit, device, candidates, results_queue),
                name=f"device-{device}",
                daemon=True,
            )
            process.start()
            processes[device] = process

        by_device: Dict[str, DeviceResult] = {}
        deadline = time.monotonic() + self.device_timeout_seconds
        while len(by_device) < len(devices):
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            # Stop waiting once every process has exited and the queue is drained
            if not any(p.is_alive() for p in processes.values()) and results_queue.empty():
                break
            try:
                data = results_queue.get(timeout=min(remaining, 1.0))
            except queue.Empty:
                continue
            result = DeviceResult.model_validate(data)
            by_device[result.device] = result

        for device, process in processes.items():
            if process.is_alive():
                logger.error(f"Device process {device} timed out, terminating")
                process.terminate()
            process.join(timeout=5)
            if device not in by_device:
                if process.exitcode is None or process.exitcode < 0:
                    error = f"Timed out after {self.device_timeout_seconds}s"
                else:
                    error = f"Worker exited without a result (exit code {process.exitcode})"
                by_device[device] = _failed(device, error)

        results_queue.close()
        return [by_device[device] for device in devices]
