"""
Isolated unit of work for one device.

A DeviceWorker is a picklable callable, so the orchestrator can run it in a
thread or in a spawned process. Whatever happens inside, it returns a
DeviceResult; a device-level exception becomes a failed result for that
device only.
"""

import logging
import time
from typing import Optional, Sequence

from .config import SyncConfig
from .device_client import DeviceClient
from .logging_config import SyncEventLogger
from .mirror import RedisMirror
from .reconciler import DeviceReconciler
from .registry_cache import DeviceRegistry
from .schemas.report_schemas import DeviceResult
from .schemas.roster_schemas import EnrollmentCandidate

logger = logging.getLogger(__name__)


def build_registry(config: SyncConfig) -> DeviceRegistry:
    """Registry cache for a config, with the Redis mirror when configured."""
    mirror = RedisMirror.from_url(config.redis_url) if config.redis_url else None
    return DeviceRegistry(
        config.cache_path / "registry",
        max_backups=config.max_backups,
        mirror=mirror,
    )


class DeviceWorker:
    """
    Callable `(device, candidates) -> DeviceResult`.

    The registry is built lazily so a worker shipped to another process
    opens its own file handles and Redis connection.
    """

    def __init__(
        self,
        config: SyncConfig,
        registry: Optional[DeviceRegistry] = None,
        sleep=time.sleep,
    ):
        self.config = config
        self._registry = registry
        self._sleep = sleep

    def __getstate__(self):
        state = self.__dict__.copy()
        state["_registry"] = None
        return state

    @property
    def registry(self) -> DeviceRegistry:
        if self._registry is None:
            self._registry = build_registry(self.config)
        return self._registry

    def __call__(self, device: str, candidates: Sequence[EnrollmentCandidate]) -> DeviceResult:
        events = SyncEventLogger()
        client = None
        started = time.monotonic()
        try:
            client = DeviceClient(device, self.config.device)
            reconciler = DeviceReconciler(
                client,
                self.registry,
                chunk_size=self.config.chunk_size,
                delete_pause_seconds=self.config.delete_pause_seconds,
                settle_seconds=self.config.settle_seconds,
                face_phase_delay_seconds=self.config.face_phase_delay_seconds,
                sleep=self._sleep,
                event_logger=events,
            )
            return reconciler.reconcile(candidates)
        except Exception as e:
            logger.exception(f"Reconciliation aborted for {device}")
            error = f"{type(e).__name__}: {e}"
            events.device_failed(device, error)
            return DeviceResult(
                device=device,
                success=False,
                error=error,
                duration_seconds=time.monotonic() - started,
            )
        finally:
            if client is not None:
                client.close()
