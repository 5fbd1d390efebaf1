"""
Enrollment sync for facial access-control devices.

Components:
    - schemas: Pydantic models for roster identities, device records, registry entries and reports
    - config: JSON file + environment configuration
    - image_cache: Content-addressed local photo store
    - image_utils: Photo transcoding into the device size envelope
    - registry_cache: Per-device registry with backups and atomic writes
    - mirror: Optional Redis mirror of the registry
    - device_client: Digest-authenticated device enrollment API
    - reconciler: Per-device delete / create / verify / face / commit cycle
    - orchestrator: Isolated per-device fan-out
    - pipeline: One full sync cycle
    - scheduler: Fixed-cadence runs guarded by a lock file
    - cli: Operator command line (run, schedule, registry, images, lock)
"""

from .schemas import (
    Identity,
    IdentityKind,
    EnrollmentCandidate,
    DeviceRecord,
    RegistryEntry,
    DeviceResult,
    SyncReport,
)
from .config import SyncConfig, ConfigError, load_config
from .device_client import DeviceClient, DeviceClientConfig
from .image_cache import ImageCache, PhotoDownloadError
from .image_utils import ImageEnvelope, PhotoSizeError, transcode_photo
from .registry_cache import DeviceRegistry
from .mirror import RedisMirror
from .reconciler import DeviceReconciler
from .orchestrator import DeviceOrchestrator
from .worker import DeviceWorker
from .pipeline import SyncPipeline, RunStateStore
from .scheduler import RunLock, Scheduler

__version__ = "1.0.0"

__all__ = [
    "Identity",
    "IdentityKind",
    "EnrollmentCandidate",
    "DeviceRecord",
    "RegistryEntry",
    "DeviceResult",
    "SyncReport",
    "SyncConfig",
    "ConfigError",
    "load_config",
    "DeviceClient",
    "DeviceClientConfig",
    "ImageCache",
    "PhotoDownloadError",
    "ImageEnvelope",
    "PhotoSizeError",
    "transcode_photo",
    "DeviceRegistry",
    "RedisMirror",
    "DeviceReconciler",
    "DeviceOrchestrator",
    "DeviceWorker",
    "SyncPipeline",
    "RunStateStore",
    "RunLock",
    "Scheduler",
]
