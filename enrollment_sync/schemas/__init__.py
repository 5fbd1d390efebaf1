"""
Pydantic schemas for enrollment sync.

This module defines all data models used for:
- The desired roster (identities, processed photos, enrollment candidates)
- Device replies and persisted state (device records, registry entries, lock file)
- Run reports (per-device results and cycle totals)
"""

from .roster_schemas import (
    IdentityKind,
    Identity,
    ProcessedPhoto,
    EnrollmentCandidate,
)
from .device_schemas import (
    DeviceRecord,
    BulkResult,
    RegistryEntry,
    LockRecord,
)
from .report_schemas import (
    DeviceStats,
    DeviceResult,
    ProcessingError,
    SyncReport,
)

__all__ = [
    # Roster schemas
    "IdentityKind",
    "Identity",
    "ProcessedPhoto",
    "EnrollmentCandidate",
    # Device / state schemas
    "DeviceRecord",
    "BulkResult",
    "RegistryEntry",
    "LockRecord",
    # Report schemas
    "DeviceStats",
    "DeviceResult",
    "ProcessingError",
    "SyncReport",
]
