"""
Run report schemas.

Every cycle produces a SyncReport: cycle totals plus one DeviceResult per
device. Nothing is collapsed into a single boolean; partial success shows up
as explicit counts.
"""

from datetime import datetime
from typing import Dict, List, Optional
from pydantic import BaseModel, Field

from .device_schemas import utcnow


class DeviceStats(BaseModel):
    """Per-device counters accumulated during one reconciliation."""
    users_verified: int = Field(0, description="Records the device reported before changes")
    users_deleted: int = 0
    delete_failures: int = 0
    users_registered: int = 0
    identity_chunks: int = 0
    identity_chunks_failed: int = 0
    users_confirmed: int = 0
    faces_registered: int = 0
    face_chunks: int = 0
    face_chunks_failed: int = 0
    cache_saves: int = 0

    def add(self, other: "DeviceStats") -> None:
        for name in type(self).model_fields:
            setattr(self, name, getattr(self, name) + getattr(other, name))


class DeviceResult(BaseModel):
    """
    Outcome of one device's reconciliation.

    success means the reconciliation ran to completion; chunk-level failures
    are reported through stats and unconfirmed_ids.
    """
    device: str
    success: bool = False
    error: Optional[str] = None
    stats: DeviceStats = Field(default_factory=DeviceStats)
    unconfirmed_ids: List[str] = Field(default_factory=list, description="Created but not seen on re-query")
    duration_seconds: float = 0.0

    @property
    def has_failures(self) -> bool:
        s = self.stats
        return bool(
            not self.success
            or s.delete_failures
            or s.identity_chunks_failed
            or s.face_chunks_failed
            or self.unconfirmed_ids
        )


class ProcessingError(BaseModel):
    """A per-identity failure before any device was contacted."""
    identity_id: str
    invite_id: Optional[str] = None
    stage: str = Field(..., description="download | transcode")
    error: str


class SyncReport(BaseModel):
    """Structured report for one full cycle."""
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    roster_size: int = 0
    candidates: int = 0
    processing_errors: List[ProcessingError] = Field(default_factory=list)
    devices: List[DeviceResult] = Field(default_factory=list)
    totals: DeviceStats = Field(default_factory=DeviceStats)

    @property
    def success(self) -> bool:
        """True only when every device's reconciliation succeeded."""
        return all(d.success for d in self.devices)

    @property
    def complete(self) -> bool:
        """
        True when every candidate reached every device cleanly.

        False whenever some identity still needs another attempt.
        """
        return (
            self.success
            and not self.processing_errors
            and not any(d.has_failures for d in self.devices)
        )

    @property
    def devices_succeeded(self) -> int:
        return sum(1 for d in self.devices if d.success)

    @property
    def devices_failed(self) -> int:
        return sum(1 for d in self.devices if not d.success)

    def finalize(self) -> "SyncReport":
        totals = DeviceStats()
        for result in self.devices:
            totals.add(result.stats)
        self.totals = totals
        self.finished_at = utcnow()
        return self

    def summary(self) -> Dict:
        """Flat dict for logging and CLI output."""
        return {
            "roster_size": self.roster_size,
            "candidates": self.candidates,
            "processing_errors": len(self.processing_errors),
            "users_verified": self.totals.users_verified,
            "users_deleted": self.totals.users_deleted,
            "users_registered": self.totals.users_registered,
            "faces_registered": self.totals.faces_registered,
            "cache_saves": self.totals.cache_saves,
            "devices_succeeded": self.devices_succeeded,
            "devices_failed": self.devices_failed,
            "complete": self.complete,
            "per_device": {
                d.device: {
                    "success": d.success,
                    "error": d.error,
                    "unconfirmed": len(d.unconfirmed_ids),
                    **d.stats.model_dump(),
                }
                for d in self.devices
            },
        }
