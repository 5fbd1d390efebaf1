"""
Device-side and persisted-state schemas.

- DeviceRecord: one enrollment as reported by a device (never persisted)
- BulkResult: outcome of one device call (delete / insertMulti)
- RegistryEntry: what the registry cache stores per (device, invite_id)
- LockRecord: contents of the scheduler run lock file
"""

from datetime import datetime, timezone
from typing import List, Optional
from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Device Records
# =============================================================================

class DeviceRecord(BaseModel):
    """
    One AccessControlCard record reported by a device's record finder.

    remote_record_id is the device's RecNo, needed for deletion.
    """
    remote_record_id: Optional[str] = Field(None, description="Device RecNo")
    identity_id: str = Field(..., description="Device UserID")
    display_name: Optional[str] = Field(None, description="Device CardName")


class BulkResult(BaseModel):
    """
    Outcome of a single device call.

    Device replies carry no per-user attribution, so a chunk either
    fully succeeds or fully fails.
    """
    success: bool = False
    requested: int = Field(0, ge=0, description="Identities sent in this call")
    success_count: int = Field(0, ge=0)
    response: Optional[str] = Field(None, description="Raw device reply (trimmed)")
    error: Optional[str] = Field(None, description="Transport or protocol error")
    identity_ids: List[str] = Field(default_factory=list)

    @property
    def failed_count(self) -> int:
        return self.requested - self.success_count


# =============================================================================
# Persisted State
# =============================================================================

class RegistryEntry(BaseModel):
    """
    Registry cache record for one invite on one device.

    Keyed by invite_id inside the device's namespace; identity_id may change
    between runs when the upstream store rotates it.
    """
    invite_id: str
    identity_id: str
    display_name: Optional[str] = None
    document: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    kind: Optional[str] = None
    registered_at: datetime = Field(default_factory=utcnow)
    last_updated: datetime = Field(default_factory=utcnow)

    def mirror_member(self) -> str:
        """Member string used in the key-value mirror set."""
        return f"{self.identity_id}:{self.invite_id}"


class LockRecord(BaseModel):
    """Run lock file contents."""
    owner_pid: int = Field(..., ge=1)
    started_at: datetime = Field(default_factory=utcnow)
    hostname: Optional[str] = None

    def age_seconds(self, now: datetime = None) -> float:
        now = now or utcnow()
        started = self.started_at
        if started.tzinfo is None:
            started = started.replace(tzinfo=timezone.utc)
        return (now - started).total_seconds()
