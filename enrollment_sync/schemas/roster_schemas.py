"""
Roster schemas for the desired enrollment set.

Defines the identities fetched from the upstream record store and the
ready-to-send candidates produced once their photo has been cached and
transcoded.

Identity keys:
    - identity_id: the id sent to the device as UserID (may be rotated upstream)
    - invite_id: the stable cross-device key used by the registry cache
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field


# =============================================================================
# Identity
# =============================================================================

class IdentityKind(str, Enum):
    """Who the identity is for an invite. SECONDARY wins over PRIMARY."""
    PRIMARY = "PRIMARY"
    SECONDARY = "SECONDARY"

    @property
    def priority(self) -> int:
        return 2 if self is IdentityKind.SECONDARY else 1


class Identity(BaseModel):
    """
    A person eligible for device enrollment.

    Mirrors one row of the upstream roster query. `photo_url` is the source
    of the face photo; the content-addressed image cache keys on it.
    """
    identity_id: str = Field(..., min_length=1, description="Upstream identity id, sent as device UserID")
    invite_id: str = Field(..., min_length=1, description="Stable invite key shared across devices")
    display_name: str = Field("", description="Full name as stored upstream")
    document: Optional[str] = Field(None, description="Document reference")
    email: Optional[str] = Field(None, description="Contact e-mail")
    phone: Optional[str] = Field(None, description="Contact phone")
    kind: IdentityKind = Field(IdentityKind.PRIMARY, description="PRIMARY (participant) or SECONDARY (guest)")
    photo_url: Optional[str] = Field(None, description="Source URL of the face photo")
    updated_at: Optional[datetime] = Field(None, description="Last upstream modification")

    def contact_fields(self) -> dict:
        """Contact fields persisted alongside a registry entry."""
        return {
            "document": self.document,
            "email": self.email,
            "phone": self.phone,
        }


# =============================================================================
# Photos
# =============================================================================

class ProcessedPhoto(BaseModel):
    """
    A photo transcoded into the device envelope.

    `size_bytes` is the encoded JPEG size, always <= the envelope byte bound.
    """
    data_b64: str = Field(..., description="Base64-encoded JPEG")
    size_bytes: int = Field(..., ge=0, description="Encoded JPEG size in bytes")
    width: int = Field(..., ge=1)
    height: int = Field(..., ge=1)
    quality: int = Field(..., ge=1, le=100, description="JPEG quality used")
    source_hash: Optional[str] = Field(None, description="Image cache hash of the source URL")


class EnrollmentCandidate(BaseModel):
    """An identity paired with its device-ready photo and formatted name."""
    identity: Identity
    photo: ProcessedPhoto
    device_name: str = Field(..., max_length=50, description="Name formatted for the device")

    @property
    def identity_id(self) -> str:
        return self.identity.identity_id

    @property
    def invite_id(self) -> str:
        return self.identity.invite_id
