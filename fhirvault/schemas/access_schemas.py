"""Schemas for patient access endpoints."""

from datetime import datetime

from pydantic import BaseModel, Field

from fhirvault.models.access import AccessGrant, AccessLevel


class GrantAccessRequest(BaseModel):
    """Request to grant a user access to a patient."""

    patient_id: str
    user_id: str
    access_level: AccessLevel = Field(
        default=AccessLevel.READ,
        description="Access level number (1 = READ, 2 = WRITE, 3 = ADMIN, ...)",
    )
    reason: str | None = None
    expires_at: datetime | None = None


class EmergencyAccessRequest(BaseModel):
    """Request for a justified, time-bounded emergency grant."""

    patient_id: str
    user_id: str
    justification: str = Field(min_length=1)
    expires_at: datetime


class AccessChangeRequest(BaseModel):
    """Revoke or re-enable the grants of a user on a patient."""

    patient_id: str
    user_id: str
    reason: str | None = None


class ExtendAccessRequest(BaseModel):
    patient_id: str
    user_id: str
    expires_at: datetime


class AccessChangeResponse(BaseModel):
    patient_id: str
    user_id: str
    changed: bool


class AccessGrantResponse(BaseModel):
    """An access grant as returned by the API."""

    id: str
    patient_id: str
    user_id: str
    access_level: str
    granted_at: datetime
    granted_by: str
    expires_at: datetime | None = None
    reason: str | None = None
    is_enabled: bool
    is_active: bool
    is_emergency_access: bool
    emergency_justification: str | None = None
    last_modified_at: datetime | None = None
    last_modified_by: str | None = None

    @classmethod
    def from_grant(
        cls, grant: AccessGrant, now: datetime | None = None
    ) -> "AccessGrantResponse":
        return cls(
            id=grant.id,
            patient_id=grant.patient_id,
            user_id=grant.user_id,
            access_level=grant.access_level.name,
            granted_at=grant.granted_at,
            granted_by=grant.granted_by,
            expires_at=grant.expires_at,
            reason=grant.reason,
            is_enabled=grant.is_enabled,
            is_active=grant.is_active(now),
            is_emergency_access=grant.is_emergency_access,
            emergency_justification=grant.emergency_justification,
            last_modified_at=grant.last_modified_at,
            last_modified_by=grant.last_modified_by,
        )


class AccessiblePatientsResponse(BaseModel):
    patient_ids: list[str]


class AccessLevelResponse(BaseModel):
    patient_id: str
    user_id: str
    access_level: str | None = None
    is_expired: bool
    has_emergency_access: bool
