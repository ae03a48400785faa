"""Access grant model, access levels and user roles."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from uuid import uuid4

from fhirvault.models.resource import utcnow


class AccessLevel(IntEnum):
    """Level of access a user holds on a patient's data.

    NONE < READ < WRITE < ADMIN form the ordered core; the remaining
    values are special-purpose levels.
    """

    NONE = 0
    READ = 1
    WRITE = 2
    ADMIN = 3
    EMERGENCY = 4
    RESEARCH = 5
    ANALYTICS = 6
    BILLING = 7
    LABORATORY = 8
    PHARMACY = 9
    RADIOLOGY = 10
    NURSING = 11
    SOCIAL_WORK = 12
    MENTAL_HEALTH = 13
    SUBSTANCE_ABUSE = 14
    REHABILITATION = 15
    PALLIATIVE_CARE = 16
    FAMILY_SUPPORT = 17
    LEGAL = 18
    AUDIT = 19
    SYSTEM_ADMIN = 20


class UserRole(str, Enum):
    """Roles a caller can hold."""

    GUEST = "guest"
    ADMINISTRATOR = "administrator"
    HEALTHCARE_PROVIDER = "healthcareprovider"
    NURSE = "nurse"
    PATIENT = "patient"
    FAMILY_MEMBER = "familymember"
    RESEARCHER = "researcher"
    IT_SUPPORT = "itsupport"
    READ_ONLY_USER = "readonlyuser"
    DATA_ANALYST = "dataanalyst"
    IT_ADMINISTRATOR = "itadministrator"
    PHARMACIST = "pharmacist"
    LAB_TECHNICIAN = "labtechnician"
    RADIOLOGIST = "radiologist"
    SOCIAL_WORKER = "socialworker"
    MENTAL_HEALTH_PROVIDER = "mentalhealthprovider"
    BILLING_SPECIALIST = "billingspecialist"
    QUALITY_ASSURANCE = "qualityassurance"
    COMPLIANCE_OFFICER = "complianceofficer"
    EMERGENCY_RESPONDER = "emergencyresponder"
    CASE_MANAGER = "casemanager"

    @classmethod
    def parse(cls, value: str | None) -> "UserRole":
        """Parse a role claim; unknown or missing roles become GUEST."""
        if not value:
            return cls.GUEST
        normalized = value.replace("_", "").replace("-", "").replace(" ", "").lower()
        try:
            return cls(normalized)
        except ValueError:
            return cls.GUEST


@dataclass
class AccessGrant:
    """A revocable, optionally time-bounded grant of access to a patient.

    Grants are never removed; revoking only flips ``is_enabled``.
    """

    patient_id: str
    user_id: str
    access_level: AccessLevel
    granted_by: str
    id: str = field(default_factory=lambda: str(uuid4()))
    granted_at: datetime = field(default_factory=utcnow)
    expires_at: datetime | None = None
    reason: str | None = None
    is_enabled: bool = True
    is_emergency_access: bool = False
    emergency_justification: str | None = None
    last_modified_at: datetime | None = None
    last_modified_by: str | None = None

    def __post_init__(self) -> None:
        if not self.granted_by:
            raise ValueError("granted_by is required")
        if self.is_emergency_access and not (
            self.emergency_justification and self.emergency_justification.strip()
        ):
            raise ValueError("Emergency access requires a justification")

    def is_active(self, now: datetime | None = None) -> bool:
        now = now or utcnow()
        return self.is_enabled and (self.expires_at is None or self.expires_at > now)

    def is_expired(self, now: datetime | None = None) -> bool:
        now = now or utcnow()
        return self.expires_at is not None and self.expires_at <= now
