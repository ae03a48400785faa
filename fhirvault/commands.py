"""
Commands and queries handled by the services.

Each class declares the capabilities the authorization gate enforces before
the command reaches storage.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import ClassVar

from fhirvault.core.auth import Permissions
from fhirvault.core.gate import CapabilityRequirement
from fhirvault.models.access import AccessLevel
from fhirvault.schemas.import_schemas import ImportRequest

Capabilities = tuple[CapabilityRequirement, ...]

SYSTEM_SCOPE: Capabilities = (CapabilityRequirement(Permissions.SYSTEM_ALL),)
USER_SCOPE: Capabilities = (CapabilityRequirement(Permissions.USER_ALL),)
# patient_id is filled in by the service from the resource or its stored record
USER_SCOPE_FOR_PATIENT: Capabilities = (
    CapabilityRequirement(
        Permissions.USER_ALL,
        requires_patient_access=True,
        patient_id_field="patient_id",
    ),
)


@dataclass(frozen=True)
class ImportBundleCommand:
    capabilities: ClassVar[Capabilities] = SYSTEM_SCOPE

    request: ImportRequest


@dataclass(frozen=True)
class CreateResourceCommand:
    capabilities: ClassVar[Capabilities] = USER_SCOPE_FOR_PATIENT

    resource_type: str
    resource_json: str | bytes
    patient_id: str | None = None


@dataclass(frozen=True)
class UpdateResourceCommand:
    capabilities: ClassVar[Capabilities] = USER_SCOPE_FOR_PATIENT

    resource_type: str
    resource_id: str
    resource_json: str | bytes
    patient_id: str | None = None


@dataclass(frozen=True)
class DeleteResourceCommand:
    capabilities: ClassVar[Capabilities] = USER_SCOPE_FOR_PATIENT

    resource_type: str
    resource_id: str
    reason: str | None = None
    patient_id: str | None = None


@dataclass(frozen=True)
class GetResourceQuery:
    capabilities: ClassVar[Capabilities] = USER_SCOPE_FOR_PATIENT

    resource_type: str
    resource_id: str
    version_id: int | None = None
    patient_id: str | None = None


@dataclass(frozen=True)
class GetResourceHistoryQuery:
    capabilities: ClassVar[Capabilities] = USER_SCOPE_FOR_PATIENT

    resource_type: str
    resource_id: str
    page: int = 1
    page_size: int = 100
    patient_id: str | None = None


@dataclass(frozen=True)
class SearchResourcesQuery:
    # Patient comes from search_parameters["patient"] / ["subject"]
    capabilities: ClassVar[Capabilities] = (
        CapabilityRequirement(Permissions.USER_ALL, requires_patient_access=True),
    )

    resource_type: str
    search_parameters: dict[str, str] = field(default_factory=dict)
    page: int = 1
    page_size: int = 100


@dataclass(frozen=True)
class ExportBundleQuery:
    capabilities: ClassVar[Capabilities] = SYSTEM_SCOPE

    resource_type: str | None = None
    search_parameters: dict[str, str] = field(default_factory=dict)
    include_deleted: bool = False
    page: int = 1
    page_size: int = 1000


@dataclass(frozen=True)
class GrantAccessCommand:
    capabilities: ClassVar[Capabilities] = USER_SCOPE

    patient_id: str
    user_id: str
    access_level: AccessLevel
    reason: str | None = None
    expires_at: datetime | None = None


@dataclass(frozen=True)
class CreateEmergencyAccessCommand:
    capabilities: ClassVar[Capabilities] = USER_SCOPE

    patient_id: str
    user_id: str
    justification: str
    expires_at: datetime


@dataclass(frozen=True)
class ChangeAccessCommand:
    """Revoke or re-enable the grants of a (user, patient) pair."""

    capabilities: ClassVar[Capabilities] = USER_SCOPE

    patient_id: str
    user_id: str
    reason: str | None = None


@dataclass(frozen=True)
class ExtendAccessCommand:
    capabilities: ClassVar[Capabilities] = USER_SCOPE

    patient_id: str
    user_id: str
    expires_at: datetime


@dataclass(frozen=True)
class AccessQuery:
    """Read access information, optionally scoped to one patient."""

    capabilities: ClassVar[Capabilities] = USER_SCOPE

    patient_id: str | None = None
