"""
Resource storage for imported and directly written FHIR resources.

ResourceStore is the contract the import pipeline and the resource service
depend on. InMemoryResourceStore keeps the current version of every identity
plus its full version history; it backs development, tests and the default
dependency wiring.
"""

import asyncio
import copy
import logging
from collections.abc import Mapping
from typing import Any, Protocol

from fhirvault.exceptions import ResourceConflictError, ResourceNotFoundError
from fhirvault.models.resource import StoredResource

logger = logging.getLogger(__name__)

# Which field holds the patient / organization / practitioner a resource
# belongs to, by resource type. Patient resources index themselves.
PATIENT_REFERENCE_FIELDS: dict[str, str] = {
    "Observation": "subject",
    "Encounter": "subject",
    "Procedure": "subject",
    "Condition": "subject",
    "MedicationRequest": "subject",
    "MedicationStatement": "subject",
    "DiagnosticReport": "subject",
    "DocumentReference": "subject",
    "Composition": "subject",
    "Immunization": "patient",
    "AllergyIntolerance": "patient",
}

ORGANIZATION_REFERENCE_FIELDS: dict[str, str] = {
    "Patient": "managingOrganization",
    "Encounter": "serviceProvider",
    "Location": "managingOrganization",
    "PractitionerRole": "organization",
}

PRACTITIONER_REFERENCE_FIELDS: dict[str, str] = {
    "Patient": "generalPractitioner",
    "Observation": "performer",
    "Procedure": "performer",
    "Condition": "asserter",
    "MedicationRequest": "requester",
    "DiagnosticReport": "performer",
    "Immunization": "performer",
    "AllergyIntolerance": "recorder",
    "PractitionerRole": "practitioner",
}


def _first_reference(value: Any) -> str | None:
    """First reference string held by a Reference, a list, or a performer."""
    if isinstance(value, list):
        for item in value:
            found = _first_reference(item)
            if found:
                return found
        return None
    if isinstance(value, dict):
        reference = value.get("reference")
        if isinstance(reference, str) and reference:
            return reference
        # Procedure/Immunization performer wraps the reference in "actor"
        return _first_reference(value.get("actor"))
    return None


def index_references(resource: dict[str, Any]) -> dict[str, str | None]:
    """Derive the patient/organization/practitioner index columns."""
    resource_type = resource.get("resourceType", "")

    if resource_type == "Patient" and resource.get("id"):
        patient_reference: str | None = f"Patient/{resource['id']}"
    else:
        field = PATIENT_REFERENCE_FIELDS.get(resource_type)
        patient_reference = _first_reference(resource.get(field)) if field else None

    org_field = ORGANIZATION_REFERENCE_FIELDS.get(resource_type)
    practitioner_field = PRACTITIONER_REFERENCE_FIELDS.get(resource_type)
    return {
        "patient_reference": patient_reference,
        "organization_reference": (
            _first_reference(resource.get(org_field)) if org_field else None
        ),
        "practitioner_reference": (
            _first_reference(resource.get(practitioner_field))
            if practitioner_field
            else None
        ),
    }


class ResourceStore(Protocol):
    """Storage contract for versioned resources."""

    async def get_by_identity(
        self, resource_type: str, resource_id: str, include_deleted: bool = False
    ) -> StoredResource | None: ...

    async def add(self, record: StoredResource) -> StoredResource: ...

    async def update(self, record: StoredResource) -> StoredResource: ...

    async def exists(self, resource_type: str, resource_id: str) -> bool: ...

    async def get_history(
        self, resource_type: str, resource_id: str
    ) -> list[StoredResource]: ...

    async def get_by_version(
        self, resource_type: str, resource_id: str, version_id: int
    ) -> StoredResource | None: ...

    async def search(
        self,
        resource_type: str | None,
        filters: Mapping[str, str] | None = None,
        page: int = 1,
        page_size: int = 100,
        include_deleted: bool = False,
    ) -> tuple[list[StoredResource], int]: ...

    async def get_by_patient_reference(
        self,
        patient_reference: str,
        resource_type: str | None = None,
        page: int = 1,
        page_size: int = 100,
    ) -> tuple[list[StoredResource], int]: ...

    async def get_by_organization_reference(
        self,
        organization_reference: str,
        resource_type: str | None = None,
        page: int = 1,
        page_size: int = 100,
    ) -> tuple[list[StoredResource], int]: ...

    async def get_by_practitioner_reference(
        self,
        practitioner_reference: str,
        resource_type: str | None = None,
        page: int = 1,
        page_size: int = 100,
    ) -> tuple[list[StoredResource], int]: ...

    async def count_by_type(self, resource_type: str | None = None) -> int: ...


# Search filter name → StoredResource attribute
_FILTER_ATTRIBUTES = {
    "status": "status",
    "patient": "patient_reference",
    "organization": "organization_reference",
    "practitioner": "practitioner_reference",
    "_id": "id",
}


class InMemoryResourceStore:
    """Process-local ResourceStore keeping every version of every identity."""

    def __init__(self) -> None:
        self._current: dict[tuple[str, str], StoredResource] = {}
        self._history: dict[tuple[str, str], list[StoredResource]] = {}
        self._lock = asyncio.Lock()

    async def get_by_identity(
        self, resource_type: str, resource_id: str, include_deleted: bool = False
    ) -> StoredResource | None:
        record = self._current.get((resource_type, resource_id))
        if record is None or (record.is_deleted and not include_deleted):
            return None
        # Hand out copies so callers mutate nothing until update() is called
        return copy.deepcopy(record)

    async def add(self, record: StoredResource) -> StoredResource:
        identity = (record.resource_type, record.id)
        async with self._lock:
            current = self._current.get(identity)
            if current is not None and not current.is_deleted:
                raise ResourceConflictError(
                    f"Resource {record.composite_key} already exists"
                )
            if current is not None and record.version_id <= current.version_id:
                raise ResourceConflictError(
                    f"Version {record.version_id} of {record.composite_key} "
                    f"does not follow stored version {current.version_id}"
                )
            stored = copy.deepcopy(record)
            self._current[identity] = stored
            self._history.setdefault(identity, []).append(copy.deepcopy(stored))
        logger.debug("Stored %s version %d", record.composite_key, record.version_id)
        return copy.deepcopy(stored)

    async def update(self, record: StoredResource) -> StoredResource:
        identity = (record.resource_type, record.id)
        async with self._lock:
            current = self._current.get(identity)
            if current is None:
                raise ResourceNotFoundError(
                    f"Resource {record.composite_key} not found"
                )
            stored = copy.deepcopy(record)
            self._current[identity] = stored
            history = self._history.setdefault(identity, [])
            if history and history[-1].version_id == stored.version_id:
                # Same version rewritten in place (soft delete)
                history[-1] = copy.deepcopy(stored)
            else:
                history.append(copy.deepcopy(stored))
        logger.debug("Updated %s to version %d", record.composite_key, record.version_id)
        return copy.deepcopy(stored)

    async def exists(self, resource_type: str, resource_id: str) -> bool:
        return await self.get_by_identity(resource_type, resource_id) is not None

    async def get_history(
        self, resource_type: str, resource_id: str
    ) -> list[StoredResource]:
        """All versions, newest first."""
        history = self._history.get((resource_type, resource_id), [])
        return [copy.deepcopy(r) for r in reversed(history)]

    async def get_by_version(
        self, resource_type: str, resource_id: str, version_id: int
    ) -> StoredResource | None:
        for record in self._history.get((resource_type, resource_id), []):
            if record.version_id == version_id:
                return copy.deepcopy(record)
        return None

    async def search(
        self,
        resource_type: str | None,
        filters: Mapping[str, str] | None = None,
        page: int = 1,
        page_size: int = 100,
        include_deleted: bool = False,
    ) -> tuple[list[StoredResource], int]:
        filters = filters or {}
        include_deleted = include_deleted or filters.get("status") == "deleted"

        matches: list[StoredResource] = []
        for record in self._current.values():
            if resource_type and record.resource_type != resource_type:
                continue
            if record.is_deleted and not include_deleted:
                continue
            if all(
                getattr(record, attribute) == filters[name]
                for name, attribute in _FILTER_ATTRIBUTES.items()
                if name in filters
            ):
                matches.append(record)

        matches.sort(key=lambda r: r.last_modified_at, reverse=True)
        page = max(page, 1)
        start = (page - 1) * page_size
        items = [copy.deepcopy(r) for r in matches[start : start + page_size]]
        return items, len(matches)

    async def get_by_patient_reference(
        self,
        patient_reference: str,
        resource_type: str | None = None,
        page: int = 1,
        page_size: int = 100,
    ) -> tuple[list[StoredResource], int]:
        return await self.search(
            resource_type, {"patient": patient_reference}, page, page_size
        )

    async def get_by_organization_reference(
        self,
        organization_reference: str,
        resource_type: str | None = None,
        page: int = 1,
        page_size: int = 100,
    ) -> tuple[list[StoredResource], int]:
        return await self.search(
            resource_type, {"organization": organization_reference}, page, page_size
        )

    async def get_by_practitioner_reference(
        self,
        practitioner_reference: str,
        resource_type: str | None = None,
        page: int = 1,
        page_size: int = 100,
    ) -> tuple[list[StoredResource], int]:
        return await self.search(
            resource_type, {"practitioner": practitioner_reference}, page, page_size
        )

    async def count_by_type(self, resource_type: str | None = None) -> int:
        return sum(
            1
            for record in self._current.values()
            if not record.is_deleted
            and (resource_type is None or record.resource_type == resource_type)
        )
