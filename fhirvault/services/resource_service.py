"""
Single-resource operations and bundle import/export.

Every public method authorizes its command through the AuthorizationGate
before touching storage. Commands that act on one patient's data get their
``patient_id`` filled in here: from the resource body for writes, from the
stored record for reads and deletes.
"""

import asyncio
import json
import logging
from dataclasses import replace
from typing import Any
from uuid import uuid4

from fhirvault.commands import (
    CreateResourceCommand,
    DeleteResourceCommand,
    ExportBundleQuery,
    GetResourceHistoryQuery,
    GetResourceQuery,
    ImportBundleCommand,
    SearchResourcesQuery,
    UpdateResourceCommand,
)
from fhirvault.core.auth import CallerContext
from fhirvault.core.gate import AuthorizationGate, patient_id_from_reference
from fhirvault.exceptions import (
    ResourceConflictError,
    ResourceNotFoundError,
    ValidationError,
)
from fhirvault.import_.executor import apply_reference_index
from fhirvault.import_.gateway import process_import
from fhirvault.import_.parser import parse_resource, serialize_resource
from fhirvault.models.resource import (
    DomainEvent,
    EventKind,
    StoredResource,
    utcnow,
)
from fhirvault.schemas.import_schemas import ImportResult
from fhirvault.services.events import EventDispatcher
from fhirvault.services.resource_store import ResourceStore, index_references
from fhirvault.settings import settings

logger = logging.getLogger(__name__)

# Search parameters mapped onto store filters
_REFERENCE_PARAMETERS = {
    "patient": ("patient", "Patient"),
    "subject": ("patient", None),
    "organization": ("organization", "Organization"),
    "practitioner": ("practitioner", "Practitioner"),
}
_PLAIN_PARAMETERS = ("status", "_id")


def patient_id_for(
    resource_type: str, resource_id: str, patient_reference: str | None
) -> str | None:
    """The patient a resource belongs to, if any."""
    if resource_type == "Patient":
        return resource_id
    if patient_reference:
        return patient_id_from_reference(patient_reference)
    return None


def search_filters(search_parameters: dict[str, str]) -> dict[str, str]:
    """Translate search parameters into store filters.

    Bare ids are expanded to references (``patient=123`` → ``Patient/123``).
    Unknown parameters are ignored.
    """
    filters: dict[str, str] = {}
    for name, (filter_name, resource_type) in _REFERENCE_PARAMETERS.items():
        value = search_parameters.get(name)
        if not value:
            continue
        if resource_type and "/" not in value:
            value = f"{resource_type}/{value}"
        filters.setdefault(filter_name, value)
    for name in _PLAIN_PARAMETERS:
        if search_parameters.get(name):
            filters[name] = search_parameters[name]
    return filters


class ResourceService:
    """Authorized CRUD, history, search, import and export of resources."""

    def __init__(
        self,
        store: ResourceStore,
        gate: AuthorizationGate,
        dispatcher: EventDispatcher,
    ):
        self.store = store
        self.gate = gate
        self.dispatcher = dispatcher

    async def import_bundle(
        self,
        caller: CallerContext | None,
        command: ImportBundleCommand,
        cancel_event: asyncio.Event | None = None,
    ) -> ImportResult:
        await self.gate.authorize(caller, command)
        return await process_import(
            command.request,
            self.store,
            self.dispatcher,
            imported_by=caller.id if caller and caller.id else "system",
            cancel_event=cancel_event,
        )

    async def create(
        self, caller: CallerContext | None, command: CreateResourceCommand
    ) -> StoredResource:
        """
        Create a resource at version 1, or revive a soft-deleted one.

        Raises:
            ValidationError: If the body is invalid or of another type
            ResourceConflictError: If a live resource with the id exists
        """
        self.gate.authenticate(caller, command)
        resource = self._parse_body(command.resource_json, command.resource_type)
        if not resource.get("id"):
            resource["id"] = str(uuid4())
        index = index_references(resource)

        command = replace(
            command,
            patient_id=patient_id_for(
                command.resource_type, resource["id"], index["patient_reference"]
            ),
        )
        await self.gate.authorize(caller, command)

        user = self._user(caller)
        existing = await self.store.get_by_identity(
            command.resource_type, resource["id"], include_deleted=True
        )
        if existing is not None and not existing.is_deleted:
            logger.warning("Resource already exists: %s", existing.composite_key)
            raise ResourceConflictError(
                f"Resource {existing.composite_key} already exists"
            )

        resource_json = serialize_resource(resource)
        if existing is not None:
            existing.mark_updated(resource_json, user)
            apply_reference_index(existing, resource)
            record = await self.store.update(existing)
        else:
            record = StoredResource(
                resource_type=command.resource_type,
                id=resource["id"],
                resource_json=resource_json,
                created_by=user,
                last_modified_by=user,
                **index,
            )
            record = await self.store.add(record)

        logger.info("Created %s version %d", record.composite_key, record.version_id)
        await self._publish(EventKind.CREATED, record)
        return record

    async def update(
        self, caller: CallerContext | None, command: UpdateResourceCommand
    ) -> StoredResource:
        """
        Replace the body of an existing resource as its next version.

        Raises:
            ValidationError: If the body is invalid, of another type or
                carries a different id
            ResourceNotFoundError: If there is no live resource to update
        """
        self.gate.authenticate(caller, command)
        resource = self._parse_body(command.resource_json, command.resource_type)
        if resource.get("id") and resource["id"] != command.resource_id:
            raise ValidationError(
                f"Resource id {resource['id']} does not match {command.resource_id}"
            )
        resource["id"] = command.resource_id
        index = index_references(resource)

        command = replace(
            command,
            patient_id=patient_id_for(
                command.resource_type, command.resource_id, index["patient_reference"]
            ),
        )
        await self.gate.authorize(caller, command)

        existing = await self.store.get_by_identity(
            command.resource_type, command.resource_id
        )
        if existing is None:
            logger.warning(
                "Resource not found: %s/%s", command.resource_type, command.resource_id
            )
            raise ResourceNotFoundError(
                f"Resource {command.resource_type}/{command.resource_id} not found"
            )

        existing.mark_updated(serialize_resource(resource), self._user(caller))
        apply_reference_index(existing, resource)
        record = await self.store.update(existing)

        logger.info("Updated %s to version %d", record.composite_key, record.version_id)
        await self._publish(EventKind.UPDATED, record)
        return record

    async def delete(
        self, caller: CallerContext | None, command: DeleteResourceCommand
    ) -> StoredResource | None:
        """Soft delete a resource. Returns None when nothing live was there."""
        existing = await self.store.get_by_identity(
            command.resource_type, command.resource_id
        )
        command = replace(command, patient_id=self._patient_id_of(command, existing))
        await self.gate.authorize(caller, command)

        if existing is None:
            return None

        existing.mark_deleted(self._user(caller))
        record = await self.store.update(existing)
        logger.info(
            "Deleted %s%s",
            record.composite_key,
            f" ({command.reason})" if command.reason else "",
        )
        await self._publish(EventKind.DELETED, record)
        return record

    async def get(
        self, caller: CallerContext | None, query: GetResourceQuery
    ) -> StoredResource:
        """
        Read the current version, or a specific one.

        Raises:
            ResourceNotFoundError: If the resource (or version) does not exist,
                or the current version is deleted and no version was asked for
        """
        current = await self.store.get_by_identity(
            query.resource_type, query.resource_id, include_deleted=True
        )
        query = replace(query, patient_id=self._patient_id_of(query, current))
        await self.gate.authorize(caller, query)

        key = f"{query.resource_type}/{query.resource_id}"
        if query.version_id is not None:
            record = await self.store.get_by_version(
                query.resource_type, query.resource_id, query.version_id
            )
            if record is None:
                raise ResourceNotFoundError(
                    f"Version {query.version_id} of {key} not found"
                )
            return record

        if current is None or current.is_deleted:
            raise ResourceNotFoundError(f"Resource {key} not found")
        return current

    async def history(
        self, caller: CallerContext | None, query: GetResourceHistoryQuery
    ) -> tuple[list[StoredResource], int]:
        """A page of versions, newest first, and the total version count."""
        current = await self.store.get_by_identity(
            query.resource_type, query.resource_id, include_deleted=True
        )
        query = replace(query, patient_id=self._patient_id_of(query, current))
        await self.gate.authorize(caller, query)

        if current is None:
            raise ResourceNotFoundError(
                f"Resource {query.resource_type}/{query.resource_id} not found"
            )

        versions = await self.store.get_history(query.resource_type, query.resource_id)
        page, page_size = self._paging(query.page, query.page_size)
        start = (page - 1) * page_size
        return versions[start : start + page_size], len(versions)

    async def search(
        self, caller: CallerContext | None, query: SearchResourcesQuery
    ) -> tuple[list[StoredResource], int]:
        await self.gate.authorize(caller, query)
        page, page_size = self._paging(query.page, query.page_size)
        return await self.store.search(
            query.resource_type,
            search_filters(query.search_parameters),
            page=page,
            page_size=page_size,
        )

    async def export_bundle(
        self, caller: CallerContext | None, query: ExportBundleQuery
    ) -> dict[str, Any]:
        """Export one page of resources as a FHIR collection Bundle."""
        await self.gate.authorize(caller, query)
        page, page_size = self._paging(query.page, query.page_size)
        records, total = await self.store.search(
            query.resource_type,
            search_filters(query.search_parameters),
            page=page,
            page_size=page_size,
            include_deleted=query.include_deleted,
        )

        entries = []
        for record in records:
            resource = json.loads(record.resource_json)
            meta = resource.setdefault("meta", {})
            meta["versionId"] = str(record.version_id)
            meta["lastUpdated"] = record.last_modified_at.isoformat()
            entries.append({"fullUrl": record.composite_key, "resource": resource})

        logger.info(
            "Exported %d of %d resources (type=%s)",
            len(entries),
            total,
            query.resource_type or "*",
        )
        return {
            "resourceType": "Bundle",
            "id": str(uuid4()),
            "type": "collection",
            "timestamp": utcnow().isoformat(),
            "total": total,
            "entry": entries,
        }

    @staticmethod
    def _parse_body(
        resource_json: str | bytes, resource_type: str
    ) -> dict[str, Any]:
        resource = parse_resource(resource_json)
        if resource["resourceType"] != resource_type:
            raise ValidationError(
                f"Resource type {resource['resourceType']} does not match "
                f"{resource_type}"
            )
        return resource

    @staticmethod
    def _patient_id_of(command: Any, record: StoredResource | None) -> str | None:
        return patient_id_for(
            command.resource_type,
            command.resource_id,
            record.patient_reference if record else None,
        )

    @staticmethod
    def _paging(page: int, page_size: int) -> tuple[int, int]:
        page_size = page_size or settings.default_page_size
        return max(page, 1), max(1, min(page_size, settings.max_page_size))

    @staticmethod
    def _user(caller: CallerContext | None) -> str:
        return caller.id if caller and caller.id else "system"

    async def _publish(self, kind: EventKind, record: StoredResource) -> None:
        await self.dispatcher.publish(
            [DomainEvent(kind, record.resource_type, record.id, record.version_id)]
        )
