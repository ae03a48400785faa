"""
Import executor - applies ordered bundle entries to the resource store.

Each entry moves from pending to exactly one of created, updated, skipped,
failed or deleted. Entry-level problems are recorded on the ImportResult and
never abort the batch; the executor only stops early when cancelled.
"""

import asyncio
import copy
import logging
from collections.abc import Sequence
from typing import Any
from uuid import uuid4

from fhirvault.exceptions import (
    FhirVaultError,
    InvalidEntryError,
    InvalidReferenceError,
    ResourceConflictError,
    ResourceNotFoundError,
    ResourceParseError,
)
from fhirvault.import_.parser import (
    BatchEntry,
    EntryOperation,
    serialize_resource,
    validate_resource,
)
from fhirvault.import_.validation import find_invalid_references
from fhirvault.models.resource import DomainEvent, EventKind, StoredResource
from fhirvault.schemas.import_schemas import (
    ErrorSeverity,
    ImportedResource,
    ImportErrorDetail,
    ImportRequest,
    ImportResult,
    ImportStatus,
)
from fhirvault.services.resource_store import ResourceStore, index_references

logger = logging.getLogger(__name__)

# Error codes reported as warnings rather than errors
WARNING_CODES = {InvalidEntryError.code, ResourceConflictError.code}

UNKNOWN_RESOURCE_TYPE = "Unknown"


def apply_reference_index(record: StoredResource, resource: dict[str, Any]) -> None:
    """Refresh the patient/organization/practitioner columns of a record."""
    for column, value in index_references(resource).items():
        setattr(record, column, value)


class ImportExecutor:
    """Runs the per-entry state machine for one import."""

    def __init__(
        self,
        store: ResourceStore,
        request: ImportRequest,
        imported_by: str = "system",
    ):
        self.store = store
        self.request = request
        self.imported_by = imported_by
        self.events: list[DomainEvent] = []

    async def execute(
        self,
        entries: Sequence[BatchEntry],
        batch_keys: set[str],
        cancel_event: asyncio.Event | None = None,
        result: ImportResult | None = None,
    ) -> tuple[ImportResult, list[DomainEvent]]:
        """
        Process entries in order.

        Args:
            entries: Entries already in processing order
            batch_keys: ``type/id`` keys of every resource in the batch
            cancel_event: When set, remaining entries are not processed
            result: Result to fill in; a new one is created if omitted

        Returns:
            The aggregate result and the events of every confirmed write
        """
        result = result or ImportResult()

        for entry in entries:
            if cancel_event is not None and cancel_event.is_set():
                result.cancelled = True
                logger.info(
                    "Import %s cancelled after %d of %d entries",
                    result.import_job_id,
                    result.total_processed,
                    len(entries),
                )
                break

            try:
                outcome = await self._process_entry(entry, batch_keys)
            except FhirVaultError as e:
                outcome = self._record_failure(result, entry, e.code, str(e))
            except Exception as e:
                logger.exception(
                    "Unexpected error importing entry %d (%s)",
                    entry.position,
                    entry.key or entry.resource_type,
                )
                outcome = self._record_failure(
                    result, entry, type(e).__name__, str(e) or type(e).__name__
                )
            result.record(outcome)

        return result, self.events

    def _record_failure(
        self,
        result: ImportResult,
        entry: BatchEntry,
        code: str,
        message: str,
    ) -> ImportedResource:
        resource_type = entry.resource_type or UNKNOWN_RESOURCE_TYPE
        severity = (
            ErrorSeverity.WARNING if code in WARNING_CODES else ErrorSeverity.ERROR
        )
        result.errors.append(
            ImportErrorDetail(
                resource_type=resource_type,
                original_id=entry.raw_id,
                message=message,
                code=code,
                severity=severity,
            )
        )
        if severity == ErrorSeverity.WARNING:
            logger.warning("Entry %d not imported: %s", entry.position, message)
        else:
            logger.info("Entry %d failed (%s): %s", entry.position, code, message)
        return ImportedResource(
            resource_type=resource_type,
            id=entry.raw_id or "",
            composite_key=entry.key or resource_type,
            status=ImportStatus.FAILED,
            error_message=message,
        )

    async def _process_entry(
        self, entry: BatchEntry, batch_keys: set[str]
    ) -> ImportedResource:
        if entry.parse_error:
            raise ResourceParseError(entry.parse_error)

        if entry.operation == EntryOperation.DELETE:
            return await self._delete(entry)

        if entry.resource is None:
            raise InvalidEntryError("Bundle entry has no resource")

        resource = entry.resource
        if self.request.validate_resources:
            validate_resource(resource)
        elif not resource.get("resourceType"):
            raise ResourceParseError("Resource has no resourceType")

        invalid = find_invalid_references(resource, batch_keys)
        if invalid:
            raise InvalidReferenceError(
                f"References not found in bundle: {', '.join(invalid)}", invalid
            )

        resource_id = entry.raw_id
        if not resource_id:
            if entry.operation == EntryOperation.UPSERT:
                raise ResourceParseError("PUT entries require a resource id")
            resource_id = str(uuid4())

        if resource.get("id") != resource_id:
            resource = copy.deepcopy(resource)
            resource["id"] = resource_id

        existing = await self.store.get_by_identity(
            resource["resourceType"], resource_id, include_deleted=True
        )

        if existing is not None and not existing.is_deleted:
            if self.request.skips_existing:
                return self._outcome(existing, ImportStatus.SKIPPED)
            if entry.operation == EntryOperation.UPSERT and self.request.allows_updates:
                return await self._update(existing, resource)
            raise ResourceConflictError(
                f"Resource {existing.composite_key} already exists"
            )

        if not self.request.allows_creates:
            raise ResourceNotFoundError(
                f"Resource {resource['resourceType']}/{resource_id} does not exist "
                "and the import strategy only allows updates"
            )
        return await self._create(resource, existing)

    async def _create(
        self, resource: dict[str, Any], deleted: StoredResource | None
    ) -> ImportedResource:
        resource_json = serialize_resource(resource)
        if deleted is not None:
            # Revive a soft-deleted identity as its next version
            deleted.mark_updated(resource_json, self.imported_by)
            apply_reference_index(deleted, resource)
            record = await self.store.update(deleted)
        else:
            record = StoredResource(
                resource_type=resource["resourceType"],
                id=resource["id"],
                resource_json=resource_json,
                created_by=self.imported_by,
                last_modified_by=self.imported_by,
            )
            apply_reference_index(record, resource)
            record = await self.store.add(record)

        self._emit(EventKind.CREATED, record)
        return self._outcome(record, ImportStatus.CREATED)

    async def _update(
        self, existing: StoredResource, resource: dict[str, Any]
    ) -> ImportedResource:
        existing.mark_updated(serialize_resource(resource), self.imported_by)
        apply_reference_index(existing, resource)
        record = await self.store.update(existing)
        self._emit(EventKind.UPDATED, record)
        return self._outcome(record, ImportStatus.UPDATED)

    async def _delete(self, entry: BatchEntry) -> ImportedResource:
        if not entry.resource_type or not entry.raw_id:
            raise InvalidEntryError(
                "DELETE entries require a resource type and id "
                "in the resource or the request url"
            )

        existing = await self.store.get_by_identity(entry.resource_type, entry.raw_id)
        if existing is None:
            # Deleting something absent (or already deleted) is a no-op
            return ImportedResource(
                resource_type=entry.resource_type,
                id=entry.raw_id,
                composite_key=entry.key or entry.resource_type,
                version_id=0,
                status=ImportStatus.DELETED,
            )

        existing.mark_deleted(self.imported_by)
        record = await self.store.update(existing)
        self._emit(EventKind.DELETED, record)
        return self._outcome(record, ImportStatus.DELETED)

    def _emit(self, kind: EventKind, record: StoredResource) -> None:
        self.events.append(
            DomainEvent(kind, record.resource_type, record.id, record.version_id)
        )

    @staticmethod
    def _outcome(record: StoredResource, status: ImportStatus) -> ImportedResource:
        return ImportedResource(
            resource_type=record.resource_type,
            id=record.id,
            composite_key=record.composite_key,
            version_id=record.version_id,
            status=status,
        )
