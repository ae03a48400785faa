"""Schemas for single-resource FHIR endpoints."""

import json
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from fhirvault.models.resource import StoredResource


class ResourceResponse(BaseModel):
    """A stored resource version with its metadata."""

    resource_type: str
    id: str
    composite_key: str
    version_id: int
    status: str
    is_deleted: bool = False
    created_at: datetime
    last_modified_at: datetime
    created_by: str
    last_modified_by: str
    deleted_at: datetime | None = None
    deleted_by: str | None = None
    patient_reference: str | None = None
    organization_reference: str | None = None
    practitioner_reference: str | None = None
    resource: dict[str, Any] = Field(description="The FHIR resource body")

    @classmethod
    def from_record(cls, record: StoredResource) -> "ResourceResponse":
        return cls(
            resource_type=record.resource_type,
            id=record.id,
            composite_key=record.composite_key,
            version_id=record.version_id,
            status=record.status,
            is_deleted=record.is_deleted,
            created_at=record.created_at,
            last_modified_at=record.last_modified_at,
            created_by=record.created_by,
            last_modified_by=record.last_modified_by,
            deleted_at=record.deleted_at,
            deleted_by=record.deleted_by,
            patient_reference=record.patient_reference,
            organization_reference=record.organization_reference,
            practitioner_reference=record.practitioner_reference,
            resource=json.loads(record.resource_json),
        )


class PagedResponse(BaseModel):
    """Paging metadata shared by search and history responses."""

    total_count: int
    page: int
    page_size: int
    total_pages: int
    has_next_page: bool
    has_previous_page: bool

    @staticmethod
    def paging(total_count: int, page: int, page_size: int) -> dict[str, Any]:
        total_pages = (total_count + page_size - 1) // page_size if page_size else 0
        return {
            "total_count": total_count,
            "page": page,
            "page_size": page_size,
            "total_pages": total_pages,
            "has_next_page": page < total_pages,
            "has_previous_page": page > 1,
        }


class SearchResponse(PagedResponse):
    resources: list[ResourceResponse]


class HistoryResponse(PagedResponse):
    resource_type: str
    id: str
    composite_key: str
    versions: list[ResourceResponse]


class DeleteResponse(BaseModel):
    resource_type: str
    id: str
    composite_key: str
    deleted: bool = Field(description="False when nothing live was there to delete")
    deleted_at: datetime | None = None
    deleted_by: str | None = None
